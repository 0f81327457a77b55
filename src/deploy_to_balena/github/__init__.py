"""GitHub API client for check runs and git references.

This module provides a wrapper around the GitHub API for:
- Listing check runs on a commit
- Updating check run output
- Creating git tags for final releases

Includes rate limiting and retry logic for API resilience.
"""

from .client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    ReferenceExistsError,
)
from .models import CheckRun, GitReference

__all__ = [
    "CheckRun",
    "GitHubAPIError",
    "GitHubClient",
    "GitReference",
    "RateLimitError",
    "ReferenceExistsError",
]
