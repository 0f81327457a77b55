"""Workflow event intake for the deploy action.

This module parses the event that triggered a run into the identity
every other component works with:
- WorkflowEvent: event name, ref, sha and raw payload
- RepoContext: owner, repository, target sha and pull request identity
"""

from .models import PullRequest, RepoContext, WorkflowEvent
from .resolver import IdentityResolver, load_workflow_event

__all__ = [
    "IdentityResolver",
    "PullRequest",
    "RepoContext",
    "WorkflowEvent",
    "load_workflow_event",
]
