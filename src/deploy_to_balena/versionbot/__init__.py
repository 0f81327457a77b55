"""Versionbot branch readiness for pull request builds."""

from .waiter import BranchReadinessWaiter, CheckLookup, versionbot_branch

__all__ = [
    "BranchReadinessWaiter",
    "CheckLookup",
    "versionbot_branch",
]
