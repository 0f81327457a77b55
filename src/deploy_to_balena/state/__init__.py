"""Release lifecycle state machine and release store.

This module decides what a run does about its triggering event:
- closed+merged pull request → finalize its draft
- closed pull request → nothing
- push to the target branch or a tag → final release
- open/updated pull request → draft release

Release bindings are persisted outside the process, either as release
tags on the build system or in this job's check run output.
"""

from .models import (
    COMMIT_SHA_TAG,
    GIT_TAG_TAG,
    PULL_REQUEST_ID_TAG,
    DecisionKind,
    LifecycleDecision,
    LifecycleState,
    Release,
    ReleaseKey,
    ReleaseTags,
)
from .machine import LifecycleStateMachine
from .repository import (
    BalenaTagReleaseStore,
    CheckRunBackend,
    CheckRunReleaseStore,
    ReleaseStore,
    ReleaseTagBackend,
)

__all__ = [
    # Models
    "COMMIT_SHA_TAG",
    "GIT_TAG_TAG",
    "PULL_REQUEST_ID_TAG",
    "DecisionKind",
    "LifecycleDecision",
    "LifecycleState",
    "Release",
    "ReleaseKey",
    "ReleaseTags",
    # State machine
    "LifecycleStateMachine",
    # Release store
    "BalenaTagReleaseStore",
    "CheckRunBackend",
    "CheckRunReleaseStore",
    "ReleaseStore",
    "ReleaseTagBackend",
]
