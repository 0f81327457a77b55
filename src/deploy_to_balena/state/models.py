"""Release lifecycle models.

This module defines the data models for the release lifecycle, including:
- LifecycleState: Classification of the triggering event
- DecisionKind / LifecycleDecision: What the run will do about it
- ReleaseTags: Tag set attached to a release (commit sha, pull request id,
  git tag)
- ReleaseKey: Identity a release is bound to in the release store
- Release: A release produced by the builders

The pydantic models follow the approach in event/models.py and config.py.
Lifecycle states are derived per invocation and never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Release tag keys understood by the release store
COMMIT_SHA_TAG = "balena-ci-commit-sha"
PULL_REQUEST_ID_TAG = "balena-ci-id"
GIT_TAG_TAG = "balena-ci-tag"


class LifecycleState(str, Enum):
    """Lifecycle state derived from the triggering event.

    Attributes:
        CLOSED_MERGED: Pull request closed and merged; finalize its draft.
        CLOSED_UNMERGED: Pull request closed without merging; nothing to do.
        PUSH_TO_TARGET: Push to the target branch or a tag ref (or a manual
                        dispatch); build a final release.
        PUSH_OTHER: Push to any other ref; unsupported.
        PULL_REQUEST_OPEN: Pull request opened/updated; build a draft.
        UNRECOGNIZED: Any other event type; unsupported.
    """

    CLOSED_MERGED = "closed_merged"
    CLOSED_UNMERGED = "closed_unmerged"
    PUSH_TO_TARGET = "push_to_target"
    PUSH_OTHER = "push_other"
    PULL_REQUEST_OPEN = "pull_request_open"
    UNRECOGNIZED = "unrecognized"


class DecisionKind(str, Enum):
    """Actions a lifecycle decision can resolve to."""

    FINALIZE_RELEASE = "finalize_release"
    BUILD_DRAFT = "build_draft"
    BUILD_FINAL = "build_final"
    NO_OP = "no_op"
    ERROR = "error"


class ReleaseTags(BaseModel):
    """Tag set binding a release to the identity it was built for.

    Attributes:
        sha: Commit sha; always present.
        pull_request_id: Pull request id; present only for draft builds.
        git_tag: Git tag name; present only for tag-ref pushes.
    """

    model_config = ConfigDict(frozen=True)

    sha: str = Field(..., min_length=1, description="Commit sha")

    pull_request_id: Optional[int] = Field(
        default=None,
        description="Pull request id for pull request builds",
    )

    git_tag: Optional[str] = Field(
        default=None,
        description="Git tag name for tag-ref pushes",
    )

    def as_dict(self) -> Dict[str, str]:
        """Tag key/value pairs in the order they are passed to the builder.

        Returns:
            Ordered mapping of release tag key to value.

        Example:
            >>> ReleaseTags(sha="abc123", pull_request_id=44).as_dict()
            {'balena-ci-commit-sha': 'abc123', 'balena-ci-id': '44'}
        """
        tags = {COMMIT_SHA_TAG: self.sha}
        if self.pull_request_id is not None:
            tags[PULL_REQUEST_ID_TAG] = str(self.pull_request_id)
        if self.git_tag:
            tags[GIT_TAG_TAG] = self.git_tag
        return tags

    def as_cli_args(self) -> List[str]:
        """Flatten the tags into `--release-tag` arguments.

        Returns:
            Alternating key/value list, e.g. [key1, value1, key2, value2].
        """
        args: List[str] = []
        for key, value in self.as_dict().items():
            args.extend([key, value])
        return args


class ReleaseKey(BaseModel):
    """Identity under which a release is stored.

    At most one authoritative release exists per key.
    """

    model_config = ConfigDict(frozen=True)

    fleet: str = Field(..., min_length=1, description="Fleet slug")

    sha: str = Field(..., min_length=1, description="Commit sha")

    pull_request_id: Optional[int] = Field(
        default=None,
        description="Pull request id for draft-scoped releases",
    )

    @classmethod
    def from_tags(cls, fleet: str, tags: ReleaseTags) -> "ReleaseKey":
        """Build the store key for a build tag set."""
        return cls(fleet=fleet, sha=tags.sha, pull_request_id=tags.pull_request_id)

    @property
    def binding_name(self) -> str:
        """Key used inside a fleet's bindings, "{sha}" or "{sha}#{pr_id}"."""
        if self.pull_request_id is None:
            return self.sha
        return f"{self.sha}#{self.pull_request_id}"

    def __str__(self) -> str:
        return f"{self.fleet}@{self.binding_name}"


class Release(BaseModel):
    """A release produced by the builders.

    Attributes:
        id: Identifier assigned by the build system.
        is_final: False for drafts, True once finalized. Only ever moves
                  from False to True.
        version: Raw version string, known only after creation.
        created_at: Creation time reported by the build system.
    """

    id: int = Field(..., gt=0, description="Release identifier")

    is_final: bool = Field(
        default=False,
        description="Whether the release has been finalized",
    )

    version: Optional[str] = Field(
        default=None,
        description="Raw version string of the release",
    )

    created_at: Optional[datetime] = Field(
        default=None,
        description="When the release was created",
    )

    def finalized(self) -> "Release":
        """Copy of this release marked final."""
        return self.model_copy(update={"is_final": True})


@dataclass(frozen=True)
class LifecycleDecision:
    """What a run will do, decided before any side effect happens.

    Use the constructors (finalize, build_draft, build_final, no_op,
    fail) rather than instantiating directly.

    Attributes:
        kind: The decided action.
        state: The lifecycle state the decision was made for.
        release_id: Release to finalize (FINALIZE_RELEASE only).
        tags: Tag set to build with (BUILD_* only).
        checkout_branch_required: Whether the versionbot branch must be
                                  checked out before building.
        create_tag: Whether a git tag is created for the resulting release.
        reason: Human-readable explanation (NO_OP and ERROR).
        error: Exception the run terminates with (ERROR only).
    """

    kind: DecisionKind
    state: LifecycleState
    release_id: Optional[int] = None
    tags: Optional[ReleaseTags] = None
    checkout_branch_required: bool = False
    create_tag: bool = False
    reason: str = ""
    error: Optional[Exception] = field(default=None, compare=False)

    @property
    def draft(self) -> bool:
        """Whether the build produces a draft release."""
        return self.kind == DecisionKind.BUILD_DRAFT

    @property
    def is_build(self) -> bool:
        return self.kind in (DecisionKind.BUILD_DRAFT, DecisionKind.BUILD_FINAL)

    @classmethod
    def finalize(
        cls, state: LifecycleState, release_id: int, create_tag: bool = False
    ) -> "LifecycleDecision":
        return cls(
            kind=DecisionKind.FINALIZE_RELEASE,
            state=state,
            release_id=release_id,
            create_tag=create_tag,
        )

    @classmethod
    def build_draft(
        cls,
        state: LifecycleState,
        tags: ReleaseTags,
        checkout_branch_required: bool = False,
    ) -> "LifecycleDecision":
        # Drafts are never tagged in git
        return cls(
            kind=DecisionKind.BUILD_DRAFT,
            state=state,
            tags=tags,
            checkout_branch_required=checkout_branch_required,
            create_tag=False,
        )

    @classmethod
    def build_final(
        cls, state: LifecycleState, tags: ReleaseTags, create_tag: bool = False
    ) -> "LifecycleDecision":
        return cls(
            kind=DecisionKind.BUILD_FINAL,
            state=state,
            tags=tags,
            create_tag=create_tag,
        )

    @classmethod
    def no_op(cls, state: LifecycleState, reason: str) -> "LifecycleDecision":
        return cls(kind=DecisionKind.NO_OP, state=state, reason=reason)

    @classmethod
    def fail(cls, state: LifecycleState, error: Exception) -> "LifecycleDecision":
        return cls(
            kind=DecisionKind.ERROR,
            state=state,
            reason=str(error),
            error=error,
        )
