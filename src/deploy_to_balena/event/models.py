"""Workflow event models for the release lifecycle.

This module defines the data models describing the event that triggered
a run and the repository identity derived from it:

- WorkflowEvent: raw trigger (event name, ref, sha, JSON payload)
- PullRequest: identity of the pull request a run is scoped to
- RepoContext: owner/repository/commit identity threaded through every
  component of a run

RepoContext is frozen: it is resolved once per invocation and never
mutated afterwards.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkflowEvent(BaseModel):
    """The event that triggered a workflow run.

    Attributes:
        event_name: Workflow event name (push, pull_request, ...).
        ref: Fully qualified git ref of the event (refs/heads/main,
             refs/tags/v1.0.0, refs/pull/44/merge).
        sha: Commit sha of the workflow run. For pull request events this
             is the merge commit, not the head of the pull request.
        payload: Webhook payload of the event.
    """

    event_name: str = Field(
        ...,
        description="Workflow event name that triggered the run",
    )

    ref: str = Field(
        default="",
        description="Fully qualified git ref of the event",
    )

    sha: str = Field(
        default="",
        description="Commit sha of the workflow run",
    )

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Webhook payload of the event",
    )

    @property
    def action(self) -> Optional[str]:
        """The payload action (opened, synchronize, closed, ...), if any."""
        action = self.payload.get("action")
        return action if isinstance(action, str) else None

    @property
    def tag_name(self) -> Optional[str]:
        """The tag name when the ref is a tag ref, otherwise None."""
        prefix = "refs/tags/"
        if self.ref.startswith(prefix) and len(self.ref) > len(prefix):
            return self.ref[len(prefix):]
        return None


class PullRequest(BaseModel):
    """Identity of the pull request a run is scoped to.

    Attributes:
        id: Stable internal identifier, used to tag releases.
        number: Human-facing sequence number, used in branch names.
        merged: Whether the pull request was merged. Only meaningful on
                close events.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0, description="Stable pull request identifier")

    number: int = Field(..., gt=0, description="Pull request number")

    merged: bool = Field(
        default=False,
        description="Whether the pull request was merged",
    )


class RepoContext(BaseModel):
    """Repository and commit identity of a run.

    Attributes:
        owner: Repository owner (user or organization).
        name: Repository name without owner prefix.
        sha: Commit the build targets. For pull request events this is the
             head commit of the pull request.
        pull_request: Present iff the triggering event is pull-request
                      scoped.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., description="Repository owner")

    name: str = Field(..., description="Repository name")

    sha: str = Field(..., description="Commit sha the build targets")

    pull_request: Optional[PullRequest] = Field(
        default=None,
        description="Pull request identity for pull-request scoped events",
    )

    @property
    def full_repository(self) -> str:
        """Repository path in format "{owner}/{name}"."""
        return f"{self.owner}/{self.name}"

    @property
    def pull_request_id(self) -> Optional[int]:
        """Shortcut for the pull request id, None outside pull requests."""
        return self.pull_request.id if self.pull_request else None
