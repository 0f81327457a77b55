"""Release lifecycle event models for observability.

This module defines the data models for lifecycle events, including:
- EventType: Enum of all event types emitted during a run
- ReleaseEvent: Structured event with all required metadata

Events are emitted for monitoring and debugging. They are logged and,
when a Pushgateway is configured, turned into Prometheus metrics.

The models use Pydantic for validation, consistent with the approach in
state/models.py and event/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the release lifecycle.

    Event Categories:
        DECISION: The lifecycle state and decision of the run.
        BUILD: A release was built by the builders.
        CACHE_HIT: A previously built release was reused instead.
        FINALIZE: A draft release was finalized.
        TAG: A git tag was created (or already existed) for a release.
        NO_OP: The run deliberately did nothing.
        ERROR: The run failed.
        TIMEOUT: Waiting for the versionbot branch timed out.
    """

    DECISION = "decision"
    BUILD = "build"
    CACHE_HIT = "cache_hit"
    FINALIZE = "finalize"
    TAG = "tag"
    NO_OP = "no_op"
    ERROR = "error"
    TIMEOUT = "timeout"


class ReleaseEvent(BaseModel):
    """Structured event emitted during a run.

    Attributes:
        event_type: The category of event.
        fleet: Fleet slug the run builds for.
        repository: Full repository path in format "{owner}/{repo}".
        sha: Commit the run targets.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = ReleaseEvent(
        ...     event_type=EventType.BUILD,
        ...     fleet="org/fleet",
        ...     repository="org/repo",
        ...     sha="abc123",
        ...     details={"release_id": 42, "draft": False},
        ... )

    Details Field Conventions:
        DECISION: state, decision
        BUILD: release_id, draft, duration_seconds
        CACHE_HIT: release_id, draft
        FINALIZE: release_id
        TAG: tag, tag_created
        NO_OP: reason
        ERROR: error_type, error_message, state
        TIMEOUT: operation, attempts, elapsed_seconds
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    fleet: str = Field(
        ...,
        min_length=1,
        description="Fleet slug the run builds for",
    )

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    sha: str = Field(
        default="",
        description="Commit the run targets",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> event.to_log_dict()["event_type"]
            'build'
        """
        return {
            "event_type": self.event_type.value,
            "fleet": self.fleet,
            "repository": self.repository,
            "sha": self.sha,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
