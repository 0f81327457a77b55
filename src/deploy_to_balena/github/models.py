"""GitHub API response models.

Only the fields the release lifecycle reads are modelled; everything
else in the API responses is ignored.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CheckRun(BaseModel):
    """A check run reported on a commit.

    Attributes:
        id: Check run identifier.
        name: Check run name. For workflow jobs this is the job name.
        status: queued, in_progress or completed.
        conclusion: Outcome once completed (success, failure, ...).
        completed_at: Completion time, if completed.
        output_text: Free-form text of the check run output.
    """

    id: int = Field(..., description="Check run identifier")

    name: str = Field(..., description="Check run name")

    status: str = Field(default="queued", description="Check run status")

    conclusion: Optional[str] = Field(
        default=None,
        description="Outcome of a completed check run",
    )

    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the check run completed",
    )

    output_text: Optional[str] = Field(
        default=None,
        description="Text of the check run output",
    )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CheckRun":
        """Build a CheckRun from a check-runs API item."""
        output = data.get("output") or {}
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            status=data.get("status") or "queued",
            conclusion=data.get("conclusion"),
            completed_at=data.get("completed_at"),
            output_text=output.get("text"),
        )


class GitReference(BaseModel):
    """A git reference created through the API."""

    ref: str = Field(..., description="Fully qualified ref, e.g. refs/tags/v1.2.3")

    sha: str = Field(..., description="Commit the ref points at")

    url: str = Field(..., description="API URL of the reference")
