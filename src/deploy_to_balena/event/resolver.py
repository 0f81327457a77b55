"""Identity resolution from workflow event payloads.

Derives the RepoContext of a run from the triggering event and loads the
event itself from the Actions runtime (GITHUB_EVENT_PATH).

GitHub Payload Structure (pull_request event, trimmed):
{
  "action": "closed",
  "repository": {
    "name": "repo-name",
    "owner": {"login": "owner-name"},
    "master_branch": "main",
    "default_branch": "main"
  },
  "pull_request": {
    "id": 4423422,
    "number": 44,
    "merged": true,
    "head": {"sha": "fba0317620597271695087c168c50d8c94975a29"}
  }
}
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from deploy_to_balena.config import WorkflowSettings
from deploy_to_balena.errors import MissingRepositoryError
from deploy_to_balena.event.models import PullRequest, RepoContext, WorkflowEvent

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Resolves the RepoContext of a run from its WorkflowEvent.

    Resolution has no side effects. A payload without a repository object
    fails the run; a payload without a pull_request object is a push or
    dispatch event and simply yields no pull request identity.
    """

    def resolve(self, event: WorkflowEvent) -> RepoContext:
        """Build the RepoContext for an event.

        Args:
            event: The triggering workflow event.

        Returns:
            RepoContext with owner, name, target sha and optional pull
            request identity.

        Raises:
            MissingRepositoryError: If the payload lacks a repository object.
        """
        repository = event.payload.get("repository")
        if not isinstance(repository, dict):
            raise MissingRepositoryError()

        pull_request = self._parse_pull_request(event.payload.get("pull_request"))

        sha = event.sha
        if pull_request is not None:
            head_sha = self._head_sha(event.payload["pull_request"])
            if head_sha:
                sha = head_sha

        context = RepoContext(
            owner=self._owner_login(repository),
            name=repository.get("name") or "",
            sha=sha,
            pull_request=pull_request,
        )

        logger.info(
            "Resolved repository context",
            extra={
                "repository": context.full_repository,
                "sha": context.sha,
                "pull_request_id": context.pull_request_id,
            },
        )
        return context

    def target_branch(
        self,
        event: WorkflowEvent,
        default_branch: Optional[str] = None,
    ) -> Optional[str]:
        """Work out the branch that final releases are built from.

        The configured default branch wins; otherwise the repository's
        master_branch (present on push payloads) and then default_branch
        from the payload are used.

        Args:
            event: The triggering workflow event.
            default_branch: Configured override, if any.

        Returns:
            The target branch name, or None if it cannot be determined.
        """
        if default_branch:
            return default_branch
        repository = event.payload.get("repository")
        if not isinstance(repository, dict):
            return None
        for key in ("master_branch", "default_branch"):
            value = repository.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def _owner_login(self, repository: Dict[str, Any]) -> str:
        """Extract the owner login, tolerating a bare string owner."""
        owner = repository.get("owner")
        if isinstance(owner, dict):
            return owner.get("login") or owner.get("name") or ""
        if isinstance(owner, str):
            return owner
        return ""

    def _parse_pull_request(self, data: Any) -> Optional[PullRequest]:
        """Extract pull request identity from the pull_request object."""
        if not isinstance(data, dict):
            return None
        return PullRequest(
            id=data["id"],
            number=data["number"],
            merged=bool(data.get("merged", False)),
        )

    def _head_sha(self, data: Dict[str, Any]) -> Optional[str]:
        head = data.get("head")
        if isinstance(head, dict):
            sha = head.get("sha")
            if isinstance(sha, str) and sha:
                return sha
        return None


def load_workflow_event(workflow: WorkflowSettings) -> WorkflowEvent:
    """Load the triggering event from the Actions runtime.

    Reads the JSON payload GitHub writes to GITHUB_EVENT_PATH. A missing
    path yields an empty payload, which the resolver then rejects.

    Args:
        workflow: Workflow context settings.

    Returns:
        WorkflowEvent for this run.
    """
    payload: Dict[str, Any] = {}
    if workflow.event_path:
        path = Path(workflow.event_path)
        if path.is_file():
            payload = json.loads(path.read_text(encoding="utf-8"))
        else:
            logger.warning("Event payload file not found: %s", path)

    return WorkflowEvent(
        event_name=workflow.event_name,
        ref=workflow.ref,
        sha=workflow.sha,
        payload=payload,
    )
