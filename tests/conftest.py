"""Shared fixtures and payload factories for all tests."""

import asyncio
from typing import Any, Dict, Optional

import pytest

from deploy_to_balena.event.models import PullRequest, RepoContext, WorkflowEvent


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def make_repository(
    owner: str = "acme",
    name: str = "widgets",
    master_branch: Optional[str] = "main",
) -> Dict[str, Any]:
    repository: Dict[str, Any] = {"name": name, "owner": {"login": owner}}
    if master_branch is not None:
        repository["master_branch"] = master_branch
        repository["default_branch"] = master_branch
    return repository


def make_push_event(
    ref: str = "refs/heads/main",
    sha: str = "abc123",
    repository: Optional[Dict[str, Any]] = None,
) -> WorkflowEvent:
    return WorkflowEvent(
        event_name="push",
        ref=ref,
        sha=sha,
        payload={"repository": repository or make_repository()},
    )


def make_pull_request_event(
    action: str = "synchronize",
    pr_id: int = 4423422,
    number: int = 44,
    merged: bool = False,
    head_sha: str = "fba0317",
    merge_sha: str = "1234567",
    event_name: str = "pull_request",
    repository: Optional[Dict[str, Any]] = None,
) -> WorkflowEvent:
    return WorkflowEvent(
        event_name=event_name,
        ref=f"refs/pull/{number}/merge",
        sha=merge_sha,
        payload={
            "action": action,
            "repository": repository or make_repository(),
            "pull_request": {
                "id": pr_id,
                "number": number,
                "merged": merged,
                "head": {"sha": head_sha},
            },
        },
    )


def make_context(
    sha: str = "abc123",
    pr_id: Optional[int] = None,
    number: int = 44,
    owner: str = "acme",
    name: str = "widgets",
    merged: bool = False,
) -> RepoContext:
    pull_request = None
    if pr_id is not None:
        pull_request = PullRequest(id=pr_id, number=number, merged=merged)
    return RepoContext(owner=owner, name=name, sha=sha, pull_request=pull_request)


@pytest.fixture
def push_event() -> WorkflowEvent:
    return make_push_event()


@pytest.fixture
def pull_request_event() -> WorkflowEvent:
    return make_pull_request_event()
