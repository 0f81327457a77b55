"""Versionbot branch readiness waiter.

Repositories using versionbot get a `versionbot/pr/{number}` branch with
the version bump of a pull request, pushed by a check run whose name
contains "versionbot". Pull request builds must be made from that
branch, so the waiter polls the check runs on the pull request head
until the versionbot check has completed.

Only the "not ready yet" condition is retried. A failing check lookup
propagates immediately, and the wait is bounded by both an attempt count
and a wall-clock deadline.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Protocol

from deploy_to_balena.errors import BranchWaitTimeoutError, UnsupportedEventError
from deploy_to_balena.event.models import RepoContext
from deploy_to_balena.github.models import CheckRun
from deploy_to_balena.runner.git import GitRunner

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 4.0


def versionbot_branch(pull_request_number: int) -> str:
    """Name of the versionbot branch of a pull request."""
    return f"versionbot/pr/{pull_request_number}"


class CheckLookup(Protocol):
    """Lists the check runs reported on a commit. Implemented by GitHubClient."""

    async def list_check_runs(
        self,
        owner: str,
        repo: str,
        ref: str,
        check_name: Optional[str] = None,
    ) -> List[CheckRun]:
        ...


class BranchReadinessWaiter:
    """Waits for the versionbot branch of a pull request to be ready.

    Attributes:
        checks: Check run lookup.
        git: Optional git runner; when given, the branch must also be
             visible on origin before it counts as ready.
        marker: Case-insensitive substring identifying the versionbot
                check run.
        poll_interval: Seconds between lookups.
        max_attempts: Maximum number of lookups.
        timeout_seconds: Maximum wall-clock time to wait.

    Example:
        >>> waiter = BranchReadinessWaiter(github_client, max_attempts=10)
        >>> branch = await waiter.wait(context)
        >>> branch
        'versionbot/pr/44'
    """

    def __init__(
        self,
        checks: CheckLookup,
        git: Optional[GitRunner] = None,
        marker: str = "versionbot",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = 150,
        timeout_seconds: float = 900.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.checks = checks
        self.git = git
        self.marker = marker.lower()
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock

    async def wait(self, context: RepoContext) -> str:
        """Block until the versionbot branch of the pull request is ready.

        Args:
            context: Repository identity of a pull request run.

        Returns:
            The branch name, versionbot/pr/{number}.

        Raises:
            UnsupportedEventError: If the context has no pull request.
            BranchWaitTimeoutError: If the branch is not ready within
                                    max_attempts lookups or
                                    timeout_seconds.
            GitHubAPIError: If the check lookup fails.
        """
        if context.pull_request is None:
            raise UnsupportedEventError(
                f"Cannot find Versionbot branch for non-PR context: "
                f"{context.full_repository}@{context.sha}"
            )

        branch = versionbot_branch(context.pull_request.number)
        started = self._clock()
        attempts = 0

        logger.info(
            "Waiting for versionbot branch",
            extra={
                "branch": branch,
                "sha": context.sha,
                "max_attempts": self.max_attempts,
                "timeout_seconds": self.timeout_seconds,
            },
        )

        while True:
            attempts += 1
            if await self._is_ready(context, branch):
                logger.info(
                    "Versionbot branch ready",
                    extra={"branch": branch, "attempts": attempts},
                )
                return branch

            elapsed = self._clock() - started
            if (
                attempts >= self.max_attempts
                or elapsed + self.poll_interval > self.timeout_seconds
            ):
                raise BranchWaitTimeoutError(branch, attempts, elapsed)

            logger.debug(
                "Versionbot branch not ready, retrying in %ss",
                self.poll_interval,
                extra={"branch": branch, "attempt": attempts},
            )
            await self._sleep(self.poll_interval)

    async def _is_ready(self, context: RepoContext, branch: str) -> bool:
        check_runs = await self.checks.list_check_runs(
            context.owner, context.name, context.sha
        )
        check = self._find_check(check_runs)
        if check is None or not check.is_completed:
            return False
        if self.git is not None:
            return await self.git.remote_has_branch(branch)
        return True

    def _find_check(self, check_runs: List[CheckRun]) -> Optional[CheckRun]:
        matching = [run for run in check_runs if self.marker in run.name.lower()]
        for run in matching:
            if run.is_completed:
                return run
        return matching[0] if matching else None
