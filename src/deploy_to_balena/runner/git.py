"""git commands run in the workflow workspace.

Used to check out the versionbot branch before building a pull request.
"""

import logging
from typing import Optional

from deploy_to_balena.errors import GitError
from deploy_to_balena.runner.process import ProcessRunner

logger = logging.getLogger(__name__)


class GitRunner:
    """Runs git in a checked-out repository.

    Attributes:
        git_path: Path to the git executable.
        cwd: Repository working directory (GITHUB_WORKSPACE), or the
             current directory when None.
    """

    def __init__(
        self,
        git_path: str = "git",
        cwd: Optional[str] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.git_path = git_path
        self.cwd = cwd
        self.runner = runner or ProcessRunner(timeout_seconds=300, name="git")

    async def fetch(self) -> None:
        """Fetch remote branches.

        Raises:
            GitError: If the fetch fails.
        """
        result = await self.runner.run([self.git_path, "fetch"], cwd=self.cwd)
        if not result.success:
            raise GitError("Failed to fetch remote branches.")

    async def checkout(self, ref: str, fetch_first: bool = True) -> None:
        """Check out a branch or commit.

        Args:
            ref: Branch name or commit sha.
            fetch_first: Fetch remote branches before checking out.

        Raises:
            GitError: If the fetch or checkout fails.
        """
        if fetch_first:
            await self.fetch()

        logger.info("Checking out ref", extra={"ref": ref})
        result = await self.runner.run([self.git_path, "checkout", ref], cwd=self.cwd)
        if not result.success:
            raise GitError(f"Failed to checkout {ref} branch/commit.")

    async def remote_has_branch(self, branch: str) -> bool:
        """Whether origin has a branch with the given name.

        Raises:
            GitError: If the remote cannot be queried.
        """
        result = await self.runner.run(
            [self.git_path, "ls-remote", "--heads", "origin", branch], cwd=self.cwd
        )
        if not result.success:
            logger.error("git ls-remote failed: %s", result.stderr)
            raise GitError(f"Issue checking if remote has branch {branch}")
        return bool(result.stdout.strip())
