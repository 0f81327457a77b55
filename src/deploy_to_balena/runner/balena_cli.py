"""balena CLI build and finalize shims.

Wraps the three balena CLI invocations a run needs:

    balena login --token <token>
    balena push <fleet> --source <path> --release-tag <k1> <v1> [...]
                [--draft] [--nocache] [--multi-dockerignore]
    balena release finalize <id>

Every invocation runs with BALENARC_BALENA_URL set to the configured
environment. The builders stream their log on stdout; the id of the
created release is parsed from the `(id: <n>)` token of its
`[Success] Release: <commit> (id: <n>)` line.
"""

import logging
import os
import re
from typing import Dict, List, Optional

from deploy_to_balena.errors import BuildExecutionError, FinalizeError
from deploy_to_balena.runner.process import ProcessResult, ProcessRunner
from deploy_to_balena.state.models import ReleaseTags

logger = logging.getLogger(__name__)

RELEASE_ID_PATTERN = re.compile(r"\(id:\s*(\d+)\)")

MISSING_RELEASE_ID_MESSAGE = "Was unable to find release ID from the build process."


def parse_release_id(output: str) -> Optional[int]:
    """Extract the release id from build output.

    The last `(id: <n>)` token wins, since only the final summary line of
    the build log reports the release.

    Example:
        >>> parse_release_id("[Success] Release: 9a7bd1d (id: 149241)")
        149241
    """
    matches = RELEASE_ID_PATTERN.findall(output)
    if not matches:
        return None
    return int(matches[-1])


def build_push_args(
    fleet: str,
    source: str,
    tags: ReleaseTags,
    draft: bool = False,
    no_cache: bool = False,
    multi_dockerignore: bool = False,
) -> List[str]:
    """Arguments of `balena push` after the executable.

    Example:
        >>> build_push_args("org/fleet", ".", ReleaseTags(sha="abc123"), draft=True)
        ['push', 'org/fleet', '--source', '.', '--release-tag', 'balena-ci-commit-sha', 'abc123', '--draft']
    """
    args = ["push", fleet, "--source", source, "--release-tag", *tags.as_cli_args()]
    if draft:
        args.append("--draft")
    if no_cache:
        args.append("--nocache")
    if multi_dockerignore:
        args.append("--multi-dockerignore")
    return args


class BalenaCLI:
    """Runs balena CLI commands against one balena environment.

    Attributes:
        cli_path: Path to the balena executable.
        environment: balena environment domain, e.g. balena-cloud.com.
        timeout_seconds: Maximum build time before the push is stopped.

    Example:
        >>> cli = BalenaCLI(environment="balena-cloud.com")
        >>> await cli.login(token)
        >>> release_id = await cli.push("org/fleet", ".", ReleaseTags(sha="abc123"))
    """

    def __init__(
        self,
        cli_path: str = "balena",
        environment: str = "balena-cloud.com",
        timeout_seconds: int = 7200,
        runner: Optional[ProcessRunner] = None,
    ):
        self.cli_path = cli_path
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        self.runner = runner or ProcessRunner(
            timeout_seconds=timeout_seconds,
            stream_log_level=logging.INFO,
            name="balena",
        )

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["BALENARC_BALENA_URL"] = self.environment
        return env

    async def _run(self, args: List[str]) -> ProcessResult:
        return await self.runner.run([self.cli_path, *args], env=self._env())

    async def login(self, token: str) -> None:
        """Authenticate the CLI with an API token.

        Raises:
            BuildExecutionError: If the CLI rejects the token.
        """
        logger.info("Logging in to balena", extra={"environment": self.environment})
        result = await self._run(["login", "--token", token])
        if not result.success:
            raise BuildExecutionError(
                f"Failed to log in to {self.environment}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

    async def push(
        self,
        fleet: str,
        source: str,
        tags: ReleaseTags,
        draft: bool = False,
        no_cache: bool = False,
        multi_dockerignore: bool = False,
    ) -> int:
        """Send a source directory to the builders.

        Args:
            fleet: Fleet slug to build for.
            source: Source directory.
            tags: Release tags to attach, in order.
            draft: Build a draft release.
            no_cache: Disable the builders' layer cache.
            multi_dockerignore: Honour per-service .dockerignore files.

        Returns:
            The id of the created release.

        Raises:
            BuildExecutionError: If the build fails, times out, or reports
                                 no release id.
        """
        args = build_push_args(fleet, source, tags, draft, no_cache, multi_dockerignore)

        logger.info(
            "Pushing source to builders",
            extra={
                "fleet": fleet,
                "source": source,
                "tags": tags.as_dict(),
                "draft": draft,
                "no_cache": no_cache,
            },
        )

        result = await self._run(args)

        if result.timed_out:
            raise BuildExecutionError(
                f"Build for {fleet} timed out after {self.timeout_seconds}s",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        if not result.success:
            raise BuildExecutionError(
                f"Build for {fleet} failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                stderr=result.stderr[-2000:],
            )

        release_id = parse_release_id(result.stdout)
        if release_id is None:
            raise BuildExecutionError(
                MISSING_RELEASE_ID_MESSAGE,
                exit_code=result.exit_code,
                stderr=result.stderr[-2000:],
            )

        logger.info(
            "Build completed",
            extra={
                "fleet": fleet,
                "release_id": release_id,
                "duration_seconds": round(result.duration_seconds, 1),
            },
        )
        return release_id

    async def finalize(self, release_id: int) -> None:
        """Finalize a draft release.

        Raises:
            FinalizeError: If the CLI reports non-success.
        """
        logger.info("Finalizing release", extra={"release_id": release_id})
        result = await self._run(["release", "finalize", str(release_id)])
        if not result.success:
            raise FinalizeError(
                release_id,
                f"Failed to finalize release {release_id}: "
                f"{result.stderr.strip() or f'exit code {result.exit_code}'}",
            )
