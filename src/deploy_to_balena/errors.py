"""Error taxonomy for the release lifecycle.

Every failure that terminates a run derives from DeployError so the
invocation boundary can turn it into a failed workflow step with the
originating message. The lifecycle engine never recovers from these
locally; deliberate no-ops (already finalized, unmerged close, existing
git reference) are not errors and never raise.

Categories:
- Input/identity: MissingRepositoryError, UnsupportedEventError
- Consistency: ReleaseNotFoundError, AmbiguousMatchError,
  DraftReleaseConflictError
- External: BuildExecutionError, FinalizeError, GitError,
  BranchWaitTimeoutError (plus the HTTP client errors in
  github/client.py and balena/client.py)
- Startup: ConfigurationError
"""

from typing import Any, Optional


class DeployError(Exception):
    """Base class for every terminal failure of a deploy run.

    Attributes:
        message: Human-readable error message surfaced to the workflow.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(DeployError):
    """Raised when the configured inputs cannot drive a run."""


class MissingRepositoryError(DeployError):
    """Raised when the event payload carries no repository object.

    Every downstream decision depends on owner/repo identity, so this is
    unconditionally fatal.
    """

    def __init__(self, message: str = "Workflow payload was missing repository object"):
        super().__init__(message)


class UnsupportedEventError(DeployError):
    """Raised for triggers the lifecycle does not handle.

    Covers pushes to refs other than the target branch or a tag, and
    event types outside the recognised set.

    Attributes:
        event_name: The workflow event name that was rejected.
        ref: The git ref of the event, if any.
    """

    def __init__(
        self,
        message: str,
        event_name: Optional[str] = None,
        ref: Optional[str] = None,
    ):
        self.event_name = event_name
        self.ref = ref
        super().__init__(message)


class ReleaseNotFoundError(DeployError):
    """Raised when a merged pull request has no prior draft to finalize."""

    def __init__(
        self,
        message: str = (
            "Action reached point of finalizing a release but did not find one"
        ),
        key: Any = None,
    ):
        self.key = key
        super().__init__(message)


class DraftReleaseConflictError(DeployError):
    """Raised when a final build's key is bound to a draft release.

    Keys without a pull request id only ever name final releases, so a
    draft under such a key cannot be published or tagged as final.

    Attributes:
        key: The lookup key of the final build.
        release_id: The draft release bound to that key.
    """

    def __init__(self, key: Any, release_id: int):
        self.key = key
        self.release_id = release_id
        super().__init__(
            f"Release {release_id} matching {key} is a draft and cannot be "
            f"reused as a final release"
        )


class AmbiguousMatchError(DeployError):
    """Raised when more than one release matches a single identity key.

    The release store guarantees at most one authoritative release per
    (fleet, sha, pull request id); a second match means that guarantee
    was broken upstream.

    Attributes:
        key: The lookup key that matched several releases.
        release_ids: Identifiers of the conflicting releases.
    """

    def __init__(self, key: Any, release_ids: list):
        self.key = key
        self.release_ids = list(release_ids)
        super().__init__(
            f"Found {len(self.release_ids)} releases matching {key}: "
            f"{', '.join(str(r) for r in self.release_ids)}"
        )


class BuildExecutionError(DeployError):
    """Raised when the build process fails or reports no release id.

    Attributes:
        exit_code: Exit code of the build process (-1 when it never ran
                   or was killed).
        stderr: Tail of the captured diagnostic output.
    """

    def __init__(self, message: str, exit_code: int = -1, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class FinalizeError(DeployError):
    """Raised when the finalize call reports non-success."""

    def __init__(self, release_id: int, message: Optional[str] = None):
        self.release_id = release_id
        super().__init__(message or f"Failed to finalize release {release_id}")


class GitError(DeployError):
    """Raised when a git fetch/checkout/ls-remote exits non-zero."""


class BranchWaitTimeoutError(DeployError, TimeoutError):
    """Raised when the versionbot branch is not ready within the bound.

    Attributes:
        branch: The branch that was being waited on.
        attempts: Number of check lookups performed.
        elapsed_seconds: Wall-clock time spent waiting.
    """

    def __init__(self, branch: str, attempts: int, elapsed_seconds: float):
        self.branch = branch
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"Timed out waiting for {branch} after {attempts} attempts "
            f"({elapsed_seconds:.0f}s)"
        )
