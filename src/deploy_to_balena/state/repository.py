"""Release store implementations.

This module implements the ReleaseStore protocol, the keyed lookup from
(fleet, commit sha, pull request id) to the release built for it. Each
run is a fresh process, so bindings live outside of it in one of two
backings, picked per deployment:

- BalenaTagReleaseStore: queries the build system for successful
  releases carrying the matching release tags.
- CheckRunReleaseStore: keeps a JSON document of bindings in the output
  of this job's check run on the commit.

Both backings enforce the same invariant: at most one release per key.
More than one match raises AmbiguousMatchError unless the deployment
explicitly opted into the newest-release tie-break.

Source:
- state/models.py (ReleaseKey, Release, ReleaseTags)
- balena/client.py (release-by-tags query, release tag upsert)
- github/client.py (check run listing and output updates)
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from deploy_to_balena.errors import AmbiguousMatchError, ConfigurationError
from deploy_to_balena.event.models import RepoContext
from deploy_to_balena.github.models import CheckRun
from deploy_to_balena.state.models import (
    COMMIT_SHA_TAG,
    PULL_REQUEST_ID_TAG,
    Release,
    ReleaseKey,
)


logger = logging.getLogger(__name__)


@runtime_checkable
class ReleaseStore(Protocol):
    """Protocol defining the interface for release binding persistence.

    The lifecycle logic is identical whichever backing is used.
    """

    async def find(self, key: ReleaseKey) -> Optional[Release]:
        """Find the release bound to a key.

        Args:
            key: The (fleet, sha, pull request id) identity.

        Returns:
            The bound release, or None if nothing matches.

        Raises:
            AmbiguousMatchError: If more than one release matches.
        """
        ...

    async def record(self, key: ReleaseKey, release: Release) -> None:
        """Bind a release to a key.

        Idempotent: recording an existing binding again must not create a
        duplicate.
        """
        ...

    async def mark_finalized(self, release_id: int) -> None:
        """Flip the stored binding of a release to final.

        Mirrors the state of the finalize call; the build system is not
        re-queried.
        """
        ...


@runtime_checkable
class ReleaseTagBackend(Protocol):
    """Build system operations the tag-based store relies on.

    Implemented by BalenaClient.
    """

    async def get_releases_by_tags(
        self,
        fleet: str,
        tags: Dict[str, str],
        exclude_tag_keys: Optional[List[str]] = None,
    ) -> List[Release]:
        ...

    async def set_release_tag(self, release_id: int, tag_key: str, value: str) -> None:
        ...


@runtime_checkable
class CheckRunBackend(Protocol):
    """Source host operations the check-run store relies on.

    Implemented by GitHubClient.
    """

    async def list_check_runs(
        self,
        owner: str,
        repo: str,
        ref: str,
        check_name: Optional[str] = None,
    ) -> List[CheckRun]:
        ...

    async def update_check_run_output(
        self,
        owner: str,
        repo: str,
        check_run_id: int,
        title: str,
        summary: str,
        text: str,
    ) -> None:
        ...


class BalenaTagReleaseStore:
    """ReleaseStore backed by release tags on the build system.

    A release is bound to a key by carrying the balena-ci-commit-sha tag
    (and balena-ci-id for pull request keys). Keys without a pull request
    id only match releases that carry no balena-ci-id tag, so a final
    release never resolves to a pull request draft of the same commit.

    Lookups go to the build system once per key; bindings recorded or
    finalized during the run are served from memory afterwards.

    Attributes:
        backend: Build system client.
        reuse_most_recent: Pick the newest of several matches instead of
                           raising AmbiguousMatchError.

    Example:
        >>> store = BalenaTagReleaseStore(balena_client)
        >>> release = await store.find(ReleaseKey(fleet="org/fleet", sha="abc123"))
    """

    def __init__(self, backend: ReleaseTagBackend, reuse_most_recent: bool = False):
        self.backend = backend
        self.reuse_most_recent = reuse_most_recent
        self._bindings: Dict[ReleaseKey, Release] = {}

    async def find(self, key: ReleaseKey) -> Optional[Release]:
        if key in self._bindings:
            return self._bindings[key]

        tags = {COMMIT_SHA_TAG: key.sha}
        exclude: List[str] = []
        if key.pull_request_id is not None:
            tags[PULL_REQUEST_ID_TAG] = str(key.pull_request_id)
        else:
            exclude.append(PULL_REQUEST_ID_TAG)

        releases = await self.backend.get_releases_by_tags(
            key.fleet, tags, exclude_tag_keys=exclude
        )
        release = _select_single(key, releases, self.reuse_most_recent)

        logger.info(
            "Release store lookup",
            extra={
                "key": str(key),
                "matches": len(releases),
                "release_id": release.id if release else None,
            },
        )

        if release is not None:
            self._bindings[key] = release
        return release

    async def record(self, key: ReleaseKey, release: Release) -> None:
        await self.backend.set_release_tag(release.id, COMMIT_SHA_TAG, key.sha)
        if key.pull_request_id is not None:
            await self.backend.set_release_tag(
                release.id, PULL_REQUEST_ID_TAG, str(key.pull_request_id)
            )
        self._bindings[key] = release

        logger.info(
            "Recorded release binding",
            extra={"key": str(key), "release_id": release.id},
        )

    async def mark_finalized(self, release_id: int) -> None:
        for key, release in list(self._bindings.items()):
            if release.id == release_id:
                self._bindings[key] = release.finalized()


class CheckRunReleaseStore:
    """ReleaseStore backed by the output of this job's check run.

    The bindings document is JSON stored in the check run output text:

        {"org/fleet": {"abc123": {"id": 42, "finalized": true},
                       "def456#4423422": {"id": 43, "finalized": false}}}

    Reads merge the documents of every check run with the job's name on
    the commit, since re-runs create new check runs. Two different ids
    bound to one key is an AmbiguousMatchError. Writes go to the newest
    check run.

    Attributes:
        backend: Source host client.
        context: Repository identity of the run; check runs are looked up
                 on context.sha.
        job: Name of the check run holding the document (the workflow
             job name).
        reuse_most_recent: Pick the highest release id on conflicting
                           bindings instead of raising.
    """

    OUTPUT_TITLE = "deploy-to-balena"

    def __init__(
        self,
        backend: CheckRunBackend,
        context: RepoContext,
        job: str,
        reuse_most_recent: bool = False,
    ):
        self.backend = backend
        self.context = context
        self.job = job
        self.reuse_most_recent = reuse_most_recent
        self._document: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._conflicts: Dict[str, Dict[str, List[Release]]] = {}
        self._check_run_id: Optional[int] = None

    async def find(self, key: ReleaseKey) -> Optional[Release]:
        await self._load()

        conflicting = self._conflicts.get(key.fleet, {}).get(key.binding_name)
        if conflicting:
            release = _select_single(key, conflicting, self.reuse_most_recent)
            if release is not None:
                self._bind(key, release)
            return release

        binding = self._document.get(key.fleet, {}).get(key.binding_name)
        if binding is None:
            return None
        return Release(id=binding["id"], is_final=bool(binding.get("finalized")))

    async def record(self, key: ReleaseKey, release: Release) -> None:
        await self._load()
        self._bind(key, release)
        self._conflicts.get(key.fleet, {}).pop(key.binding_name, None)
        await self._save()

        logger.info(
            "Recorded release binding",
            extra={
                "key": str(key),
                "release_id": release.id,
                "check_run_id": self._check_run_id,
            },
        )

    async def mark_finalized(self, release_id: int) -> None:
        await self._load()
        changed = False
        for bindings in self._document.values():
            for binding in bindings.values():
                if binding["id"] == release_id and not binding.get("finalized"):
                    binding["finalized"] = True
                    changed = True
        if changed:
            await self._save()

    def _bind(self, key: ReleaseKey, release: Release) -> None:
        self._document.setdefault(key.fleet, {})[key.binding_name] = {
            "id": release.id,
            "finalized": release.is_final,
        }

    async def _load(self) -> None:
        if self._document is not None:
            return

        check_runs = await self.backend.list_check_runs(
            self.context.owner,
            self.context.name,
            self.context.sha,
            check_name=self.job,
        )
        check_runs = [run for run in check_runs if run.name == self.job]
        if check_runs:
            self._check_run_id = max(run.id for run in check_runs)

        merged: Dict[str, Dict[str, List[Release]]] = {}
        for run in check_runs:
            for fleet, bindings in _parse_document(run).items():
                for name, binding in bindings.items():
                    candidates = merged.setdefault(fleet, {}).setdefault(name, [])
                    _merge_binding(candidates, binding)

        self._document = {}
        for fleet, bindings in merged.items():
            for name, candidates in bindings.items():
                if len(candidates) == 1:
                    self._document.setdefault(fleet, {})[name] = {
                        "id": candidates[0].id,
                        "finalized": candidates[0].is_final,
                    }
                else:
                    self._conflicts.setdefault(fleet, {})[name] = candidates

        logger.debug(
            "Loaded release bindings from check runs",
            extra={
                "check_runs": len(check_runs),
                "check_run_id": self._check_run_id,
            },
        )

    async def _save(self) -> None:
        if self._check_run_id is None:
            raise ConfigurationError(
                f"No check run named {self.job} found on {self.context.sha} "
                "to store release bindings in"
            )
        await self.backend.update_check_run_output(
            self.context.owner,
            self.context.name,
            self._check_run_id,
            title=self.OUTPUT_TITLE,
            summary="Release bindings for this commit",
            text=json.dumps(self._document, sort_keys=True),
        )


def _parse_document(run: CheckRun) -> Dict[str, Dict[str, Any]]:
    """Parse the bindings document of a check run, {} when absent or invalid."""
    if not run.output_text:
        return {}
    try:
        document = json.loads(run.output_text)
    except ValueError:
        logger.debug(
            "Ignoring check run output that is not a bindings document",
            extra={"check_run_id": run.id},
        )
        return {}
    if not isinstance(document, dict):
        return {}
    return {
        fleet: bindings
        for fleet, bindings in document.items()
        if isinstance(bindings, dict)
    }


def _merge_binding(candidates: List[Release], binding: Any) -> None:
    if not isinstance(binding, dict) or not isinstance(binding.get("id"), int):
        return
    release = Release(id=binding["id"], is_final=bool(binding.get("finalized")))
    for index, existing in enumerate(candidates):
        if existing.id == release.id:
            # Finalization only moves forward
            if release.is_final and not existing.is_final:
                candidates[index] = release
            return
    candidates.append(release)


def _select_single(
    key: ReleaseKey,
    releases: List[Release],
    reuse_most_recent: bool,
) -> Optional[Release]:
    """Apply the at-most-one-release rule to a list of matches.

    Args:
        key: The key that was looked up.
        releases: Matching releases, newest first.
        reuse_most_recent: Whether to fall back to the newest match.

    Returns:
        The single match, or None if there is none.

    Raises:
        AmbiguousMatchError: If several releases match and the newest-match
                             tie-break was not opted into.
    """
    if not releases:
        return None
    if len(releases) == 1:
        return releases[0]
    if not reuse_most_recent:
        raise AmbiguousMatchError(key, [release.id for release in releases])

    newest = _newest(releases)
    logger.warning(
        "Several releases match one key, reusing the most recent",
        extra={
            "key": str(key),
            "release_ids": [release.id for release in releases],
            "release_id": newest.id,
        },
    )
    return newest


def _newest(releases: List[Release]) -> Release:
    if all(release.created_at is not None for release in releases):
        return max(releases, key=lambda release: release.created_at)
    return max(releases, key=lambda release: release.id)
