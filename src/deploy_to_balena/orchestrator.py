"""Release lifecycle orchestrator.

Drives one workflow event through the release lifecycle:
event → identity → lifecycle decision → build or finalize → outputs.

The decision itself is made by LifecycleStateMachine without side
effects; this module performs them, in order, for a build:

1. check out the versionbot branch (pull request builds, when enabled)
2. reuse a release already bound to the same key (when caching is on),
   otherwise push the source to the builders
3. bind the new release in the release store
4. read the release version
5. emit the `version` and `release_id` outputs, in that order
6. create a git tag, for final releases only

and for a merged pull request: finalize, mark the binding final, read
the version, emit outputs, optionally tag.

Failures are never recovered from here. They are reported as events and
re-raised to the invocation boundary. A finalize that succeeded is not
rolled back when a later step such as tagging fails.

Source:
- event/resolver.py (IdentityResolver)
- state/machine.py (LifecycleStateMachine)
- state/repository.py (ReleaseStore)
- versionbot/waiter.py (BranchReadinessWaiter)
- runner/balena_cli.py (BalenaCLI)
- runner/git.py (GitRunner)
- balena/client.py (BalenaClient)
- github/client.py (GitHubClient)
- events/emitter.py (EventEmitter)
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from deploy_to_balena.errors import (
    BranchWaitTimeoutError,
    ConfigurationError,
    DeployError,
    DraftReleaseConflictError,
)
from deploy_to_balena.event.models import RepoContext, WorkflowEvent
from deploy_to_balena.event.resolver import IdentityResolver
from deploy_to_balena.events.emitter import EventEmitter
from deploy_to_balena.events.models import EventType, ReleaseEvent
from deploy_to_balena.runner.balena_cli import BalenaCLI
from deploy_to_balena.runner.git import GitRunner
from deploy_to_balena.state.machine import LifecycleStateMachine
from deploy_to_balena.state.models import (
    DecisionKind,
    LifecycleDecision,
    LifecycleState,
    Release,
    ReleaseKey,
)
from deploy_to_balena.state.repository import ReleaseStore
from deploy_to_balena.versionbot.waiter import BranchReadinessWaiter

logger = logging.getLogger(__name__)


class VersionLookup(Protocol):
    """Reads the version of a release. Implemented by BalenaClient."""

    async def get_release_version(self, release_id: int) -> str:
        ...


class TagCreator(Protocol):
    """Creates git tags. Implemented by GitHubClient."""

    async def create_tag(
        self, owner: str, repo: str, tag_name: str, sha: str
    ) -> Optional[str]:
        ...


class OutputSink(Protocol):
    """Receives the step outputs. Implemented by ActionOutputs."""

    def set_output(self, name: str, value: Any) -> None:
        ...


@dataclass
class BuildOptions:
    """Builder settings passed through to every push.

    Attributes:
        source: Source directory sent to the builders.
        cache: Reuse a release already bound to the same key.
        no_cache: Disable the builders' layer cache.
        multi_dockerignore: Honour per-service .dockerignore files.
    """

    source: str = "."
    cache: bool = True
    no_cache: bool = False
    multi_dockerignore: bool = False


@dataclass
class RunResult:
    """Outcome of a run.

    Attributes:
        decision: The lifecycle decision that was carried out.
        release_id: Release built, reused or finalized.
        version: Raw version of that release.
        reused: Whether an existing release was reused instead of built.
        tag_url: URL of the created git tag, if one was created.
    """

    decision: LifecycleDecision
    release_id: Optional[int] = None
    version: Optional[str] = None
    reused: bool = False
    tag_url: Optional[str] = None


class LifecycleOrchestrator:
    """Carries out the lifecycle decision for a workflow event.

    Accepts all dependencies via constructor injection.

    Attributes:
        resolver: Derives the RepoContext of the event.
        machine: Classifies the event and decides what to do.
        store_factory: Creates the release store for a RepoContext.
        builder: balena CLI used to push and finalize.
        versions: Reads release versions.
        outputs: Receives the version and release_id outputs.
        event_emitter: Emits lifecycle events for observability.
        options: Builder settings.
        waiter: Waits for the versionbot branch (versionbot only).
        git: Checks out the versionbot branch (versionbot only).
        tagger: Creates git tags (tag creation only).
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        machine: LifecycleStateMachine,
        store_factory: Callable[[RepoContext], ReleaseStore],
        builder: BalenaCLI,
        versions: VersionLookup,
        outputs: OutputSink,
        event_emitter: EventEmitter,
        options: Optional[BuildOptions] = None,
        waiter: Optional[BranchReadinessWaiter] = None,
        git: Optional[GitRunner] = None,
        tagger: Optional[TagCreator] = None,
    ):
        self.resolver = resolver
        self.machine = machine
        self.store_factory = store_factory
        self.builder = builder
        self.versions = versions
        self.outputs = outputs
        self.event_emitter = event_emitter
        self.options = options or BuildOptions()
        self.waiter = waiter
        self.git = git
        self.tagger = tagger

    @property
    def fleet(self) -> str:
        return self.machine.fleet

    async def run(self, event: WorkflowEvent) -> RunResult:
        """Carry out the lifecycle for one workflow event.

        Args:
            event: The triggering workflow event.

        Returns:
            RunResult describing what was done.

        Raises:
            DeployError: Any lifecycle failure, after an ERROR (or
                         TIMEOUT) event has been emitted.
        """
        logger.info(
            "Starting release lifecycle",
            extra={
                "fleet": self.fleet,
                "event_name": event.event_name,
                "ref": event.ref,
            },
        )

        context: Optional[RepoContext] = None
        state: Optional[LifecycleState] = None
        try:
            context = self.resolver.resolve(event)
            state = self.machine.classify(event)
            store = self.store_factory(context)

            previous_release: Optional[Release] = None
            if (
                state == LifecycleState.CLOSED_MERGED
                and context.pull_request_id is not None
            ):
                previous_release = await store.find(self.machine.finalize_key(context))

            decision = self.machine.decide(state, event, context, previous_release)
            await self._emit(
                EventType.DECISION,
                context,
                {"state": state.value, "decision": decision.kind.value},
            )

            if decision.kind == DecisionKind.ERROR:
                raise decision.error

            if decision.kind == DecisionKind.NO_OP:
                logger.info(decision.reason, extra={"state": state.value})
                await self._emit(EventType.NO_OP, context, {"reason": decision.reason})
                return RunResult(decision=decision)

            if decision.kind == DecisionKind.FINALIZE_RELEASE:
                return await self._finalize(decision, context, store)

            return await self._build(decision, context, store)

        except BranchWaitTimeoutError as exc:
            await self._emit(
                EventType.TIMEOUT,
                context,
                {
                    "operation": "versionbot_branch",
                    "attempts": exc.attempts,
                    "elapsed_seconds": round(exc.elapsed_seconds, 1),
                },
            )
            raise
        except DeployError as exc:
            await self._emit(
                EventType.ERROR,
                context,
                {
                    "error_type": type(exc).__name__,
                    "error_message": exc.message,
                    "state": state.value if state else None,
                },
            )
            raise

    async def _build(
        self,
        decision: LifecycleDecision,
        context: RepoContext,
        store: ReleaseStore,
    ) -> RunResult:
        """Build (or reuse) a release, bind it, and publish its outputs."""
        tags = decision.tags
        key = ReleaseKey.from_tags(self.fleet, tags)

        if decision.checkout_branch_required:
            await self._checkout_versionbot_branch(context)

        release: Optional[Release] = None
        if self.options.cache:
            release = await store.find(key)

        if release is not None and not decision.draft and not release.is_final:
            raise DraftReleaseConflictError(key=key, release_id=release.id)

        reused = release is not None
        if reused:
            logger.info(
                "Reusing previously built release",
                extra={"key": str(key), "release_id": release.id},
            )
            await self._emit(
                EventType.CACHE_HIT,
                context,
                {"release_id": release.id, "draft": decision.draft},
            )
        else:
            started = time.monotonic()
            release_id = await self.builder.push(
                self.fleet,
                self.options.source,
                tags,
                draft=decision.draft,
                no_cache=self.options.no_cache,
                multi_dockerignore=self.options.multi_dockerignore,
            )
            duration = time.monotonic() - started
            release = Release(id=release_id, is_final=not decision.draft)
            await self._emit(
                EventType.BUILD,
                context,
                {
                    "release_id": release.id,
                    "draft": decision.draft,
                    "duration_seconds": round(duration, 1),
                },
            )
            await store.record(key, release)

        version = await self._publish(release.id)

        tag_url = None
        if decision.create_tag and not decision.draft:
            tag_url = await self._create_tag(context, version, release.id)

        return RunResult(
            decision=decision,
            release_id=release.id,
            version=version,
            reused=reused,
            tag_url=tag_url,
        )

    async def _finalize(
        self,
        decision: LifecycleDecision,
        context: RepoContext,
        store: ReleaseStore,
    ) -> RunResult:
        """Finalize the draft of a merged pull request."""
        release_id = decision.release_id

        await self.builder.finalize(release_id)
        await store.mark_finalized(release_id)
        await self._emit(EventType.FINALIZE, context, {"release_id": release_id})

        version = await self._publish(release_id)

        tag_url = None
        if decision.create_tag:
            tag_url = await self._create_tag(context, version, release_id)

        return RunResult(
            decision=decision,
            release_id=release_id,
            version=version,
            tag_url=tag_url,
        )

    async def _checkout_versionbot_branch(self, context: RepoContext) -> None:
        if self.waiter is None or self.git is None:
            raise ConfigurationError(
                "versionbot is enabled but no branch waiter or git runner is configured"
            )
        branch = await self.waiter.wait(context)
        await self.git.checkout(branch)

    async def _publish(self, release_id: int) -> str:
        """Read the version of a release and set both outputs."""
        version = await self.versions.get_release_version(release_id)
        self.outputs.set_output("version", version)
        self.outputs.set_output("release_id", release_id)
        logger.info(
            "Release ready",
            extra={"fleet": self.fleet, "release_id": release_id, "version": version},
        )
        return version

    async def _create_tag(
        self,
        context: RepoContext,
        version: str,
        release_id: int,
    ) -> Optional[str]:
        if not version:
            logger.warning(
                "Release has no version, not creating a tag",
                extra={"release_id": release_id},
            )
            return None
        if self.tagger is None:
            raise ConfigurationError(
                "create_tag is enabled but no GitHub client is configured"
            )

        tag_url = await self.tagger.create_tag(
            context.owner, context.name, version, context.sha
        )
        await self._emit(
            EventType.TAG,
            context,
            {"tag": version, "tag_created": tag_url is not None},
        )
        return tag_url

    async def _emit(
        self,
        event_type: EventType,
        context: Optional[RepoContext],
        details: Dict[str, Any],
    ) -> None:
        repository = context.full_repository if context else "unknown"
        sha = context.sha if context else ""
        await self._safe_emit(
            ReleaseEvent(
                event_type=event_type,
                fleet=self.fleet,
                repository=repository,
                sha=sha,
                details=details,
            )
        )

    async def _safe_emit(self, event: ReleaseEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the lifecycle."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit release event",
                extra={"event_type": event.event_type.value, "fleet": self.fleet},
            )
