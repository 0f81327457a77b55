"""Unit tests for the LifecycleOrchestrator.

Verifies the lifecycle flow by faking the external collaborators
(builders, API clients, git) and asserting which side effects happen,
and in which order, for each lifecycle path.
"""

from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from conftest import make_pull_request_event, make_push_event, make_repository, run_async
from deploy_to_balena.actions import ActionOutputs
from deploy_to_balena.errors import (
    AmbiguousMatchError,
    BranchWaitTimeoutError,
    BuildExecutionError,
    ConfigurationError,
    DraftReleaseConflictError,
    MissingRepositoryError,
    ReleaseNotFoundError,
    UnsupportedEventError,
)
from deploy_to_balena.event import IdentityResolver, WorkflowEvent
from deploy_to_balena.events import EventEmitter, EventType, ReleaseEvent
from deploy_to_balena.orchestrator import BuildOptions, LifecycleOrchestrator
from deploy_to_balena.state import (
    DecisionKind,
    LifecycleStateMachine,
    Release,
    ReleaseKey,
    ReleaseTags,
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingEmitter(EventEmitter):
    def __init__(self) -> None:
        self.events: List[ReleaseEvent] = []

    async def emit(self, event: ReleaseEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[EventType]:
        return [event.event_type for event in self.events]


class InMemoryStore:
    """ReleaseStore keeping bindings in a dict shared across runs."""

    def __init__(self, bindings: Optional[Dict[ReleaseKey, Release]] = None) -> None:
        self.bindings: Dict[ReleaseKey, Release] = dict(bindings or {})
        self.find_calls: List[ReleaseKey] = []

    async def find(self, key: ReleaseKey) -> Optional[Release]:
        self.find_calls.append(key)
        return self.bindings.get(key)

    async def record(self, key: ReleaseKey, release: Release) -> None:
        self.bindings[key] = release

    async def mark_finalized(self, release_id: int) -> None:
        for key, release in list(self.bindings.items()):
            if release.id == release_id:
                self.bindings[key] = release.finalized()


FLEET = "acme/fleet"
PR_ID = 4423422
HEAD_SHA = "fba0317"


def _make_builder(release_id: int = 42) -> MagicMock:
    builder = MagicMock()
    builder.push = AsyncMock(return_value=release_id)
    builder.finalize = AsyncMock()
    return builder


def _make_orchestrator(
    store: Optional[InMemoryStore] = None,
    builder: Optional[MagicMock] = None,
    version: str = "v1.2.3",
    create_tag: bool = False,
    versionbot: bool = False,
    options: Optional[BuildOptions] = None,
    waiter=None,
    git=None,
    tagger=None,
    outputs=None,
    emitter: Optional[RecordingEmitter] = None,
):
    store = store if store is not None else InMemoryStore()
    versions = MagicMock()
    versions.get_release_version = AsyncMock(return_value=version)
    if tagger is None:
        tagger = MagicMock()
        tagger.create_tag = AsyncMock(
            return_value="https://api.github.com/repos/acme/widgets/git/refs/tags/v1.2.3"
        )
    orchestrator = LifecycleOrchestrator(
        resolver=IdentityResolver(),
        machine=LifecycleStateMachine(
            FLEET, target_branch="main", versionbot=versionbot, create_tag=create_tag
        ),
        store_factory=lambda context: store,
        builder=builder or _make_builder(),
        versions=versions,
        outputs=outputs if outputs is not None else ActionOutputs(),
        event_emitter=emitter or RecordingEmitter(),
        options=options,
        waiter=waiter,
        git=git,
        tagger=tagger,
    )
    return orchestrator


# ---------------------------------------------------------------------------
# Final builds
# ---------------------------------------------------------------------------


class TestFinalBuild:
    def test_push_to_main_builds_publishes_and_tags(self):
        outputs = MagicMock()
        store = InMemoryStore()
        orchestrator = _make_orchestrator(store=store, create_tag=True, outputs=outputs)

        result = run_async(orchestrator.run(make_push_event(sha="abc123")))

        orchestrator.builder.push.assert_awaited_once_with(
            FLEET,
            ".",
            ReleaseTags(sha="abc123"),
            draft=False,
            no_cache=False,
            multi_dockerignore=False,
        )
        assert outputs.set_output.call_args_list == [
            call("version", "v1.2.3"),
            call("release_id", 42),
        ]
        orchestrator.tagger.create_tag.assert_awaited_once_with(
            "acme", "widgets", "v1.2.3", "abc123"
        )
        assert result.decision.kind == DecisionKind.BUILD_FINAL
        assert result.release_id == 42
        assert result.version == "v1.2.3"
        assert result.reused is False
        assert store.bindings[ReleaseKey(fleet=FLEET, sha="abc123")].id == 42

    def test_no_tag_unless_enabled(self):
        orchestrator = _make_orchestrator(create_tag=False)

        run_async(orchestrator.run(make_push_event()))

        orchestrator.tagger.create_tag.assert_not_awaited()

    def test_cached_release_is_reused(self):
        key = ReleaseKey(fleet=FLEET, sha="abc123")
        store = InMemoryStore({key: Release(id=41, is_final=True)})
        emitter = RecordingEmitter()
        orchestrator = _make_orchestrator(store=store, emitter=emitter)

        result = run_async(orchestrator.run(make_push_event(sha="abc123")))

        orchestrator.builder.push.assert_not_awaited()
        assert result.reused is True
        assert result.release_id == 41
        assert EventType.CACHE_HIT in emitter.types
        assert EventType.BUILD not in emitter.types

    def test_cache_disabled_always_builds(self):
        key = ReleaseKey(fleet=FLEET, sha="abc123")
        store = InMemoryStore({key: Release(id=41, is_final=True)})
        orchestrator = _make_orchestrator(store=store, options=BuildOptions(cache=False))

        result = run_async(orchestrator.run(make_push_event(sha="abc123")))

        orchestrator.builder.push.assert_awaited_once()
        assert result.release_id == 42
        assert store.find_calls == []

    def test_builder_options_are_passed_through(self):
        options = BuildOptions(source="app", no_cache=True, multi_dockerignore=True)
        orchestrator = _make_orchestrator(options=options)

        run_async(orchestrator.run(make_push_event(sha="abc123")))

        orchestrator.builder.push.assert_awaited_once_with(
            FLEET,
            "app",
            ReleaseTags(sha="abc123"),
            draft=False,
            no_cache=True,
            multi_dockerignore=True,
        )

    def test_tag_push_builds_with_git_tag(self):
        orchestrator = _make_orchestrator()

        run_async(orchestrator.run(make_push_event(ref="refs/tags/v2.0.0", sha="abc123")))

        tags = orchestrator.builder.push.await_args.args[2]
        assert tags == ReleaseTags(sha="abc123", git_tag="v2.0.0")

    def test_empty_version_skips_tag(self):
        orchestrator = _make_orchestrator(create_tag=True, version="")

        result = run_async(orchestrator.run(make_push_event()))

        orchestrator.tagger.create_tag.assert_not_awaited()
        assert result.tag_url is None

    def test_existing_tag_is_not_an_error(self):
        tagger = MagicMock()
        tagger.create_tag = AsyncMock(return_value=None)
        emitter = RecordingEmitter()
        orchestrator = _make_orchestrator(create_tag=True, tagger=tagger, emitter=emitter)

        result = run_async(orchestrator.run(make_push_event()))

        assert result.tag_url is None
        tag_event = [e for e in emitter.events if e.event_type == EventType.TAG][0]
        assert tag_event.details == {"tag": "v1.2.3", "tag_created": False}


# ---------------------------------------------------------------------------
# Draft builds
# ---------------------------------------------------------------------------


class TestDraftBuild:
    def test_open_pull_request_builds_untagged_draft(self):
        outputs = ActionOutputs()
        store = InMemoryStore()
        orchestrator = _make_orchestrator(store=store, create_tag=True, outputs=outputs)

        result = run_async(orchestrator.run(make_pull_request_event(head_sha=HEAD_SHA, pr_id=PR_ID)))

        orchestrator.builder.push.assert_awaited_once_with(
            FLEET,
            ".",
            ReleaseTags(sha=HEAD_SHA, pull_request_id=PR_ID),
            draft=True,
            no_cache=False,
            multi_dockerignore=False,
        )
        orchestrator.tagger.create_tag.assert_not_awaited()
        assert list(outputs.values.items()) == [("version", "v1.2.3"), ("release_id", "42")]
        assert result.decision.kind == DecisionKind.BUILD_DRAFT
        binding = store.bindings[ReleaseKey(fleet=FLEET, sha=HEAD_SHA, pull_request_id=PR_ID)]
        assert binding == Release(id=42, is_final=False)

    def test_versionbot_branch_is_checked_out_before_building(self):
        order: List[str] = []
        waiter = MagicMock()
        waiter.wait = AsyncMock(side_effect=lambda ctx: order.append("wait") or "versionbot/pr/44")
        git = MagicMock()
        git.checkout = AsyncMock(side_effect=lambda ref: order.append(f"checkout {ref}"))
        builder = _make_builder()
        builder.push.side_effect = lambda *a, **kw: order.append("push") or 42
        orchestrator = _make_orchestrator(
            versionbot=True, waiter=waiter, git=git, builder=builder
        )

        run_async(orchestrator.run(make_pull_request_event()))

        assert order == ["wait", "checkout versionbot/pr/44", "push"]

    def test_versionbot_without_waiter_is_a_configuration_error(self):
        orchestrator = _make_orchestrator(versionbot=True)

        with pytest.raises(ConfigurationError):
            run_async(orchestrator.run(make_pull_request_event()))

        orchestrator.builder.push.assert_not_awaited()

    def test_versionbot_timeout_emits_timeout_and_fails(self):
        waiter = MagicMock()
        waiter.wait = AsyncMock(side_effect=BranchWaitTimeoutError("versionbot/pr/44", 3, 12.0))
        emitter = RecordingEmitter()
        orchestrator = _make_orchestrator(
            versionbot=True, waiter=waiter, git=MagicMock(), emitter=emitter
        )

        with pytest.raises(BranchWaitTimeoutError):
            run_async(orchestrator.run(make_pull_request_event()))

        orchestrator.builder.push.assert_not_awaited()
        assert emitter.types[-1] == EventType.TIMEOUT
        assert emitter.events[-1].details["attempts"] == 3


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


class TestFinalize:
    def _merged_event(self) -> WorkflowEvent:
        return make_pull_request_event(
            action="closed", merged=True, head_sha=HEAD_SHA, pr_id=PR_ID
        )

    def _draft_store(self) -> InMemoryStore:
        key = ReleaseKey(fleet=FLEET, sha=HEAD_SHA, pull_request_id=PR_ID)
        return InMemoryStore({key: Release(id=2008424, is_final=False)})

    def test_merged_pull_request_finalizes_draft(self):
        outputs = ActionOutputs()
        store = self._draft_store()
        orchestrator = _make_orchestrator(store=store, outputs=outputs)

        result = run_async(orchestrator.run(self._merged_event()))

        orchestrator.builder.finalize.assert_awaited_once_with(2008424)
        orchestrator.builder.push.assert_not_awaited()
        assert result.decision.kind == DecisionKind.FINALIZE_RELEASE
        assert outputs.values == {"version": "v1.2.3", "release_id": "2008424"}
        assert all(release.is_final for release in store.bindings.values())

    def test_replayed_merge_finalizes_once(self):
        store = self._draft_store()
        orchestrator = _make_orchestrator(store=store)

        run_async(orchestrator.run(self._merged_event()))
        result = run_async(orchestrator.run(self._merged_event()))

        orchestrator.builder.finalize.assert_awaited_once_with(2008424)
        assert result.decision.kind == DecisionKind.NO_OP
        assert result.decision.reason == "Release is already finalized so skipping."

    def test_finalize_tags_head_commit_when_enabled(self):
        orchestrator = _make_orchestrator(store=self._draft_store(), create_tag=True)

        run_async(orchestrator.run(self._merged_event()))

        orchestrator.tagger.create_tag.assert_awaited_once_with(
            "acme", "widgets", "v1.2.3", HEAD_SHA
        )

    def test_merge_without_draft_fails(self):
        emitter = RecordingEmitter()
        orchestrator = _make_orchestrator(emitter=emitter)

        with pytest.raises(ReleaseNotFoundError) as exc_info:
            run_async(orchestrator.run(self._merged_event()))

        assert exc_info.value.message == (
            "Action reached point of finalizing a release but did not find one"
        )
        orchestrator.builder.finalize.assert_not_awaited()
        assert emitter.events[-1].event_type == EventType.ERROR
        assert emitter.events[-1].details["error_type"] == "ReleaseNotFoundError"

    def test_closed_without_merge_does_nothing(self):
        outputs = ActionOutputs()
        emitter = RecordingEmitter()
        orchestrator = _make_orchestrator(outputs=outputs, emitter=emitter)

        result = run_async(
            orchestrator.run(make_pull_request_event(action="closed", merged=False))
        )

        assert result.decision.kind == DecisionKind.NO_OP
        orchestrator.builder.push.assert_not_awaited()
        orchestrator.builder.finalize.assert_not_awaited()
        assert outputs.values == {}
        assert emitter.types == [EventType.DECISION, EventType.NO_OP]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_missing_repository_fails_before_building(self):
        orchestrator = _make_orchestrator()
        event = WorkflowEvent(event_name="push", ref="refs/heads/main", sha="abc123")

        with pytest.raises(MissingRepositoryError):
            run_async(orchestrator.run(event))

        orchestrator.builder.push.assert_not_awaited()

    def test_push_to_other_branch_fails_before_building(self):
        orchestrator = _make_orchestrator()

        with pytest.raises(UnsupportedEventError) as exc_info:
            run_async(orchestrator.run(make_push_event(ref="refs/heads/feature")))

        assert "refs/heads/feature" in exc_info.value.message
        orchestrator.builder.push.assert_not_awaited()

    def test_build_failure_publishes_nothing(self):
        builder = _make_builder()
        builder.push.side_effect = BuildExecutionError("Build failed", exit_code=1)
        outputs = ActionOutputs()
        store = InMemoryStore()
        orchestrator = _make_orchestrator(builder=builder, outputs=outputs, store=store)

        with pytest.raises(BuildExecutionError):
            run_async(orchestrator.run(make_push_event()))

        assert outputs.values == {}
        assert store.bindings == {}

    def test_ambiguous_cache_lookup_fails(self):
        store = InMemoryStore()
        store.find = AsyncMock(side_effect=AmbiguousMatchError("acme/fleet@abc123", [43, 42]))
        orchestrator = _make_orchestrator(store=store)

        with pytest.raises(AmbiguousMatchError):
            run_async(orchestrator.run(make_push_event()))

        orchestrator.builder.push.assert_not_awaited()

    def test_emitter_failures_do_not_break_the_run(self):
        emitter = MagicMock(spec=EventEmitter)
        emitter.emit = AsyncMock(side_effect=RuntimeError("sink down"))
        orchestrator = _make_orchestrator(emitter=emitter)

        result = run_async(orchestrator.run(make_push_event()))

        assert result.release_id == 42

    def test_unknown_target_branch_rejects_branch_pushes(self):
        orchestrator = _make_orchestrator()
        orchestrator.machine.target_branch = None
        event = make_push_event(repository=make_repository(master_branch=None))

        with pytest.raises(UnsupportedEventError):
            run_async(orchestrator.run(event))

    def test_pull_request_event_without_pull_request_builds_nothing(self):
        store = InMemoryStore()
        orchestrator = _make_orchestrator(store=store)
        event = WorkflowEvent(
            event_name="pull_request",
            ref="refs/pull/44/merge",
            sha="abc123",
            payload={"action": "opened", "repository": make_repository()},
        )

        with pytest.raises(UnsupportedEventError):
            run_async(orchestrator.run(event))

        orchestrator.builder.push.assert_not_awaited()
        assert store.bindings == {}

    def test_final_build_never_reuses_a_draft(self):
        key = ReleaseKey(fleet=FLEET, sha="abc123")
        store = InMemoryStore({key: Release(id=42, is_final=False)})
        outputs = ActionOutputs()
        orchestrator = _make_orchestrator(store=store, create_tag=True, outputs=outputs)

        with pytest.raises(DraftReleaseConflictError) as exc_info:
            run_async(orchestrator.run(make_push_event(sha="abc123")))

        assert exc_info.value.release_id == 42
        orchestrator.builder.push.assert_not_awaited()
        orchestrator.tagger.create_tag.assert_not_awaited()
        assert outputs.values == {}
