"""Release lifecycle state machine.

This module implements the LifecycleStateMachine class that classifies a
triggering workflow event into a LifecycleState and maps that state onto
a LifecycleDecision.

The machine is pure: it performs no I/O. Release store lookups happen in
the orchestrator, which hands the result of the finalize lookup back in
through decide(). Every side effect of a decision is sequenced by
LifecycleOrchestrator in orchestrator.py.

Transition table:
- CLOSED_MERGED: finalize the draft built for the pull request, no-op if
  it is already final, error if none was built
- CLOSED_UNMERGED: no-op
- PUSH_TO_TARGET: build a final release keyed by sha (plus the git tag
  name on tag-ref pushes)
- PUSH_OTHER: error naming the expected branch and the actual ref
- PULL_REQUEST_OPEN: build a draft keyed by sha and pull request id,
  checking out the versionbot branch first when enabled
- UNRECOGNIZED: error naming the event
"""

import logging
from typing import Optional

from deploy_to_balena.errors import ReleaseNotFoundError, UnsupportedEventError
from deploy_to_balena.event.models import RepoContext, WorkflowEvent
from deploy_to_balena.state.models import (
    LifecycleDecision,
    LifecycleState,
    Release,
    ReleaseKey,
    ReleaseTags,
)


logger = logging.getLogger(__name__)

PULL_REQUEST_EVENTS = frozenset({"pull_request", "pull_request_target"})
PUSH_EVENT = "push"
DISPATCH_EVENT = "workflow_dispatch"

BRANCH_REF_PREFIX = "refs/heads/"
TAG_REF_PREFIX = "refs/tags/"


class LifecycleStateMachine:
    """Classifies events and decides what a run does about them.

    Attributes:
        fleet: Fleet slug releases are built for.
        target_branch: Branch final releases are built from, or None when
                       it could not be determined.
        versionbot: Whether pull request builds use the versionbot branch.
        create_tag: Whether final releases get a git tag.

    Example:
        >>> machine = LifecycleStateMachine("acme/fleet", target_branch="main")
        >>> state = machine.classify(event)
        >>> decision = machine.decide(state, event, context)
    """

    def __init__(
        self,
        fleet: str,
        target_branch: Optional[str] = None,
        versionbot: bool = False,
        create_tag: bool = False,
    ):
        self.fleet = fleet
        self.target_branch = target_branch
        self.versionbot = versionbot
        self.create_tag = create_tag

    def classify(self, event: WorkflowEvent) -> LifecycleState:
        """Derive the lifecycle state of an event.

        Args:
            event: The triggering workflow event.

        Returns:
            The LifecycleState for the event.
        """
        if event.event_name in PULL_REQUEST_EVENTS:
            if event.action == "closed":
                pull_request = event.payload.get("pull_request") or {}
                if pull_request.get("merged"):
                    return LifecycleState.CLOSED_MERGED
                return LifecycleState.CLOSED_UNMERGED
            return LifecycleState.PULL_REQUEST_OPEN

        if event.event_name == PUSH_EVENT:
            if event.tag_name is not None:
                return LifecycleState.PUSH_TO_TARGET
            if self.target_branch and event.ref == self.target_ref:
                return LifecycleState.PUSH_TO_TARGET
            return LifecycleState.PUSH_OTHER

        if event.event_name == DISPATCH_EVENT:
            return LifecycleState.PUSH_TO_TARGET

        return LifecycleState.UNRECOGNIZED

    @property
    def target_ref(self) -> Optional[str]:
        """Fully qualified ref of the target branch."""
        if not self.target_branch:
            return None
        return f"{BRANCH_REF_PREFIX}{self.target_branch}"

    def finalize_key(self, context: RepoContext) -> ReleaseKey:
        """Store key of the draft a merged pull request finalizes."""
        return ReleaseKey(
            fleet=self.fleet,
            sha=context.sha,
            pull_request_id=context.pull_request_id,
        )

    def decide(
        self,
        state: LifecycleState,
        event: WorkflowEvent,
        context: RepoContext,
        previous_release: Optional[Release] = None,
    ) -> LifecycleDecision:
        """Map a lifecycle state onto a decision.

        Args:
            state: State returned by classify() for the event.
            event: The triggering workflow event.
            context: Resolved repository identity of the run.
            previous_release: Result of looking up finalize_key(context).
                              Only consulted for CLOSED_MERGED.

        Returns:
            The LifecycleDecision for the run. Fatal conditions are
            returned as ERROR decisions carrying the exception to raise.
        """
        if (
            state in (LifecycleState.PULL_REQUEST_OPEN, LifecycleState.CLOSED_MERGED)
            and context.pull_request_id is None
        ):
            decision = LifecycleDecision.fail(
                state,
                UnsupportedEventError(
                    f"Pull request event {event.event_name} carries no pull request",
                    event_name=event.event_name,
                    ref=event.ref,
                ),
            )
        elif state == LifecycleState.CLOSED_MERGED:
            decision = self._decide_merged(state, context, previous_release)
        elif state == LifecycleState.CLOSED_UNMERGED:
            decision = LifecycleDecision.no_op(
                state, "Pull request was closed but not merged, nothing to do."
            )
        elif state == LifecycleState.PUSH_TO_TARGET:
            tags = ReleaseTags(sha=context.sha, git_tag=event.tag_name)
            decision = LifecycleDecision.build_final(
                state, tags, create_tag=self.create_tag
            )
        elif state == LifecycleState.PULL_REQUEST_OPEN:
            tags = ReleaseTags(sha=context.sha, pull_request_id=context.pull_request_id)
            decision = LifecycleDecision.build_draft(
                state, tags, checkout_branch_required=self.versionbot
            )
        elif state == LifecycleState.PUSH_OTHER:
            decision = LifecycleDecision.fail(
                state,
                UnsupportedEventError(
                    f"Push workflow only works with {self.target_branch or '<unknown>'} "
                    f"branch. Event tried pushing to: {event.ref}",
                    event_name=event.event_name,
                    ref=event.ref,
                ),
            )
        else:
            decision = LifecycleDecision.fail(
                state,
                UnsupportedEventError(
                    f"Unsure how to proceed with event: {event.event_name}",
                    event_name=event.event_name,
                    ref=event.ref,
                ),
            )

        logger.info(
            "Lifecycle decision made",
            extra={
                "fleet": self.fleet,
                "event_name": event.event_name,
                "ref": event.ref,
                "state": state.value,
                "decision": decision.kind.value,
            },
        )
        return decision

    def _decide_merged(
        self,
        state: LifecycleState,
        context: RepoContext,
        previous_release: Optional[Release],
    ) -> LifecycleDecision:
        if previous_release is None:
            return LifecycleDecision.fail(
                state, ReleaseNotFoundError(key=self.finalize_key(context))
            )
        if previous_release.is_final:
            return LifecycleDecision.no_op(
                state, "Release is already finalized so skipping."
            )
        return LifecycleDecision.finalize(
            state, previous_release.id, create_tag=self.create_tag
        )
