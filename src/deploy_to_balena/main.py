"""Entry point of the deploy-to-balena action.

One invocation handles one workflow event: settings are read from the
INPUT_* and GITHUB_* environment, clients are authenticated, the
orchestrator is wired and run, and the process exits non-zero with an
error annotation on any failure.

Configuration values are logged on startup with secrets redacted.
"""

import asyncio
import logging
import signal
from typing import Optional

from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from deploy_to_balena.actions import (
    ActionOutputs,
    configure_logging,
    redact_secret,
    set_failed,
)
from deploy_to_balena.balena.client import BalenaClient
from deploy_to_balena.config import (
    ActionSettings,
    WorkflowSettings,
    get_settings,
    get_workflow_settings,
)
from deploy_to_balena.errors import DeployError
from deploy_to_balena.event.models import RepoContext, WorkflowEvent
from deploy_to_balena.event.resolver import IdentityResolver, load_workflow_event
from deploy_to_balena.events.emitter import EventSinkType, create_event_emitter
from deploy_to_balena.events.metrics import push_metrics
from deploy_to_balena.github.client import GitHubClient
from deploy_to_balena.orchestrator import BuildOptions, LifecycleOrchestrator, RunResult
from deploy_to_balena.runner.balena_cli import BalenaCLI
from deploy_to_balena.runner.git import GitRunner
from deploy_to_balena.state.machine import LifecycleStateMachine
from deploy_to_balena.state.repository import (
    BalenaTagReleaseStore,
    CheckRunReleaseStore,
    ReleaseStore,
)
from deploy_to_balena.versionbot.waiter import BranchReadinessWaiter

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def _log_configuration(settings: ActionSettings, workflow: WorkflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Deploy configuration:")
    logger.info(f"  Fleet: {settings.fleet}")
    logger.info(f"  Environment: {settings.environment}")
    logger.info(f"  balena Token: {redact_secret(settings.balena_token)}")
    logger.info(f"  GitHub Token: {redact_secret(settings.github_token)}")
    logger.info(f"  Source: {settings.source}")
    logger.info(f"  Default Branch: {settings.default_branch or '<from payload>'}")
    logger.info(f"  Cache: {settings.cache}")
    logger.info(f"  Layer Cache: {settings.layer_cache}")
    logger.info(f"  Versionbot: {settings.versionbot}")
    logger.info(f"  Create Tag: {settings.create_tag}")
    logger.info(f"  Release Store: {settings.release_store}")
    logger.info(f"  Reuse Most Recent: {settings.reuse_most_recent}")
    logger.info(f"  Event: {workflow.event_name} ({workflow.ref})")
    logger.info(f"  Metrics Pushgateway: {settings.metrics_pushgateway_url or '<none>'}")


def _build_orchestrator(
    settings: ActionSettings,
    workflow: WorkflowSettings,
    event: WorkflowEvent,
    balena_client: BalenaClient,
    github_client: Optional[GitHubClient],
    registry: CollectorRegistry,
) -> LifecycleOrchestrator:
    """Wire all lifecycle dependencies into a LifecycleOrchestrator.

    Args:
        settings: Validated action inputs.
        workflow: Workflow context.
        event: The triggering event (used for the target branch).
        balena_client: Authenticated balena API client.
        github_client: GitHub API client, when a feature needs one.
        registry: Per-run Prometheus registry.

    Returns:
        Fully wired LifecycleOrchestrator.
    """
    resolver = IdentityResolver()
    machine = LifecycleStateMachine(
        fleet=settings.fleet,
        target_branch=resolver.target_branch(event, settings.default_branch),
        versionbot=settings.versionbot,
        create_tag=settings.create_tag,
    )

    def store_factory(context: RepoContext) -> ReleaseStore:
        if settings.release_store == "check_run":
            return CheckRunReleaseStore(
                github_client,
                context,
                job=workflow.job,
                reuse_most_recent=settings.reuse_most_recent,
            )
        return BalenaTagReleaseStore(
            balena_client, reuse_most_recent=settings.reuse_most_recent
        )

    builder = BalenaCLI(
        cli_path=settings.balena_cli_path,
        environment=settings.environment,
        timeout_seconds=settings.build_timeout_seconds,
    )
    git = GitRunner(cwd=workflow.workspace)

    waiter = None
    if settings.versionbot:
        waiter = BranchReadinessWaiter(
            github_client,
            git=git,
            marker=settings.versionbot_check_marker,
            poll_interval=settings.versionbot_poll_interval,
            max_attempts=settings.versionbot_max_attempts,
            timeout_seconds=settings.versionbot_timeout_seconds,
        )

    sinks = [EventSinkType.LOGGING]
    if settings.metrics_pushgateway_url:
        sinks.append(EventSinkType.METRICS)

    return LifecycleOrchestrator(
        resolver=resolver,
        machine=machine,
        store_factory=store_factory,
        builder=builder,
        versions=balena_client,
        outputs=ActionOutputs(workflow.output),
        event_emitter=create_event_emitter(sinks, registry=registry),
        options=BuildOptions(
            source=settings.source,
            cache=settings.cache,
            no_cache=not settings.layer_cache,
            multi_dockerignore=settings.multi_dockerignore,
        ),
        waiter=waiter,
        git=git,
        tagger=github_client,
    )


def _install_signal_handlers(task: "asyncio.Task[RunResult]") -> None:
    """Cancel the run on SIGINT/SIGTERM so child processes are stopped."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers not supported on this platform")


async def _run() -> RunResult:
    settings = get_settings()
    workflow = get_workflow_settings()
    configure_logging(settings.log_level, actions=workflow.actions)
    _log_configuration(settings, workflow)

    event = load_workflow_event(workflow)
    registry = CollectorRegistry()

    github_client: Optional[GitHubClient] = None
    if settings.github_token:
        github_client = GitHubClient(
            token=settings.github_token, base_url=workflow.api_url
        )

    balena_client: Optional[BalenaClient] = None
    orchestrator: Optional[LifecycleOrchestrator] = None
    try:
        balena_client = await BalenaClient.initialize(
            settings.balena_api_url, settings.balena_token
        )
        orchestrator = _build_orchestrator(
            settings, workflow, event, balena_client, github_client, registry
        )
        await orchestrator.builder.login(settings.balena_token)

        task = asyncio.ensure_future(orchestrator.run(event))
        _install_signal_handlers(task)
        return await task
    finally:
        if orchestrator is not None:
            await orchestrator.event_emitter.close()
        if balena_client is not None:
            await balena_client.close()
        if github_client is not None:
            await github_client.close()
        if settings.metrics_pushgateway_url:
            push_metrics(
                settings.metrics_pushgateway_url,
                registry,
                grouping_key={"fleet": settings.fleet},
            )


def main() -> int:
    """Run the action and return the process exit code."""
    configure_logging()
    try:
        result = asyncio.run(_run())
    except (DeployError, ValidationError) as e:
        logger.debug("Run failed", exc_info=True)
        set_failed(str(e))
        return EXIT_FAILURE
    except (asyncio.CancelledError, KeyboardInterrupt):
        set_failed("Run was cancelled")
        return EXIT_CANCELLED
    except Exception as e:
        logger.exception("Unexpected error during run")
        set_failed(f"Unexpected error: {e}")
        return EXIT_FAILURE

    logger.info(
        "Run complete",
        extra={
            "decision": result.decision.kind.value,
            "release_id": result.release_id,
            "version": result.version,
        },
    )
    return 0
