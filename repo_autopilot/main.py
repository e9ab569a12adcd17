"""CLI entry point for the autonomous workflow scheduler."""

import asyncio
import contextlib
import dataclasses
import json
import signal
import sys
from typing import Any

import click
import yaml

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.assignments import AssignmentLedger, LedgerInconsistencyRecovery
from repo_autopilot.engine.checkpointing import CheckpointManager
from repo_autopilot.engine.coordinator import Coordinator
from repo_autopilot.engine.fixes import CommandFixExecutor
from repo_autopilot.engine.observer import HostWorkObserver
from repo_autopilot.engine.recovery import (
    BuildFailed,
    CIFailed,
    DependencyConflict,
    ErrorRecoveryEngine,
    GitOperationFailed,
    HostApiFailed,
    MergeConflictFound,
    NetworkFailure,
    StateInconsistency,
    TestsFailed,
    WorkspaceCorruption,
    classify as classify_error,
)
from repo_autopilot.engine.workflow import Blocked, WorkflowState, is_terminal, state_name
from repo_autopilot.exceptions import AutopilotError, ConfigurationError
from repo_autopilot.models.domain import UnresolvableBlocker
from repo_autopilot.providers.factory import create_host_provider
from repo_autopilot.utils.logging_config import configure_logging, get_logger
from repo_autopilot.utils.status_reporter import StatusReporter

log = get_logger(__name__)

ERROR_KINDS: dict[str, type] = {
    "git": GitOperationFailed,
    "api": HostApiFailed,
    "merge-conflict": MergeConflictFound,
    "ci": CIFailed,
    "tests": TestsFailed,
    "build": BuildFailed,
    "dependency": DependencyConflict,
    "network": NetworkFailure,
    "workspace": WorkspaceCorruption,
    "state": StateInconsistency,
}


@click.group()
@click.option("--config", default="autopilot.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """Autonomous workflow scheduler CLI."""
    configure_logging(log_level)
    ctx.obj = {"config_path": config}


def _load_settings(ctx: click.Context) -> AutopilotSettings:
    try:
        return AutopilotSettings.from_yaml(ctx.obj["config_path"])
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e.message}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--agent-id", required=True, help="Worker slot identifier, used in branch names")
@click.option("--issue", type=int, default=None, help="Work on this issue instead of polling the ready queue")
@click.option("--continuous", is_flag=True, help="Reset after each finished workflow and pick the next issue")
@click.option("--resume/--no-resume", default=True, help="Resume the last checkpointed assignment")
@click.pass_context
def run(ctx: click.Context, agent_id: str, issue: int | None, continuous: bool, resume: bool) -> None:
    """Run one coordinator until its workflow finishes."""
    settings = _load_settings(ctx)

    try:
        final = asyncio.run(_run_agent(settings, agent_id, issue, continuous, resume))
    except AutopilotError as e:
        log.error("run_failed", agent_id=agent_id, error=e.message)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)
        sys.exit(130)

    click.echo(f"Final state: {state_name(final) or 'None'}")


@cli.command()
@click.option("--kind", required=True, type=click.Choice(sorted(ERROR_KINDS)), help="Error kind to classify")
@click.option("--param", "params", multiple=True, help="Error field as key=value (repeatable)")
def classify(kind: str, params: tuple[str, ...]) -> None:
    """Print the recovery strategy selected for an error."""
    error = _build_error(kind, params)
    strategy = classify_error(error)
    click.echo(json.dumps({"strategy": type(strategy).__name__, **dataclasses.asdict(strategy)}, indent=2))


@cli.command("show-config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the loaded configuration with secrets redacted."""
    settings = _load_settings(ctx)
    click.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False))


def _build_error(kind: str, params: tuple[str, ...]) -> Any:
    error_cls = ERROR_KINDS[kind]
    values: dict[str, str] = {}
    for param in params:
        key, sep, value = param.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected key=value, got {param!r}", param_hint="--param")
        values[key.strip().replace("-", "_")] = value.strip()

    kwargs: dict[str, Any] = {}
    for field in dataclasses.fields(error_cls):
        if field.name not in values:
            raise click.UsageError(f"Missing --param {field.name}=... for {kind}")
        raw = values.pop(field.name)
        if field.type is int:
            try:
                kwargs[field.name] = int(raw)
            except ValueError as e:
                raise click.BadParameter(f"{field.name} must be an integer", param_hint="--param") from e
        elif field.type is bool:
            kwargs[field.name] = raw.lower() in ("1", "true", "yes")
        elif field.type == tuple[str, ...]:
            kwargs[field.name] = tuple(item.strip() for item in raw.split(",") if item.strip())
        else:
            kwargs[field.name] = raw

    if values:
        raise click.UsageError(f"Unknown parameters for {kind}: {', '.join(sorted(values))}")
    return error_cls(**kwargs)


async def _run_agent(
    settings: AutopilotSettings,
    agent_id: str,
    issue_number: int | None,
    continuous: bool,
    resume: bool,
) -> WorkflowState | None:
    """Wire collaborators and drive the coordinator.

    Args:
        settings: Scheduler settings
        agent_id: Worker slot identifier
        issue_number: Pinned issue, or None to poll the ready queue
        continuous: Keep picking new issues after a terminal state
        resume: Re-enter the last checkpointed assignment first
    """
    host = create_host_provider(settings)
    await host.connect()

    try:
        workflow = settings.workflow
        ledger = AssignmentLedger(workflow.max_concurrent_agents)
        checkpoints = None
        if workflow.enable_checkpoints:
            checkpoints = CheckpointManager(settings.checkpoint_dir, keep_latest=workflow.checkpoints_kept)
            await checkpoints.cleanup_old_checkpoints(workflow.checkpoint_max_age_days)
        fix_executor = CommandFixExecutor(
            commands=settings.fixes.commands,
            working_directory=settings.fixes.working_directory,
            timeout_seconds=settings.fixes.timeout_seconds,
        )
        coordinator = Coordinator(
            agent_id,
            settings,
            host,
            HostWorkObserver(host, settings.labels, settings.repository.default_branch),
            ErrorRecoveryEngine(fix_executor=fix_executor, timeout_seconds=workflow.recovery_timeout_minutes * 60),
            inconsistency_recovery=LedgerInconsistencyRecovery(host, ledger, settings.labels, agents=[agent_id]),
            ledger=ledger,
            checkpoints=checkpoints,
            status_reporter=StatusReporter(host, settings.labels),
            issue_number=issue_number,
        )
        _install_signal_handlers(coordinator)

        if resume:
            await coordinator.resume_from_checkpoint()
        await coordinator.auto_recover()

        while True:
            final = await coordinator.run()
            if isinstance(final, Blocked):
                final = await coordinator.force_abandon(UnresolvableBlocker(blocker=final.blocker))

            if not continuous or issue_number is not None or coordinator.stop_requested:
                break
            if is_terminal(final):
                await coordinator.reset()

        log.info("recovery_summary", **(await coordinator.recovery_report()).to_dict())
        return final
    finally:
        await host.disconnect()


def _install_signal_handlers(coordinator: Coordinator) -> None:
    """Request a polite stop on SIGTERM or SIGINT.

    Stop tasks stay referenced in ``pending`` until they finish.
    """
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[None]] = set()

    def request_stop() -> None:
        task = loop.create_task(coordinator.stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_stop)


if __name__ == "__main__":
    cli()
