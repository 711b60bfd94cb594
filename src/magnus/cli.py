from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from magnus.backends import CommandBackend, ResilientBackend, RetryPolicy
from magnus.config import (
    KNOWN_PROVIDERS,
    PROJECT_CONFIG_NAME,
    ConfigError,
    MagnusConfig,
    load_config,
    load_layered_config,
    save_config,
)
from magnus.dispatcher import InputInvalid
from magnus.logging_config import configure_logging, log_event
from magnus.monitor import BackgroundTaskMonitor
from magnus.skills import SkillInjector, SkillLoader
from magnus.specialists import SpecialistInvoker, build_specialists
from magnus.state import Session, SessionStore, StateError
from magnus.workflow import Presenter, WorkflowEngine, WorkflowError, WorkflowFailure

logger = logging.getLogger("magnus.cli")

T = TypeVar("T")

CLASSIFICATION_CHOICE = click.Choice(["ui", "api", "mixed"])


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: MagnusConfig
    store: SessionStore
    engine: WorkflowEngine


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _log_event(event: dict[str, Any]) -> None:
    log_event(logger, event)


def _load_settings(project_dir: Path, config_path: Path) -> MagnusConfig:
    try:
        if config_path == (project_dir / PROJECT_CONFIG_NAME).resolve():
            return load_layered_config(project_dir)
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def _build_backend(config: MagnusConfig, project_dir: Path) -> ResilientBackend:
    runtime_directory = project_dir / ".magnus" / "runtime"
    providers = [
        (
            name,
            CommandBackend(
                name, working_directory=project_dir, runtime_directory=runtime_directory
            ),
        )
        for name in config.backend.providers
    ]
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(providers, policy, event_hook=_log_event)


def _prompt_presenter(artifacts_dir: Path) -> Presenter:
    def present(session_id: str, phase: str, options: list[str]) -> str:
        click.echo(f"\n[{session_id}] {phase} is waiting for a decision.")
        click.echo(f"Artifacts: {artifacts_dir / session_id}")
        return click.prompt("Select", type=click.Choice(options), default=options[0])

    return present


def _auto_presenter(session_id: str, phase: str, options: list[str]) -> str:
    click.echo(f"[{session_id}] {phase}: auto-selected '{options[0]}'")
    return options[0]


def _load_runtime(project_dir: Path, config_path: Path) -> Runtime:
    config = _load_settings(project_dir, config_path)
    configure_logging(config.logging.level, config.logging.file or None)

    backend = _build_backend(config, project_dir)
    try:
        specialists = build_specialists(backend, config.agents, project_dir=project_dir)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    store = SessionStore(project_dir / config.state.directory)
    artifacts_dir = project_dir / config.state.artifacts_directory
    monitor = BackgroundTaskMonitor(backend, config.monitor, event_hook=_log_event)
    skills = SkillInjector(
        SkillLoader(project_dir / config.skills.content_dir),
        include_metadata=config.skills.include_metadata,
    )
    engine = WorkflowEngine(
        store,
        SpecialistInvoker(specialists, background_backend=backend),
        config,
        artifacts_dir=artifacts_dir,
        monitor=monitor,
        skills=skills,
        event_hook=_log_event,
    )
    return Runtime(
        project_dir=project_dir,
        config_path=config_path,
        config=config,
        store=store,
        engine=engine,
    )


def _runtime(config_value: str, *, yes: bool = False, no_input: bool = False) -> Runtime:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(project_dir, _resolve_config_path(project_dir, config_value))
    if yes:
        runtime.engine.presenter = _auto_presenter
    elif not no_input:
        runtime.engine.presenter = _prompt_presenter(
            project_dir / runtime.config.state.artifacts_directory
        )
    return runtime


def _run(coroutine: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coroutine)
    except WorkflowFailure as exc:
        raise click.ClickException(exc.describe()) from exc
    except (WorkflowError, StateError, InputInvalid, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_session(runtime: Runtime, session: Session) -> None:
    engine = runtime.engine
    click.echo(f"Session: {session.id}")
    click.echo(f"State: {engine.state_of(session)} ({session.classification})")
    for record in session.phases:
        detail = f"iteration {record.iteration}" if record.iteration else ""
        if record.skip_reason:
            detail = record.skip_reason
        click.echo(f"  {record.name:<18} {record.status:<12} {detail}".rstrip())
    for warning in session.warnings:
        click.echo(f"Warning: {warning.message}")
    decision = engine.pending_decision(session)
    if decision is not None:
        options = "|".join(decision["options"])
        click.echo(f"Decision needed: magnus decide {session.id} {decision['phase']} {options}")
    if session.result:
        advisories = session.result.get("advisories", [])
        click.echo(f"Delivered with {len(advisories)} advisories.")
        if session.result.get("summary"):
            click.echo(f"Summary: {session.result['summary']}")


def _start_workflow(
    request: str,
    command: str,
    classification: str | None,
    yes: bool,
    no_input: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value, yes=yes, no_input=no_input)

    async def _drive() -> Session:
        session_id = await runtime.engine.start(
            request, command=command, classification=classification  # type: ignore[arg-type]
        )
        click.echo(f"Started session {session_id}")
        return await runtime.engine.run(session_id)

    _echo_session(runtime, _run(_drive()))


def _workflow_options(function):
    function = click.option(
        "--config", "config_value", default=PROJECT_CONFIG_NAME, show_default=True
    )(function)
    function = click.option(
        "--no-input", is_flag=True, default=False, help="Never prompt; stop at decision points."
    )(function)
    function = click.option(
        "--yes", "-y", is_flag=True, default=False, help="Pick the first option at every prompt."
    )(function)
    return function


@click.group()
@click.version_option(package_name="magnus-orchestrator")
def cli() -> None:
    """Magnus workflow orchestrator."""


@cli.command("init")
@click.option("--provider", type=click.Choice(list(KNOWN_PROVIDERS)), default=None)
@click.option("--config", "config_value", default=PROJECT_CONFIG_NAME, show_default=True)
def init_command(provider: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    if provider:
        config.backend.providers = [provider] + [
            name for name in config.backend.providers if name != provider
        ]
    save_config(config_path, config)
    (project_dir / config.state.directory).mkdir(parents=True, exist_ok=True)
    (project_dir / config.state.artifacts_directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized magnus in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Providers: {', '.join(config.backend.providers)}")


@cli.command("run")
@click.argument("request")
@click.option("--classification", type=CLASSIFICATION_CHOICE, default=None)
@_workflow_options
def run_command(
    request: str, classification: str | None, yes: bool, no_input: bool, config_value: str
) -> None:
    """Run the full workflow for REQUEST."""
    _start_workflow(request, "full", classification, yes, no_input, config_value)


@cli.command("backend")
@click.argument("request")
@_workflow_options
def backend_command(request: str, yes: bool, no_input: bool, config_value: str) -> None:
    """Run the backend-only workflow (no design validation)."""
    _start_workflow(request, "backend", None, yes, no_input, config_value)


@cli.command("validate")
@click.argument("request")
@_workflow_options
def validate_command(request: str, yes: bool, no_input: bool, config_value: str) -> None:
    """Validate an existing UI against its designs."""
    _start_workflow(request, "validation", None, yes, no_input, config_value)


@cli.command("review")
@click.argument("request")
@click.option("--classification", type=CLASSIFICATION_CHOICE, default=None)
@_workflow_options
def review_command(
    request: str, classification: str | None, yes: bool, no_input: bool, config_value: str
) -> None:
    """Run a multi-reviewer code review."""
    _start_workflow(request, "review", classification, yes, no_input, config_value)


@cli.command("resume")
@click.argument("session_id")
@_workflow_options
def resume_command(session_id: str, yes: bool, no_input: bool, config_value: str) -> None:
    runtime = _runtime(config_value, yes=yes, no_input=no_input)

    async def _drive() -> Session:
        session = await runtime.engine.resume(session_id)
        return await runtime.engine.run(session.id)

    _echo_session(runtime, _run(_drive()))


@cli.command("decide")
@click.argument("session_id")
@click.argument("phase")
@click.argument("choice")
@_workflow_options
def decide_command(
    session_id: str, phase: str, choice: str, yes: bool, no_input: bool, config_value: str
) -> None:
    """Answer the decision point of PHASE with CHOICE."""
    runtime = _runtime(config_value, yes=yes, no_input=no_input)

    async def _drive() -> Session:
        session = await runtime.engine.decide(session_id, phase, choice)
        return await runtime.engine.run(session.id)

    _echo_session(runtime, _run(_drive()))


@cli.command("status")
@click.argument("session_id")
@click.option("--config", "config_value", default=PROJECT_CONFIG_NAME, show_default=True)
def status_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value, no_input=True)
    try:
        payload = runtime.engine.status(session_id)
    except WorkflowFailure as exc:
        raise click.ClickException(exc.describe()) from exc
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("sessions")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["active", "completed", "failed", "abandoned"]),
    default=None,
)
@click.option("--classification", type=CLASSIFICATION_CHOICE, default=None)
@click.option("--config", "config_value", default=PROJECT_CONFIG_NAME, show_default=True)
def sessions_command(
    status_filter: str | None, classification: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value, no_input=True)
    sessions = runtime.store.list(status=status_filter, classification=classification)
    if not sessions:
        click.echo("No sessions found.")
        return
    for session in sessions:
        state = runtime.engine.state_of(session)
        request = session.request if len(session.request) <= 60 else session.request[:57] + "..."
        click.echo(f"{session.id} {session.status:<9} {state:<18} {request}")


@cli.command("abandon")
@click.argument("session_id")
@click.option("--config", "config_value", default=PROJECT_CONFIG_NAME, show_default=True)
def abandon_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value, no_input=True)
    session = _run(runtime.engine.abandon(session_id))
    click.echo(f"Session {session.id} is {session.status}.")


@cli.command("cleanup")
@click.argument("session_id")
@click.option("--keep-artifacts", is_flag=True, default=False)
@click.option("--config", "config_value", default=PROJECT_CONFIG_NAME, show_default=True)
def cleanup_command(session_id: str, keep_artifacts: bool, config_value: str) -> None:
    """Delete a session snapshot and, unless asked not to, its artifacts."""
    runtime = _runtime(config_value, no_input=True)
    try:
        deleted = runtime.store.delete(session_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not deleted:
        raise click.ClickException(f"Session not found: {session_id}")
    if not keep_artifacts:
        shutil.rmtree(
            runtime.project_dir / runtime.config.state.artifacts_directory / session_id,
            ignore_errors=True,
        )
    click.echo(f"Deleted session {session_id}")
