from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from orchestra.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from orchestra.commands import CommandRunner
from orchestra.config import BackendName, OrchestraConfig, dumps_toml, load_config, save_config
from orchestra.models import SessionEvent, SessionInput, SessionState, SessionStatus, to_dict
from orchestra.specialists import (
    AdvisorAgent,
    ArchitectAgent,
    CoderAgent,
    DesignerAgent,
    PackagerAgent,
    PlannerAgent,
    ReviewerAgent,
    TesterAgent,
)
from orchestra.state import ArtifactStore, SessionStore
from orchestra.supervisor import AgentRoster, Supervisor
from orchestra.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: OrchestraConfig
    workspace: Workspace
    store: SessionStore
    supervisor: Supervisor


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> OrchestraConfig:
    try:
        return load_config(config_path)
    except (tomllib.TOMLDecodeError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _build_single_backend(
    backend_name: BackendName, config: OrchestraConfig, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(
            binary=config.backend.codex_binary,
            working_directory=repo_root,
            event_hook=_log_backend_event,
        )
    return ClaudeCodeBackend(
        binary=config.backend.claude_binary,
        working_directory=repo_root,
        event_hook=_log_backend_event,
    )


def _log_backend_event(event: dict[str, Any]) -> None:
    if event.get("event") in {"backend_retry", "backend_failover_start"}:
        logger.info("backend event: %s", event)
    else:
        logger.debug("backend event: %s", event)


def _build_backend(config: OrchestraConfig, repo_root: Path) -> AgentBackend:
    backends: list[tuple[str, AgentBackend]] = [
        (config.backend.primary, _build_single_backend(config.backend.primary, config, repo_root))
    ]
    if config.backend.fallback != config.backend.primary:
        backends.append(
            (
                config.backend.fallback,
                _build_single_backend(config.backend.fallback, config, repo_root),
            )
        )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(backends, retry_policy=policy, event_hook=_log_backend_event)


def _build_agents(backend: AgentBackend, config: OrchestraConfig) -> AgentRoster:
    model = config.agents.specialist_model or None
    tester = TesterAgent(backend, model=model)
    return AgentRoster(
        planner=PlannerAgent(backend, model=model),
        architect=ArchitectAgent(backend, model=model),
        designer=DesignerAgent(backend, model=model),
        coder=CoderAgent(backend, model=model),
        tester=tester,
        classifier=tester,
        reviewer=ReviewerAgent(backend, model=model),
        advisor=AdvisorAgent(backend, model=model),
        packager=PackagerAgent(backend, model=model),
    )


def _load_runtime(repo_root: Path, config_path: Path, config: OrchestraConfig) -> Runtime:
    workspace = Workspace(repo_root)
    store = SessionStore()
    backend = _build_backend(config, repo_root)
    runner = CommandRunner(
        repo_root,
        timeout_seconds=config.workflow.command_timeout_seconds,
        max_output_chars=config.workflow.max_command_output_chars,
    )
    supervisor = Supervisor(
        config=config,
        agents=_build_agents(backend, config),
        workspace=workspace,
        runner=runner,
        store=store,
        artifacts=ArtifactStore(),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        workspace=workspace,
        store=store,
        supervisor=supervisor,
    )


def _format_event(event: SessionEvent) -> str:
    where = ""
    if event.phase is not None:
        where = f"{event.phase}#{event.iteration}" if event.iteration else str(event.phase)
    elif event.iteration:
        where = f"#{event.iteration}"
    prefix = f"[{event.role}{' ' + where if where else ''}]"
    return f"{prefix} {event.type}: {event.message}"


async def _stream_session(
    supervisor: Supervisor, session_input: SessionInput, as_json: bool
) -> SessionState:
    session_id = supervisor.start(session_input)
    channel = supervisor.store.subscribe(session_id)
    try:
        while (event := await channel.get()) is not None:
            if as_json:
                click.echo(json.dumps(to_dict(event), ensure_ascii=False))
            else:
                click.echo(_format_event(event))
    finally:
        supervisor.store.unsubscribe(session_id, channel)
    return await supervisor.wait(session_id)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Orchestra CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        if config.backend.fallback == backend:
            config.backend.fallback = "codex" if backend == "claude" else "claude"
    save_config(config_path, config)
    (repo_root / config.state.output_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Orchestra in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")


@cli.command("run")
@click.argument("topic")
@click.option("--file", "file_paths", multiple=True, help="Target file, repeatable.")
@click.option("--validate", "validation_commands", multiple=True, help="Validation command.")
@click.option("--test-command", default=None)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--max-minutes", type=click.IntRange(min=1), default=None)
@click.option("--no-autonomous", is_flag=True, default=False)
@click.option("--review-mode", type=click.Choice(["loop", "final", "off"]), default=None)
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit events as JSON lines.")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def run_command(
    topic: str,
    file_paths: tuple[str, ...],
    validation_commands: tuple[str, ...],
    test_command: str | None,
    max_iterations: int | None,
    max_minutes: int | None,
    no_autonomous: bool,
    review_mode: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if review_mode:
        config.workflow.review_mode = review_mode  # type: ignore[assignment]
    runtime = _load_runtime(repo_root, config_path, config)
    session_input = SessionInput(
        topic=topic,
        file_paths=list(file_paths),
        workspace_root=str(repo_root),
        test_command=test_command,
        validation_commands=list(validation_commands),
        max_iterations=max_iterations,
        max_minutes=max_minutes,
        autonomous=False if no_autonomous else None,
    )
    try:
        session = asyncio.run(_stream_session(runtime.supervisor, session_input, as_json))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(to_dict(session), ensure_ascii=False))
    else:
        click.echo(f"Session ID: {session.id}")
        click.echo(f"Status: {session.status}")
        click.echo(f"Iterations: {session.iteration}")
    if session.status != SessionStatus.SUCCESS:
        raise click.ClickException(session.final_summary or "Session failed.")
    if not as_json and session.final_summary:
        click.echo(session.final_summary)


@cli.command("config")
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def config_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    click.echo(dumps_toml(config), nl=False)


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.option("--config", "config_value", default="orchestra.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
