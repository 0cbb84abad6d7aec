from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import click

from relay.chat import ChatEvent, ChatPolicy, ChatService, ChatSession
from relay.config import DEFAULT_CONFIG_FILE, RelayConfig, load_config, save_config
from relay.harness import (
    AcceptAllValidator,
    CommandHealthChecker,
    CommandOutcomeValidator,
    Harness,
    HarnessError,
    HealthChecker,
    LoggingHarnessHooks,
    MarkerOutcomeValidator,
    NoopHealthChecker,
    OutcomeValidator,
    RunPolicy,
    RuntimeRunRequest,
    SafeHarnessHooks,
)
from relay.log import configure_logging
from relay.memory import (
    FeatureRecord,
    InitPlan,
    MemoryBackend,
    MemoryConversationStore,
    MemoryStoreError,
    create_memory_backend,
)
from relay.providers import ModelProvider, OpenAIProvider
from relay.tools import DefaultToolRuntime, LoggingToolHooks, ToolRegistry


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RelayConfig
    memory: MemoryBackend
    harness: Harness


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6]}"


def _build_provider(config: RelayConfig) -> ModelProvider:
    return OpenAIProvider(
        api_key_env=config.provider.api_key_env,
        base_url=config.provider.base_url or None,
        timeout_seconds=max(5.0, float(config.provider.timeout_seconds)),
    )


def _build_health_checker(config: RelayConfig, repo_root: Path) -> HealthChecker:
    if config.health.checker == "command":
        return CommandHealthChecker(cwd=repo_root, timeout_seconds=config.health.timeout_seconds)
    return NoopHealthChecker()


def _build_validator(config: RelayConfig, repo_root: Path) -> OutcomeValidator:
    if config.validation.validator == "command":
        if not config.validation.command.strip():
            raise click.ClickException("validation.command must be set for the command validator.")
        return CommandOutcomeValidator(
            config.validation.command,
            cwd=repo_root,
            timeout_seconds=config.validation.timeout_seconds,
        )
    if config.validation.validator == "marker":
        return MarkerOutcomeValidator()
    return AcceptAllValidator()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(config.logging.level, json_output=config.logging.json)
    try:
        memory = create_memory_backend(config.memory, base_dir=repo_root)
    except MemoryStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    chat = ChatService(
        _build_provider(config),
        store=MemoryConversationStore(memory),
        tool_runtime=DefaultToolRuntime(ToolRegistry(), hooks=LoggingToolHooks()),
        policy=ChatPolicy(
            max_tool_round_trips=config.chat.max_tool_round_trips,
            default_temperature=config.chat.temperature,
            default_max_tokens=config.chat.max_tokens,
        ),
    )
    try:
        harness = (
            Harness.builder(memory)
            .turn_executor(chat)
            .health_checker(_build_health_checker(config, repo_root))
            .validator(_build_validator(config, repo_root))
            .run_policy(
                RunPolicy(
                    max_turns_per_run=config.run.max_turns_per_run,
                    max_features_per_run=config.run.max_features_per_run,
                    retry_budget=config.run.retry_budget,
                )
            )
            .hooks(SafeHarnessHooks(LoggingHarnessHooks()))
            .build()
        )
    except HarnessError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        memory=memory,
        harness=harness,
    )


def _load_features(path: Path) -> list[FeatureRecord]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not read feature list {path}: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("features", [])
    if not isinstance(payload, list):
        raise click.ClickException("Feature list must be a JSON array of feature objects.")
    return [FeatureRecord.from_dict(item) for item in payload if isinstance(item, dict)]


def _echo_stream_event(event: ChatEvent) -> None:
    if event.kind == "text_delta":
        click.echo(event.text, nl=False)
    elif event.kind == "tool_started" and event.tool_call is not None:
        click.echo(f"\n[tool] {event.tool_call.name}", err=True)
    elif event.kind == "turn_complete":
        click.echo("")


@click.group()
def cli() -> None:
    """Relay CLI."""


@cli.command("init")
@click.option(
    "--memory-backend",
    type=click.Choice(["filesystem", "sqlite", "memory"]),
    default=None,
)
@click.option("--model", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(memory_backend: str | None, model: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if memory_backend:
        config.memory.backend = memory_backend  # type: ignore[assignment]
    if model:
        config.provider.model = model
    save_config(config_path, config)

    click.echo(f"Initialized Relay in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Memory backend: {config.memory.backend} ({config.memory.path})")
    click.echo(f"Model: {config.provider.model}")


@cli.command("run")
@click.option("--session", "session_id", required=True)
@click.option("--objective", default=None, help="Objective used when the session is new.")
@click.option(
    "--features",
    "features_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option("--run-id", default=None)
@click.option("--prompt", "prompt_override", default=None)
@click.option("--stream/--no-stream", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    session_id: str,
    objective: str | None,
    features_file: Path | None,
    run_id: str | None,
    prompt_override: str | None,
    stream: bool | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    use_stream = runtime.config.chat.stream if stream is None else stream
    request = RuntimeRunRequest(
        session=ChatSession(
            id=session_id,
            model=runtime.config.provider.model,
            system_prompt=runtime.config.chat.system_prompt or None,
        ),
        run_id=run_id or _new_run_id(),
        objective=objective,
        features=_load_features(features_file) if features_file else None,
        init_plan=InitPlan.from_commands(runtime.config.health.init_commands),
        stream=use_stream,
        prompt_override=prompt_override,
    )
    try:
        outcome = asyncio.run(
            runtime.harness.run(request, event_observer=_echo_stream_event if use_stream else None)
        )
    except HarnessError as exc:
        raise click.ClickException(f"[{exc.kind}] {exc}") from exc

    click.echo(f"Run ID: {request.run_id}")
    if outcome.initializer is not None:
        result = outcome.initializer
        state = "created" if result.created else "already initialized"
        click.echo(f"Session {result.session_id}: {state}")
        click.echo(f"Features: {result.feature_count}")
        return

    iteration = outcome.task_iteration
    if iteration is None:
        raise click.ClickException(f"run {request.run_id} produced no result")
    if iteration.status == "completed":
        click.echo("No pending features; session complete.")
        return
    click.echo(f"Feature {iteration.selected_feature_id}: validated")
    if iteration.session_complete:
        click.echo("All required features pass.")
    if iteration.assistant_message and not iteration.used_stream:
        click.echo(iteration.assistant_message)


@cli.command("status")
@click.option("--session", "session_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(session_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        if session_id is None:
            payload: Any = {"sessions": asyncio.run(runtime.memory.list_sessions())}
        else:
            state = asyncio.run(runtime.memory.load_bootstrap_state(session_id))
            payload = {
                "session_id": session_id,
                "initialized": state.is_initialized,
                "complete": state.all_features_passing(),
                "pending": [feature.id for feature in state.pending_features()],
                **state.to_dict(),
            }
    except MemoryStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("features")
@click.option("--session", "session_id", required=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def features_command(session_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        state = asyncio.run(runtime.memory.load_bootstrap_state(session_id))
    except MemoryStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if not state.is_initialized:
        raise click.ClickException(f"Session not initialized: {session_id}")
    for feature in state.features:
        mark = "x" if feature.passes else " "
        click.echo(f"[{mark}] {feature.id:<28} {feature.description}")
