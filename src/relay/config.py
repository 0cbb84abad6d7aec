from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ProviderName = Literal["openai"]
MemoryBackendName = Literal["memory", "filesystem", "sqlite"]
HealthCheckerName = Literal["noop", "command"]
ValidatorName = Literal["accept_all", "command", "marker"]

DEFAULT_CONFIG_FILE = "relay.toml"


@dataclass(slots=True)
class ProviderConfig:
    name: ProviderName = "openai"
    model: str = "gpt-4o-mini"
    base_url: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class ChatConfig:
    system_prompt: str = (
        "You are a careful software agent. Work on exactly one feature per run "
        "and leave the workspace in a clean state for the next run."
    )
    max_tool_round_trips: int = 4
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


@dataclass(slots=True)
class RunConfig:
    max_turns_per_run: int = 1
    max_features_per_run: int = 1
    retry_budget: int | None = None


@dataclass(slots=True)
class MemoryConfig:
    backend: MemoryBackendName = "filesystem"
    path: str = ".relay/state"


@dataclass(slots=True)
class HealthConfig:
    checker: HealthCheckerName = "noop"
    timeout_seconds: float = 60.0
    init_commands: list[str] = field(
        default_factory=lambda: ["git status --short --branch", "git log --oneline -20"]
    )


@dataclass(slots=True)
class ValidationConfig:
    validator: ValidatorName = "accept_all"
    command: str = ""
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "info"
    json: bool = False


@dataclass(slots=True)
class RelayConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    run: RunConfig = field(default_factory=RunConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> RelayConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RelayConfig:
        return cls(
            provider=ProviderConfig(**data.get("provider", {})),
            chat=ChatConfig(**data.get("chat", {})),
            run=RunConfig(**data.get("run", {})),
            memory=MemoryConfig(**data.get("memory", {})),
            health=HealthConfig(**data.get("health", {})),
            validation=ValidationConfig(**data.get("validation", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "provider": {
                "name": self.provider.name,
                "model": self.provider.model,
                "base_url": self.provider.base_url,
                "api_key_env": self.provider.api_key_env,
                "timeout_seconds": self.provider.timeout_seconds,
            },
            "chat": {
                "system_prompt": self.chat.system_prompt,
                "max_tool_round_trips": self.chat.max_tool_round_trips,
                "temperature": self.chat.temperature,
                "max_tokens": self.chat.max_tokens,
                "stream": self.chat.stream,
            },
            "run": {
                "max_turns_per_run": self.run.max_turns_per_run,
                "max_features_per_run": self.run.max_features_per_run,
                "retry_budget": self.run.retry_budget,
            },
            "memory": {
                "backend": self.memory.backend,
                "path": self.memory.path,
            },
            "health": {
                "checker": self.health.checker,
                "timeout_seconds": self.health.timeout_seconds,
                "init_commands": list(self.health.init_commands),
            },
            "validation": {
                "validator": self.validation.validator,
                "command": self.validation.command,
                "timeout_seconds": self.validation.timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RelayConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["provider", "chat", "run", "memory", "health", "validation", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; unset optional values are left out.
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RelayConfig:
    if not path.exists():
        return RelayConfig.default()
    return RelayConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RelayConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
