import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from click.testing import CliRunner

import relay.cli
from relay.cli import cli
from relay.config import RelayConfig, load_config, save_config
from relay.providers import ModelProvider, ModelRequest, ModelResponse, StreamEvent


class FakeProvider(ModelProvider):
    name = "fake"

    def __init__(self) -> None:
        self.requests: list[ModelRequest] = []

    def _respond(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        prompt = request.messages[-1].content
        feature = next(
            line.split(": ", 1)[1] for line in prompt.splitlines() if line.startswith("Feature: ")
        )
        return ModelResponse(model=request.model, content=f"FEATURE_COMPLETE: {feature}")

    async def complete(self, request: ModelRequest) -> ModelResponse:
        return self._respond(request)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        response = self._respond(request)
        yield StreamEvent(kind="text_delta", text=response.content)
        yield StreamEvent(kind="response_complete", response=response)


@pytest.fixture()
def provider(monkeypatch: pytest.MonkeyPatch) -> FakeProvider:
    fake = FakeProvider()

    def _build_provider(config: RelayConfig) -> ModelProvider:
        return fake

    monkeypatch.setattr(relay.cli, "_build_provider", _build_provider)
    return fake


def _write_features(path: Path) -> Path:
    path.write_text(
        json.dumps(
            {
                "features": [
                    {"id": "auth.login", "description": "Users can log in", "steps": ["pytest -k login"]},
                    {"id": "auth.logout", "description": "Users can log out", "steps": ["pytest -k logout"]},
                ]
            }
        ),
        encoding="utf-8",
    )
    return path


def _init(runner: CliRunner, tmp_path: Path, *args: str) -> None:
    result = runner.invoke(cli, ["init", *args])
    assert result.exit_code == 0, result.output
    config_path = tmp_path / "relay.toml"
    config = load_config(config_path)
    config.logging.level = "error"
    config.validation.validator = "marker"
    save_config(config_path, config)


def test_init_writes_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--memory-backend", "sqlite", "--model", "gpt-test"])

    assert result.exit_code == 0, result.output
    assert "Memory backend: sqlite" in result.output
    config = load_config(tmp_path / "relay.toml")
    assert config.memory.backend == "sqlite"
    assert config.provider.model == "gpt-test"


@pytest.mark.parametrize("backend", ["filesystem", "sqlite"])
def test_session_runs_to_completion(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider, backend: str
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner, tmp_path, "--memory-backend", backend)
    features = _write_features(tmp_path / "features.json")

    created = runner.invoke(
        cli,
        [
            "run",
            "--session",
            "demo",
            "--objective",
            "Add authentication",
            "--features",
            str(features),
            "--run-id",
            "init-1",
        ],
    )
    assert created.exit_code == 0, created.output
    assert "Session demo: created" in created.output
    assert "Features: 2" in created.output
    assert provider.requests == []

    first = runner.invoke(cli, ["run", "--session", "demo", "--run-id", "run-1"])
    assert first.exit_code == 0, first.output
    assert "Feature auth.login: validated" in first.output
    assert "FEATURE_COMPLETE: auth.login" in first.output

    second = runner.invoke(cli, ["run", "--session", "demo", "--stream"])
    assert second.exit_code == 0, second.output
    assert "Feature auth.logout: validated" in second.output
    assert "All required features pass." in second.output
    assert "Run ID: run-" in second.output

    done = runner.invoke(cli, ["run", "--session", "demo"])
    assert done.exit_code == 0, done.output
    assert "No pending features" in done.output
    assert len(provider.requests) == 2

    listing = runner.invoke(cli, ["features", "--session", "demo"])
    assert listing.exit_code == 0, listing.output
    assert "[x] auth.login" in listing.output
    assert "[x] auth.logout" in listing.output

    status = runner.invoke(cli, ["status", "--session", "demo"])
    assert status.exit_code == 0, status.output
    payload = json.loads(status.output)
    assert payload["complete"] is True
    assert payload["pending"] == []
    assert payload["checkpoints"][0]["run_id"] == "init-1"
    assert all(item["status"] == "succeeded" for item in payload["checkpoints"])
    assert len(payload["progress"]) == 4

    sessions = runner.invoke(cli, ["status"])
    assert json.loads(sessions.output) == {"sessions": ["demo"]}


def test_run_reports_typed_harness_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner, tmp_path)

    result = runner.invoke(cli, ["run", "--session", "demo"])

    assert result.exit_code == 1
    assert "[invalid_request]" in result.output
    assert "objective must not be empty" in result.output


def test_reused_run_id_is_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner, tmp_path)
    runner.invoke(cli, ["run", "--session", "demo", "--objective", "Ship it", "--run-id", "init-1"])

    result = runner.invoke(cli, ["run", "--session", "demo", "--run-id", "init-1"])

    assert result.exit_code == 1
    assert "[invalid_request]" in result.output
    assert provider.requests == []


def test_features_requires_initialized_session(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner, tmp_path)

    result = runner.invoke(cli, ["features", "--session", "missing"])

    assert result.exit_code == 1
    assert "Session not initialized: missing" in result.output


def test_command_validator_requires_a_command(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init(runner, tmp_path)
    config = load_config(tmp_path / "relay.toml")
    config.validation.validator = "command"
    save_config(tmp_path / "relay.toml", config)

    result = runner.invoke(cli, ["run", "--session", "demo", "--objective", "Ship it"])

    assert result.exit_code == 1
    assert "validation.command" in result.output
