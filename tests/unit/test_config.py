"""Unit tests for configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from workflow_orchestrator.orchestrator.config import EngineSettings
from workflow_orchestrator.server.config import ServerSettings

ENV_VARS = (
    "LOG_LEVEL",
    "WORKFLOW_STATE_PATH",
    "WORKFLOW_FOREACH_MAX_ITEMS",
    "WORKFLOW_OUTBOUND_TIMEOUT_MS",
    "WORKFLOW_OUTBOUND_MAX_RETRIES",
    "WORKFLOW_OUTBOUND_RETRY_DELAY_MS",
    "WORKFLOW_PUBLIC_BASE_URL",
    "WORKFLOW_SERVER_HOST",
    "WORKFLOW_SERVER_PORT",
    "WORKFLOW_DEADLINE_CHECK_ENABLED",
    "WORKFLOW_DEADLINE_CHECK_INTERVAL_SECONDS",
    "WORKFLOW_CORS_ORIGINS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_engine_settings_defaults() -> None:
    """Test engine settings default values."""
    settings = EngineSettings()

    assert settings.log_level == "INFO"
    assert settings.state_path is None
    assert settings.foreach_max_items == 100
    assert settings.outbound_timeout_ms == 30_000
    assert settings.outbound_max_retries == 3
    assert settings.outbound_retry_delay_ms == 1_000
    assert settings.public_base_url == ""


def test_engine_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", " debug ")
    monkeypatch.setenv("WORKFLOW_STATE_PATH", "/var/lib/orchestrator/state.json")
    monkeypatch.setenv("WORKFLOW_FOREACH_MAX_ITEMS", "250")
    monkeypatch.setenv("WORKFLOW_PUBLIC_BASE_URL", "https://flows.example.com")

    settings = EngineSettings()

    assert settings.log_level == "DEBUG"
    assert settings.state_path == Path("/var/lib/orchestrator/state.json")
    assert settings.foreach_max_items == 250
    assert settings.public_base_url == "https://flows.example.com"


def test_blank_state_path_means_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_STATE_PATH", "   ")

    assert EngineSettings().state_path is None


def test_env_file_is_read(tmp_path: Path) -> None:
    env_file = tmp_path / "custom.env"
    env_file.write_text(
        "WORKFLOW_FOREACH_MAX_ITEMS=7\nWORKFLOW_OUTBOUND_MAX_RETRIES=0\n", encoding="utf-8"
    )

    settings = EngineSettings(_env_file=env_file)  # type: ignore[call-arg]

    assert settings.foreach_max_items == 7
    assert settings.outbound_max_retries == 0


def test_dotenv_in_working_directory(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("LOG_LEVEL=warning\n", encoding="utf-8")

    assert EngineSettings().log_level == "WARNING"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("LOG_LEVEL", "verbose"),
        ("WORKFLOW_FOREACH_MAX_ITEMS", "0"),
        ("WORKFLOW_OUTBOUND_TIMEOUT_MS", "0"),
        ("WORKFLOW_OUTBOUND_MAX_RETRIES", "11"),
    ],
)
def test_invalid_engine_settings(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        EngineSettings()


def test_server_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test server settings defaults and overrides."""
    defaults = ServerSettings()
    assert (defaults.host, defaults.port) == ("127.0.0.1", 8000)
    assert defaults.deadline_check_enabled is False
    assert defaults.parsed_cors_origins() == ["http://localhost:5173", "http://127.0.0.1:5173"]

    monkeypatch.setenv("WORKFLOW_SERVER_PORT", "9100")
    monkeypatch.setenv("WORKFLOW_DEADLINE_CHECK_ENABLED", "true")
    monkeypatch.setenv("WORKFLOW_DEADLINE_CHECK_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("WORKFLOW_CORS_ORIGINS", "https://a.test, ,https://b.test ")

    settings = ServerSettings()

    assert settings.port == 9100
    assert settings.deadline_check_enabled is True
    assert settings.deadline_check_interval_seconds == 2.5
    assert settings.parsed_cors_origins() == ["https://a.test", "https://b.test"]
