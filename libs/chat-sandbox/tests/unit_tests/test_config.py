"""Tests for configuration loading."""

import pytest
import structlog

from chat_sandbox.config.core import MIB, CoreConfig
from chat_sandbox.logging_config import configure_logging

ENV_VARS = (
    "CHAT_SANDBOX_STORAGE",
    "CHAT_SANDBOX_BUCKET",
    "CHAT_SANDBOX_LOG_LEVEL",
    "R2_ENDPOINT_URL",
    "CLOUDFLARE_ACCOUNT_ID",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "DAYTONA_API_KEY",
    "DAYTONA_SNAPSHOT",
    "ANTHROPIC_API_KEY",
    "USE_OPENROUTER",
    "OPENROUTER_API_KEY",
    "OPENROUTER_MODEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv first so teardown also removes anything a .env file loads
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


def test_defaults():
    config = CoreConfig()

    assert config.snapshot.directories == ["/workspace", "/home/claude"]
    assert config.snapshot.streaming_threshold == 25 * MIB
    assert config.snapshot.chunk_size == 5 * MIB
    assert config.health.attempts == 3
    assert config.health.probe_timeout == 15
    assert config.server.port == 8080
    assert config.server.signature == "persistent_server.mjs"
    assert config.cache.endpoint_ttl_seconds == 55 * 60
    assert "/media" in config.snapshot.create_excludes
    assert "workspace/CLAUDE.md" in config.snapshot.restore_excludes


def test_from_env(monkeypatch):
    monkeypatch.setenv("CHAT_SANDBOX_STORAGE", "filesystem")
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct123")
    monkeypatch.setenv("DAYTONA_API_KEY", "dtn")
    monkeypatch.setenv("DAYTONA_SNAPSHOT", "agent-image")
    monkeypatch.setenv("USE_OPENROUTER", "True")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or")
    monkeypatch.setenv("CHAT_SANDBOX_LOG_LEVEL", "DEBUG")

    config = CoreConfig.from_env()

    assert config.storage.backend == "filesystem"
    assert config.storage.endpoint_url == "https://acct123.r2.cloudflarestorage.com"
    assert config.daytona.api_key == "dtn"
    assert config.daytona.snapshot_name == "agent-image"
    assert config.provider.use_openrouter is True
    assert config.provider.openrouter_api_key == "sk-or"
    assert config.log_level == "DEBUG"


def test_explicit_endpoint_wins_over_account_id(monkeypatch):
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct123")
    monkeypatch.setenv("R2_ENDPOINT_URL", "http://localhost:9000")

    assert CoreConfig.from_env().storage.endpoint_url == "http://localhost:9000"


def test_from_env_loads_dotenv_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("DAYTONA_API_KEY=from-file\nANTHROPIC_API_KEY=sk-file\n")

    config = CoreConfig.from_env(env_file)

    assert config.daytona.api_key == "from-file"
    assert config.provider.anthropic_api_key == "sk-file"


def test_validate_api_keys_lists_missing():
    with pytest.raises(ValueError) as exc_info:
        CoreConfig().validate_api_keys()

    message = str(exc_info.value)
    assert "DAYTONA_API_KEY" in message
    assert "AWS_ACCESS_KEY_ID" in message


def test_validate_api_keys_memory_backend_only_needs_daytona(monkeypatch):
    monkeypatch.setenv("DAYTONA_API_KEY", "dtn")
    monkeypatch.setenv("CHAT_SANDBOX_STORAGE", "memory")

    CoreConfig.from_env().validate_api_keys()


def test_configure_logging_renders_json(capsys):
    configure_logging("INFO", json=True)
    try:
        logger = structlog.get_logger("test")
        logger.debug("Hidden below level")
        logger.info("Snapshot created", snapshot_key="snapshots/42/100/a.tar.gz")
    finally:
        structlog.reset_defaults()

    out = capsys.readouterr().out
    assert '"event": "Snapshot created"' in out
    assert '"snapshot_key": "snapshots/42/100/a.tar.gz"' in out
    assert "Hidden below level" not in out
