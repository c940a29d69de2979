"""Configuration models for the sandbox lifecycle engine."""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

MIB = 1024 * 1024


class DaytonaSettings(BaseModel):
    """Compute substrate connection."""

    api_key: str = ""
    base_url: str = "https://app.daytona.io/api"
    target: str | None = None
    snapshot_name: str | None = None
    # Idle minutes before Daytona stops (sleeps) a sandbox
    auto_stop_minutes: int = 60
    start_timeout: float = 60.0


class StorageSettings(BaseModel):
    """Object storage for snapshot archives."""

    backend: Literal["s3", "filesystem", "memory"] = "s3"
    bucket: str = "chat-sandbox-snapshots"
    endpoint_url: str | None = None
    region: str = "auto"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    local_root: Path = Path(".snapshots")


class SnapshotSettings(BaseModel):
    """What gets archived, where it is staged, and how it is moved."""

    directories: list[str] = Field(default_factory=lambda: ["/workspace", "/home/claude"])
    # Excluded when creating archives: mounted storage and large legacy caches
    create_excludes: list[str] = Field(
        default_factory=lambda: [
            "/media",
            "/media/*",
            "/home/claude/.memvid",
            "/home/claude/shared/*.mv2",
        ]
    )
    # Skipped when extracting: files the image ships fresh. Relative, as tar stores them.
    restore_excludes: list[str] = Field(
        default_factory=lambda: [
            "home/claude/.claude/skills",
            "home/claude/.claude/skills/*",
            "home/claude/.claude/settings.json",
            "home/claude/.claude/scripts",
            "home/claude/.claude/scripts/*",
            "home/claude/CLAUDE.md",
            "workspace/CLAUDE.md",
        ]
    )
    tmp_path: str = "/tmp/snapshot.tar.gz"
    chunk_prefix: str = "/tmp/snapshot_chunk_"
    extract_root: str = "/"
    tar_timeout: float = 60.0
    quick_timeout: float = 5.0
    split_timeout: float = 120.0
    streaming_threshold: int = 25 * MIB
    chunk_size: int = 5 * MIB


class HealthSettings(BaseModel):
    attempts: int = 3
    probe_timeout: float = 15.0
    # Linear backoff: attempt N failing waits N * backoff_step seconds
    backoff_step: float = 1.0
    probe_command: str = 'echo "alive"'


class ServerSettings(BaseModel):
    """The long-running agent process kept alive inside each sandbox."""

    port: int = 8080
    health_path: str = "/health"
    signature: str = "persistent_server.mjs"
    script_path: str = "/workspace/persistent_server.mjs"
    command: str = "node /workspace/persistent_server.mjs"
    log_path: str = "/workspace/persistent_server.log"
    files_dir: str = "/workspace/files"
    startup_timeout: float = 60.0
    delivery_timeout: float = 10.0
    one_shot_script_path: str = "/workspace/telegram_agent.mjs"
    one_shot_command: str = "node /workspace/telegram_agent.mjs"
    one_shot_input_path: str = "/workspace/input.json"
    one_shot_log_path: str = "/workspace/telegram_agent.log"


class ProviderSettings(BaseModel):
    """Model provider credentials handed to the agent process."""

    anthropic_api_key: str = ""
    use_openrouter: bool = False
    openrouter_api_key: str = ""
    openrouter_model: str = "z-ai/glm-4.7"
    openrouter_base_url: str = "https://openrouter.ai/api"
    home_dir: str = "/home/claude"
    default_timezone: str = "UTC"
    preferences_template: str = "/home/claude/private/{sender_id}/preferences.yaml"


class CacheSettings(BaseModel):
    # Endpoint URLs go stale shortly before the sandbox would sleep
    endpoint_ttl_seconds: float = 55 * 60


class CoreConfig(BaseModel):
    """Top-level configuration."""

    daytona: DaytonaSettings = Field(default_factory=DaytonaSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    snapshot: SnapshotSettings = Field(default_factory=SnapshotSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "CoreConfig":
        """Build configuration from environment variables.

        Args:
            env_file: Optional ``.env`` file loaded first (existing variables win).
        """
        if env_file is not None:
            load_dotenv(env_file)
        env = os.environ

        storage = StorageSettings(
            backend=env.get("CHAT_SANDBOX_STORAGE", "s3"),  # type: ignore[arg-type]
            bucket=env.get("CHAT_SANDBOX_BUCKET", StorageSettings().bucket),
            endpoint_url=env.get("R2_ENDPOINT_URL") or _r2_endpoint(env.get("CLOUDFLARE_ACCOUNT_ID")),
            region=env.get("AWS_REGION", "auto"),
            access_key_id=env.get("AWS_ACCESS_KEY_ID"),
            secret_access_key=env.get("AWS_SECRET_ACCESS_KEY"),
            local_root=Path(env.get("CHAT_SANDBOX_LOCAL_ROOT", ".snapshots")),
        )
        daytona = DaytonaSettings(
            api_key=env.get("DAYTONA_API_KEY", ""),
            base_url=env.get("DAYTONA_API_URL", DaytonaSettings().base_url),
            target=env.get("DAYTONA_TARGET"),
            snapshot_name=env.get("DAYTONA_SNAPSHOT"),
        )
        provider = ProviderSettings(
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            use_openrouter=env.get("USE_OPENROUTER", "").lower() == "true",
            openrouter_api_key=env.get("OPENROUTER_API_KEY", ""),
            openrouter_model=env.get("OPENROUTER_MODEL", ProviderSettings().openrouter_model),
        )
        return cls(
            daytona=daytona,
            storage=storage,
            provider=provider,
            log_level=env.get("CHAT_SANDBOX_LOG_LEVEL", "INFO"),
        )

    def validate_api_keys(self) -> None:
        """Raise if credentials required by the configured backends are missing."""
        missing = []
        if not self.daytona.api_key:
            missing.append("DAYTONA_API_KEY")
        if self.storage.backend == "s3" and not (self.storage.access_key_id and self.storage.secret_access_key):
            missing.extend(["AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"])
        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")


def _r2_endpoint(account_id: str | None) -> str | None:
    if not account_id:
        return None
    return f"https://{account_id}.r2.cloudflarestorage.com"
