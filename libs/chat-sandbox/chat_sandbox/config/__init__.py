"""Configuration for chat-sandbox."""

from .core import (
    CacheSettings,
    CoreConfig,
    DaytonaSettings,
    HealthSettings,
    ProviderSettings,
    ServerSettings,
    SnapshotSettings,
    StorageSettings,
)

__all__ = [
    "CacheSettings",
    "CoreConfig",
    "DaytonaSettings",
    "HealthSettings",
    "ProviderSettings",
    "ServerSettings",
    "SnapshotSettings",
    "StorageSettings",
]
