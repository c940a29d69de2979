"""chat-sandbox: lifecycle, snapshot and restore engine for per-chat agent sandboxes."""

from chat_sandbox.config import CoreConfig
from chat_sandbox.core.lifecycle import SandboxLifecycle, TeardownResult
from chat_sandbox.core.tenancy import Tenant
from chat_sandbox.logging_config import configure_logging
from chat_sandbox.models import parse_request

__version__ = "0.1.0"

__all__ = [
    "CoreConfig",
    "SandboxLifecycle",
    "TeardownResult",
    "Tenant",
    "configure_logging",
    "parse_request",
]
