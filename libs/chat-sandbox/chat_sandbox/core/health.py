"""Sandbox health gate: confirm a sandbox executes commands before stateful work."""

import asyncio
import time

import structlog

from chat_sandbox.config.core import HealthSettings

from .errors import SandboxUnavailableError
from .sandbox import SandboxHandle

logger = structlog.get_logger(__name__)


async def ensure_healthy(sandbox: SandboxHandle, settings: HealthSettings | None = None) -> bool:
    """Probe ``sandbox`` with a trivial command, retrying while it wakes.

    The first probe against a sleeping sandbox is what starts waking it, so a
    failure is followed by a short linear backoff (1s, then 2s by default)
    rather than an immediate verdict. Probes are strictly sequential.

    Args:
        sandbox: Handle to probe.
        settings: Attempt count, probe timeout and backoff step.

    Returns:
        True once a probe exits 0; False if every attempt failed.
    """
    settings = settings or HealthSettings()
    started = time.monotonic()

    for attempt in range(1, settings.attempts + 1):
        try:
            result = await sandbox.exec(settings.probe_command, timeout=settings.probe_timeout)
            if result.exit_code == 0:
                logger.debug(
                    "Sandbox healthy",
                    sandbox_key=sandbox.key,
                    attempt=attempt,
                    elapsed=round(time.monotonic() - started, 2),
                )
                return True
            logger.warning(
                "Health probe exited non-zero",
                sandbox_key=sandbox.key,
                attempt=attempt,
                exit_code=result.exit_code,
            )
        except Exception as e:
            logger.warning(
                "Health probe failed",
                sandbox_key=sandbox.key,
                attempt=attempt,
                error=str(e),
                error_type=type(e).__name__,
            )

        if attempt < settings.attempts:
            delay = attempt * settings.backoff_step
            logger.debug("Waiting before next health probe", sandbox_key=sandbox.key, delay=delay)
            await asyncio.sleep(delay)

    logger.error("Sandbox health check failed", sandbox_key=sandbox.key, attempts=settings.attempts)
    return False


async def require_healthy(sandbox: SandboxHandle, settings: HealthSettings | None = None) -> None:
    """Like :func:`ensure_healthy` but raise instead of returning False.

    Raises:
        SandboxUnavailableError: If the sandbox never answered.
    """
    settings = settings or HealthSettings()
    if not await ensure_healthy(sandbox, settings):
        raise SandboxUnavailableError(sandbox.key, settings.attempts)
