"""Persistent process supervisor: one long-running agent server per sandbox."""

import json
import re
import shlex
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from chat_sandbox.config.core import ProviderSettings, ServerSettings

from .errors import SandboxUnavailableError
from .restore import RestoreEngine
from .sandbox import ProcessInfo, SandboxHandle
from .tenancy import Tenant

logger = structlog.get_logger(__name__)

# curl exit codes for requests that never reached the server
CURL_TRANSPORT_FAILURES = frozenset({6, 7, 52, 55, 56})

_TIMEZONE_LINE = re.compile(r"""^\s*timezone:\s*["']?([^"'\s#]+)""", re.MULTILINE)


@dataclass
class StartupConfig:
    """What the supervisor needs to bring up a tenant's server."""

    tenant: Tenant
    # Extra variables merged over the derived startup environment
    env: dict[str, str] = field(default_factory=dict)
    restore: bool = True


@dataclass
class EnsureRunningResult:
    status: Literal["already_running", "started"]
    pid: int
    restored_from: str | None = None

    @property
    def already_running(self) -> bool:
        return self.status == "already_running"


@dataclass
class DeliveryResult:
    mode: Literal["persistent", "one-shot"]
    response: str = ""
    error: str | None = None


def build_startup_env(provider: ProviderSettings, timezone: str) -> dict[str, str]:
    """Environment handed to the agent process.

    With OpenRouter enabled the Anthropic client is pointed at OpenRouter's
    compatible endpoint and the Anthropic key is blanked.
    """
    env = {
        "HOME": provider.home_dir,
        "TZ": timezone,
        "OPENROUTER_API_KEY": provider.openrouter_api_key,
    }
    if provider.use_openrouter:
        env.update(
            {
                "ANTHROPIC_BASE_URL": provider.openrouter_base_url,
                "ANTHROPIC_AUTH_TOKEN": provider.openrouter_api_key,
                "ANTHROPIC_API_KEY": "",
                "ANTHROPIC_DEFAULT_SONNET_MODEL": provider.openrouter_model,
            }
        )
    else:
        env["ANTHROPIC_API_KEY"] = provider.anthropic_api_key
    return env


def parse_timezone(preferences: str) -> str | None:
    match = _TIMEZONE_LINE.search(preferences)
    return match.group(1) if match else None


async def read_user_timezone(sandbox: SandboxHandle, sender_id: str | None, provider: ProviderSettings) -> str:
    """Timezone from the sender's preferences file, or the configured default."""
    if not sender_id:
        return provider.default_timezone
    path = provider.preferences_template.format(sender_id=sender_id)
    try:
        result = await sandbox.exec(f"cat {shlex.quote(path)} 2>/dev/null", timeout=5)
    except Exception as e:
        logger.warning("Could not read user preferences", sandbox_key=sandbox.key, error=str(e))
        return provider.default_timezone
    if not result.success:
        return provider.default_timezone
    return parse_timezone(result.stdout) or provider.default_timezone


class ProcessSupervisor:
    """Starts the agent server idempotently and hands it work.

    At most one server matching ``settings.signature`` runs per sandbox. That
    is enforced by checking the process list before every start, not by a lock.
    """

    def __init__(
        self,
        settings: ServerSettings,
        provider: ProviderSettings,
        restore_engine: RestoreEngine | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.restore_engine = restore_engine

    async def find_running(self, sandbox: SandboxHandle) -> ProcessInfo | None:
        for process in await sandbox.list_processes():
            if self.settings.signature in process.command and "sh -c" not in process.command:
                return process
        return None

    async def startup_env(self, sandbox: SandboxHandle, config: StartupConfig) -> dict[str, str]:
        timezone = await read_user_timezone(sandbox, config.tenant.sender_id, self.provider)
        env = build_startup_env(self.provider, timezone)
        env.update(config.env)
        return env

    async def ensure_running(self, sandbox: SandboxHandle, config: StartupConfig) -> EnsureRunningResult:
        """Return the running server, starting it first if there is none.

        A cold start restores the tenant's latest snapshot before launching;
        having no snapshot is normal for a new tenant.

        Raises:
            SandboxUnavailableError: If the restore found the sandbox unreachable.
            ServerStartupError: If the server never answered its health endpoint.
        """
        existing = await self.find_running(sandbox)
        if existing is not None:
            logger.debug("Agent server already running", sandbox_key=sandbox.key, pid=existing.pid)
            return EnsureRunningResult(status="already_running", pid=existing.pid)

        restored_from = None
        if config.restore and self.restore_engine is not None:
            restored_from = await self._restore_cold_start(sandbox, self.restore_engine, config.tenant)

        env = await self.startup_env(sandbox, config)
        await sandbox.exec(f"mkdir -p {shlex.quote(self.settings.files_dir)}", timeout=5)
        process = await sandbox.start_process(self.settings.command, env=env, log_path=self.settings.log_path)
        await process.wait_for_port(
            self.settings.port,
            path=self.settings.health_path,
            timeout=self.settings.startup_timeout,
            status_range=(200, 299),
        )
        logger.info("Agent server started", sandbox_key=sandbox.key, pid=process.pid, restored_from=restored_from)
        return EnsureRunningResult(status="started", pid=process.pid, restored_from=restored_from)

    async def _restore_cold_start(self, sandbox: SandboxHandle, engine: RestoreEngine, tenant: Tenant) -> str | None:
        try:
            result = await engine.restore_latest(sandbox, tenant)
        except SandboxUnavailableError:
            raise
        except Exception as e:
            # Starting with an empty workspace beats not starting at all
            logger.warning("Cold-start restore failed, starting without it", sandbox_key=sandbox.key, error=str(e))
            return None
        if result is None:
            logger.info("No snapshot to restore on cold start", sandbox_key=sandbox.key)
            return None
        return result.restored_from

    async def deliver(
        self,
        sandbox: SandboxHandle,
        payload: dict[str, Any],
        env: dict[str, str] | None = None,
    ) -> DeliveryResult:
        """POST ``payload`` to the running server.

        If the request never reached the server (no connection, or the
        connection dropped before a reply), run the one-shot agent for this
        payload instead. An HTTP error status or a slow reply means the server
        has the message, so it is reported without falling back. The fallback
        never starts a second server.
        """
        body_path = f"/tmp/message-{uuid.uuid4().hex}.json"
        url = f"http://localhost:{self.settings.port}/message"
        command = (
            f"curl -sS -X POST -H 'Content-Type: application/json' "
            f"--max-time {int(self.settings.delivery_timeout)} "
            f"--data-binary @{shlex.quote(body_path)} {shlex.quote(url)}; "
            f"status=$?; rm -f {shlex.quote(body_path)}; exit $status"
        )
        try:
            await sandbox.write_file(body_path, json.dumps(payload))
            result = await sandbox.exec(command, timeout=self.settings.delivery_timeout + 5)
        except Exception as e:
            error = str(e)
        else:
            if result.success:
                return DeliveryResult(mode="persistent", response=result.stdout)
            error = result.diagnostic or f"curl exited with code {result.exit_code}"
            if result.exit_code not in CURL_TRANSPORT_FAILURES:
                logger.warning("Agent server did not confirm delivery", sandbox_key=sandbox.key, error=error)
                return DeliveryResult(mode="persistent", response=result.stdout, error=error)

        logger.warning("Delivery to agent server failed, using one-shot agent", sandbox_key=sandbox.key, error=error)
        await self.run_one_shot(sandbox, payload, env)
        return DeliveryResult(mode="one-shot", error=error)

    async def run_one_shot(self, sandbox: SandboxHandle, payload: dict[str, Any], env: dict[str, str] | None) -> int:
        await sandbox.write_file(self.settings.one_shot_input_path, json.dumps(payload))
        process = await sandbox.start_process(
            self.settings.one_shot_command,
            env=env,
            log_path=self.settings.one_shot_log_path,
        )
        logger.info("One-shot agent launched", sandbox_key=sandbox.key, pid=process.pid)
        return process.pid

    async def dispatch(self, sandbox: SandboxHandle, config: StartupConfig, payload: dict[str, Any]) -> DeliveryResult:
        """Ensure the server is up, then deliver one unit of work to it."""
        await self.ensure_running(sandbox, config)
        env = await self.startup_env(sandbox, config)
        return await self.deliver(sandbox, payload, env)
