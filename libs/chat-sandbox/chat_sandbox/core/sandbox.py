"""Compute sandbox handles: the contract the lifecycle engine drives, and the Daytona backend."""

import asyncio
import shlex
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

import structlog
from daytona_sdk import Daytona, DaytonaConfig
from daytona_sdk.common.daytona import CreateSandboxFromSnapshotParams

from chat_sandbox.config.core import DaytonaSettings

from . import codec
from .errors import SandboxTransientError, ServerStartupError

logger = structlog.get_logger(__name__)


@dataclass
class ExecResult:
    """Result of one shell command in a sandbox."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def diagnostic(self) -> str:
        return (self.stderr or self.stdout).strip()


@dataclass
class ProcessInfo:
    pid: int
    command: str


class SandboxProcess:
    """A process started inside a sandbox, addressable by pid."""

    def __init__(self, sandbox: "SandboxHandle", pid: int, command: str) -> None:
        self.sandbox = sandbox
        self.pid = pid
        self.command = command

    async def wait_for_port(
        self,
        port: int,
        *,
        path: str = "/",
        timeout: float = 60.0,
        status_range: tuple[int, int] = (200, 299),
        poll_interval: float = 0.5,
    ) -> int:
        """Poll ``http://localhost:<port><path>`` inside the sandbox until it answers.

        Only a status code inside ``status_range`` (inclusive) counts as ready.

        Returns:
            The status code that satisfied the range.

        Raises:
            ServerStartupError: If the deadline passes first.
        """
        low, high = status_range
        url = f"http://localhost:{port}{path}"
        probe = f"curl -s -o /dev/null -w '%{{http_code}}' --max-time 5 {shlex.quote(url)}"
        deadline = time.monotonic() + timeout
        last_status: str | None = None

        while True:
            try:
                result = await self.sandbox.exec(probe, timeout=10)
                last_status = result.stdout.strip()
                if last_status.isdigit() and low <= int(last_status) <= high:
                    logger.debug("Port ready", sandbox_key=self.sandbox.key, port=port, status=last_status)
                    return int(last_status)
            except SandboxTransientError as e:
                last_status = str(e)

            if time.monotonic() >= deadline:
                raise ServerStartupError(
                    f"Process {self.pid} on port {port} not ready after {timeout}s (last status: {last_status})"
                )
            await asyncio.sleep(poll_interval)


class SandboxHandle(ABC):
    """Live handle to one ephemeral compute instance.

    Backends implement command execution and file transfer; process listing and
    background launch are built on top of ``exec`` so they behave the same
    everywhere.
    """

    key: str

    @abstractmethod
    async def exec(self, command: str, *, timeout: float | None = None) -> ExecResult:
        """Run ``command`` through a shell and wait for it to exit."""

    @abstractmethod
    async def write_file(self, path: str, content: str, *, encoding: str = "utf-8") -> None:
        """Write ``content`` to ``path``.

        With ``encoding="base64"`` the content is base64 text and the decoded
        bytes are written.
        """

    @abstractmethod
    async def read_file(self, path: str, *, encoding: str = "utf-8") -> str:
        """Read ``path``; with ``encoding="base64"`` return base64 text of the raw bytes."""

    @abstractmethod
    async def destroy(self) -> None:
        """Tear the instance down, discarding its filesystem."""

    async def endpoint_url(self, port: int) -> str:
        """URL at which ``port`` inside the sandbox is reachable from outside."""
        return f"http://localhost:{port}"

    async def list_processes(self) -> list[ProcessInfo]:
        result = await self.exec("ps -eo pid=,args=", timeout=10)
        if not result.success:
            raise SandboxTransientError(f"Failed to list processes: {result.diagnostic}")
        processes = []
        for line in result.stdout.splitlines():
            parts = line.strip().split(maxsplit=1)
            if len(parts) == 2 and parts[0].isdigit():
                processes.append(ProcessInfo(pid=int(parts[0]), command=parts[1]))
        return processes

    async def start_process(
        self,
        command: str,
        *,
        env: dict[str, str] | None = None,
        log_path: str = "/dev/null",
    ) -> SandboxProcess:
        """Launch ``command`` detached from the calling shell.

        Environment values go through a short-lived env file rather than the
        command line, so credentials never show up in process listings.
        """
        env_file = f"/tmp/.proc-env-{uuid.uuid4().hex}"
        exports = "".join(f"export {name}={shlex.quote(value)}\n" for name, value in (env or {}).items())
        await self.write_file(env_file, exports)

        inner = f". {env_file}; rm -f {env_file}; exec {command}"
        launch = f"nohup sh -c {shlex.quote(inner)} > {shlex.quote(log_path)} 2>&1 < /dev/null & echo $!"
        result = await self.exec(launch, timeout=10)
        pid_text = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        if not result.success or not pid_text.isdigit():
            raise ServerStartupError(f"Failed to launch '{command}': {result.diagnostic}")

        logger.info("Started process", sandbox_key=self.key, pid=int(pid_text), command=command)
        return SandboxProcess(self, int(pid_text), command)


class SandboxProvider(Protocol):
    """Resolves sandbox keys (``chat-<chatId>``) to live handles."""

    async def get(self, key: str) -> SandboxHandle: ...

    async def destroy(self, key: str) -> None: ...


def _is_transient_daytona_error(e: Exception) -> bool:
    message = str(e).lower()
    transient_markers = (
        "remote end closed connection",
        "remotedisconnected",
        "connection aborted",
        "connection reset",
        "broken pipe",
        "timed out",
        "timeout",
        "service unavailable",
        "502",
        "503",
        "504",
    )
    return any(marker in message for marker in transient_markers)


def _state_value(sandbox: Any) -> str | None:
    state = getattr(sandbox, "state", None)
    if state is None:
        return None
    return state.value if hasattr(state, "value") else str(state)


async def _run_sync(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous Daytona SDK call in the default thread pool."""
    loop = asyncio.get_running_loop()
    if kwargs:
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))
    return await loop.run_in_executor(None, func, *args)


class DaytonaSandbox(SandboxHandle):
    """Sandbox handle backed by a Daytona sandbox.

    Daytona sandboxes auto-stop after an idle interval. The first command
    against a stopped sandbox starts it; that call usually outlives the health
    probe timeout, which is what the health gate's retries absorb.
    """

    WAKE_STATES = ("stopped", "archived")

    def __init__(self, key: str, sandbox: Any, start_timeout: float = 60) -> None:
        self.key = key
        # External Daytona SDK sandbox object
        self.sandbox = sandbox
        self.start_timeout = start_timeout

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await _run_sync(func, *args, **kwargs)
        except Exception as e:
            if _is_transient_daytona_error(e):
                raise SandboxTransientError(f"Transient sandbox transport error: {e}") from e
            raise

    async def _wake_if_stopped(self) -> None:
        state = _state_value(self.sandbox)
        if state in self.WAKE_STATES:
            logger.info("Starting stopped sandbox", sandbox_key=self.key, state=state)
            await self._call(self.sandbox.start, timeout=self.start_timeout)

    async def exec(self, command: str, *, timeout: float | None = None) -> ExecResult:
        await self._wake_if_stopped()
        timeout_s = int(timeout) if timeout else None
        response = await self._call(self.sandbox.process.exec, command, timeout=timeout_s)
        exit_code = int(getattr(response, "exit_code", 1))
        output = getattr(response, "result", "") or ""
        # Daytona merges both streams into ``result``
        return ExecResult(exit_code=exit_code, stdout=output, stderr="" if exit_code == 0 else output)

    async def write_file(self, path: str, content: str, *, encoding: str = "utf-8") -> None:
        await self._wake_if_stopped()
        payload = codec.decode(content) if encoding == "base64" else content.encode(encoding)
        await self._call(self.sandbox.fs.upload_file, payload, path)

    async def read_file(self, path: str, *, encoding: str = "utf-8") -> str:
        await self._wake_if_stopped()
        data: bytes = await self._call(self.sandbox.fs.download_file, path)
        if encoding == "base64":
            return codec.encode(data)
        return data.decode(encoding)

    async def destroy(self) -> None:
        logger.info("Deleting sandbox", sandbox_key=self.key)
        await self._call(self.sandbox.delete)

    async def endpoint_url(self, port: int) -> str:
        await self._wake_if_stopped()
        link = await self._call(self.sandbox.get_preview_link, port)
        return link.url


class DaytonaProvider:
    """Finds or creates one Daytona sandbox per sandbox key."""

    KEY_LABEL = "chat-sandbox-key"

    def __init__(self, settings: DaytonaSettings) -> None:
        self.settings = settings
        self.daytona_client = Daytona(
            DaytonaConfig(
                api_key=settings.api_key,
                api_url=settings.base_url,
                target=settings.target,
            )
        )
        logger.info("Initialized DaytonaProvider")

    async def _find(self, key: str) -> Any | None:
        result = await _run_sync(self.daytona_client.list, {self.KEY_LABEL: key})
        sandboxes = result.items if hasattr(result, "items") else result
        for sandbox in sandboxes or []:
            if getattr(sandbox, "labels", {}).get(self.KEY_LABEL) == key:
                return sandbox
        return None

    async def get(self, key: str) -> DaytonaSandbox:
        sandbox = await self._find(key)
        if sandbox is None:
            logger.info("Creating sandbox", sandbox_key=key, snapshot=self.settings.snapshot_name)
            sandbox = await _run_sync(
                self.daytona_client.create,
                CreateSandboxFromSnapshotParams(
                    snapshot=self.settings.snapshot_name,
                    labels={self.KEY_LABEL: key},
                    auto_stop_interval=self.settings.auto_stop_minutes,
                ),
            )
        return DaytonaSandbox(key, sandbox, start_timeout=self.settings.start_timeout)

    async def destroy(self, key: str) -> None:
        sandbox = await self._find(key)
        if sandbox is None:
            logger.info("No sandbox to destroy", sandbox_key=key)
            return
        await DaytonaSandbox(key, sandbox).destroy()
