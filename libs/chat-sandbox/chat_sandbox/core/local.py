"""Local sandbox backend: commands run as host subprocesses.

Intended for development and tests. There is no isolation; absolute paths in
commands refer to the host filesystem, so point the snapshot directories and
temp paths somewhere disposable.
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path

import aiofiles
import aiofiles.os
import structlog

from . import codec
from .errors import SandboxTransientError
from .sandbox import ExecResult, SandboxHandle

logger = structlog.get_logger(__name__)


class LocalSandbox(SandboxHandle):
    def __init__(self, key: str, root: Path, env: dict[str, str] | None = None) -> None:
        self.key = key
        self.root = root
        self._env = env

    async def exec(self, command: str, *, timeout: float | None = None) -> ExecResult:
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        process = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            command,
            cwd=self.root,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise SandboxTransientError(f"Command timed out after {timeout}s") from e
        return ExecResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.root / candidate

    async def write_file(self, path: str, content: str, *, encoding: str = "utf-8") -> None:
        target = self._resolve(path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        payload = codec.decode(content) if encoding == "base64" else content.encode(encoding)
        async with aiofiles.open(target, "wb") as f:
            await f.write(payload)

    async def read_file(self, path: str, *, encoding: str = "utf-8") -> str:
        async with aiofiles.open(self._resolve(path), "rb") as f:
            data = await f.read()
        if encoding == "base64":
            return codec.encode(data)
        return data.decode(encoding)

    async def destroy(self) -> None:
        logger.info("Removing local sandbox root", sandbox_key=self.key, root=str(self.root))
        await asyncio.to_thread(shutil.rmtree, self.root, True)


class LocalProvider:
    """Keeps one working directory per sandbox key under ``base_dir``."""

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir) if base_dir else Path(tempfile.mkdtemp(prefix="chat-sandbox-"))
        self._sandboxes: dict[str, LocalSandbox] = {}

    async def get(self, key: str) -> LocalSandbox:
        sandbox = self._sandboxes.get(key)
        if sandbox is None:
            root = self._base_dir / key
            await aiofiles.os.makedirs(root, exist_ok=True)
            sandbox = LocalSandbox(key, root)
            self._sandboxes[key] = sandbox
        return sandbox

    async def destroy(self, key: str) -> None:
        sandbox = self._sandboxes.pop(key, None)
        if sandbox is not None:
            await sandbox.destroy()
