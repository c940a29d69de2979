import base64
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from chat_sandbox.config.core import HealthSettings, SnapshotSettings
from chat_sandbox.core.local import LocalSandbox
from chat_sandbox.core.sandbox import ExecResult, SandboxHandle
from chat_sandbox.core.snapshots import SnapshotStore
from chat_sandbox.core.tenancy import Tenant
from chat_sandbox.storage.memory import MemoryObjectStore

Responder = ExecResult | Callable[[str], ExecResult]


class FakeSandbox(SandboxHandle):
    """In-memory sandbox that answers commands from registered fragments.

    The first registered fragment contained in a command decides the result;
    unmatched commands succeed with empty output.
    """

    def __init__(self, key: str = "chat-1") -> None:
        self.key = key
        self.commands: list[str] = []
        self.files: dict[str, bytes] = {}
        self.destroyed = False
        self._responders: list[tuple[str, Responder]] = []

    def on(self, fragment: str, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        self._responders.append((fragment, ExecResult(exit_code, stdout, stderr)))

    def on_call(self, fragment: str, responder: Callable[[str], ExecResult]) -> None:
        self._responders.append((fragment, responder))

    def ran(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]

    async def exec(self, command: str, *, timeout: float | None = None) -> ExecResult:
        self.commands.append(command)
        for fragment, responder in self._responders:
            if fragment in command:
                return responder(command) if callable(responder) else responder
        return ExecResult(0, "", "")

    async def write_file(self, path: str, content: str, *, encoding: str = "utf-8") -> None:
        self.files[path] = base64.b64decode(content) if encoding == "base64" else content.encode(encoding)

    async def read_file(self, path: str, *, encoding: str = "utf-8") -> str:
        data = self.files[path]
        return base64.b64encode(data).decode() if encoding == "base64" else data.decode(encoding)

    async def destroy(self) -> None:
        self.destroyed = True


class FakeProvider:
    def __init__(self) -> None:
        self.sandboxes: dict[str, FakeSandbox] = {}
        self.destroyed: list[str] = []

    async def get(self, key: str) -> FakeSandbox:
        if key not in self.sandboxes:
            self.sandboxes[key] = FakeSandbox(key)
        return self.sandboxes[key]

    async def destroy(self, key: str) -> None:
        sandbox = self.sandboxes.pop(key, None)
        if sandbox is not None:
            await sandbox.destroy()
        self.destroyed.append(key)


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def no_sleep(monkeypatch) -> AsyncMock:
    """Replace the health gate's backoff sleep; the mock records the delays."""
    sleep = AsyncMock()
    monkeypatch.setattr("chat_sandbox.core.health.asyncio.sleep", sleep)
    return sleep


@pytest.fixture
def fast_health() -> HealthSettings:
    return HealthSettings(attempts=3, probe_timeout=5, backoff_step=0)


@pytest.fixture
def tenant() -> Tenant:
    return Tenant(chat_id="100", sender_id="42", is_group=False)


@pytest.fixture
def other_tenant() -> Tenant:
    return Tenant(chat_id="200", sender_id="43", is_group=False)


@pytest.fixture
def watched_root(tmp_path: Path) -> Path:
    """Stand-in for the sandbox filesystem: two watched directories and a staging area."""
    root = tmp_path / "fs"
    (root / "workspace").mkdir(parents=True)
    (root / "home").mkdir()
    (root / "staging").mkdir()
    return root


@pytest.fixture
def snapshot_settings(watched_root: Path) -> SnapshotSettings:
    return SnapshotSettings(
        directories=[str(watched_root / "workspace"), str(watched_root / "home")],
        tmp_path=str(watched_root / "staging" / "snapshot.tar.gz"),
        chunk_prefix=str(watched_root / "staging" / "chunk_"),
        tar_timeout=30,
        split_timeout=30,
    )


@pytest.fixture
def local_sandbox(tmp_path: Path) -> LocalSandbox:
    root = tmp_path / "sandbox"
    root.mkdir()
    return LocalSandbox("chat-100", root)


@pytest.fixture
def object_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def snapshot_store(object_store: MemoryObjectStore, snapshot_settings: SnapshotSettings) -> SnapshotStore:
    return SnapshotStore(object_store, snapshot_settings)
