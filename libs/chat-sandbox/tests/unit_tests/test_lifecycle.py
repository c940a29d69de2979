"""Tests for the per-tenant lifecycle service."""

import asyncio

import pytest

from chat_sandbox.config.core import CoreConfig, HealthSettings, ServerSettings
from chat_sandbox.core.errors import RestoreError, RestoreStep
from chat_sandbox.core.lifecycle import SandboxLifecycle
from chat_sandbox.core.local import LocalProvider
from chat_sandbox.core.sandbox import ExecResult
from chat_sandbox.core.snapshots import SnapshotStore
from chat_sandbox.models import parse_request


@pytest.fixture
def config(snapshot_settings) -> CoreConfig:
    return CoreConfig(
        snapshot=snapshot_settings,
        health=HealthSettings(backoff_step=0),
        server=ServerSettings(startup_timeout=0),
    )


@pytest.fixture
def lifecycle(fake_provider, object_store, config) -> SandboxLifecycle:
    return SandboxLifecycle(fake_provider, SnapshotStore(object_store, config.snapshot), config)


@pytest.fixture
def local_lifecycle(tmp_path, object_store, config) -> SandboxLifecycle:
    provider = LocalProvider(tmp_path / "sandboxes")
    return SandboxLifecycle(provider, SnapshotStore(object_store, config.snapshot), config)


def _serving(sandbox):
    """Make a fake sandbox launch and serve the agent server."""
    processes = []

    def launch(command):
        processes.append("9001 node /workspace/persistent_server.mjs")
        return ExecResult(0, "9001\n", "")

    sandbox.on_call("ps -eo", lambda _: ExecResult(0, "\n".join(processes), ""))
    sandbox.on_call("nohup", launch)
    sandbox.on("http_code", stdout="200")


async def test_snapshot_and_restore_through_local_provider(local_lifecycle, tenant, watched_root):
    (watched_root / "workspace" / "app.py").write_text("print(1)\n")
    created = await local_lifecycle.create_snapshot(tenant)
    (watched_root / "workspace" / "app.py").write_text("print(2)\n")

    restored = await local_lifecycle.restore_snapshot(tenant)

    assert restored.restored_from == created.key
    assert (watched_root / "workspace" / "app.py").read_text() == "print(1)\n"
    assert [s.key for s in await local_lifecycle.list_snapshots(tenant)] == [created.key]
    assert (await local_lifecycle.get_latest_snapshot(tenant)).key == created.key


async def test_restore_without_snapshots_returns_none(lifecycle, tenant):
    assert await lifecycle.restore_snapshot(tenant) is None


async def test_restore_invalidates_cached_endpoint(local_lifecycle, tenant, watched_root):
    (watched_root / "workspace" / "app.py").write_text("x")
    created = await local_lifecycle.create_snapshot(tenant)
    await local_lifecycle.endpoint_url(tenant)
    assert local_lifecycle.endpoints.get(tenant.sandbox_key) == "http://localhost:8080"

    await local_lifecycle.restore_snapshot(tenant, created.key)

    assert local_lifecycle.endpoints.get(tenant.sandbox_key) is None


async def test_failed_restore_still_invalidates_cached_endpoint(local_lifecycle, object_store, tenant):
    key = tenant.new_snapshot_key()
    await object_store.put(key, b"this is not a gzip stream")
    await local_lifecycle.endpoint_url(tenant)

    with pytest.raises(RestoreError) as exc_info:
        await local_lifecycle.restore_snapshot(tenant, key)

    assert exc_info.value.step is RestoreStep.EXTRACTING
    assert local_lifecycle.endpoints.get(tenant.sandbox_key) is None


async def test_restart_snapshots_then_destroys(lifecycle, fake_provider, object_store, tenant):
    sandbox = await fake_provider.get(tenant.sandbox_key)
    sandbox.on("test -d", stdout="file\n")
    sandbox.on("stat -c", stdout="3\n")
    sandbox.files[lifecycle.config.snapshot.tmp_path] = b"abc"
    lifecycle.endpoints.set(tenant.sandbox_key, "https://old")

    result = await lifecycle.restart(tenant)

    assert result.snapshot_key is not None
    stored = await object_store.get(result.snapshot_key)
    assert stored.data == b"abc"
    assert stored.info.metadata["reason"] == "pre-restart"
    assert sandbox.destroyed
    assert fake_provider.destroyed == [tenant.sandbox_key]
    assert lifecycle.endpoints.get(tenant.sandbox_key) is None
    assert result.ready is None


async def test_teardown_continues_when_snapshot_fails(lifecycle, fake_provider, tenant):
    sandbox = await fake_provider.get(tenant.sandbox_key)
    sandbox.on("echo", exit_code=1)

    result = await lifecycle.reset(tenant)

    assert result.snapshot_key is None
    assert "Unable to wake sandbox" in result.snapshot_error
    assert sandbox.destroyed


async def test_teardown_with_nothing_to_snapshot(lifecycle, fake_provider, tenant):
    sandbox = await fake_provider.get(tenant.sandbox_key)
    sandbox.on("test -d", exit_code=1)

    result = await lifecycle.restart(tenant)

    assert result.snapshot_key is None
    assert result.snapshot_error is None
    assert sandbox.destroyed


async def test_factory_reset_brings_sandbox_back(lifecycle, fake_provider, tenant, monkeypatch):
    original_get = fake_provider.get

    async def get(key):
        sandbox = await original_get(key)
        if not sandbox.commands:
            sandbox.on("test -d", exit_code=1)
            _serving(sandbox)
        return sandbox

    monkeypatch.setattr(fake_provider, "get", get)

    result = await lifecycle.factory_reset(tenant)

    assert fake_provider.destroyed == [tenant.sandbox_key]
    assert result.ready is True
    assert result.pid == 9001
    fresh = fake_provider.sandboxes[tenant.sandbox_key]
    assert not fresh.destroyed


async def test_factory_reset_reports_failed_wake(lifecycle, fake_provider, tenant):
    sandbox = await fake_provider.get(tenant.sandbox_key)
    sandbox.on("test -d", exit_code=1)

    result = await lifecycle.factory_reset(tenant)

    # The fresh sandbox never answers its health endpoint
    assert result.ready is False
    assert result.startup_error


async def test_ensure_running_is_idempotent(lifecycle, fake_provider, tenant):
    _serving(await fake_provider.get(tenant.sandbox_key))

    first = await lifecycle.ensure_running(tenant)
    second = await lifecycle.ensure_running(tenant)

    assert first.status == "started"
    assert second.status == "already_running"


async def test_dispatch_delivers_payload(lifecycle, fake_provider, tenant):
    sandbox = await fake_provider.get(tenant.sandbox_key)
    _serving(sandbox)
    sandbox.on("--data-binary", stdout="ok")

    result = await lifecycle.dispatch(tenant, {"text": "hello"})

    assert result.mode == "persistent"
    assert result.response == "ok"


async def test_lifecycle_actions_are_serialized_per_sandbox(lifecycle, tenant, monkeypatch):
    active = 0
    peak = 0

    async def slow_create(tenant, reason):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    monkeypatch.setattr(lifecycle, "_create_snapshot", slow_create)

    await asyncio.gather(*(lifecycle.create_snapshot(tenant) for _ in range(3)))

    assert peak == 1


async def test_idle_snapshot_failure_never_propagates(lifecycle, fake_provider, tenant):
    sandbox = await fake_provider.get(tenant.sandbox_key)
    sandbox.on("echo", exit_code=1)

    task = lifecycle.snapshot_on_idle(tenant)
    await lifecycle.background.drain()

    assert task.done()
    assert task.result() is None


async def test_handle_routes_tagged_requests(lifecycle, object_store, tenant):
    await object_store.put(f"{tenant.prefix}t-001.tar.gz", b"x")
    await object_store.put(f"{tenant.prefix}t-002.tar.gz", b"x")

    listed = await lifecycle.handle(parse_request({"type": "list_snapshots", "chatId": "100", "senderId": "42", "isGroup": False}))
    deleted = await lifecycle.handle(
        parse_request({"type": "delete_snapshot", "chatId": "100", "senderId": "42", "isGroup": False, "selector": "all"})
    )

    assert len(listed) == 2
    assert len(deleted) == 2
    assert await object_store.list(tenant.prefix) == []


async def test_preview_snapshot(local_lifecycle, tenant, watched_root):
    (watched_root / "workspace" / "readme.txt").write_text("preview me")
    created = await local_lifecycle.create_snapshot(tenant)
    workspace = str(watched_root / "workspace")

    entries = await local_lifecycle.preview_snapshot(tenant, created.key, workspace)
    content = await local_lifecycle.read_snapshot_file(tenant, created.key, f"{workspace}/readme.txt")

    assert [e.name for e in entries] == ["readme.txt"]
    assert content == b"preview me"
