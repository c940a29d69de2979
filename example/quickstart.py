"""
chat-sandbox Quickstart

This example walks one chat through the sandbox lifecycle: bring the agent
server up, hand it a message, snapshot the workspace, restart the sandbox
and restore the snapshot into the fresh instance.

REQUIRED ENVIRONMENT VARIABLES:
- DAYTONA_API_KEY: Your Daytona API key (get from https://app.daytona.io)
- ANTHROPIC_API_KEY: Your Anthropic API key (or USE_OPENROUTER=true + OPENROUTER_API_KEY)

OPTIONAL (object storage, defaults to S3/R2):
- CHAT_SANDBOX_STORAGE: s3 | filesystem | memory
- CLOUDFLARE_ACCOUNT_ID or R2_ENDPOINT_URL, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY

Usage:
    python example/quickstart.py
"""

import asyncio
from pathlib import Path

from chat_sandbox import CoreConfig, SandboxLifecycle, Tenant, configure_logging

project_root = Path(__file__).parent.parent


async def main():
    # Load .env from the project root; variables already set win
    config = CoreConfig.from_env(project_root / ".env")
    configure_logging(config.log_level)
    config.validate_api_keys()

    lifecycle = SandboxLifecycle.from_config(config)
    tenant = Tenant(chat_id="quickstart", sender_id="demo-user", is_group=False)

    print("Starting agent server...")
    started = await lifecycle.ensure_running(tenant)
    print(f"Agent server {started.status} (pid {started.pid})")

    delivery = await lifecycle.dispatch(tenant, {"chatId": tenant.chat_id, "text": "List the files in /workspace"})
    print(f"Message delivered via {delivery.mode} path")

    snapshot = await lifecycle.create_snapshot(tenant)
    if snapshot.success:
        print(f"Snapshot saved: {snapshot.key} ({snapshot.size} bytes, {snapshot.parts} part(s))")
    else:
        print(f"Nothing to snapshot ({snapshot.reason})")

    print("\nRestarting sandbox...")
    restart = await lifecycle.restart(tenant)
    print(f"Pre-restart snapshot: {restart.snapshot_key or restart.snapshot_error}")

    restored = await lifecycle.restore_snapshot(tenant)
    if restored is None:
        print("No snapshot to restore")
    else:
        print(f"Restored {restored.restored_from} via {restored.strategy} transfer")

    print("\nSnapshots, newest first:")
    for item in await lifecycle.list_snapshots(tenant):
        print(f"  {item.key}  {item.size:>10} bytes  {item.uploaded_at.isoformat()}")

    await lifecycle.background.drain()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
