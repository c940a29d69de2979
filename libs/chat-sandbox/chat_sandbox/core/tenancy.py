"""Tenant-scoped key derivation for snapshots and sandboxes.

Key layout::

    private: snapshots/{sender_id}/{chat_id}/{timestamp}.tar.gz
    groups:  snapshots/groups/{chat_id}/{timestamp}.tar.gz

Timestamps are zero-padded UTC (``2026-01-31T09-05-07-042Z``) so lexicographic
key order is chronological order.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .errors import SnapshotAccessDeniedError, TenantKeyError

SNAPSHOT_ROOT = "snapshots"
GROUPS_SEGMENT = "groups"
ARCHIVE_SUFFIX = ".tar.gz"


def snapshot_prefix(chat_id: str, sender_id: str | None, is_group: bool | None) -> str:
    """Return the key prefix that scopes every snapshot of one tenant.

    Raises:
        TenantKeyError: If ``sender_id`` or ``is_group`` is missing. Guessing
            either would let a caller read another tenant's snapshots.
    """
    if not chat_id:
        raise TenantKeyError("chat_id is required")
    if sender_id is None or is_group is None:
        raise TenantKeyError(
            f"snapshot prefix requires sender_id and is_group for chat {chat_id} "
            f"(got sender_id={sender_id}, is_group={is_group})"
        )
    if is_group:
        return f"{SNAPSHOT_ROOT}/{GROUPS_SEGMENT}/{chat_id}/"
    return f"{SNAPSHOT_ROOT}/{sender_id}/{chat_id}/"


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as a sortable key segment with millisecond precision."""
    moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"


def snapshot_key(
    chat_id: str,
    sender_id: str | None,
    is_group: bool | None,
    timestamp: str | None = None,
) -> str:
    ts = timestamp or format_timestamp(datetime.now(tz=UTC))
    return f"{snapshot_prefix(chat_id, sender_id, is_group)}{ts}{ARCHIVE_SUFFIX}"


def sandbox_key(chat_id: str) -> str:
    return f"chat-{chat_id}"


@dataclass(frozen=True)
class Tenant:
    """Logical owner of a sandbox and its snapshots."""

    chat_id: str
    sender_id: str | None = None
    is_group: bool | None = None

    @property
    def prefix(self) -> str:
        return snapshot_prefix(self.chat_id, self.sender_id, self.is_group)

    @property
    def sandbox_key(self) -> str:
        return sandbox_key(self.chat_id)

    def new_snapshot_key(self, timestamp: str | None = None) -> str:
        return snapshot_key(self.chat_id, self.sender_id, self.is_group, timestamp)

    def owns(self, key: str) -> bool:
        """Return True if ``key`` lives under this tenant's prefix."""
        try:
            return key.startswith(self.prefix)
        except TenantKeyError:
            return False

    def require_access(self, key: str) -> None:
        """Raise unless ``key`` belongs to this tenant.

        Raises:
            SnapshotAccessDeniedError: On any prefix mismatch.
            TenantKeyError: If the tenant itself is underspecified.
        """
        prefix = self.prefix
        if not key.startswith(prefix):
            raise SnapshotAccessDeniedError(key, prefix)


class SnapshotClock:
    """Issues strictly increasing snapshot timestamps.

    Two snapshots of the same tenant inside one millisecond would otherwise
    collide on the same key; the clock bumps by one millisecond instead.
    """

    def __init__(self) -> None:
        self._last: datetime | None = None

    def now(self) -> str:
        current = datetime.now(tz=UTC)
        moment = current.replace(microsecond=current.microsecond // 1000 * 1000)
        if self._last is not None and moment <= self._last:
            moment = self._last + timedelta(milliseconds=1)
        self._last = moment
        return format_timestamp(moment)
