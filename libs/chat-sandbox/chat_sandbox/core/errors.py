"""Exception types raised by the sandbox lifecycle engine."""

from enum import Enum


class SandboxError(RuntimeError):
    """Base class for sandbox lifecycle failures."""


class SandboxTransientError(SandboxError):
    """Transient sandbox transport error.

    Raised when a call into the compute substrate fails with a transport-level
    problem (connection reset, timeout, 5xx). Callers may retry later.
    """


class SandboxUnavailableError(SandboxError):
    """Sandbox could not be reached after the bounded health-check retries.

    Retryable by the caller later; never proceed with stateful work after this.
    """

    def __init__(self, sandbox_key: str, attempts: int) -> None:
        self.sandbox_key = sandbox_key
        self.attempts = attempts
        super().__init__(
            f"Unable to wake sandbox {sandbox_key} after {attempts} attempts. "
            "The sandbox appears to be sleeping or in a corrupted state."
        )


class TenantKeyError(ValueError):
    """Tenant key derivation was attempted without sender id or group flag."""


class SnapshotAccessDeniedError(SandboxError):
    """Snapshot key does not belong to the caller's tenant prefix."""

    def __init__(self, snapshot_key: str, prefix: str) -> None:
        self.snapshot_key = snapshot_key
        self.prefix = prefix
        super().__init__(f"Access denied to snapshot {snapshot_key}")


class ArchiveError(SandboxError):
    """Packaging or extraction command exited non-zero."""

    def __init__(self, message: str, diagnostic: str = "") -> None:
        self.diagnostic = diagnostic
        super().__init__(f"{message}: {diagnostic}" if diagnostic else message)


class TransferError(SandboxError):
    """Moving archive bytes into or out of a sandbox failed."""


class ServerStartupError(SandboxError):
    """Persistent process did not report healthy within the startup timeout."""


class RestoreStep(str, Enum):
    """Ordered steps of a single restore."""

    VALIDATING = "validating"
    FETCHING = "fetching"
    HEALTH_CHECKING = "health-checking"
    WRITING = "writing"
    EXTRACTING = "extracting"
    PUBLISHING_LATEST = "publishing-latest"
    DONE = "done"


class RestoreError(SandboxError):
    """Restore reached the ``failed`` state.

    Attributes:
        step: The step that was running when the restore failed.
        diagnostic: Underlying error or process output.
    """

    def __init__(self, step: RestoreStep, diagnostic: str) -> None:
        self.step = step
        self.diagnostic = diagnostic
        super().__init__(f"Restore failed during {step.value}: {diagnostic}")
