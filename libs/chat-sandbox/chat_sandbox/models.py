"""Request structs for lifecycle operations.

Every request is tagged by ``type`` so a raw JSON body can be validated and
routed in one step with :func:`parse_request`.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from chat_sandbox.core.tenancy import Tenant


class TenantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    chat_id: str = Field(min_length=1, alias="chatId")
    sender_id: str | None = Field(default=None, alias="senderId")
    is_group: bool | None = Field(default=None, alias="isGroup")

    @property
    def tenant(self) -> Tenant:
        return Tenant(chat_id=self.chat_id, sender_id=self.sender_id, is_group=self.is_group)


class CreateSnapshotRequest(TenantRequest):
    type: Literal["create_snapshot"] = "create_snapshot"
    reason: str = "manual"


class ListSnapshotsRequest(TenantRequest):
    type: Literal["list_snapshots"] = "list_snapshots"


class DeleteSnapshotRequest(TenantRequest):
    type: Literal["delete_snapshot"] = "delete_snapshot"
    # A snapshot key, or "all"
    selector: str = Field(min_length=1)


class RestoreSnapshotRequest(TenantRequest):
    type: Literal["restore_snapshot"] = "restore_snapshot"
    snapshot_key: str | None = Field(default=None, alias="snapshotKey")
    mark_as_latest: bool = Field(default=False, alias="markAsLatest")


class PreviewSnapshotRequest(TenantRequest):
    type: Literal["preview_snapshot"] = "preview_snapshot"
    snapshot_key: str = Field(min_length=1, alias="snapshotKey")
    path: str = "/"
    # When set, return this file's contents instead of a listing
    file: bool = False


class EnsureRunningRequest(TenantRequest):
    type: Literal["ensure_running"] = "ensure_running"


class DispatchRequest(TenantRequest):
    type: Literal["dispatch"] = "dispatch"
    payload: dict[str, Any]


class RestartRequest(TenantRequest):
    type: Literal["restart"] = "restart"


class ResetRequest(TenantRequest):
    type: Literal["reset"] = "reset"


class FactoryResetRequest(TenantRequest):
    type: Literal["factory_reset"] = "factory_reset"


LifecycleRequest = Annotated[
    CreateSnapshotRequest
    | ListSnapshotsRequest
    | DeleteSnapshotRequest
    | RestoreSnapshotRequest
    | PreviewSnapshotRequest
    | EnsureRunningRequest
    | DispatchRequest
    | RestartRequest
    | ResetRequest
    | FactoryResetRequest,
    Field(discriminator="type"),
]

_request_adapter: TypeAdapter[LifecycleRequest] = TypeAdapter(LifecycleRequest)


def parse_request(data: dict[str, Any]) -> LifecycleRequest:
    """Validate a raw request body.

    Raises:
        pydantic.ValidationError: On an unknown ``type`` or a missing field.
    """
    return _request_adapter.validate_python(data)
