"""S3-compatible object store (AWS S3, Cloudflare R2) on aioboto3."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import aioboto3
import structlog
from botocore.exceptions import ClientError

from chat_sandbox.config.core import StorageSettings

from .base import MultipartUpload, ObjectBody, ObjectStore, StoredObject

logger = structlog.get_logger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class _S3MultipartUpload(MultipartUpload):
    def __init__(self, store: "S3ObjectStore", key: str, upload_id: str) -> None:
        self.key = key
        self.upload_id = upload_id
        self._store = store
        self._parts: list[dict[str, Any]] = []
        self._size = 0

    async def upload_part(self, part_number: int, data: bytes) -> None:
        async with self._store._client() as s3:
            response = await s3.upload_part(
                Bucket=self._store.bucket,
                Key=self.key,
                UploadId=self.upload_id,
                PartNumber=part_number,
                Body=data,
            )
        self._parts.append({"ETag": response["ETag"], "PartNumber": part_number})
        self._size += len(data)

    async def complete(self) -> StoredObject:
        parts = sorted(self._parts, key=lambda p: p["PartNumber"])
        async with self._store._client() as s3:
            await s3.complete_multipart_upload(
                Bucket=self._store.bucket,
                Key=self.key,
                UploadId=self.upload_id,
                MultipartUpload={"Parts": parts},
            )
        logger.debug("Completed multipart upload", key=self.key, parts=len(parts), size=self._size)
        return StoredObject(key=self.key, size=self._size, uploaded_at=datetime.now(tz=UTC))

    async def abort(self) -> None:
        async with self._store._client() as s3:
            await s3.abort_multipart_upload(Bucket=self._store.bucket, Key=self.key, UploadId=self.upload_id)
        logger.info("Aborted multipart upload", key=self.key, parts_uploaded=len(self._parts))


class S3ObjectStore(ObjectStore):
    """Bucket-backed store.

    A client is opened per operation from one shared ``aioboto3.Session``;
    credentials fall back to the standard AWS environment chain when not set.
    """

    def __init__(self, settings: StorageSettings) -> None:
        self.bucket = settings.bucket
        self._settings = settings
        self._session = aioboto3.Session(
            aws_access_key_id=settings.access_key_id,
            aws_secret_access_key=settings.secret_access_key,
        )

    def _client(self):  # type: ignore[no-untyped-def]
        return self._session.client(
            "s3",
            region_name=self._settings.region,
            endpoint_url=self._settings.endpoint_url,
        )

    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> StoredObject:
        async with self._client() as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=data, Metadata=metadata or {})
        return StoredObject(key=key, size=len(data), uploaded_at=datetime.now(tz=UTC), metadata=dict(metadata or {}))

    async def get(self, key: str) -> ObjectBody | None:
        async with self._client() as s3:
            try:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                    return None
                raise
            async with response["Body"] as stream:
                data = await stream.read()
        info = StoredObject(
            key=key,
            size=len(data),
            uploaded_at=response.get("LastModified") or datetime.now(tz=UTC),
            metadata=dict(response.get("Metadata") or {}),
        )
        return ObjectBody(info=info, data=data)

    async def list(self, prefix: str) -> list[StoredObject]:
        objects = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(StoredObject(key=item["Key"], size=item["Size"], uploaded_at=item["LastModified"]))
        return objects

    async def delete(self, key: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)

    async def create_multipart_upload(self, key: str, metadata: dict[str, str] | None = None) -> MultipartUpload:
        async with self._client() as s3:
            response = await s3.create_multipart_upload(Bucket=self.bucket, Key=key, Metadata=metadata or {})
        return _S3MultipartUpload(self, key, response["UploadId"])
