"""Tests for the S3 store against a mocked aioboto3 client."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from chat_sandbox.config.core import StorageSettings
from chat_sandbox.storage.s3 import S3ObjectStore


class _ClientContext:
    def __init__(self, client):
        self.client = client

    async def __aenter__(self):
        return self.client

    async def __aexit__(self, *exc):
        return False


class _Pages:
    def __init__(self, pages):
        self._pages = pages

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for page in self._pages:
            yield page


@pytest.fixture
def s3_client():
    return MagicMock()


@pytest.fixture
def store(s3_client, monkeypatch):
    store = S3ObjectStore(StorageSettings(bucket="snaps", endpoint_url="https://acct.r2.cloudflarestorage.com"))
    monkeypatch.setattr(store, "_client", lambda: _ClientContext(s3_client))
    return store


async def test_put_sends_metadata(store, s3_client):
    s3_client.put_object = AsyncMock()

    info = await store.put("snapshots/42/100/a.tar.gz", b"abc", {"reason": "manual"})

    s3_client.put_object.assert_awaited_once_with(
        Bucket="snaps", Key="snapshots/42/100/a.tar.gz", Body=b"abc", Metadata={"reason": "manual"}
    )
    assert info.size == 3


async def test_get_reads_body_and_metadata(store, s3_client):
    stream = MagicMock()
    stream.read = AsyncMock(return_value=b"archive")
    uploaded = datetime(2026, 5, 1, tzinfo=UTC)
    s3_client.get_object = AsyncMock(
        return_value={"Body": _ClientContext(stream), "LastModified": uploaded, "Metadata": {"reason": "idle"}}
    )

    body = await store.get("k")

    assert body.data == b"archive"
    assert body.info.uploaded_at == uploaded
    assert body.info.metadata == {"reason": "idle"}


async def test_get_missing_key_returns_none(store, s3_client):
    s3_client.get_object = AsyncMock(
        side_effect=ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
    )

    assert await store.get("k") is None


async def test_get_other_errors_propagate(store, s3_client):
    s3_client.get_object = AsyncMock(
        side_effect=ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "GetObject")
    )

    with pytest.raises(ClientError):
        await store.get("k")


async def test_list_walks_every_page(store, s3_client):
    when = datetime(2026, 5, 1, tzinfo=UTC)
    paginator = MagicMock()
    paginator.paginate.return_value = _Pages(
        [
            {"Contents": [{"Key": "p/a", "Size": 1, "LastModified": when}]},
            {"Contents": [{"Key": "p/b", "Size": 2, "LastModified": when}]},
            {},
        ]
    )
    s3_client.get_paginator.return_value = paginator

    listed = await store.list("p/")

    assert [(o.key, o.size) for o in listed] == [("p/a", 1), ("p/b", 2)]
    paginator.paginate.assert_called_once_with(Bucket="snaps", Prefix="p/")


async def test_multipart_round(store, s3_client):
    s3_client.create_multipart_upload = AsyncMock(return_value={"UploadId": "u-1"})
    s3_client.upload_part = AsyncMock(side_effect=[{"ETag": '"e2"'}, {"ETag": '"e1"'}])
    s3_client.complete_multipart_upload = AsyncMock()

    upload = await store.create_multipart_upload("k", {"reason": "manual"})
    await upload.upload_part(2, b"bb")
    await upload.upload_part(1, b"a")
    info = await upload.complete()

    assert info.size == 3
    s3_client.complete_multipart_upload.assert_awaited_once_with(
        Bucket="snaps",
        Key="k",
        UploadId="u-1",
        MultipartUpload={"Parts": [{"ETag": '"e1"', "PartNumber": 1}, {"ETag": '"e2"', "PartNumber": 2}]},
    )


async def test_multipart_abort(store, s3_client):
    s3_client.create_multipart_upload = AsyncMock(return_value={"UploadId": "u-1"})
    s3_client.abort_multipart_upload = AsyncMock()

    upload = await store.create_multipart_upload("k")
    await upload.abort()

    s3_client.abort_multipart_upload.assert_awaited_once_with(Bucket="snaps", Key="k", UploadId="u-1")
