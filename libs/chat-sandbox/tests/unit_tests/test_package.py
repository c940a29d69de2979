"""Tests for the public package surface."""

import importlib
import typing

import pytest

import chat_sandbox
from chat_sandbox.core.snapshots import SnapshotStore
from chat_sandbox.storage.base import StoredObject


@pytest.mark.parametrize(
    "module",
    [
        "chat_sandbox.core.snapshots",
        "chat_sandbox.core.restore",
        "chat_sandbox.core.lifecycle",
        "chat_sandbox.storage.s3",
        "chat_sandbox.storage.filesystem",
        "chat_sandbox.storage.memory",
    ],
)
def test_modules_import(module):
    assert importlib.import_module(module)


def test_public_exports():
    assert chat_sandbox.__version__ == "0.1.0"
    for name in chat_sandbox.__all__:
        assert hasattr(chat_sandbox, name)


def test_snapshot_store_annotations_resolve_to_builtin_list():
    # Methods named ``list`` must not leak into the other annotations of the class
    assert typing.get_type_hints(SnapshotStore.delete)["return"] == list[str]
    assert typing.get_type_hints(SnapshotStore.list)["return"] == list[StoredObject]
