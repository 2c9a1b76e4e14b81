"""Blob 存储实现的测试：本地目录实现直接落盘，S3 实现使用桩客户端。"""

from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from app.packages.workspace.core.exceptions import BlobNotFoundError, StoreUnavailableError, ValidationError
from app.packages.workspace.services.blob_store import LocalBlobStore, S3BlobStore


@pytest.fixture()
def local_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "root")


def test_local_upload_download_overwrite(local_store: LocalBlobStore):
    local_store.upload("p1/src/a.txt", b"one")
    local_store.upload("p1/src/a.txt", b"two")
    assert local_store.download("p1/src/a.txt") == b"two"
    assert local_store.exists("p1/src/a.txt")


def test_local_download_missing_raises_blob_not_found(local_store: LocalBlobStore):
    with pytest.raises(BlobNotFoundError):
        local_store.download("p1/missing.txt")


def test_local_move_and_prune(local_store: LocalBlobStore):
    local_store.upload("p1/src/a.txt", b"hello")
    local_store.move("p1/src/a.txt", "p1/lib/a.txt")
    assert local_store.download("p1/lib/a.txt") == b"hello"
    assert not local_store.exists("p1/src/a.txt")
    assert not (local_store.root / "p1" / "src").exists()

    with pytest.raises(BlobNotFoundError):
        local_store.move("p1/src/a.txt", "p1/other.txt")


def test_local_rejects_traversal(local_store: LocalBlobStore):
    with pytest.raises(ValidationError):
        local_store.upload("../escape.txt", b"x")
    with pytest.raises(ValidationError):
        local_store.download("")


def test_local_remove_many_is_best_effort(local_store: LocalBlobStore):
    local_store.upload("p1/a.txt", b"a")
    local_store.upload("p1/b.txt", b"b")
    failed = local_store.remove_many(["p1/a.txt", "p1/never-existed.txt", "../outside"])
    assert failed == ["../outside"]
    assert not local_store.exists("p1/a.txt")
    assert local_store.exists("p1/b.txt")


def test_local_list_objects_scoped_to_prefix(local_store: LocalBlobStore):
    local_store.upload("p1/a.txt", b"a")
    local_store.upload("p1/dir/b.txt", b"b")
    local_store.upload("p2/c.txt", b"c")
    keys = [obj.key for obj in local_store.list_objects("p1/")]
    assert keys == ["p1/a.txt", "p1/dir/b.txt"]
    assert all(obj.last_modified is not None for obj in local_store.list_objects("p1/"))
    assert local_store.list_objects("p3/") == []


class _Body:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _Paginator:
    def __init__(self, objects: dict) -> None:
        self._objects = objects

    def paginate(self, Bucket, Prefix):
        yield {
            "Contents": [
                {"Key": key, "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc)}
                for key in sorted(self._objects)
                if key.startswith(Prefix)
            ]
        }


class FakeS3Client:
    """只实现 S3BlobStore 用到的 boto3 客户端方法。"""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_delete_keys: set[str] = set()

    @staticmethod
    def _missing(op: str) -> ClientError:
        return ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, op)

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.objects[Key] = Body

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._missing("GetObject")
        return {"Body": _Body(self.objects[Key])}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {}

    def copy_object(self, Bucket, Key, CopySource):
        src = CopySource["Key"]
        if src not in self.objects:
            raise self._missing("CopyObject")
        self.objects[Key] = self.objects[src]

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def delete_objects(self, Bucket, Delete):
        errors = []
        for item in Delete["Objects"]:
            key = item["Key"]
            if key in self.fail_delete_keys:
                errors.append({"Key": key, "Code": "AccessDenied"})
            else:
                self.objects.pop(key, None)
        return {"Errors": errors}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return _Paginator(self.objects)


@pytest.fixture()
def s3_store():
    client = FakeS3Client()
    return S3BlobStore(bucket="bucket", prefix="tenant", client=client), client


def test_s3_keys_are_prefixed(s3_store):
    store, client = s3_store
    store.upload("p1/a.txt", b"hello")
    assert "tenant/p1/a.txt" in client.objects
    assert store.download("p1/a.txt") == b"hello"
    assert store.exists("p1/a.txt")
    assert not store.exists("p1/b.txt")


def test_s3_missing_objects_map_to_blob_not_found(s3_store):
    store, _ = s3_store
    with pytest.raises(BlobNotFoundError):
        store.download("p1/none.txt")
    with pytest.raises(BlobNotFoundError):
        store.move("p1/none.txt", "p1/other.txt")


def test_s3_move_copies_then_deletes(s3_store):
    store, client = s3_store
    store.upload("p1/src/a.txt", b"x")
    store.move("p1/src/a.txt", "p1/lib/a.txt")
    assert set(client.objects) == {"tenant/p1/lib/a.txt"}


def test_s3_remove_many_reports_failures_without_prefix(s3_store):
    store, client = s3_store
    store.upload("p1/a.txt", b"a")
    store.upload("p1/b.txt", b"b")
    client.fail_delete_keys.add("tenant/p1/b.txt")
    assert store.remove_many(["p1/a.txt", "p1/b.txt"]) == ["p1/b.txt"]
    assert set(client.objects) == {"tenant/p1/b.txt"}


def test_s3_list_objects_strips_prefix(s3_store):
    store, _ = s3_store
    store.upload("p1/a.txt", b"a")
    store.upload("p2/b.txt", b"b")
    assert [obj.key for obj in store.list_objects("p1/")] == ["p1/a.txt"]


def test_s3_backend_errors_become_store_unavailable():
    class BrokenClient(FakeS3Client):
        def put_object(self, **kwargs):
            raise ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject")

    store = S3BlobStore(bucket="bucket", client=BrokenClient())
    with pytest.raises(StoreUnavailableError):
        store.upload("p1/a.txt", b"a")
