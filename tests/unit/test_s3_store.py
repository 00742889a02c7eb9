from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from cryptography.fernet import Fernet

from state import bundle
from state.models import SyncIndex
from state.s3_store import (
    POLICY_FULL,
    CredentialStoreError,
    S3CredentialStore,
)


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self, page_size: int = 1000) -> None:
        self.objects: Dict[tuple, bytes] = {}
        self.puts: List[str] = []
        self.fail_get: Set[str] = set()
        self.fail_put: Set[str] = set()
        self.fail_list = False
        self.page_size = page_size

    def list_objects_v2(self, *, Bucket: str, Prefix: str, ContinuationToken: Optional[str] = None):
        if self.fail_list:
            raise EndpointConnectionError(endpoint_url="https://s3.example")
        keys = sorted(k for (b, k) in self.objects if b == Bucket and k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start : start + self.page_size]
        resp = {"Contents": [{"Key": k} for k in page], "IsTruncated": start + self.page_size < len(keys)}
        if resp["IsTruncated"]:
            resp["NextContinuationToken"] = str(start + self.page_size)
        return resp

    def get_object(self, *, Bucket: str, Key: str):
        if Key in self.fail_get:
            raise ClientError({"Error": {"Code": "InternalError"}}, "GetObject")
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(self.objects[(Bucket, Key)])}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        if Key in self.fail_put:
            raise ClientError({"Error": {"Code": "InternalError"}}, "PutObject")
        self.objects[(Bucket, Key)] = Body
        self.puts.append(Key)
        return {"ETag": f'"fake-{len(Body)}"'}

    def delete_objects(self, *, Bucket: str, Delete):
        for obj in Delete["Objects"]:
            self.objects.pop((Bucket, obj["Key"]), None)
        return {}


def _store(s3: _FakeS3, tmp_path: Path, **kw) -> S3CredentialStore:
    kw.setdefault("index_path", str(tmp_path / "auth.sync.json"))
    return S3CredentialStore(s3=s3, bucket="b", namespace="bot_auth", **kw)


def _seed_local(path: Path, files: Dict[str, bytes]) -> None:
    for name, data in files.items():
        bundle.write_blob(path, name, data)


def test_fetch_into_fresh_start_leaves_local_untouched(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"

    assert _store(s3, tmp_path).fetch_into(local) is False
    assert not local.exists()


def test_fetch_into_overwrites_local_and_skips_failed_blob(tmp_path: Path):
    s3 = _FakeS3()
    s3.objects[("b", "bot_auth/creds.json")] = b"remote-creds"
    s3.objects[("b", "bot_auth/pre-key-1.json")] = b"pk1"
    s3.objects[("b", "bot_auth/session-x.json")] = b"sx"
    s3.fail_get.add("bot_auth/pre-key-1.json")
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"stale"})

    assert _store(s3, tmp_path).fetch_into(local) is True
    assert bundle.read_bundle(local) == {"creds.json": b"remote-creds", "session-x.json": b"sx"}


def test_fetch_into_handles_pagination(tmp_path: Path):
    s3 = _FakeS3(page_size=2)
    for i in range(5):
        s3.objects[("b", f"bot_auth/blob-{i}")] = str(i).encode()

    local = tmp_path / "auth"
    assert _store(s3, tmp_path).fetch_into(local) is True
    assert len(bundle.list_blobs(local)) == 5


def test_fetch_into_list_failure_raises(tmp_path: Path):
    s3 = _FakeS3()
    s3.fail_list = True
    with pytest.raises(CredentialStoreError):
        _store(s3, tmp_path).fetch_into(tmp_path / "auth")


def test_incremental_sync_twice_uploads_nothing_second_time(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c", "app-state.json": b"a"})
    store = _store(s3, tmp_path)

    first = store.sync_from(local)
    second = store.sync_from(local)

    assert sorted(first.uploaded) == ["app-state.json", "creds.json"]
    assert second.uploaded == []
    assert sorted(second.skipped) == ["app-state.json", "creds.json"]
    assert len(s3.puts) == 2


def test_incremental_sync_uploads_only_changed_blob(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c1", "app-state.json": b"a"})
    store = _store(s3, tmp_path)
    store.sync_from(local)

    bundle.write_blob(local, "creds.json", b"c2")
    report = store.sync_from(local)

    assert report.uploaded == ["creds.json"]
    assert s3.objects[("b", "bot_auth/creds.json")] == b"c2"


def test_incremental_index_survives_restart(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c"})
    _store(s3, tmp_path).sync_from(local)

    # New store instance, same persisted index
    report = _store(s3, tmp_path).sync_from(local)
    assert report.uploaded == []
    assert "creds.json" in SyncIndex.load(tmp_path / "auth.sync.json").entries


def test_failed_upload_does_not_advance_marker(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c", "keys.json": b"k"})
    s3.fail_put.add("bot_auth/keys.json")
    store = _store(s3, tmp_path)

    first = store.sync_from(local)
    assert first.uploaded == ["creds.json"]
    assert first.failed == ["keys.json"]

    s3.fail_put.clear()
    second = store.sync_from(local)
    assert second.uploaded == ["keys.json"]


def test_failed_blob_retried_when_rotation_names_other_blob(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c1", "pre-key-1.json": b"p"})
    s3.fail_put.add("bot_auth/pre-key-1.json")
    store = _store(s3, tmp_path)

    first = store.sync_from(local, changed_names=["creds.json", "pre-key-1.json"])
    assert first.failed == ["pre-key-1.json"]

    s3.fail_put.clear()
    bundle.write_blob(local, "creds.json", b"c2")
    second = store.sync_from(local, changed_names=["creds.json", "missing.json"])

    assert second.uploaded == ["creds.json", "pre-key-1.json"]
    assert s3.objects[("b", "bot_auth/pre-key-1.json")] == b"p"
    assert s3.objects[("b", "bot_auth/creds.json")] == b"c2"


def test_full_sync_always_uploads_everything(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c", "keys.json": b"k"})
    store = _store(s3, tmp_path, policy=POLICY_FULL)

    store.sync_from(local)
    report = store.sync_from(local, changed_names=["creds.json"])

    assert sorted(report.uploaded) == ["creds.json", "keys.json"]
    assert len(s3.puts) == 4


def test_sync_never_deletes_local_blobs(tmp_path: Path):
    s3 = _FakeS3()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b"c"})
    s3.fail_put.add("bot_auth/creds.json")

    _store(s3, tmp_path).sync_from(local)
    assert bundle.read_bundle(local) == {"creds.json": b"c"}


def test_fernet_encrypts_at_rest_and_roundtrips(tmp_path: Path):
    s3 = _FakeS3()
    key = Fernet.generate_key()
    local = tmp_path / "auth"
    _seed_local(local, {"creds.json": b'{"me": "x"}'})
    _store(s3, tmp_path, fernet_key=key).sync_from(local)

    assert s3.objects[("b", "bot_auth/creds.json")] != b'{"me": "x"}'

    restored = tmp_path / "restored"
    assert _store(s3, tmp_path, fernet_key=key.decode()).fetch_into(restored) is True
    assert bundle.read_bundle(restored) == {"creds.json": b'{"me": "x"}'}


def test_blob_with_wrong_key_is_skipped(tmp_path: Path):
    s3 = _FakeS3()
    s3.objects[("b", "bot_auth/creds.json")] = Fernet(Fernet.generate_key()).encrypt(b"c")
    s3.objects[("b", "bot_auth/plain.json")] = Fernet(Fernet.generate_key()).encrypt(b"p")
    local = tmp_path / "auth"

    store = _store(s3, tmp_path, fernet_key=Fernet.generate_key())
    assert store.fetch_into(local) is True
    assert bundle.list_blobs(local) == []


def test_fetched_blobs_are_not_uploaded_back(tmp_path: Path):
    s3 = _FakeS3()
    s3.objects[("b", "bot_auth/creds.json")] = b"c"
    local = tmp_path / "auth"
    store = _store(s3, tmp_path)

    store.fetch_into(local)
    report = store.sync_from(local)

    assert report.uploaded == []
    assert s3.puts == []


def test_delete_removes_namespace_and_keeps_other_keys(tmp_path: Path):
    s3 = _FakeS3()
    s3.objects[("b", "bot_auth/creds.json")] = b"c"
    s3.objects[("b", "bot_auth/keys.json")] = b"k"
    s3.objects[("b", "other_auth/creds.json")] = b"o"

    _store(s3, tmp_path).delete()

    assert list(s3.objects) == [("b", "other_auth/creds.json")]


def test_incremental_requires_index_path():
    with pytest.raises(ValueError):
        S3CredentialStore(s3=_FakeS3(), bucket="b", namespace="n", index_path=None)


def test_write_blob_marker_strictly_increases(tmp_path: Path):
    local = tmp_path / "auth"
    bundle.write_blob(local, "creds.json", b"1")
    target = local / "creds.json"
    future = 4 * 10**18  # ~2096, later than any fresh write
    os.utime(target, ns=(future, future))

    bundle.write_blob(local, "creds.json", b"2")
    assert target.stat().st_mtime_ns > future


def test_write_bundle_reports_only_changed(tmp_path: Path):
    local = tmp_path / "auth"
    assert bundle.write_bundle(local, {"a": b"1", "b": b"2"}) == ["a", "b"]
    assert bundle.write_bundle(local, {"a": b"1", "b": b"3"}) == ["b"]
    with pytest.raises(ValueError):
        bundle.write_bundle(local, {"../escape": b"x"})
