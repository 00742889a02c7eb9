from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from . import bundle
from .models import SyncIndex

if TYPE_CHECKING:
    from common.config import Settings


POLICY_FULL = "full"
POLICY_INCREMENTAL = "incremental"

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


class CredentialStoreError(RuntimeError):
    """Remote store unreachable or rejected a namespace-level operation."""


class CredentialDecryptError(ValueError):
    """A remote blob could not be decrypted with the configured key."""


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a urlsafe base64-encoded 32-byte key."""
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


@dataclass
class SyncReport:
    uploaded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class S3CredentialStore:
    """
    S3-backed synchronization of the session's credential bundle.

    Layout
    - Each local blob `<name>` maps to the object `<namespace>/<name>`.
    - Blobs are optionally encrypted at rest with Fernet when a key is given.

    Operations
    - `fetch_into(path)`: download every remote blob into `path`. Returns
      False (fresh start) without touching `path` when the namespace is empty.
    - `sync_from(path, changed_names=None)`: upload local blobs. With the
      `full` policy every blob is uploaded; with `incremental` only blobs whose
      local marker is newer than the last uploaded marker (tracked in a
      `SyncIndex` persisted at `index_path`).
    - `delete(names=None)`: remove remote blobs (whole namespace by default).
      Used only for session teardown; syncing never deletes anything.

    Per-blob failures are logged and skipped; namespace-level failures raise
    `CredentialStoreError`.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        namespace: str,
        fernet_key: str | bytes | None = None,
        policy: str = POLICY_INCREMENTAL,
        index_path: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
    ) -> None:
        if policy not in (POLICY_FULL, POLICY_INCREMENTAL):
            raise ValueError(f"Unknown sync policy: {policy!r}")
        if policy == POLICY_INCREMENTAL and not index_path:
            raise ValueError("index_path is required for incremental sync")
        self._s3 = s3 or boto3.client("s3", endpoint_url=endpoint_url, region_name=region_name)
        self._bucket = bucket
        self._namespace = namespace.strip("/")
        self._fernet = _to_fernet(fernet_key) if fernet_key else None
        self._policy = policy
        self._index_path = index_path
        self._index: Optional[SyncIndex] = None
        # One sync at a time: concurrent uploads of the same name would race
        self._lock = threading.Lock()

    # -------- Construction helpers --------
    @classmethod
    def from_settings(cls, settings: "Settings", *, s3: Optional[object] = None) -> "S3CredentialStore":
        return cls(
            s3=s3,
            bucket=settings.state_bucket,
            namespace=settings.remote_namespace,
            fernet_key=settings.fernet_key,
            policy=settings.sync_policy,
            index_path=settings.sync_index_path,
            endpoint_url=settings.endpoint_url,
            region_name=settings.region_name,
        )

    @property
    def policy(self) -> str:
        return self._policy

    def _key(self, name: str) -> str:
        return f"{self._namespace}/{name}"

    def _load_index(self) -> SyncIndex:
        if self._index is None:
            self._index = SyncIndex.load(self._index_path) if self._index_path else SyncIndex.empty()
        return self._index

    def _save_index(self) -> None:
        if self._index is not None and self._index_path:
            self._index.save(self._index_path)

    def _encode(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data) if self._fernet else data

    def _decode(self, data: bytes) -> bytes:
        if self._fernet is None:
            return data
        try:
            return self._fernet.decrypt(data)
        except InvalidToken as ex:
            raise CredentialDecryptError("Failed to decrypt credential blob: invalid Fernet token") from ex

    # -------- Core operations --------
    def list_remote(self) -> List[str]:
        """List blob names under the namespace (handles pagination)."""
        prefix = f"{self._namespace}/"
        names: List[str] = []
        kwargs = {"Bucket": self._bucket, "Prefix": prefix}
        try:
            while True:
                resp = self._s3.list_objects_v2(**kwargs)
                for obj in resp.get("Contents", []) or []:
                    name = str(obj.get("Key", ""))[len(prefix):]
                    # Skip "directory" placeholders and nested keys
                    if name and "/" not in name:
                        names.append(name)
                if not resp.get("IsTruncated"):
                    break
                kwargs["ContinuationToken"] = resp["NextContinuationToken"]
        except (ClientError, BotoCoreError) as e:
            raise CredentialStoreError(f"Failed to list s3://{self._bucket}/{prefix}: {e}") from e
        return sorted(names)

    def download(self, name: str) -> Optional[bytes]:
        """Return a decoded blob, or None when it does not exist remotely."""
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._key(name))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise
        return self._decode(resp["Body"].read())

    def upload(self, name: str, data: bytes) -> None:
        # put_object always overwrites
        self._s3.put_object(
            Bucket=self._bucket,
            Key=self._key(name),
            Body=self._encode(data),
            ContentType="application/octet-stream",
        )

    def fetch_into(self, local_path: str | Path) -> bool:
        """
        Download every remote blob into `local_path`.

        Returns False when the namespace is empty (fresh start); `local_path`
        is not created in that case. Individual download failures are logged
        and skipped.
        """
        names = self.list_remote()
        if not names:
            logger.info(f"No credential blobs under {self._namespace}/, starting fresh")
            return False

        local = Path(local_path)
        local.mkdir(parents=True, exist_ok=True)
        fetched = 0
        with self._lock:
            index = self._load_index() if self._policy == POLICY_INCREMENTAL else None
            for name in names:
                try:
                    data = self.download(name)
                except (ClientError, BotoCoreError, CredentialDecryptError) as e:
                    logger.warning(f"Failed to download credential blob {name}: {e}")
                    continue
                if data is None:
                    logger.warning(f"Credential blob {name} vanished between list and download")
                    continue
                try:
                    bundle.write_blob(local, name, data)
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to write credential blob {name}: {e}")
                    continue
                fetched += 1
                # Local copy now equals the remote one; no need to upload it back
                if index is not None:
                    index.advance(name, bundle.blob_marker(local, name))
            if index is not None:
                self._save_index()

        logger.info(f"Credential bundle downloaded: {fetched}/{len(names)} blobs")
        return True

    def sync_from(self, local_path: str | Path, changed_names: Optional[Iterable[str]] = None) -> SyncReport:
        """
        Upload local blobs according to the configured policy.

        With the incremental policy every local blob whose marker is newer
        than its last upload is sent, so a blob whose upload failed is retried
        on the next sync. `changed_names` (e.g., names reported by a
        credential-rotation event) only puts those blobs first. The full
        policy always uploads every local blob.
        Markers advance only for blobs whose upload succeeded.
        """
        local = Path(local_path)
        available = set(bundle.list_blobs(local))
        hinted = sorted(set(changed_names or ()) & available)
        candidates = hinted + sorted(available - set(hinted))

        report = SyncReport()
        with self._lock:
            index = self._load_index() if self._policy == POLICY_INCREMENTAL else None
            for name in candidates:
                try:
                    marker = bundle.blob_marker(local, name)
                    if index is not None and not index.needs_upload(name, marker):
                        report.skipped.append(name)
                        continue
                    data = (local / name).read_bytes()
                    self.upload(name, data)
                except (ClientError, BotoCoreError, OSError) as e:
                    logger.warning(f"Failed to upload credential blob {name}: {e}")
                    report.failed.append(name)
                    continue
                report.uploaded.append(name)
                if index is not None:
                    index.advance(name, marker)
            if index is not None and report.uploaded:
                self._save_index()

        if report.uploaded or report.failed:
            logger.info(
                f"Credential sync ({self._policy}): uploaded={len(report.uploaded)} "
                f"failed={len(report.failed)} skipped={len(report.skipped)}"
            )
        return report

    def delete(self, names: Optional[Iterable[str]] = None) -> None:
        """Delete remote blobs (all of the namespace when `names` is None)."""
        targets = sorted(set(names)) if names is not None else self.list_remote()
        if not targets:
            return
        try:
            self._s3.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": self._key(n)} for n in targets], "Quiet": True},
            )
        except (ClientError, BotoCoreError) as e:
            raise CredentialStoreError(f"Failed to delete credential blobs: {e}") from e
        with self._lock:
            index = self._load_index() if self._policy == POLICY_INCREMENTAL else None
            if index is not None:
                for n in targets:
                    index.forget(n)
                self._save_index()
        logger.info(f"Deleted {len(targets)} credential blobs from {self._namespace}/")


__all__ = [
    "S3CredentialStore",
    "SyncReport",
    "CredentialStoreError",
    "CredentialDecryptError",
    "POLICY_FULL",
    "POLICY_INCREMENTAL",
]
