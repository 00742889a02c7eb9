"""
Credential state persistence.

- models: `SyncIndex`, the persisted name -> marker index for incremental sync
- bundle: atomic local I/O for the credential bundle directory
- s3_store: `S3CredentialStore`, local <-> S3 synchronization
"""

from .models import SyncIndex

__all__ = ["SyncIndex"]
