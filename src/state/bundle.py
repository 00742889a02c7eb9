"""
Local credential bundle: a directory of opaque named blobs.

Writes go through a temporary file and `os.replace`, so a reader never sees
a partially written blob.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Union
from uuid import uuid4


PathLike = Union[str, os.PathLike[str]]

# Temporary files written next to their target; never part of the bundle
_TMP_MARK = ".tmp-"


def _is_blob(p: Path) -> bool:
    return p.is_file() and _TMP_MARK not in p.name


def _check_name(name: str) -> str:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ValueError(f"Invalid blob name: {name!r}")
    return name


def list_blobs(path: PathLike) -> List[str]:
    p = Path(path)
    if not p.is_dir():
        return []
    return sorted(child.name for child in p.iterdir() if _is_blob(child))


def read_bundle(path: PathLike) -> Dict[str, bytes]:
    """Return every blob in `path` (empty dict when the directory is absent)."""
    p = Path(path)
    return {name: (p / name).read_bytes() for name in list_blobs(p)}


def blob_marker(path: PathLike, name: str) -> int:
    """Local modification marker for a blob (nanosecond mtime)."""
    return (Path(path) / name).stat().st_mtime_ns


def write_blob(path: PathLike, name: str, data: bytes) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    target = p / _check_name(name)
    tmp = p / f"{name}{_TMP_MARK}{uuid4().hex}"
    previous = target.stat().st_mtime_ns if target.exists() else None
    try:
        with tmp.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
        # Markers must strictly increase even on coarse-mtime filesystems
        if previous is not None and target.stat().st_mtime_ns <= previous:
            os.utime(target, ns=(previous + 1, previous + 1))
    finally:
        if tmp.exists():
            tmp.unlink()


def write_bundle(path: PathLike, files: Mapping[str, bytes]) -> List[str]:
    """
    Persist `files` into `path`, returning the names whose content changed.

    Unchanged blobs are not rewritten so their modification marker stays put.
    Blobs absent from `files` are left untouched.
    """
    p = Path(path)
    changed: List[str] = []
    for name, data in files.items():
        target = p / _check_name(name)
        if target.is_file() and target.read_bytes() == data:
            continue
        write_blob(p, name, data)
        changed.append(name)
    return changed


def clear_bundle(path: PathLike) -> None:
    """Delete the whole local bundle directory (session teardown only)."""
    shutil.rmtree(Path(path), ignore_errors=True)


__all__ = [
    "blob_marker",
    "clear_bundle",
    "list_blobs",
    "read_bundle",
    "write_blob",
    "write_bundle",
]
