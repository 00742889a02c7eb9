from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Union

from pydantic import BaseModel, Field


class SyncIndex(BaseModel):
    """
    Persistent index backing incremental credential sync.

    Fields
    - entries: map of blob name -> last local modification marker
      (`st_mtime_ns`) that was successfully uploaded to the remote store.

    Notes
    - A blob needs re-upload only when its current local marker is strictly
      greater than the recorded one.
    - Markers only advance for uploads that succeeded.
    """

    entries: Dict[str, int] = Field(
        default_factory=dict,
        description="Map of blob name to last uploaded modification marker",
    )

    @classmethod
    def empty(cls) -> "SyncIndex":
        return cls()

    def needs_upload(self, name: str, marker: int) -> bool:
        last = self.entries.get(name)
        return last is None or marker > last

    def advance(self, name: str, marker: int) -> None:
        self.entries[name] = max(marker, self.entries.get(name, marker))

    def forget(self, name: str) -> None:
        self.entries.pop(name, None)

    # -------- Persistence --------
    @classmethod
    def load(cls, path: Union[str, os.PathLike[str]]) -> "SyncIndex":
        """Load from `path`; a missing or corrupt file yields an empty index."""
        p = Path(path)
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
            return cls.model_validate(raw)
        except FileNotFoundError:
            return cls.empty()
        except ValueError:
            # Corrupt index: everything is simply re-uploaded once
            return cls.empty()

    def save(self, path: Union[str, os.PathLike[str]]) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + ".tmp")
        tmp.write_text(
            json.dumps(self.model_dump(), separators=(",", ":"), sort_keys=True),
            encoding="utf-8",
        )
        os.replace(tmp, p)
