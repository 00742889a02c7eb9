from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict

from .events import ProtocolEvent


class ProtocolError(RuntimeError):
    """The protocol client failed to carry out a command."""


class ProtocolClient(ABC):
    """
    Boundary to the messaging-protocol library.

    A client is single-use: `open()` starts one session with a credential
    bundle and publishes typed events to `events` until the session closes
    (the last event of a session is always `ConnectionClosed`). A new client
    is created for every (re)connect.
    """

    @abstractmethod
    async def open(self, bundle: Dict[str, bytes], events: "asyncio.Queue[ProtocolEvent]") -> None:
        """Start the session; returns once the session has been requested."""

    @abstractmethod
    async def send_text(self, identity: str, text: str) -> None:
        """Send a text message; raises ProtocolError on failure."""

    @abstractmethod
    async def logout(self) -> None:
        """Revoke the session on the protocol side."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources without revoking the session."""


__all__ = ["ProtocolClient", "ProtocolError"]
