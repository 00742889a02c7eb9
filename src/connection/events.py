"""Typed events published by a protocol client onto the supervisor's queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


# Close reason reported when the session was revoked on the protocol side
REASON_LOGGED_OUT = "loggedOut"
REASON_CONNECTION_LOST = "connectionLost"
# Status code the protocol uses for a revoked session
LOGGED_OUT_STATUS = 401

# Upsert kind for live messages (as opposed to history sync / append)
UPSERT_NOTIFY = "notify"


@dataclass(frozen=True)
class LinkChallenge:
    code: str


@dataclass(frozen=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True)
class ConnectionClosed:
    reason: str = REASON_CONNECTION_LOST
    status_code: Optional[int] = None

    @property
    def logged_out(self) -> bool:
        return self.reason == REASON_LOGGED_OUT or self.status_code == LOGGED_OUT_STATUS


@dataclass(frozen=True)
class CredentialsUpdated:
    files: Dict[str, bytes] = field(default_factory=dict)


@dataclass(frozen=True)
class MessagesUpserted:
    kind: str
    messages: List[Dict[str, Any]] = field(default_factory=list)


ProtocolEvent = Union[LinkChallenge, ConnectionOpened, ConnectionClosed, CredentialsUpdated, MessagesUpserted]


__all__ = [
    "LOGGED_OUT_STATUS",
    "REASON_CONNECTION_LOST",
    "REASON_LOGGED_OUT",
    "UPSERT_NOTIFY",
    "ConnectionClosed",
    "ConnectionOpened",
    "CredentialsUpdated",
    "LinkChallenge",
    "MessagesUpserted",
    "ProtocolEvent",
]
