from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from common.dedup import DedupWindow
from common.identity import (
    DEFAULT_NUMBER_RULES,
    InvalidIdentityError,
    NumberRule,
    is_group,
    is_system_channel,
    normalize_sender,
)
from connection.events import UPSERT_NOTIFY, MessagesUpserted


class MalformedInboundError(ValueError):
    """An inbound event carries no resolvable sender or identifier."""


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    raw_source: str
    text: str
    timestamp: Optional[int]
    message_id: str
    is_group: bool = False


def _as_dict(v: Any) -> Dict[str, Any]:
    return v if isinstance(v, dict) else {}


def extract_text(msg: Dict[str, Any]) -> str:
    """Plain conversation text, else the text of an extended text message."""
    content = _as_dict(msg.get("message"))
    text = content.get("conversation")
    if not isinstance(text, str) or not text:
        text = _as_dict(content.get("extendedTextMessage")).get("text")
    return text if isinstance(text, str) else ""


def extract_timestamp(msg: Dict[str, Any]) -> Optional[int]:
    raw = msg.get("messageTimestamp")
    # Protobuf longs may arrive as {"low": int, "high": int, "unsigned": bool}
    if isinstance(raw, dict):
        raw = raw.get("low")
    if isinstance(raw, bool):
        return None
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def resolve_sender_jid(msg: Dict[str, Any]) -> str:
    """
    Pick the identifier that best represents the sender.

    Groups keep their group identifier. Otherwise the first present of:
    verified phone number (`senderPn`), participant, source (`remoteJid`).
    """
    key = _as_dict(msg.get("key"))
    remote = key.get("remoteJid")
    if is_group(remote):
        return remote

    for candidate in (
        key.get("senderPn"),
        msg.get("senderPn"),
        msg.get("participant"),
        key.get("participant"),
        remote,
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    raise MalformedInboundError("No sender identifier on inbound message")


class InboundFilter:
    """
    Admission, deduplication and sender normalization for inbound messages.

    Steps, in order, for each raw message
    1. admission: drop messages without text, sent by this session, or
       coming from a broadcast/system channel;
    2. deduplication against a bounded FIFO window of message ids;
    3. sender normalization (see `common.identity.normalize_sender`).

    The dedup window is only mutated from `process()`, which runs on the
    event loop before any downstream work is dispatched.
    """

    def __init__(
        self,
        *,
        dedup: DedupWindow,
        rules: Sequence[NumberRule] = DEFAULT_NUMBER_RULES,
    ) -> None:
        self._dedup = dedup
        self._rules = tuple(rules)

    @property
    def dedup(self) -> DedupWindow:
        return self._dedup

    def process(self, msg: Dict[str, Any]) -> Optional[InboundMessage]:
        """Return the normalized message, or None when it is dropped."""
        key = _as_dict(msg.get("key"))
        remote = key.get("remoteJid")

        # Admission
        if key.get("fromMe"):
            return None
        if not isinstance(remote, str) or not remote:
            logger.warning("Dropping inbound message without source identifier")
            return None
        if is_system_channel(remote):
            return None
        text = extract_text(msg)
        if not text:
            return None

        message_id = key.get("id")
        if not isinstance(message_id, str) or not message_id:
            logger.warning(f"Dropping inbound message without id from {remote}")
            return None

        # Deduplication happens before anything is dispatched downstream
        if not self._dedup.admit(message_id):
            logger.debug(f"Dropping duplicate message {message_id}")
            return None

        try:
            sender = normalize_sender(resolve_sender_jid(msg), self._rules)
        except (MalformedInboundError, InvalidIdentityError) as e:
            logger.warning(f"Dropping malformed inbound message {message_id}: {e}")
            return None

        return InboundMessage(
            sender=sender,
            raw_source=remote,
            text=text,
            timestamp=extract_timestamp(msg),
            message_id=message_id,
            is_group=is_group(remote),
        )

    def process_batch(self, event: MessagesUpserted) -> List[InboundMessage]:
        # History sync and append batches are not live traffic
        if event.kind != UPSERT_NOTIFY:
            return []
        out: List[InboundMessage] = []
        for msg in event.messages:
            admitted = self.process(msg)
            if admitted is not None:
                logger.info(f"Message from {admitted.sender}: {admitted.text}")
                out.append(admitted)
        return out

    async def run(
        self,
        queue: "asyncio.Queue[MessagesUpserted]",
        dispatch: Callable[[InboundMessage], Any],
    ) -> None:
        """Consume message batches in arrival order, dispatching each admitted message."""
        while True:
            event = await queue.get()
            for message in self.process_batch(event):
                try:
                    dispatch(message)
                except Exception as e:
                    logger.exception(f"Failed to dispatch message {message.message_id}: {e}")


__all__ = [
    "InboundFilter",
    "InboundMessage",
    "MalformedInboundError",
    "extract_text",
    "extract_timestamp",
    "resolve_sender_jid",
]
