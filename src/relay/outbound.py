from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from loguru import logger

from common.webhook import WebhookClient, WebhookError
from connection.client import ProtocolError
from connection.supervisor import NotConnectedError

from .inbound import InboundMessage


Sender = Callable[[str, str], Awaitable[None]]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class PendingReply:
    target: str
    text: str
    fire_at: float  # clock() value at which the reply is due


def build_payload(message: InboundMessage) -> Dict[str, Any]:
    """
    Webhook request body.

    `from` and `message` are the contract with the automation and must keep
    these exact names; the remaining keys are diagnostic and may grow.
    """
    payload: Dict[str, Any] = {"from": message.sender, "message": message.text}
    payload["isGroup"] = message.is_group
    payload["messageId"] = message.message_id
    payload["rawSource"] = message.raw_source
    if message.timestamp is not None:
        payload["timestamp"] = message.timestamp
    return payload


class OutboundRelay:
    """
    Relays admitted messages to the webhook and schedules delayed replies.

    - Each relay and each scheduled reply runs as its own task; replies are
      never coalesced, so two replies to one sender both fire in timer order.
    - Replies are delivered after a uniform random delay in
      `[delay_min, delay_max]` seconds. A reply that cannot be sent when due
      (e.g., not connected) is logged and dropped.
    - Pending work is in-memory only and is cancelled by `aclose()`.
    """

    def __init__(
        self,
        *,
        webhook: Optional[WebhookClient],
        sender: Sender,
        delay_min: float = 10.0,
        delay_max: float = 20.0,
        rng: Optional[random.Random] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if delay_min < 0 or delay_min > delay_max:
            raise ValueError("invalid reply delay window")
        self._webhook = webhook
        self._sender = sender
        self._delay_min = delay_min
        self._delay_max = delay_max
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._pending: Dict[asyncio.Task[Any], PendingReply] = {}

    @property
    def pending(self) -> list[PendingReply]:
        return sorted(self._pending.values(), key=lambda p: p.fire_at)

    def submit(self, message: InboundMessage) -> asyncio.Task[Optional[PendingReply]]:
        """Relay `message` in the background; returns the relay task."""
        return self._spawn(self.relay(message))

    async def relay(self, message: InboundMessage) -> Optional[PendingReply]:
        """Call the webhook and schedule the reply, if any."""
        if self._webhook is None:
            logger.debug(f"No webhook configured; not relaying {message.message_id}")
            return None
        started = self._clock()
        try:
            data = await self._webhook.post(build_payload(message))
        except WebhookError as e:
            logger.error(f"Webhook error for {message.message_id}: {e}")
            return None

        reply = WebhookClient.extract_reply(data)
        if reply is None:
            return None
        return self.schedule(message.raw_source, reply, since=started)

    def schedule(self, target: str, text: str, *, since: Optional[float] = None) -> PendingReply:
        """Schedule `text` to `target`; the delay is measured from `since` (default: now)."""
        now = self._clock()
        start = now if since is None else since
        fire_at = start + self._rng.uniform(self._delay_min, self._delay_max)
        delay = max(0.0, fire_at - now)
        pending = PendingReply(target=target, text=text, fire_at=fire_at)
        task = self._spawn(self._deliver(pending, delay))
        self._pending[task] = pending
        logger.info(f"Reply to {target} scheduled in {delay:.1f}s")
        return pending

    async def _deliver(self, pending: PendingReply, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self._sender(pending.target, pending.text)
        except NotConnectedError as e:
            logger.warning(f"Dropping reply to {pending.target}: {e}")
            return
        except ProtocolError as e:
            logger.error(f"Failed to send reply to {pending.target}: {e}")
            return
        logger.info(f"Reply sent to {pending.target}: {pending.text}")

    async def aclose(self) -> None:
        """Best-effort cancellation of in-flight relays and pending replies."""
        tasks = list(self._tasks)
        pending = len(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if pending:
            logger.info(f"Cancelled {pending} pending replies")
        self._tasks.clear()
        self._pending.clear()

    async def drain(self) -> None:
        """Wait until every relay and scheduled reply has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        self._pending.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Relay task failed: {exc}")


__all__ = ["OutboundRelay", "PendingReply", "build_payload"]
