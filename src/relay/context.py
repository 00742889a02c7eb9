from __future__ import annotations

import asyncio
import contextlib
import random
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import httpx
from loguru import logger

from admin.server import AdminServer
from common.config import Settings
from common.dedup import DedupWindow
from common.identity import DEFAULT_NUMBER_RULES
from common.webhook import WebhookClient
from connection.bridge import BridgeClient
from connection.client import ProtocolClient
from connection.events import MessagesUpserted
from connection.supervisor import Backoff, ConnectionSupervisor
from state.s3_store import S3CredentialStore

from .inbound import InboundFilter
from .outbound import OutboundRelay


@dataclass
class RelayContext:
    """
    Everything the process shares, constructed once and passed explicitly.

    The supervisor owns the connection handle; the inbound filter owns the
    dedup window; the relay only reaches the connection through
    `supervisor.send`.
    """

    settings: Settings
    store: S3CredentialStore
    supervisor: ConnectionSupervisor
    inbound_queue: "asyncio.Queue[MessagesUpserted]"
    inbound: InboundFilter
    relay: OutboundRelay
    webhook: Optional[WebhookClient] = None
    admin: Optional[AdminServer] = None
    _tasks: List["asyncio.Task[Any]"] = field(default_factory=list, init=False, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        s3: Optional[object] = None,
        client_factory: Optional[Callable[[], ProtocolClient]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        with_admin: bool = True,
        sleep: Any = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> "RelayContext":
        store = S3CredentialStore.from_settings(settings, s3=s3)
        factory = client_factory or (lambda: BridgeClient(settings.bridge_url, token=settings.bridge_token))
        queue: "asyncio.Queue[MessagesUpserted]" = asyncio.Queue()
        rng = rng or random.Random()
        supervisor = ConnectionSupervisor(
            store=store,
            auth_dir=settings.auth_dir,
            client_factory=factory,
            inbound=queue,
            backoff=Backoff(
                base=settings.reconnect_delay,
                cap=settings.reconnect_max_delay,
                jitter=settings.reconnect_jitter,
                rng=rng,
            ),
            sleep=sleep,
        )
        inbound = InboundFilter(
            dedup=DedupWindow(settings.dedup_capacity),
            rules=DEFAULT_NUMBER_RULES if settings.br_mobile_digit_fix else (),
        )
        webhook = None
        if settings.webhook_url:
            webhook = WebhookClient(settings.webhook_url, timeout=settings.webhook_timeout, client=http_client)
        else:
            logger.warning("WEBHOOK_URL is not set; inbound messages will only be logged")
        relay = OutboundRelay(
            webhook=webhook,
            sender=supervisor.send,
            delay_min=settings.reply_delay_min,
            delay_max=settings.reply_delay_max,
            rng=rng,
            sleep=sleep,
        )
        admin = None
        if with_admin:
            admin = AdminServer(
                host=settings.host,
                port=settings.port,
                sender=supervisor.send,
                relink=supervisor.relink,
            )
        return cls(
            settings=settings,
            store=store,
            supervisor=supervisor,
            inbound_queue=queue,
            inbound=inbound,
            relay=relay,
            webhook=webhook,
            admin=admin,
        )

    async def start(self) -> None:
        """Start consumers first so no event is missed, then the session."""
        self._tasks.append(asyncio.create_task(self.supervisor.run(), name="supervisor-events"))
        self._tasks.append(
            asyncio.create_task(self.inbound.run(self.inbound_queue, self.relay.submit), name="inbound-filter")
        )
        if self.admin is not None:
            await self.admin.start()
        await self.supervisor.start()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.relay.aclose()
        await self.supervisor.stop()
        if self.admin is not None:
            await self.admin.stop()
        if self.webhook is not None:
            await self.webhook.aclose()
        logger.info("Relay stopped")


__all__ = ["RelayContext"]
