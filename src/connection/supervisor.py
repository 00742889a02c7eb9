from __future__ import annotations

import asyncio
import contextlib
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set

from loguru import logger

from state import bundle
from state.s3_store import CredentialStoreError, S3CredentialStore

from .client import ProtocolClient, ProtocolError
from .events import (
    REASON_CONNECTION_LOST,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    LinkChallenge,
    MessagesUpserted,
    ProtocolEvent,
)
from .qr import render_link_challenge


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    AWAITING_LINK = "awaiting_link"
    CONNECTED = "connected"
    LOGGED_OUT = "logged_out"


class NotConnectedError(RuntimeError):
    """A send was attempted while the connection is not open."""


class LoggedOutError(NotConnectedError):
    """The session was revoked; an operator has to link the device again."""


@dataclass
class Backoff:
    """
    Reconnect delay policy.

    - `delay(n)` for the n-th consecutive attempt is `base * 2**(n-1)`, capped
      at `cap`, plus uniform jitter in `[0, jitter]`.
    - With `cap == base` and no jitter this is the fixed delay loop.
    """

    base: float = 5.0
    cap: float = 5.0
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random)

    def delay(self, attempt: int) -> float:
        exp = max(0, attempt - 1)
        d = min(self.cap, self.base * (2 ** min(exp, 32)))
        if self.jitter > 0:
            d += self.rng.uniform(0.0, self.jitter)
        return d


Sleep = Callable[[float], Awaitable[Any]]


class ConnectionSupervisor:
    """
    Owns the connection lifecycle.

    States: disconnected -> awaiting_link -> connected, with `closed` events
    leading back to disconnected (and a scheduled reconnect) or, when the
    session was revoked, to the terminal logged_out state.

    Protocol events arrive on an internal queue consumed by `run()`. Message
    batches are forwarded untouched to the `inbound` queue; everything else
    is handled here.
    """

    def __init__(
        self,
        *,
        store: S3CredentialStore,
        auth_dir: str,
        client_factory: Callable[[], ProtocolClient],
        inbound: "asyncio.Queue[MessagesUpserted]",
        backoff: Optional[Backoff] = None,
        on_link_challenge: Callable[[str], Any] = render_link_challenge,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._auth_dir = auth_dir
        self._client_factory = client_factory
        self._inbound = inbound
        self._backoff = backoff or Backoff()
        self._on_link_challenge = on_link_challenge
        self._sleep = sleep

        self._events: "asyncio.Queue[ProtocolEvent]" = asyncio.Queue()
        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[ProtocolClient] = None
        self._fetched = False
        self._attempt = 0
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[Any]] = set()

    # -------- Introspection --------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def events(self) -> "asyncio.Queue[ProtocolEvent]":
        return self._events

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def reconnect_attempt(self) -> int:
        return self._attempt

    # -------- Lifecycle --------
    async def start(self) -> None:
        """Restore credentials and request a session (disconnected -> awaiting_link)."""
        await self._link_or_retry()

    async def run(self) -> None:
        """Consume protocol events until cancelled."""
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.exception(f"Failed to handle protocol event {type(event).__name__}: {e}")

    async def stop(self) -> None:
        """Cancel timers and background work, then close the client."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        await self._close_client()

    async def relink(self) -> None:
        """
        Start over with a fresh link challenge.

        The credential bundle is discarded first (remote and local): after the
        session was revoked it would only be rejected again. A live session is
        logged out before relinking.
        """
        if self._state is ConnectionState.LOGGED_OUT:
            await self._clear_credentials()
        else:
            await self.logout()
        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        logger.info("Relinking with an empty credential bundle")
        await self._link_or_retry(restore=False)

    async def logout(self) -> None:
        """
        Forced logout: revoke the session and delete the credential bundle
        both remotely and locally. Credentials are only deleted here and by
        `relink()`.
        """
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        client = self._client
        if client is not None:
            try:
                await client.logout()
            except ProtocolError as e:
                logger.warning(f"Protocol logout failed, tearing down anyway: {e}")
        self._state = ConnectionState.LOGGED_OUT
        await self._close_client()
        await self._clear_credentials()
        logger.info("Session torn down; relink required")

    # -------- Sending --------
    async def send(self, identity: str, text: str) -> None:
        if self._state is ConnectionState.LOGGED_OUT:
            raise LoggedOutError("Session is logged out")
        client = self._client
        if self._state is not ConnectionState.CONNECTED or client is None:
            raise NotConnectedError(f"Connection is {self._state.value}")
        await client.send_text(identity, text)

    # -------- Event handling --------
    async def handle_event(self, event: ProtocolEvent) -> None:
        if isinstance(event, MessagesUpserted):
            await self._inbound.put(event)
        elif isinstance(event, CredentialsUpdated):
            await self._on_credentials(event)
        elif isinstance(event, LinkChallenge):
            self._on_link(event)
        elif isinstance(event, ConnectionOpened):
            self._on_open()
        elif isinstance(event, ConnectionClosed):
            await self._on_closed(event)
        else:
            logger.debug(f"Ignoring unknown protocol event {event!r}")

    def _on_link(self, event: LinkChallenge) -> None:
        if self._state is ConnectionState.CONNECTED:
            logger.debug("Ignoring link challenge while connected")
            return
        try:
            self._on_link_challenge(event.code)
        except Exception as e:
            logger.warning(f"Failed to render link challenge: {e}")

    def _on_open(self) -> None:
        self._state = ConnectionState.CONNECTED
        self._attempt = 0
        logger.info("Connected")

    async def _on_closed(self, event: ConnectionClosed) -> None:
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.LOGGED_OUT):
            # Already handled for this session
            logger.debug(f"Ignoring close ({event.reason}) while {self._state.value}")
            return

        logger.warning(f"Disconnected: reason={event.reason} status={event.status_code}")
        await self._close_client()
        if event.logged_out:
            self._state = ConnectionState.LOGGED_OUT
            logger.error("Logged out: link this device again to resume")
            return

        self._state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    async def _on_credentials(self, event: CredentialsUpdated) -> None:
        changed = await asyncio.to_thread(bundle.write_bundle, self._auth_dir, event.files)
        if not changed:
            return
        self._spawn(self._sync(changed))

    async def _sync(self, changed: list[str]) -> None:
        await asyncio.to_thread(self._store.sync_from, self._auth_dir, changed)

    # -------- Internal --------
    async def _clear_credentials(self) -> None:
        try:
            await asyncio.to_thread(self._store.delete)
        except CredentialStoreError as e:
            logger.warning(f"Failed to delete remote credentials: {e}")
        await asyncio.to_thread(bundle.clear_bundle, self._auth_dir)
        self._fetched = False

    async def _link_or_retry(self, *, restore: bool = True) -> None:
        """Run `_link`; any unexpected failure counts as a disconnect and is retried."""
        try:
            await self._link(restore=restore)
        except Exception as e:
            logger.exception(f"Failed to start session: {e}")
            if self._state is ConnectionState.LOGGED_OUT:
                return
            await self._close_client()
            self._state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()

    async def _link(self, *, restore: bool = True) -> None:
        if self._state is ConnectionState.LOGGED_OUT:
            return
        # Remote is consulted on first start, later only if nothing is on disk
        if restore and (not self._fetched or not bundle.list_blobs(self._auth_dir)):
            self._fetched = True
            try:
                await asyncio.to_thread(self._store.fetch_into, self._auth_dir)
            except CredentialStoreError as e:
                logger.warning(f"Could not restore credentials, using local bundle: {e}")

        creds = await asyncio.to_thread(bundle.read_bundle, self._auth_dir)
        client = self._client_factory()
        self._client = client
        self._state = ConnectionState.AWAITING_LINK
        logger.info(f"Opening session ({len(creds)} credential blobs)")
        try:
            await client.open(creds, self._events)
        except ProtocolError as e:
            logger.warning(f"Failed to open session: {e}")
            await self._on_closed(ConnectionClosed(reason=REASON_CONNECTION_LOST))

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        self._attempt += 1
        delay = self._backoff.delay(self._attempt)
        logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._attempt})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        self._reconnect_task.add_done_callback(self._on_task_done)

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._reconnect_task = None
        await self._link_or_retry()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error while closing protocol client: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        self._on_task_done(task)

    @staticmethod
    def _on_task_done(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Supervisor background task failed: {exc}")


__all__ = [
    "Backoff",
    "ConnectionState",
    "ConnectionSupervisor",
    "LoggedOutError",
    "NotConnectedError",
]
