"""
Protocol client talking JSON frames over a websocket to a bridge sidecar
that runs the messaging-protocol library.

Frames: `{"type": str, "payload": dict, "requestId"?: str}`.

Bridge -> client
- `qr`          {"qr": str}
- `connection`  {"status": "open" | "close", "reason"?: str, "statusCode"?: int}
- `creds`       {"files": {name: base64}}
- `messages`    {"type": "notify" | ..., "messages": [raw message, ...]}
- `response`    {"ok": bool, "error"?: str}  (answers a command by requestId)
- `error`       {"error": str}

Client -> bridge commands: `open` {"creds": {name: base64}}, `send_text`
{"to", "text"}, `logout` {}. Every command carries the shared token.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed as WebSocketClosed

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


MAX_FRAME_BYTES = 16 * 1024 * 1024

Connector = Callable[..., Awaitable[Any]]


def _encode_files(files: Dict[str, bytes]) -> Dict[str, str]:
    return {name: base64.b64encode(data).decode("ascii") for name, data in files.items()}


def _decode_files(raw: Any) -> Dict[str, bytes]:
    out: Dict[str, bytes] = {}
    if not isinstance(raw, dict):
        return out
    for name, value in raw.items():
        if not isinstance(name, str) or not isinstance(value, str):
            continue
        try:
            out[name] = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            logger.warning(f"Dropping undecodable credential blob from bridge: {name}")
    return out


class BridgeClient(ProtocolClient):
    """Single-use websocket session with the protocol bridge."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        command_timeout: float = 20.0,
        connect: Optional[Connector] = None,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        self._url = url
        self._token = token
        self._command_timeout = command_timeout
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._events: Optional["asyncio.Queue[ProtocolEvent]"] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._pending: Dict[str, asyncio.Future[Dict[str, Any]]] = {}
        self._close_emitted = False
        self._closing = False

    # --------------- Public API ---------------
    async def open(self, bundle: Dict[str, bytes], events: "asyncio.Queue[ProtocolEvent]") -> None:
        self._events = events
        try:
            self._ws = await self._connect(
                self._url,
                max_size=MAX_FRAME_BYTES,
                ping_interval=20,
                ping_timeout=20,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ProtocolError(f"Failed to connect to bridge at {self._url}: {e}") from e

        self._reader = asyncio.create_task(self._read_loop())
        await self._command("open", {"creds": _encode_files(bundle)})

    async def send_text(self, identity: str, text: str) -> None:
        await self._command("send_text", {"to": identity, "text": text})

    async def logout(self) -> None:
        await self._command("logout", {})

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        self._ws = None
        self._fail_pending("Bridge client closed")

    # --------------- Internal ---------------
    async def _command(self, name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._ws is None:
            raise ProtocolError("Bridge is not connected")
        request_id = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Dict[str, Any]] = loop.create_future()
        self._pending[request_id] = fut
        frame = {"type": name, "requestId": request_id, "payload": payload}
        if self._token:
            frame["token"] = self._token
        try:
            await self._ws.send(json.dumps(frame))
            resp = await asyncio.wait_for(fut, timeout=self._command_timeout)
        except asyncio.TimeoutError as e:
            raise ProtocolError(f"Bridge command {name} timed out") from e
        except WebSocketClosed as e:
            raise ProtocolError(f"Bridge connection closed during {name}") from e
        finally:
            self._pending.pop(request_id, None)

        if not resp.get("ok", False):
            raise ProtocolError(f"Bridge command {name} failed: {resp.get('error') or 'unknown error'}")
        return resp

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                await self._handle_frame(raw)
        except WebSocketClosed as e:
            logger.warning(f"Bridge websocket closed: {e}")
        finally:
            self._fail_pending("Bridge connection closed")
            if not self._closing and not self._close_emitted:
                await self._emit(ConnectionClosed(reason=REASON_CONNECTION_LOST))

    async def _emit(self, event: ProtocolEvent) -> None:
        if isinstance(event, ConnectionClosed):
            self._close_emitted = True
        if self._events is not None:
            await self._events.put(event)

    async def _handle_frame(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid JSON from bridge")
            return
        if not isinstance(data, dict):
            logger.warning("Invalid bridge frame shape")
            return

        msg_type = data.get("type")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if msg_type == "response":
            request_id = data.get("requestId")
            fut = self._pending.get(request_id) if isinstance(request_id, str) else None
            if fut is not None and not fut.done():
                fut.set_result(payload)
            return

        if msg_type == "qr":
            code = payload.get("qr")
            if isinstance(code, str) and code:
                await self._emit(LinkChallenge(code=code))
            return

        if msg_type == "connection":
            status = payload.get("status")
            if status == "open":
                await self._emit(ConnectionOpened())
            elif status == "close":
                code = payload.get("statusCode")
                await self._emit(
                    ConnectionClosed(
                        reason=str(payload.get("reason") or "unknown"),
                        status_code=int(code) if isinstance(code, (int, float)) else None,
                    )
                )
            return

        if msg_type == "creds":
            files = _decode_files(payload.get("files"))
            if files:
                await self._emit(CredentialsUpdated(files=files))
            return

        if msg_type == "messages":
            messages = payload.get("messages")
            if isinstance(messages, list):
                await self._emit(
                    MessagesUpserted(
                        kind=str(payload.get("type") or ""),
                        messages=[m for m in messages if isinstance(m, dict)],
                    )
                )
            return

        if msg_type == "error":
            logger.error(f"Bridge error: {payload.get('error')}")
            return

        logger.debug(f"Ignoring bridge frame of type {msg_type!r}")

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(ProtocolError(reason))
        self._pending.clear()


__all__ = ["BridgeClient"]
