"""HTTP liveness and operator send API."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from loguru import logger

from common.identity import InvalidIdentityError, normalize_target


Sender = Callable[[str, str], Awaitable[None]]
Relinker = Callable[[], Awaitable[None]]

SENDER_KEY = web.AppKey("sender", object)
RELINK_KEY = web.AppKey("relink", object)

HEALTH_TEXT = "Bot is running"


async def handle_health(_request: web.Request) -> web.Response:
    return web.Response(text=HEALTH_TEXT)


async def handle_send(request: web.Request) -> web.Response:
    try:
        body: Any = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    to = body.get("to")
    message = body.get("message")
    if not isinstance(to, str) or not to.strip() or not isinstance(message, str) or not message:
        return web.json_response({"error": "to & message required"}, status=400)

    try:
        target = normalize_target(to)
    except InvalidIdentityError as e:
        return web.json_response({"error": str(e)}, status=400)

    sender: Sender = request.app[SENDER_KEY]  # type: ignore[assignment]
    try:
        await sender(target, message)
    except Exception as e:
        logger.warning(f"Send to {target} failed: {e}")
        return web.json_response({"error": str(e)}, status=500)

    logger.info(f"Sent operator message to {target}")
    return web.json_response({"success": True, "sent_to": target})


async def handle_relink(request: web.Request) -> web.Response:
    relink: Relinker = request.app[RELINK_KEY]  # type: ignore[assignment]
    try:
        await relink()
    except Exception as e:
        logger.warning(f"Relink failed: {e}")
        return web.json_response({"error": str(e)}, status=500)

    logger.info("Operator requested relink; waiting for a new link challenge")
    return web.json_response({"success": True})


def create_app(sender: Sender, relink: Optional[Relinker] = None) -> web.Application:
    app = web.Application()
    app[SENDER_KEY] = sender
    app.router.add_get("/", handle_health)
    app.router.add_post("/send", handle_send)
    if relink is not None:
        app[RELINK_KEY] = relink
        app.router.add_post("/relink", handle_relink)
    return app


class AdminServer:
    def __init__(self, *, host: str, port: int, sender: Sender, relink: Optional[Relinker] = None) -> None:
        self._host = host
        self._port = port
        self._app = create_app(sender, relink)
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info(f"HTTP server listening on {self._host}:{self._port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
        self._runner = None


__all__ = ["AdminServer", "create_app", "HEALTH_TEXT"]
