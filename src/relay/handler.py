from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional

from loguru import logger

from common.config import Settings
from common.log import configure_logging

from .context import RelayContext


async def run(settings: Settings, *, stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Run the relay until `stop_event` is set (SIGINT/SIGTERM by default).

    - Builds the owned `RelayContext` from settings.
    - Starts event consumers, the admin server and the session.
    - On shutdown cancels pending replies, background syncs and reconnects.
    """
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform / not the main thread
            pass

    ctx = RelayContext.build(settings)
    try:
        await ctx.start()
        await stop_event.wait()
    finally:
        await ctx.stop()


def main() -> None:
    """Console entry point: configuration errors are fatal, nothing else is."""
    try:
        settings = Settings.from_env()
    except (RuntimeError, ValueError) as e:
        configure_logging("INFO")
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(settings.log_level)
    logger.info(f"Starting relay for {settings.client_id} (sync={settings.sync_policy})")
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
