"""Process entry point for gatebot.

Logging is configured twice: once with defaults so that config loading
can log, and again once settings.yaml is known. The bot then runs until
SIGINT/SIGTERM (or until it stops on its own) and is always shut down
through GatewayBot.stop().
"""

import asyncio
import signal
import sys
from typing import Callable

import structlog

from . import __version__
from .logging_config import setup_logging

logger = structlog.get_logger("gatebot.bot")


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, on_signal: Callable[[signal.Signals], None]):
    """Route SIGTERM/SIGINT to ``on_signal`` on the event loop thread."""
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except NotImplementedError:
            # No loop signal support on Windows; SIGINT still works via signal.signal
            if sig is signal.SIGINT:
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(on_signal, signal.SIGINT))


async def main():
    setup_logging()
    logger.info("gatebot_starting", version=__version__)

    # Imported late so module-level loggers bind after logging is configured
    from .bot import GatewayBot
    from .config import get_config

    config = get_config()
    config.validate()
    setup_logging(config)

    bot = GatewayBot(config)
    stop_requested = asyncio.Event()

    def request_stop(sig: signal.Signals):
        logger.info("shutdown_signal_received", signal=sig.name)
        stop_requested.set()

    _install_signal_handlers(asyncio.get_running_loop(), request_stop)

    bot_task = asyncio.create_task(bot.run(), name="gatebot")
    stop_task = asyncio.create_task(stop_requested.wait(), name="gatebot-shutdown")
    try:
        done, _ = await asyncio.wait({bot_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if bot_task in done and not bot_task.cancelled() and bot_task.exception() is not None:
            logger.error("bot_crashed", error=str(bot_task.exception()))
            raise bot_task.exception()
    finally:
        for task in (bot_task, stop_task):
            task.cancel()
        await asyncio.gather(bot_task, stop_task, return_exceptions=True)
        await bot.stop()
        logger.info("gatebot_stopped")


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except SystemExit as e:
        sys.exit(e.code)


if __name__ == "__main__":
    run()
