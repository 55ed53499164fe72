"""Bot assembly and lifecycle.

GatewayBot is the single process-wide object: it builds every
component from the Config and hands each one its collaborators
explicitly (no module-level singletons are used below this point).

    QQBotAPI ─┬─ TokenProvider ── GatewaySession ── MessageRouter ── PluginRegistry
              └──────────────────────────────────────┘ (replies)

Key classes:
    GatewayBot: Owns the components, the startup sequence and the
        terminal shutdown.
"""

import asyncio
from typing import Optional

import aiohttp
import structlog

from .api import QQBotAPI
from .config import Config
from .gateway import GatewaySession
from .media import upload_image
from .plugin_base import PluginContext
from .plugin_registry import PluginRegistry
from .render import BrowserPool, Renderer
from .router import MessageRouter
from .token_provider import TokenProvider

logger = structlog.get_logger("gatebot.bot")


class GatewayBot:
    """Gateway client plus plugin registry, wired together.

    Startup: load plugins, start the plugin watcher, connect. Shutdown
    is terminal: close the session, stop watching, clean up plugins and
    release HTTP sessions and the render browser.
    """

    def __init__(self, config: Config):
        self.config = config

        self.api = QQBotAPI(
            app_id=config.app_id,
            client_secret=config.client_secret,
            api_base_url=config.api_base_url,
            token_url=config.token_url,
            timeout=config.http_timeout,
        )
        self.tokens = TokenProvider(self.api, refresh_margin=config.token_refresh_margin)
        self.renderer = Renderer(
            BrowserPool(chrome_path=config.chrome_path, idle_timeout=config.render_idle_timeout)
        )
        self.registry = PluginRegistry(
            plugins_dir=config.plugins_dir,
            context_factory=self._make_plugin_context,
            reload_debounce=config.plugin_reload_debounce,
        )
        self.router = MessageRouter(
            registry=self.registry,
            api=self.api,
            token_source=lambda: self.tokens.token,
            image_uploader=self._upload_image,
        )
        self.session = GatewaySession(
            self.api,
            self.tokens,
            self.router.handle,
            intents=config.intents,
            shard=config.shard,
            reconnect_close_delay=config.reconnect_close_delay,
            reconnect_error_delay=config.reconnect_error_delay,
            connect_retry_delay=config.connect_retry_delay,
            session_max_age=config.session_max_age,
            default_heartbeat_interval=config.default_heartbeat_interval,
        )

        self.running = False
        self._http: Optional[aiohttp.ClientSession] = None
        self._stopped = asyncio.Event()

    def _make_plugin_context(self, plugin_name: str) -> PluginContext:
        data_dir = self.config.plugins_data_dir / plugin_name
        data_dir.mkdir(parents=True, exist_ok=True)
        return PluginContext(
            plugin_name=plugin_name,
            settings=self.config.plugin_settings(plugin_name),
            data_dir=data_dir,
            utils=self.renderer,
        )

    async def _upload_image(self, data: bytes) -> str:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await upload_image(self._http, data, self.config.image_server_url)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        """Top-level fault boundary: log and reconnect instead of exiting."""
        error = context.get("exception") or RuntimeError(context.get("message", "unknown loop error"))
        logger.error(
            "uncaught_loop_exception",
            error=str(error),
            error_type=type(error).__name__,
            message=context.get("message"),
        )
        if self.running:
            self.session.handle_fault(error)

    async def start(self):
        """Load plugins, start watching and open the gateway connection."""
        self.running = True
        asyncio.get_running_loop().set_exception_handler(self._handle_loop_exception)

        await self.registry.load()
        if self.config.plugin_watch_enabled:
            self.registry.watch()

        await self.session.connect()
        logger.info("bot_started")

    async def stop(self):
        """Terminal shutdown. Safe to call more than once."""
        if not self.running:
            return
        self.running = False
        logger.info("bot_stopping")

        await self.session.close()
        self.registry.stop_watching()
        await self.registry.cleanup()
        await self.renderer.close()
        await self.api.close()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._stopped.set()
        logger.info("bot_stopped")

    async def run(self):
        """Start and keep running until stop() or cancellation."""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()
