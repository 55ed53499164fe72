"""Tests for GatewayBot assembly and lifecycle."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from gatebot.bot import GatewayBot
from gatebot.config import Config


def _make_config(tmp_path, **plugins):
    config = Config.__new__(Config)
    config.config_dir = tmp_path / "config"
    config.settings = {
        "bot": {"app_id": "app", "client_secret": "secret"},
        "plugins": {
            "dir": str(tmp_path / "plugins"),
            "data_dir": str(tmp_path / "data"),
            "watch": False,
            "settings": {"weather": {"city": "Shanghai"}},
            **plugins,
        },
        "image_server_url": "https://img.test/upload",
    }
    return config


class TestAssembly:

    def test_components_wired(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        assert bot.router.registry is bot.registry
        assert bot.session._tokens is bot.tokens
        assert bot.session._on_message == bot.router.handle
        assert bot.registry.plugins_dir == tmp_path / "plugins"

    def test_plugin_context(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        ctx = bot._make_plugin_context("weather")
        assert ctx.data_dir == tmp_path / "data" / "weather"
        assert ctx.data_dir.is_dir()
        assert ctx.get_config("city") == "Shanghai"
        assert ctx.utils is bot.renderer

    @pytest.mark.asyncio
    async def test_raw_images_uploaded_to_configured_server(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        with patch("gatebot.bot.upload_image", AsyncMock(return_value="https://img.test/x.png")) as upload:
            url = await bot._upload_image(b"\x89PNG")
        assert url == "https://img.test/x.png"
        assert upload.call_args[0][1:] == (b"\x89PNG", "https://img.test/upload")
        await bot._http.close()


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_loads_plugins_then_connects(self, tmp_path):
        plugin_dir = tmp_path / "plugins" / "echo"
        plugin_dir.mkdir(parents=True)
        (plugin_dir / "manifest.json").write_text(json.dumps({"name": "echo", "command_types": ["echo"]}))
        (plugin_dir / "plugin.py").write_text("echo = {'main': lambda t, b, s, p: b}\n")

        bot = GatewayBot(_make_config(tmp_path))
        bot.session.connect = AsyncMock()
        bot.session.close = AsyncMock()
        loop = asyncio.get_running_loop()
        try:
            await bot.start()
            assert bot.running
            assert [p.name for p in bot.registry.generation.plugins] == ["echo"]
            bot.session.connect.assert_awaited_once()
            assert bot.registry._watcher is None
        finally:
            await bot.stop()
            loop.set_exception_handler(None)

        bot.session.close.assert_awaited_once()
        assert not bot.running

    @pytest.mark.asyncio
    async def test_watch_started_when_enabled(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path, watch=True))
        bot.session.connect = AsyncMock()
        bot.session.close = AsyncMock()
        loop = asyncio.get_running_loop()
        with patch.object(bot.registry, "watch") as watch, \
                patch.object(bot.registry, "stop_watching") as stop_watching:
            try:
                await bot.start()
                watch.assert_called_once()
            finally:
                await bot.stop()
                loop.set_exception_handler(None)
            stop_watching.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        bot.session.connect = AsyncMock()
        bot.session.close = AsyncMock()
        loop = asyncio.get_running_loop()
        await bot.start()
        await bot.stop()
        await bot.stop()
        loop.set_exception_handler(None)
        bot.session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_returns_after_stop(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        bot.session.connect = AsyncMock()
        bot.session.close = AsyncMock()
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(bot.run())
        try:
            await asyncio.sleep(0.05)
            assert bot.running
            await bot.stop()
            await asyncio.wait_for(task, timeout=1)
        finally:
            loop.set_exception_handler(None)


class TestFaultBoundary:

    def test_loop_exception_triggers_fault_recovery(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        bot.session.handle_fault = MagicMock()
        bot.running = True
        error = RuntimeError("escaped")
        bot._handle_loop_exception(MagicMock(), {"exception": error, "message": "Task exception"})
        bot.session.handle_fault.assert_called_once_with(error)

    def test_loop_exception_ignored_when_stopped(self, tmp_path):
        bot = GatewayBot(_make_config(tmp_path))
        bot.session.handle_fault = MagicMock()
        bot._handle_loop_exception(MagicMock(), {"message": "no exception object"})
        bot.session.handle_fault.assert_not_called()
