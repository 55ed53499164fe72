"""Tests for debounced plugin hot reload."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from gatebot.plugin_watcher import (
    PluginWatcher,
    ReloadDebouncer,
    _PluginDirHandler,
    is_relevant_change,
)


class TestRelevance:

    def test_zip_is_relevant(self, tmp_path):
        assert is_relevant_change(str(tmp_path / "weather.zip"))

    def test_directory_is_relevant(self, tmp_path):
        (tmp_path / "weather").mkdir()
        assert is_relevant_change(str(tmp_path / "weather"))
        assert is_relevant_change(str(tmp_path / "deleted"), is_directory=True)

    def test_other_files_ignored(self, tmp_path):
        assert not is_relevant_change(str(tmp_path / "notes.txt"))


class TestDebouncer:

    @pytest.mark.asyncio
    async def test_burst_produces_single_reload(self):
        on_reload = AsyncMock()
        debouncer = ReloadDebouncer(asyncio.get_running_loop(), on_reload, debounce_seconds=0.1)

        for _ in range(10):
            debouncer.notify()
            await asyncio.sleep(0.03)
        await asyncio.sleep(0.25)

        on_reload.assert_awaited_once()
        assert debouncer.pending_changes == 0

    @pytest.mark.asyncio
    async def test_separate_bursts_reload_separately(self):
        on_reload = AsyncMock()
        debouncer = ReloadDebouncer(asyncio.get_running_loop(), on_reload, debounce_seconds=0.05)

        debouncer.notify()
        await asyncio.sleep(0.15)
        debouncer.notify()
        debouncer.notify()
        await asyncio.sleep(0.15)

        assert on_reload.await_count == 2

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_reload(self):
        on_reload = AsyncMock()
        debouncer = ReloadDebouncer(asyncio.get_running_loop(), on_reload, debounce_seconds=0.05)
        debouncer.notify()
        debouncer.cancel()
        await asyncio.sleep(0.1)
        on_reload.assert_not_called()


class TestHandler:

    def _event(self, path, event_type="created", is_directory=False, dest_path=""):
        return SimpleNamespace(
            src_path=path, dest_path=dest_path, event_type=event_type, is_directory=is_directory,
        )

    def test_relevant_event_posted_to_loop(self, tmp_path):
        loop = MagicMock()
        debouncer = MagicMock()
        handler = _PluginDirHandler(loop, debouncer)
        handler.on_any_event(self._event(str(tmp_path / "weather.zip")))
        loop.call_soon_threadsafe.assert_called_once_with(debouncer.notify)

    def test_irrelevant_event_ignored(self, tmp_path):
        loop = MagicMock()
        handler = _PluginDirHandler(loop, MagicMock())
        handler.on_any_event(self._event(str(tmp_path / "notes.txt")))
        handler.on_any_event(self._event(str(tmp_path / "weather.zip"), event_type="opened"))
        loop.call_soon_threadsafe.assert_not_called()

    def test_move_uses_destination(self, tmp_path):
        loop = MagicMock()
        handler = _PluginDirHandler(loop, MagicMock())
        handler.on_any_event(self._event(
            str(tmp_path / "upload.tmp"), event_type="moved", dest_path=str(tmp_path / "weather.zip"),
        ))
        loop.call_soon_threadsafe.assert_called_once()


class TestWatcher:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        plugins_dir = tmp_path / "plugins"
        watcher = PluginWatcher(plugins_dir, AsyncMock(), debounce_seconds=0.5)
        with patch("gatebot.plugin_watcher.Observer") as observer_cls:
            watcher.start()
            assert watcher.running
            assert plugins_dir.is_dir()
            observer = observer_cls.return_value
            args, kwargs = observer.schedule.call_args
            assert args[1] == str(plugins_dir)
            assert kwargs == {"recursive": False}
            observer.start.assert_called_once()

            watcher.start()
            observer_cls.assert_called_once()

            watcher.stop()
            observer.stop.assert_called_once()
            assert not watcher.running
