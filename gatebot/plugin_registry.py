"""Plugin discovery, loading, dispatch and lifecycle management.

The registry holds one RegistryGeneration at a time. A load builds a
complete new generation off to the side and publishes it with a single
reference assignment, so dispatch always sees one consistent mapping.

Load order is the sorted plugin directory order; when two plugins claim
the same command type the later one wins. The ``default`` command type
fills the fallback slot instead of the type map.
"""

import asyncio
import importlib.util
import inspect
import itertools
import json
import sys
from pathlib import Path
from types import CodeType, MappingProxyType, ModuleType
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from .bundles import is_backup_dir_name, stage_bundles
from .exceptions import HandlerError, PluginLoadError
from .plugin_base import (
    DEFAULT_COMMAND_TYPE,
    GENERIC_FAILURE_REPLY,
    MANIFEST_FILE,
    NO_HANDLER,
    PluginContext,
    PluginDescriptor,
    PluginManifest,
    RegistryGeneration,
)
from .plugin_watcher import PluginWatcher

logger = structlog.get_logger("gatebot.plugins")

# Namespace for imported plugin modules; each generation gets fresh names
MODULE_NAMESPACE = "gatebot_plugins"

ContextFactory = Callable[[str], PluginContext]


async def _call(fn: Callable, *args) -> Any:
    """Call a sync or async callable and return its (awaited) result."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _capability(obj: Any, name: str) -> Optional[Callable]:
    """Fetch a callable attribute (or mapping key) from a plugin object."""
    if isinstance(obj, dict):
        value = obj.get(name)
    else:
        value = getattr(obj, name, None)
    return value if callable(value) else None


class PluginRegistry:
    """Discovers, loads, dispatches to and cleans up plugins.

    Args:
        plugins_dir: Root directory holding plugin directories and
            bundle archives.
        context_factory: Builds the PluginContext handed to a plugin,
            given its manifest name. When None, plugins get no context.
        reload_debounce: Debounce window in seconds for watch().
    """

    def __init__(
        self,
        plugins_dir: Path,
        context_factory: Optional[ContextFactory] = None,
        reload_debounce: float = 1.0,
    ):
        self.plugins_dir = plugins_dir
        self._context_factory = context_factory
        self.reload_debounce = reload_debounce
        self._generation = RegistryGeneration.empty()
        self._generation_counter = itertools.count(1)
        self._is_loading = False
        self._watcher: Optional[PluginWatcher] = None

    @property
    def generation(self) -> RegistryGeneration:
        return self._generation

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> Optional[RegistryGeneration]:
        """Stage bundles, tear down the old generation and load a new one.

        A load already in progress causes this call to be dropped.

        Returns:
            The published generation, or None if the call was dropped.
        """
        if self._is_loading:
            logger.warning("plugin_load_in_progress_skipped")
            return None

        self._is_loading = True
        logger.info("plugin_load_started", path=str(self.plugins_dir))
        try:
            await asyncio.to_thread(stage_bundles, self.plugins_dir)

            await self.cleanup()
            self._evict_modules(self._generation.number)

            number = next(self._generation_counter)
            plugin_dirs = await asyncio.to_thread(self._plugin_dirs)
            type_map: Dict[str, PluginDescriptor] = {}
            default_plugin: Optional[PluginDescriptor] = None
            loaded: List[PluginDescriptor] = []

            for plugin_dir in plugin_dirs:
                try:
                    descriptor = await self._load_plugin(plugin_dir, number)
                except PluginLoadError as e:
                    logger.error("plugin_load_failed", plugin=plugin_dir.name, error=str(e))
                    continue
                if descriptor is None:
                    continue

                for command_type in descriptor.command_types:
                    if command_type == DEFAULT_COMMAND_TYPE:
                        if default_plugin is not None:
                            logger.warning(
                                "plugin_default_overridden",
                                previous=default_plugin.name,
                                plugin=descriptor.name,
                            )
                        default_plugin = descriptor
                    else:
                        previous = type_map.get(command_type)
                        if previous is not None:
                            logger.warning(
                                "plugin_command_conflict",
                                command_type=command_type,
                                previous=previous.name,
                                plugin=descriptor.name,
                            )
                        type_map[command_type] = descriptor

                await self._run_init(descriptor)
                loaded.append(descriptor)

            generation = RegistryGeneration(
                number=number,
                type_to_plugin=MappingProxyType(type_map),
                default_plugin=default_plugin,
                plugins=tuple(loaded),
            )
            self._generation = generation
            logger.info(
                "plugin_load_complete",
                generation=number,
                plugins_loaded=len(loaded),
                plugin_dirs=len(plugin_dirs),
                command_types=sorted(type_map),
                has_default=default_plugin is not None,
            )
            return generation
        finally:
            self._is_loading = False

    async def reload(self) -> None:
        """Reload entry point for the watcher; never raises."""
        logger.info("plugin_reload_started")
        try:
            await self.load()
        except Exception as e:
            logger.error("plugin_reload_failed", error=str(e), error_type=type(e).__name__)
        else:
            logger.info("plugin_reload_complete")

    def _plugin_dirs(self) -> List[Path]:
        if not self.plugins_dir.is_dir():
            return []
        dirs = []
        for entry in sorted(self.plugins_dir.iterdir()):
            if not entry.is_dir():
                continue
            if is_backup_dir_name(entry.name):
                logger.debug("plugin_backup_dir_skipped", directory=entry.name)
                continue
            if not (entry / MANIFEST_FILE).is_file():
                logger.warning("plugin_manifest_missing", plugin=entry.name)
                continue
            dirs.append(entry)
        return dirs

    @staticmethod
    def _evict_modules(generation: int) -> None:
        """Drop a torn-down generation's plugin modules from sys.modules."""
        prefix = f"{MODULE_NAMESPACE}.g{generation}."
        for name in [n for n in sys.modules if n.startswith(prefix)]:
            del sys.modules[name]

    @staticmethod
    def _read_manifest(plugin_dir: Path) -> PluginManifest:
        manifest_path = plugin_dir / MANIFEST_FILE
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
            return PluginManifest.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            raise PluginLoadError(f"invalid manifest: {e}", plugin=plugin_dir.name) from e

    @staticmethod
    def _compile_module(plugin_dir: Path, manifest: PluginManifest) -> CodeType:
        """Read and compile the plugin's main file. Runs in a worker thread."""
        module_file = plugin_dir / manifest.main
        if not module_file.is_file():
            raise PluginLoadError("module file not found", plugin=plugin_dir.name, main=manifest.main)
        try:
            return compile(module_file.read_bytes(), str(module_file), "exec")
        except (OSError, SyntaxError, ValueError) as e:
            raise PluginLoadError(
                f"module import failed: {e}",
                plugin=plugin_dir.name,
                error_type=type(e).__name__,
            ) from e

    @staticmethod
    def _import_module(plugin_dir: Path, manifest: PluginManifest, code: CodeType, generation: int) -> ModuleType:
        """Run compiled plugin code as a module with a per-generation name.

        Only module-level plugin code executes on the event loop; the file
        itself was read by ``_compile_module``.
        """
        module_name = f"{MODULE_NAMESPACE}.g{generation}.{plugin_dir.name}"
        spec = importlib.util.spec_from_file_location(module_name, plugin_dir / manifest.main)
        if spec is None:
            raise PluginLoadError("module cannot be imported", plugin=plugin_dir.name, main=manifest.main)
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            exec(code, module.__dict__)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(
                f"module import failed: {e}",
                plugin=plugin_dir.name,
                error_type=type(e).__name__,
            ) from e
        return module

    async def _load_plugin(self, plugin_dir: Path, generation: int) -> Optional[PluginDescriptor]:
        """Resolve one plugin directory into a descriptor.

        Returns None (after a warning) when the module does not expose a
        callable main entry.

        Raises:
            PluginLoadError: If the manifest or module cannot be resolved.
        """
        manifest = await asyncio.to_thread(self._read_manifest, plugin_dir)
        code = await asyncio.to_thread(self._compile_module, plugin_dir, manifest)
        module = self._import_module(plugin_dir, manifest, code, generation)

        plugin_obj = getattr(module, manifest.name, None)
        main = _capability(plugin_obj, "main") if plugin_obj is not None else None
        if main is None:
            logger.warning("plugin_main_missing", plugin=manifest.name, directory=plugin_dir.name)
            return None

        if self._context_factory is not None and not isinstance(plugin_obj, dict):
            try:
                plugin_obj.ctx = self._context_factory(manifest.name)
            except (AttributeError, TypeError):
                logger.debug("plugin_context_not_settable", plugin=manifest.name)

        descriptor = PluginDescriptor(
            name=manifest.name,
            version=manifest.version,
            command_types=frozenset(manifest.command_types),
            main=main,
            init=_capability(plugin_obj, "init"),
            cleanup=_capability(plugin_obj, "cleanup"),
            directory=plugin_dir,
        )
        logger.info(
            "plugin_loaded",
            plugin=descriptor.name,
            version=descriptor.version,
            command_types=sorted(descriptor.command_types),
        )
        return descriptor

    @staticmethod
    async def _run_init(descriptor: PluginDescriptor) -> None:
        if descriptor.init is None:
            return
        try:
            await _call(descriptor.init)
            logger.info("plugin_initialized", plugin=descriptor.name)
        except Exception as e:
            logger.error(
                "plugin_init_failed",
                plugin=descriptor.name,
                error=str(e),
                error_type=type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        command_type: str,
        body: str,
        sender_id: Optional[str],
        is_private: bool,
    ) -> Any:
        """Route a command to its plugin, falling back to the default plugin.

        Returns:
            The plugin's result, GENERIC_FAILURE_REPLY if it raised, or
            NO_HANDLER when no plugin accepts the command.
        """
        generation = self._generation
        plugin = generation.lookup(command_type)
        if plugin is None:
            logger.debug("plugin_no_handler", command_type=command_type)
            return NO_HANDLER

        try:
            return await _call(plugin.main, command_type, body, sender_id, is_private)
        except Exception as e:
            error = HandlerError(
                f"main raised {type(e).__name__}: {e}",
                plugin=plugin.name,
                command_type=command_type,
            )
            logger.error(
                "plugin_handler_failed",
                plugin=plugin.name,
                command_type=command_type,
                is_default=plugin is not generation.type_to_plugin.get(command_type),
                error=str(error),
                exc_info=e,
            )
            return GENERIC_FAILURE_REPLY

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Call cleanup() on every plugin of the current generation.

        Failures are isolated per plugin. A plugin registered under
        several command types is cleaned up once.
        """
        plugins = self._generation.plugins
        if not plugins:
            return
        logger.info("plugin_cleanup_started", generation=self._generation.number, plugins=len(plugins))
        for plugin in plugins:
            if plugin.cleanup is None:
                continue
            try:
                await _call(plugin.cleanup)
                logger.debug("plugin_cleaned_up", plugin=plugin.name)
            except Exception as e:
                logger.error(
                    "plugin_cleanup_failed",
                    plugin=plugin.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def watch(self) -> None:
        """Start watching the plugin root for hot reload."""
        if self._watcher is None:
            self._watcher = PluginWatcher(self.plugins_dir, self.reload, self.reload_debounce)
        self._watcher.start()

    def stop_watching(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
