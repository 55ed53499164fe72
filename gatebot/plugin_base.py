"""Plugin types for gatebot extensibility.

A plugin is a directory under the plugin root containing a
``manifest.json`` and a Python module::

    plugins/
      weather/
        manifest.json   {"name": "weather", "version": "1.0.0",
                         "main": "plugin.py", "command_types": ["weather"]}
        plugin.py       weather = Weather()   # exposes main/init/cleanup

The module must expose an object (instance, class, namespace or dict)
under the manifest ``name`` with a callable ``main(command_type, body,
sender_id, is_private)``. ``init()`` and ``cleanup()`` are optional. Any
of the three may be sync or async. ``main`` returns a string, a dict
with ``text``/``image`` keys, a ReplyEnvelope, or a falsy value for no
reply.
"""

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Command type that routes a plugin into the default slot
DEFAULT_COMMAND_TYPE = "default"

MANIFEST_FILE = "manifest.json"

GENERIC_FAILURE_REPLY = "Plugin failed to process the message."

MediaRef = Union[bytes, str]

MainEntry = Callable[[str, str, Optional[str], bool], Any]
LifecycleHook = Callable[[], Union[None, Awaitable[None]]]


class _NoHandler:
    """Sentinel returned by dispatch when no plugin accepts a command."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_HANDLER"


NO_HANDLER = _NoHandler()


@dataclass(frozen=True)
class ReplyEnvelope:
    """Normalized reply: optional text plus optional image (bytes or URL)."""
    text: Optional[str] = None
    media: Optional[MediaRef] = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.media


class PluginManifest(BaseModel):
    """Parsed ``manifest.json``.

    Accepts both snake_case keys and the camelCase keys found in older
    bundles (``mainExport``, ``processingTypes``).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field(min_length=1)
    version: str = "0.0.0"
    main: str = Field(
        default="plugin.py",
        validation_alias=AliasChoices("main", "mainExport", "main_export"),
    )
    command_types: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("command_types", "commandTypes", "processingTypes"),
    )

    @field_validator("version", mode="before")
    @classmethod
    def _version_to_str(cls, value: Any) -> str:
        return str(value)

    @field_validator("main")
    @classmethod
    def _main_inside_plugin(cls, value: str) -> str:
        path = Path(value)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError("main must be a relative path inside the plugin directory")
        return value


@dataclass(frozen=True)
class PluginDescriptor:
    """An immutable, loaded plugin."""
    name: str
    version: str
    command_types: frozenset
    main: MainEntry
    init: Optional[LifecycleHook] = None
    cleanup: Optional[LifecycleHook] = None
    directory: Optional[Path] = None

    @property
    def is_default(self) -> bool:
        return DEFAULT_COMMAND_TYPE in self.command_types


@dataclass(frozen=True)
class RegistryGeneration:
    """One complete, immutable snapshot of the command-type mapping."""
    number: int
    type_to_plugin: Mapping[str, PluginDescriptor]
    default_plugin: Optional[PluginDescriptor]
    plugins: Tuple[PluginDescriptor, ...]

    @classmethod
    def empty(cls, number: int = 0) -> "RegistryGeneration":
        return cls(number=number, type_to_plugin=MappingProxyType({}), default_plugin=None, plugins=())

    def lookup(self, command_type: str) -> Optional[PluginDescriptor]:
        """Plugin registered for ``command_type``, else the default plugin."""
        return self.type_to_plugin.get(command_type) or self.default_plugin


class PluginContext:
    """Interface exposed to plugins for interacting with the bot.

    Set as ``ctx`` on the exported plugin object before ``init`` runs.
    Plugins should never import bot internals directly.
    """

    def __init__(
        self,
        plugin_name: str,
        settings: dict,
        data_dir: Path,
        utils: Any = None,
    ):
        self.plugin_name = plugin_name
        self._settings = dict(settings)
        self.data_dir = data_dir
        self.utils = utils
        self.logger = structlog.get_logger("gatebot.plugins", plugin=plugin_name)

    def get_config(self, key: str, default: Any = None) -> Any:
        """Read a value from plugins.settings.<plugin_name>.<key> in settings.yaml."""
        return self._settings.get(key, default)
