"""Exception hierarchy for gatebot.

Every error raised inside the bot derives from GatebotError so callers
can catch broadly at process boundaries while the gateway, registry and
router handle the precise subclasses they know how to recover from.

Each error carries an ErrorCategory that drives retry decisions:
transient errors (credential, transport) feed the reconnect path,
permanent errors (bundle, plugin load, handler) are logged and the
offending unit is skipped.
"""

from enum import Enum
from typing import Any, Optional, Tuple


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"          # Retry (network, token expiry)
    PERMANENT = "permanent"          # Operator or plugin author must fix


class GatebotError(Exception):
    """Base exception for all gatebot errors.

    Keyword arguments other than ``category`` and ``module`` become the
    structured ``context`` that is logged with the error. Names listed in
    ``fields`` are also exposed as attributes (None when not given).

    Attributes:
        message: Human-readable error description.
        category: Drives retry decisions.
        module: Originating module name (e.g. "gateway", "plugins").
        context: Key-value pairs for structured logging.
    """

    default_category = ErrorCategory.PERMANENT
    default_module: Optional[str] = None
    fields: Tuple[str, ...] = ()

    def __init__(
        self,
        message: str = "",
        *,
        category: Optional[ErrorCategory] = None,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        for name in self.fields:
            setattr(self, name, context.get(name))
        self.message = message
        self.category = category or self.default_category
        self.module = module or self.default_module
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        text = self.message or type(self).__name__
        details = [f"module={self.module}"] if self.module else []
        details.extend(f"{k}={v}" for k, v in self.context.items())
        if not details:
            return text
        return f"{text} [{', '.join(details)}]"


# Connection side: retried through the reconnect path

class CredentialError(GatebotError):
    """Access token could not be fetched or refreshed."""

    default_category = ErrorCategory.TRANSIENT
    default_module = "token"


class TransportError(GatebotError):
    """Socket or REST I/O failure. ``status`` is the HTTP status, if any."""

    default_category = ErrorCategory.TRANSIENT
    default_module = "api"
    fields = ("status",)


# Plugin side: the offending unit is skipped, the rest continues

class InvalidBundleError(GatebotError):
    """A plugin archive does not contain exactly one top-level directory.

    The archive is left where it is so the operator can inspect it.
    """

    default_module = "plugins.bundles"
    fields = ("bundle",)


class PluginLoadError(GatebotError):
    """A plugin's manifest or module could not be resolved."""

    default_module = "plugins"
    fields = ("plugin",)


class HandlerError(GatebotError):
    """A plugin's main entry raised while handling a command."""

    default_module = "plugins"
    fields = ("plugin", "command_type")
