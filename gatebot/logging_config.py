"""Logging configuration for gatebot.

structlog renders events through stdlib logging. Every subsystem logs
to its own rotating file and propagates to the combined file and the
console:

    root                → console
      gatebot           → logs/gatebot.log
        gatebot.bot     → logs/bot.log
        gatebot.gateway → logs/gateway.log
        gatebot.plugins → logs/plugins.log
        gatebot.router  → logs/router.log
        gatebot.api     → logs/api.log

Access tokens and the client secret never reach a handler: the
``sanitize_secrets`` processor scrubs them from every event.
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

SUBSYSTEMS = ("bot", "gateway", "plugins", "router", "api")

LOGGER_PREFIX = "gatebot"

_REDACTED = "***REDACTED***"

_SECRET_PATTERNS = (
    re.compile(r"QQBot\s+[a-zA-Z0-9_./+=-]{16,}"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_./+=-]{20,}"),
    re.compile(r"(?<=clientSecret': ')[^']+"),
    re.compile(r'(?<="clientSecret": ")[^"]+'),
    re.compile(r'(?<="access_token": ")[^"]+'),
)

# Values logged under these keys are masked whatever they contain
_SECRET_KEYS = frozenset({"token", "access_token", "client_secret", "secret"})


def _scrub(value: Any) -> Any:
    """Mask secrets in strings, recursing into lists, tuples and dicts."""
    if isinstance(value, str):
        for pattern in _SECRET_PATTERNS:
            value = pattern.sub(_REDACTED, value)
        return value
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    return value


def sanitize_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor masking bot tokens and client secrets."""
    for key, value in event_dict.items():
        if key in _SECRET_KEYS and value:
            event_dict[key] = _REDACTED
        else:
            event_dict[key] = _scrub(value)
    return event_dict


@dataclass
class _LogSettings:
    log_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "logs")
    level: int = logging.INFO
    subsystem_levels: Dict[str, int] = field(default_factory=dict)
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    cache_loggers: bool = False

    @classmethod
    def from_config(cls, config) -> "_LogSettings":
        level = _level(config.logging_level, logging.INFO)
        return cls(
            log_dir=config.log_dir,
            level=level,
            subsystem_levels={
                name: _level(value, level)
                for name, value in (config.logging_subsystem_levels or {}).items()
            },
            max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
            backup_count=config.logging_backup_count,
            cache_loggers=True,
        )


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


def _file_handler(path: Path, level: int, settings: _LogSettings, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _reset_logger(name: Optional[str], level: int) -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel(level)
    log.handlers.clear()
    log.propagate = True
    return log


def setup_logging(config=None) -> None:
    """Configure stdlib handlers and structlog.

    Called twice by the entry point: first without a config (defaults,
    logger caching off) so that config loading can log, then with the
    loaded Config (levels, paths and rotation from settings.yaml,
    logger caching on). When the log directory cannot be created only
    the console handler is installed.
    """
    settings = _LogSettings.from_config(config) if config is not None else _LogSettings()

    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        write_files = True
    except OSError as exc:
        print(f"WARNING: log directory {settings.log_dir} unusable ({exc}); logging to console only", file=sys.stderr)
        write_files = False

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    # Loggers pass everything; handlers apply the configured levels
    root = _reset_logger(None, logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(settings.level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    combined = _reset_logger(LOGGER_PREFIX, logging.DEBUG)
    if write_files:
        combined.addHandler(
            _file_handler(settings.log_dir / "gatebot.log", settings.level, settings, file_formatter)
        )

    for subsystem in SUBSYSTEMS:
        level = settings.subsystem_levels.get(subsystem, settings.level)
        sub_logger = _reset_logger(f"{LOGGER_PREFIX}.{subsystem}", level)
        if write_files:
            sub_logger.addHandler(
                _file_handler(settings.log_dir / f"{subsystem}.log", level, settings, file_formatter)
            )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=settings.cache_loggers,
    )
