"""Configuration for gatebot.

``config/settings.yaml`` holds the settings, ``config/.env`` the
secrets; environment variables win over YAML for credentials and a few
paths. Every setting is a read-only property with a default, so a
missing file or section simply means defaults.
"""

import os
from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("gatebot.bot")

REPO_ROOT = Path(__file__).parent.parent

PRODUCTION_API_BASE = "https://api.sgroup.qq.com"
SANDBOX_API_BASE = "https://sandbox.api.sgroup.qq.com"
DEFAULT_TOKEN_URL = "https://bots.qq.com/app/getAppAccessToken"

# GROUP_AND_C2C_EVENT
DEFAULT_INTENTS = 1 << 25

MIN_RELOAD_DEBOUNCE = 0.5


def _read_yaml(path: Path) -> dict:
    """Parse a YAML mapping; a missing, empty or malformed file yields {}."""
    if not path.is_file():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("config_file_unreadable", path=str(path), error=str(e))
        return {}
    if not isinstance(data, dict):
        logger.error("config_file_not_mapping", path=str(path))
        return {}
    return data


class Config:
    """Settings for every gatebot subsystem.

    Args:
        config_dir: Directory holding settings.yaml and .env
            (``<repo_root>/config`` when omitted).
    """

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else REPO_ROOT / "config"

        dotenv_path = self.config_dir / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path)
        self.settings = _read_yaml(self.config_dir / "settings.yaml")

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        if not isinstance(section, dict):
            logger.error("config_section_invalid_type", section=name, type=type(section).__name__)
            return {}
        return section

    def validate(self):
        """Log problems with the loaded settings without raising.

        Missing credentials surface again as CredentialError on the first
        connect, so startup continues.
        """
        if not self.app_id or not self.client_secret:
            logger.error("missing_bot_credentials", msg="Set QQBOT_APP_ID and QQBOT_CLIENT_SECRET")

        shard = self.shard
        if len(shard) != 2 or not all(isinstance(n, int) for n in shard) or shard[0] >= shard[1]:
            logger.error("config_invalid_value", key="gateway.shard", value=shard)

        configured = self._section("plugins").get("reload_debounce")
        if configured is not None and (not isinstance(configured, (int, float)) or configured < MIN_RELOAD_DEBOUNCE):
            logger.warning(
                "config_invalid_value",
                key="plugins.reload_debounce",
                value=configured,
                valid=f">= {MIN_RELOAD_DEBOUNCE}",
            )

        if not self.image_server_url:
            logger.info("image_server_not_configured", msg="Plugins returning raw image bytes cannot reply with media")

    # ------------------------------------------------------------------
    # Bot credentials and REST endpoints
    # ------------------------------------------------------------------

    @property
    def app_id(self) -> str:
        """Bot application id. Env var QQBOT_APP_ID takes precedence."""
        return os.environ.get("QQBOT_APP_ID") or str(self._section("bot").get("app_id", ""))

    @property
    def client_secret(self) -> str:
        """Bot client secret. Env var QQBOT_CLIENT_SECRET takes precedence."""
        return os.environ.get("QQBOT_CLIENT_SECRET") or str(self._section("bot").get("client_secret", ""))

    @property
    def sandbox(self) -> bool:
        """Whether to talk to the sandbox API host (default False)."""
        return bool(self._section("bot").get("sandbox", False))

    @property
    def api_base_url(self) -> str:
        """REST API base URL, sandbox-aware unless explicitly configured."""
        configured = self._section("bot").get("api_base_url")
        if configured:
            return configured.rstrip("/")
        return SANDBOX_API_BASE if self.sandbox else PRODUCTION_API_BASE

    @property
    def token_url(self) -> str:
        """Access token endpoint."""
        return self._section("bot").get("token_url", DEFAULT_TOKEN_URL)

    @property
    def image_server_url(self) -> str:
        """Image host accepting raw JPEG/PNG uploads. Env var IMAGE_SERVER_URL takes precedence."""
        return os.environ.get("IMAGE_SERVER_URL") or self.settings.get("image_server_url", "")

    @property
    def http_timeout(self) -> float:
        """Total timeout in seconds for REST calls (default 60)."""
        return float(self._section("bot").get("http_timeout", 60))

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    @property
    def intents(self) -> int:
        """Gateway intents bitmask sent with identify."""
        return int(self._section("gateway").get("intents", DEFAULT_INTENTS))

    @property
    def shard(self) -> List[int]:
        """Shard info [shard_id, shard_count] sent with identify."""
        return list(self._section("gateway").get("shard", [0, 1]))

    @property
    def reconnect_close_delay(self) -> float:
        """Seconds to wait before reconnecting after a clean close (default 3)."""
        return float(self._section("gateway").get("reconnect_close_delay", 3))

    @property
    def reconnect_error_delay(self) -> float:
        """Seconds to wait before reconnecting after a socket error (default 5)."""
        return float(self._section("gateway").get("reconnect_error_delay", 5))

    @property
    def connect_retry_delay(self) -> float:
        """Seconds to wait after a failed token/endpoint fetch (default 5)."""
        return float(self._section("gateway").get("connect_retry_delay", 5))

    @property
    def session_max_age(self) -> float:
        """Seconds before a forced periodic reconnect (default 1 hour)."""
        return float(self._section("gateway").get("session_max_age", 3600))

    @property
    def token_refresh_margin(self) -> float:
        """Seconds before expiry at which the token is renewed (default 60)."""
        return float(self._section("gateway").get("token_refresh_margin", 60))

    @property
    def default_heartbeat_interval(self) -> float:
        """Heartbeat interval in seconds used until the server sends one."""
        return float(self._section("gateway").get("default_heartbeat_interval", 41.25))

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    @property
    def plugins_dir(self) -> Path:
        """Directory scanned for plugin folders and bundles (default REPO_ROOT/plugins)."""
        configured = self._section("plugins").get("dir")
        if configured:
            return Path(configured).expanduser()
        return Path(self.config_dir).parent / "plugins"

    @property
    def plugins_data_dir(self) -> Path:
        """Per-plugin writable data root (``data/plugins`` by default)."""
        configured = self._section("plugins").get("data_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(self.config_dir).parent / "data" / "plugins"

    @property
    def plugin_watch_enabled(self) -> bool:
        """Whether the plugin directory is watched for hot reload (default True)."""
        return bool(self._section("plugins").get("watch", True))

    @property
    def plugin_reload_debounce(self) -> float:
        """Debounce window in seconds for hot reload (default 1.0, min 0.5)."""
        value = self._section("plugins").get("reload_debounce", 1.0)
        if not isinstance(value, (int, float)):
            return 1.0
        return max(float(value), MIN_RELOAD_DEBOUNCE)

    def plugin_settings(self, name: str) -> dict:
        """Settings section ``plugins.settings.<name>`` for a single plugin."""
        settings = self._section("plugins").get("settings", {}) or {}
        section = settings.get(name, {})
        return section if isinstance(section, dict) else {}

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @property
    def chrome_path(self) -> Optional[str]:
        """Chromium executable for screenshots. Env var CHROME_PATH takes precedence."""
        return os.environ.get("CHROME_PATH") or self._section("render").get("chrome_path")

    @property
    def render_idle_timeout(self) -> float:
        """Seconds an idle render browser is kept open (default 30)."""
        return float(self._section("render").get("idle_timeout", 30))

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    @property
    def log_dir(self) -> Path:
        """Where the rotating log files go (default REPO_ROOT/logs)."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return REPO_ROOT / "logs"

    @property
    def logging_level(self) -> str:
        """Level for the console and gatebot.log (default INFO)."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Level overrides keyed by subsystem name, such as ``gateway``."""
        return self._section("logging").get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Rotation threshold for each log file, in megabytes."""
        return self._section("logging").get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """How many rotated copies of each log file are kept."""
        return self._section("logging").get("backup_count", 5)


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide Config, loading it on first use.

    Only the entry point calls this; components receive the instance
    through their constructors.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
