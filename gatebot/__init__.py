"""gatebot: QQ bot gateway client with hot-reloadable plugins."""

__version__ = "1.0.0"
