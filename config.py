#!/usr/bin/env python3
"""
Configuration and logging for the feed aggregator.

Values come from the process environment, an optional ``.env`` next to this
file, and an optional YAML overrides file named by ``SECRETS_FILE`` (later
sources win). Every value is read once at import time into the global
``config`` object; bad values fall back to their default with a warning.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, Logger, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}
_BASE_DIR = path.dirname(path.abspath(__file__))
_SECRETS_MAX_BYTES = 2 * 1024 * 1024


def _setup_global_logger() -> Logger:
    """Configure the root handler once; modules then call ``get_logger()``.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: prefix lines with a timestamp (default true)
        LIB_LOG_LEVEL: level for aiohttp and readability (default WARNING)
    """
    level = _LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    log_format = '%(name)s - %(levelname)s - %(message)s'
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + log_format

    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stdout)], force=True)

    lib_level = _LEVELS.get(environ.get("LIB_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("aiohttp.access", "aiohttp.client", "readability.readability"):
        getLogger(name).setLevel(lib_level)

    return getLogger("FeedAggregator")


def get_logger(name: str) -> Logger:
    """Logger named ``FeedAggregator.<name>``, sharing the global setup."""
    return getLogger(f"FeedAggregator.{name}")


logger = _setup_global_logger()


class Config:
    """Typed settings for the process.

    Example secrets file (a top-level mapping, or the same mapping nested
    under ``environment``)::

        DATABASE_PATH: "/var/lib/feeds/feeds.db"
        APPLICATIONINSIGHTS_CONNECTION_STRING: "InstrumentationKey=..."
    """

    def __init__(self):
        dotenv_path = path.join(_BASE_DIR, '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._apply_overrides(environ.get("SECRETS_FILE"))
        self._read_values()

    # Environment readers
    def _int(self, name: str, default: int, minimum: int = 1) -> int:
        try:
            value = int(environ.get(name, str(default)))
        except (ValueError, TypeError):
            logger.warning(f"Invalid {name} value, using default {default}")
            return default
        if value < minimum:
            logger.warning(f"{name} must be at least {minimum}, using default {default}")
            return default
        return value

    def _float(self, name: str, default: float, minimum: float = 0.1) -> float:
        try:
            value = float(environ.get(name, str(default)))
        except (ValueError, TypeError):
            logger.warning(f"Invalid {name} value, using default {default}")
            return default
        if value < minimum:
            logger.warning(f"{name} must be at least {minimum}, using default {default}")
            return default
        return value

    @staticmethod
    def _bool(name: str, default: bool) -> bool:
        raw = environ.get(name)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _read_values(self):
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedAggregator/1.0)")

        # Refresh worker; an interval of 0 leaves only on-demand refreshes
        self.REFRESH_INTERVAL_MINUTES = self._int("REFRESH_INTERVAL_MINUTES", 60, 0)
        self.REFRESH_ON_START = self._bool("REFRESH_ON_START", True)
        self.WORKER_COUNT = self._int("WORKER_COUNT", 4)

        # Outbound HTTP
        self.HTTP_TIMEOUT = self._float("HTTP_TIMEOUT", 30.0, 1.0)
        self.MAX_REDIRECTS = self._int("MAX_REDIRECTS", 5, 0)
        self.MAX_RESPONSE_BYTES = self._int("MAX_RESPONSE_BYTES", 10 * 1024 * 1024, 1024)

        self.FAVICON_TIMEOUT = self._float("FAVICON_TIMEOUT", 10.0, 1.0)
        self.FAVICON_CONCURRENCY = self._int("FAVICON_CONCURRENCY", 4)
        self.ICON_CACHE_SIZE = self._int("ICON_CACHE_SIZE", 256)

        # Storage
        self.ITEM_RETENTION_DAYS = self._int("ITEM_RETENTION_DAYS", 90, 0)
        self.ITEMS_PER_PAGE = self._int("ITEMS_PER_PAGE", 20)
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._int("SCHEMA_FILE_SIZE_LIMIT_MB", 10)
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(_BASE_DIR, "schema.sql"))

    # YAML overrides
    def _apply_overrides(self, file_path: Optional[str]) -> None:
        """Copy the mapping in ``file_path`` into the environment."""
        if not file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        data = self._read_yaml(file_path)
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Secrets file {file_path} must be a YAML mapping at the top level")
            return
        if isinstance(data.get('environment'), dict):
            data = data['environment']

        applied = 0
        for key, value in data.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping invalid entry in secrets file: {key!r}")
                continue
            environ[key] = str(value)
            applied += 1
        logger.info(f"Loaded {applied} settings from secrets file {file_path}")

    @staticmethod
    def _read_yaml(file_path: str) -> Any:
        if not path.isfile(file_path):
            logger.warning(f"Secrets file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for secrets file at {file_path}")
            return None
        size = path.getsize(file_path)
        if size > _SECRETS_MAX_BYTES:
            logger.error(f"Secrets file too large: {size} bytes (limit: {_SECRETS_MAX_BYTES} bytes)")
            return None
        try:
            with open(file_path, 'r') as f:
                return yaml.safe_load(f) or None
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in secrets file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading secrets file {file_path}: {e}")
        return None

    @property
    def REFRESH_INTERVAL_SECONDS(self) -> int:
        return self.REFRESH_INTERVAL_MINUTES * 60

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret values, for startup diagnostics."""
        return {
            "database_path": self.DATABASE_PATH,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "refresh_on_start": self.REFRESH_ON_START,
            "worker_count": self.WORKER_COUNT,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "max_response_bytes": self.MAX_RESPONSE_BYTES,
            "favicon_timeout": self.FAVICON_TIMEOUT,
            "icon_cache_size": self.ICON_CACHE_SIZE,
            "item_retention_days": self.ITEM_RETENTION_DAYS,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
