"""Hive Watcher configuration via environment variables.

Every setting is read from a HIVE_WATCHER_* variable when Settings is
constructed. Tracking is optional: without a Mixpanel token deliveries
are silently skipped, and without the API secret old events cannot be
backfilled through the import endpoint.
"""

import os
import logging

from hive_watcher import __version__

logger = logging.getLogger("hive_watcher.config")

PREFIX = "HIVE_WATCHER_"

# Evaluated in this order; the first one configured wins
START_OPTIONS = ("blocknum", "months", "hours", "minutes")
DEFAULT_START = {"minutes": 5}


def _env(name: str, default: str = "") -> str:
    return os.environ.get(PREFIX + name, default)


def _env_int(name: str, default: int | None = None) -> int | None:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw, 10)
    except ValueError:
        logger.warning(
            "Ignoring %s%s=%r, not an integer", PREFIX, name, raw
        )
        return default


class Settings:
    """All configuration sourced from environment."""

    def __init__(self):
        # Core
        self.version = _env("VERSION", __version__)
        self.app_name = _env("APP_NAME", "hive-watcher")
        self.env = _env("ENV", "development")
        self.git_branch = _env("GIT_BRANCH", "unknown")
        self.git_sha = _env("GIT_SHA", "unknown")
        self.log_level = _env("LOG_LEVEL", "info")
        self.api_host = _env("API_HOST", "0.0.0.0")
        self.api_port = _env_int("API_PORT", 8080)

        # Persistence
        self.data_folder = _env(
            "DATA_FOLDER", os.path.join(os.getcwd(), "data")
        )
        self.stream_idle_ttl = _env_int("STREAM_IDLE_TTL", 120)
        self.eviction_interval = _env_int("EVICTION_INTERVAL", 60)
        self.max_in_flight = _env_int("MAX_IN_FLIGHT", 256)

        # Tracking
        self.tracking_enabled = _env("TRACKING_ENABLED", "true").lower() == "true"
        self.mp_token = _env("MP_TOKEN")
        self.mp_secret = _env("MP_SECRET")
        self.mp_api_host = _env("MP_API_HOST", "https://api.mixpanel.com")

        # Hive source
        self.hive_api = _env("HIVE_API", "https://api.hive.blog")
        self.poll_interval = _env_int("POLL_INTERVAL", 3)
        self.batch_size = _env_int("BATCH_SIZE", 50)
        self.blocknum = _env_int("BLOCKNUM")
        self.months = _env_int("MONTHS")
        self.hours = _env_int("HOURS")
        self.minutes = _env_int("MINUTES")

    @property
    def has_secret(self) -> bool:
        return bool(self.mp_secret)

    def start_options(self) -> dict[str, int]:
        """Where the block stream should start.

        Exactly one option is returned: the first of blocknum, months,
        hours and minutes that is set, else a five minute lookback.
        """
        for name in START_OPTIONS:
            value = getattr(self, name)
            if value:
                return {name: value}
        return dict(DEFAULT_START)

    def super_properties(self) -> dict[str, str]:
        """Properties merged into every tracked event."""
        props = {
            "environment": self.env,
            "app_name": self.app_name,
        }
        if self.version:
            props["app_version"] = self.version
        if self.git_branch:
            props["git_branch"] = self.git_branch
        if self.git_sha:
            props["git_sha"] = self.git_sha
        return props


settings = Settings()
