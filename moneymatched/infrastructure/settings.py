"""Application Settings.

Pipeline settings that are not database credentials: where the archives come
from, where failure reports go, and the streaming buffer sizes.
"""

import os
from pathlib import Path
from typing import Optional

from moneymatched.infrastructure.config_manager import ConnectionProfile, DatabaseConfig, get_database_config

APP_NAME = "MoneyMatched Import"
APP_VERSION = "1.0.0"

# California State Controller's Office unclaimed-property archives
DEFAULT_DATA_URLS = (
    "https://dpupd.sco.ca.gov/04_From_500_To_Beyond.zip",
    "https://dpupd.sco.ca.gov/03_From_100_To_Below_500.zip",
)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_COPY_BUFFER_SIZE = 64 * 1024
DEFAULT_MAX_FIELD_SIZE = 1024 * 1024
DEFAULT_HTTP_TIMEOUT = 60.0


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from `MM_*` environment variables."""

    def __init__(self):
        self._db_configs: dict[ConnectionProfile, DatabaseConfig] = {}

        urls = os.getenv("MM_DATA_URLS", "")
        self.data_urls: list[str] = [u.strip() for u in urls.split(";") if u.strip()] or list(DEFAULT_DATA_URLS)

        self.failure_report_dir = Path(os.getenv("MM_FAILURE_REPORT_DIR", "reports"))

        self.log_level = os.getenv("MM_LOG_LEVEL", "INFO")
        self.log_json = _env_flag("MM_LOG_JSON", "false")

        # Streaming
        self.csv_encoding = os.getenv("MM_CSV_ENCODING", "utf-8")
        self.download_chunk_size = int(os.getenv("MM_DOWNLOAD_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))
        self.copy_buffer_size = int(os.getenv("MM_COPY_BUFFER_SIZE", str(DEFAULT_COPY_BUFFER_SIZE)))
        self.http_timeout = float(os.getenv("MM_HTTP_TIMEOUT", str(DEFAULT_HTTP_TIMEOUT)))
        self.max_field_size = int(os.getenv("MM_MAX_FIELD_SIZE", str(DEFAULT_MAX_FIELD_SIZE)))

        # Session tuning applied before the load
        self.work_mem = os.getenv("MM_WORK_MEM", "256MB")
        self.maintenance_work_mem = os.getenv("MM_MAINTENANCE_WORK_MEM", "1GB")

    def db_config(self, profile: ConnectionProfile = ConnectionProfile.PRODUCTION) -> DatabaseConfig:
        """Database configuration for a profile, loaded lazily on first access."""
        profile = ConnectionProfile(profile)
        if profile not in self._db_configs:
            self._db_configs[profile] = get_database_config(profile)
        return self._db_configs[profile]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings instance, created on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
