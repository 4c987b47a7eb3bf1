# -*- coding: utf-8 -*-
"""
Application configuration

Plain dataclass holding the API endpoint, local paths, HTTP behaviour and
the sync timings. Defaults can be overridden with PSLOADER_* environment
variables; user selections (tenant, theme, ...) live in the settings table.
"""

import logging
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

APP_DIR_NAME = "PSLoader"
DB_FILE_NAME = "planning-tool.db"
DEFAULT_API_BASE_URL = "https://api.psloader.app"

ENV_PREFIX = "PSLOADER_"


def get_default_data_dir() -> Path:
    """Directory that holds the local database and log files."""
    if platform.system() == "Windows":
        base = os.environ.get("APPDATA", "")
        data_dir = Path(base) / APP_DIR_NAME if base else Path.home() / APP_DIR_NAME
    else:
        data_dir = Path.home() / "Documents" / APP_DIR_NAME
    return data_dir


@dataclass
class AppConfig:
    """Runtime configuration."""

    # Remote API
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: int = 15
    upload_timeout: int = 120
    max_retries: int = 3
    verify_ssl: bool = True

    # Local storage
    data_dir: str = ""
    db_file_name: str = DB_FILE_NAME

    # Background sync (seconds / minutes)
    sync_interval_seconds: int = 5 * 60
    initial_sync_delay_seconds: int = 10
    hotels_max_age_minutes: int = 60
    import_groups_max_age_minutes: int = 30
    mapping_tables_max_age_minutes: int = 60
    fetch_timeout_minutes: int = 10

    # Parallel parent-entity syncs
    max_sync_workers: int = 4

    def __post_init__(self):
        if not self.data_dir:
            self.data_dir = str(get_default_data_dir())

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / self.db_file_name)

    @property
    def log_path(self) -> str:
        return str(Path(self.data_dir) / "psloader.log")

    def ensure_data_dir(self) -> Path:
        path = Path(self.data_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dict."""
        return {
            'api_base_url': self.api_base_url,
            'request_timeout': self.request_timeout,
            'upload_timeout': self.upload_timeout,
            'max_retries': self.max_retries,
            'verify_ssl': self.verify_ssl,
            'data_dir': self.data_dir,
            'db_file_name': self.db_file_name,
            'sync_interval_seconds': self.sync_interval_seconds,
            'initial_sync_delay_seconds': self.initial_sync_delay_seconds,
            'hotels_max_age_minutes': self.hotels_max_age_minutes,
            'import_groups_max_age_minutes': self.import_groups_max_age_minutes,
            'mapping_tables_max_age_minutes': self.mapping_tables_max_age_minutes,
            'fetch_timeout_minutes': self.fetch_timeout_minutes,
            'max_sync_workers': self.max_sync_workers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        defaults = cls()
        return cls(
            api_base_url=data.get('api_base_url', defaults.api_base_url),
            request_timeout=int(data.get('request_timeout', defaults.request_timeout)),
            upload_timeout=int(data.get('upload_timeout', defaults.upload_timeout)),
            max_retries=int(data.get('max_retries', defaults.max_retries)),
            verify_ssl=_to_bool(data.get('verify_ssl', defaults.verify_ssl)),
            data_dir=data.get('data_dir', '') or defaults.data_dir,
            db_file_name=data.get('db_file_name', defaults.db_file_name),
            sync_interval_seconds=int(data.get('sync_interval_seconds', defaults.sync_interval_seconds)),
            initial_sync_delay_seconds=int(
                data.get('initial_sync_delay_seconds', defaults.initial_sync_delay_seconds)
            ),
            hotels_max_age_minutes=int(data.get('hotels_max_age_minutes', defaults.hotels_max_age_minutes)),
            import_groups_max_age_minutes=int(
                data.get('import_groups_max_age_minutes', defaults.import_groups_max_age_minutes)
            ),
            mapping_tables_max_age_minutes=int(
                data.get('mapping_tables_max_age_minutes', defaults.mapping_tables_max_age_minutes)
            ),
            fetch_timeout_minutes=int(data.get('fetch_timeout_minutes', defaults.fetch_timeout_minutes)),
            max_sync_workers=int(data.get('max_sync_workers', defaults.max_sync_workers)),
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'AppConfig':
        """Build a config from PSLOADER_* variables on top of the defaults."""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        for key in cls().to_dict():
            env_key = ENV_PREFIX + key.upper()
            if env_key in environ:
                data[key] = environ[env_key]
        if data:
            logger.debug(f"Config overrides from environment: {sorted(data)}")
        return cls.from_dict(data)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
