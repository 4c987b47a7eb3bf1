# -*- coding: utf-8 -*-
"""
App settings

Typed setting keys with defaults, persisted in the local store settings
table. Reads are served from an in-memory write-through cache; writes that
fail are queued and retried by sync_pending_settings().
"""

import logging
import sqlite3
import threading
from enum import Enum
from typing import Any, Dict, Set, Union

from .store import LocalStore, LocalStoreUnavailableError

logger = logging.getLogger(__name__)


class SettingsKey(str, Enum):
    THEME_MODE = 'themeMode'
    SELECTED_HOTEL_OU = 'selectedHotelOu'
    SELECTED_DEPARTMENT = 'selectedDepartment'
    SELECTED_ACCOUNT = 'selectedAccount'
    SELECTED_PERIOD = 'selectedPeriod'
    SELECTED_SCENARIO = 'selectedScenario'
    AUTO_SAVE = 'autoSave'
    NOTIFICATION_ENABLED = 'notificationEnabled'
    LANGUAGE = 'language'
    CURRENCY = 'currency'
    DATE_FORMAT = 'dateFormat'
    NUMBER_FORMAT = 'numberFormat'


SETTINGS_KEYS = [key.value for key in SettingsKey]

DEFAULT_SETTINGS: Dict[str, Any] = {
    SettingsKey.THEME_MODE.value: 'light',
    SettingsKey.SELECTED_HOTEL_OU.value: None,
    SettingsKey.SELECTED_DEPARTMENT.value: None,
    SettingsKey.SELECTED_ACCOUNT.value: None,
    SettingsKey.SELECTED_PERIOD.value: None,
    SettingsKey.SELECTED_SCENARIO.value: 'ACT',
    SettingsKey.AUTO_SAVE.value: True,
    SettingsKey.NOTIFICATION_ENABLED.value: True,
    SettingsKey.LANGUAGE.value: 'en',
    SettingsKey.CURRENCY.value: 'USD',
    SettingsKey.DATE_FORMAT.value: 'MM/DD/YYYY',
    SettingsKey.NUMBER_FORMAT.value: '1,234.56',
}

KeyLike = Union[SettingsKey, str]


def _key(key: KeyLike) -> str:
    value = key.value if isinstance(key, SettingsKey) else key
    if value not in DEFAULT_SETTINGS:
        raise KeyError(f"Unknown setting: {value}")
    return value


class SettingsService:
    """Settings bookkeeping on top of the local store."""

    def __init__(self, store: LocalStore):
        self.store = store
        self._lock = threading.Lock()
        self._cache: Dict[str, Any] = {}
        self._pending: Set[str] = set()
        self._initialized = False

    def initialize(self):
        """Load every known key, falling back to defaults."""
        if self._initialized:
            return
        try:
            stored = self.store.get_all_settings()
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.error(f"Settings could not be loaded, using defaults: {e}")
            stored = {}
        with self._lock:
            for key, default in DEFAULT_SETTINGS.items():
                self._cache[key] = stored.get(key, default)
            self._initialized = True

    @property
    def pending_keys(self) -> Set[str]:
        return set(self._pending)

    def get_setting(self, key: KeyLike) -> Any:
        name = _key(key)
        self.initialize()
        return self._cache.get(name, DEFAULT_SETTINGS[name])

    def get_settings(self, *keys: KeyLike) -> Dict[str, Any]:
        return {_key(key): self.get_setting(key) for key in keys}

    def get_all_settings(self) -> Dict[str, Any]:
        return self.get_settings(*SETTINGS_KEYS)

    def set_setting(self, key: KeyLike, value: Any):
        self.set_settings({_key(key): value})

    def set_settings(self, values: Dict[KeyLike, Any]):
        """
        Write through to the store.

        On a store failure the keys stay cached, are queued for retry and
        the error is re-raised.
        """
        names = {_key(key): value for key, value in values.items()}
        self.initialize()
        with self._lock:
            self._cache.update(names)
        try:
            self.store.set_settings(names)
        except (LocalStoreUnavailableError, sqlite3.Error):
            with self._lock:
                self._pending.update(names)
            logger.error(f"Settings could not be saved, queued for retry: {sorted(names)}")
            raise
        with self._lock:
            self._pending.difference_update(names)

    def reset_setting(self, key: KeyLike):
        name = _key(key)
        self.set_setting(name, DEFAULT_SETTINGS[name])

    def reset_all_settings(self):
        self.set_settings(dict(DEFAULT_SETTINGS))

    def sync_pending_settings(self) -> bool:
        """Retry queued writes. True when nothing is left pending."""
        with self._lock:
            pending = {key: self._cache.get(key) for key in self._pending}
        if not pending:
            return True
        try:
            self.store.set_settings(pending)
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.warning(f"Pending settings still cannot be saved: {e}")
            return False
        with self._lock:
            self._pending.difference_update(pending)
        logger.info(f"Pending settings saved: {sorted(pending)}")
        return True
