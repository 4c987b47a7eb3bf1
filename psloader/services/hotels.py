# -*- coding: utf-8 -*-
"""
Hotels

The tenants (hotel OUs) the user can work on. Fetched from the API and
cached locally for offline start-up.
"""

import logging
import sqlite3
from concurrent.futures import Future
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..api_client import ApiClient
from ..store import LocalStore, LocalStoreUnavailableError
from ..sync.cache import CacheSyncEngine
from ..sync.scheduler import HOTELS_KEY

logger = logging.getLogger(__name__)


class HotelService:

    def __init__(self, api: ApiClient, store: LocalStore, cache: Optional[CacheSyncEngine] = None):
        self.api = api
        self.store = store
        self.cache = cache

    def _cache_hotels(self, hotels: List[Dict[str, Any]]):
        try:
            self.store.cache_hotels(hotels)
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.warning(f"Hotels not cached: {e}")

    def get_hotels(self) -> List[Dict[str, Any]]:
        """Fetch from the API and refresh the local copy."""
        hotels = self.api.get_hotels()
        self._cache_hotels(hotels)
        return hotels

    def get_cached_hotels(self) -> List[Dict[str, Any]]:
        try:
            return self.store.get_cached_hotels()
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.warning(f"Cached hotels unavailable: {e}")
            return []

    def refresh_hotels_cache(self) -> List[Dict[str, Any]]:
        """Scheduler sub-sync; store errors propagate so the key is marked failed."""
        hotels = self.api.get_hotels()
        self.store.cache_hotels(hotels)
        logger.info(f"Hotels cache refreshed ({len(hotels)} hotels)")
        return hotels

    def get_hotels_cache_first(self, on_update: Optional[Callable[[List[Dict[str, Any]]], None]] = None,
                               max_age: Optional[timedelta] = None) -> Tuple[List[Dict[str, Any]], Future]:
        if self.cache is None:
            raise RuntimeError("Cache engine not configured")
        cached, future = self.cache.get_cache_first(
            HOTELS_KEY,
            self.api.get_hotels,
            on_update=on_update,
            max_age=max_age,
            read_cached=self.store.get_cached_hotels,
            write_cached=self._cache_hotels,
        )
        return cached or [], future
