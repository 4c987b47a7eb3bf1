# -*- coding: utf-8 -*-
"""
Validations

Checks configured per OU (duplicate records, required imports, ...) that
run before a sign-off upload. The list is fetched from the API, cached per
OU and read cache-first by the UI.
"""

import logging
import sqlite3
from concurrent.futures import Future
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..api_client import ApiClient, NetworkOrApiError
from ..store import LocalStore, LocalStoreUnavailableError
from ..sync.cache import CacheSyncEngine

logger = logging.getLogger(__name__)

_STORE_ERRORS = (LocalStoreUnavailableError, sqlite3.Error)


def validations_key(ou: str) -> str:
    return f"validations_{ou}"


def _normalize(validation: Dict[str, Any], ou: str) -> Dict[str, Any]:
    """Cached row shape, so fresh and cached lists compare equal."""
    return {
        'id': validation['id'],
        'name': validation['name'],
        'display_name': validation.get('display_name') or validation['name'],
        'is_required': bool(validation.get('is_required')),
        'description': validation.get('description'),
        'ou': validation.get('ou') or ou,
        'sequence': validation.get('sequence') or 0,
    }


class ValidationsService:

    def __init__(self, api: ApiClient, store: LocalStore, cache: Optional[CacheSyncEngine] = None):
        self.api = api
        self.store = store
        self.cache = cache

    def get_validations(self, ou: str) -> List[Dict[str, Any]]:
        """API list for an OU, ordered by sequence."""
        validations = [_normalize(item, ou) for item in self.api.get_validations(ou)]
        return sorted(validations, key=lambda item: (item['sequence'], item['id']))

    def cache_validations(self, ou: str, validations: List[Dict[str, Any]]):
        try:
            self.store.store_validations(ou, validations)
            logger.info(f"Validations cached for {ou} ({len(validations)})")
        except _STORE_ERRORS as e:
            logger.warning(f"Validations for {ou} not cached: {e}")

    def get_cached_validations(self, ou: str) -> Optional[List[Dict[str, Any]]]:
        """None when nothing is cached for the OU or the store is unusable."""
        try:
            return self.store.get_validations(ou) or None
        except _STORE_ERRORS as e:
            logger.warning(f"Cached validations for {ou} unavailable: {e}")
            return None

    def fetch_and_sync_validations(self, ou: str, silent: bool = False) -> List[Dict[str, Any]]:
        """
        Fetch, cache and record the key status.

        On a fetch error the cached list is returned when there is one;
        otherwise silent returns an empty list and the error is raised
        without it.
        """
        key = validations_key(ou)
        if self.cache is not None:
            self.cache.mark_fetching(key)
        try:
            validations = self.get_validations(ou)
        except NetworkOrApiError as e:
            if self.cache is not None:
                self.cache.mark_failed(key, str(e) or e.__class__.__name__)
            cached = self.get_cached_validations(ou)
            if cached:
                logger.warning(f"Validations fetch failed for {ou}, using cache: {e}")
                return cached
            if silent:
                logger.warning(f"Validations fetch failed for {ou}: {e}")
                return []
            raise

        self.cache_validations(ou, validations)
        if self.cache is not None:
            self.cache.mark_success(key)
        return validations

    def get_validations_cache_first(self, ou: str,
                                    on_update: Optional[Callable[[List[Dict[str, Any]]], None]] = None,
                                    max_age: Optional[timedelta] = None
                                    ) -> Tuple[List[Dict[str, Any]], Future]:
        """Cached list now, fresh list through the returned future."""
        if self.cache is None:
            raise RuntimeError("Cache engine not configured")
        cached, future = self.cache.get_cache_first(
            validations_key(ou),
            lambda: self.get_validations(ou),
            on_update=on_update,
            max_age=max_age,
            read_cached=lambda: self.store.get_validations(ou),
            write_cached=lambda value: self.cache_validations(ou, value),
        )
        return cached or [], future
