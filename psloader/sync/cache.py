# -*- coding: utf-8 -*-
"""
Cache Synchronization Engine

- Per-key staleness metadata (idle / fetching / success / failed)
- Atomic claim so a running fetch is not started twice
- Cache-first reads with a background refresh on a thread pool
- Failures are recorded, cached payloads are never cleared by them
"""

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from ..store import LocalStore, LocalStoreUnavailableError
from .models import CacheKeyMetadata, CacheStatus, SyncFailure

logger = logging.getLogger(__name__)

_STORE_ERRORS = (LocalStoreUnavailableError, sqlite3.Error)


class CacheSyncEngine:
    """
    Cache synchronization engine.

    Metadata lives in the local store. When the store is unavailable it is
    kept in memory for the lifetime of the process and payload caching is
    skipped.
    """

    def __init__(self, store: Optional[LocalStore], max_workers: int = 4,
                 fetch_timeout: timedelta = timedelta(minutes=10),
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.fetch_timeout = fetch_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._memory: Dict[str, CacheKeyMetadata] = {}
        self._inflight: Dict[str, Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cache-refresh")

    # ============================================================
    # METADATA
    # ============================================================

    def get_metadata(self, key: str) -> Optional[CacheKeyMetadata]:
        if self.store is not None:
            try:
                row = self.store.get_cache_metadata(key)
                return CacheKeyMetadata.from_dict(row) if row else self._memory.get(key)
            except _STORE_ERRORS as e:
                logger.debug(f"Cache metadata read failed for {key}, using memory: {e}")
        return self._memory.get(key)

    def _save_metadata(self, metadata: CacheKeyMetadata):
        self._memory[metadata.key] = metadata
        if self.store is None:
            return
        try:
            self.store.save_cache_metadata(metadata.to_dict())
        except _STORE_ERRORS as e:
            logger.warning(f"Cache metadata for {metadata.key} kept in memory only: {e}")

    def _transition(self, key: str, status: CacheStatus, max_age: Optional[timedelta] = None,
                    error: Optional[str] = None) -> CacheKeyMetadata:
        now = self._clock()
        with self._lock:
            metadata = self.get_metadata(key) or CacheKeyMetadata(key=key)
            metadata.status = status
            metadata.updated_at = now
            if max_age is not None:
                metadata.max_age = max_age
            if status == CacheStatus.SUCCESS:
                metadata.last_synced_at = now
                metadata.error = None
            elif status == CacheStatus.FAILED:
                metadata.error = error or "Unknown error"
            self._save_metadata(metadata)
            return metadata

    def should_refresh(self, key: str, max_age: Optional[timedelta] = None) -> bool:
        """
        True when there is no metadata, the last fetch failed or the data is
        older than max_age. False while a fetch is running, unless its claim
        is older than fetch_timeout.
        """
        metadata = self.get_metadata(key)
        if metadata is None:
            return True
        now = self._clock()
        if metadata.status == CacheStatus.FETCHING:
            if metadata.claim_expired(now, self.fetch_timeout):
                logger.warning(f"Abandoned fetch claim on {key}, refreshing again")
                return True
            return False
        if metadata.status == CacheStatus.FAILED:
            return True
        return metadata.is_stale(now, max_age)

    def mark_fetching(self, key: str, max_age: Optional[timedelta] = None) -> CacheKeyMetadata:
        return self._transition(key, CacheStatus.FETCHING, max_age)

    def mark_success(self, key: str, max_age: Optional[timedelta] = None) -> CacheKeyMetadata:
        return self._transition(key, CacheStatus.SUCCESS, max_age)

    def mark_failed(self, key: str, error: str) -> CacheKeyMetadata:
        logger.warning(f"Sync failed for {key}: {error}")
        return self._transition(key, CacheStatus.FAILED, error=error)

    def claim(self, key: str, max_age: Optional[timedelta] = None) -> bool:
        """Check staleness and mark fetching in one step."""
        with self._lock:
            if not self.should_refresh(key, max_age):
                return False
            self.mark_fetching(key, max_age)
            return True

    def run_if_stale(self, key: str, max_age: timedelta, action: Callable[[], Any],
                     force: bool = False) -> Tuple[bool, Optional[SyncFailure]]:
        """
        Run action when key is stale.

        Returns (ran, failure). Exceptions raised by the action are recorded
        in the key metadata and returned as a SyncFailure.
        """
        if force:
            with self._lock:
                metadata = self.get_metadata(key)
                if metadata and metadata.status == CacheStatus.FETCHING \
                        and not metadata.claim_expired(self._clock(), self.fetch_timeout):
                    return False, None
                self.mark_fetching(key, max_age)
        elif not self.claim(key, max_age):
            logger.debug(f"{key} is fresh, skipping")
            return False, None

        try:
            action()
        except Exception as e:
            logger.error(f"{key} sync failed: {e}", exc_info=True)
            self.mark_failed(key, str(e) or e.__class__.__name__)
            return True, SyncFailure(key=key, error=str(e) or e.__class__.__name__)

        self.mark_success(key, max_age)
        return True, None

    # ============================================================
    # PAYLOADS / CACHE-FIRST
    # ============================================================

    def read_payload(self, key: str) -> Any:
        if self.store is None:
            return None
        try:
            return self.store.get_cached_value(key)
        except _STORE_ERRORS as e:
            logger.warning(f"Cached payload for {key} unavailable: {e}")
            return None

    def write_payload(self, key: str, value: Any):
        if self.store is None:
            return
        try:
            self.store.set_cached_value(key, value)
        except _STORE_ERRORS as e:
            logger.warning(f"Payload for {key} not cached: {e}")

    def get_cache_first(self, key: str, remote_fetch: Callable[[], Any],
                        on_update: Optional[Callable[[Any], None]] = None,
                        max_age: Optional[timedelta] = None,
                        read_cached: Optional[Callable[[], Any]] = None,
                        write_cached: Optional[Callable[[Any], None]] = None) -> Tuple[Any, Future]:
        """
        Return the cached value now and refresh in the background.

        The future resolves to the fresh value, or re-raises the fetch error.
        on_update fires only when the fresh value differs from the cached one.
        Concurrent calls for the same key share one in-flight refresh.
        With max_age given, a fresh key resolves immediately to the cached
        value without a remote call.
        """
        read = read_cached or (lambda: self.read_payload(key))
        write = write_cached or (lambda value: self.write_payload(key, value))
        try:
            cached = read()
        except _STORE_ERRORS as e:
            logger.warning(f"Cached value for {key} unavailable: {e}")
            cached = None

        with self._lock:
            inflight = self._inflight.get(key)
            if inflight is not None and not inflight.done():
                return cached, inflight

            if max_age is not None and not self.should_refresh(key, max_age):
                done: Future = Future()
                done.set_result(cached)
                return cached, done

            self.mark_fetching(key, max_age)
            future = self._executor.submit(self._refresh, key, remote_fetch, cached, on_update, max_age, write)
            self._inflight[key] = future

        future.add_done_callback(lambda f: self._forget(key, f))
        return cached, future

    def _forget(self, key: str, future: Future):
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def _refresh(self, key: str, remote_fetch: Callable[[], Any], cached: Any,
                 on_update: Optional[Callable[[Any], None]], max_age: Optional[timedelta],
                 write: Callable[[Any], None]) -> Any:
        try:
            fresh = remote_fetch()
        except Exception as e:
            self.mark_failed(key, str(e) or e.__class__.__name__)
            raise

        try:
            write(fresh)
        except _STORE_ERRORS as e:
            logger.warning(f"Fresh value for {key} not cached: {e}")
        self.mark_success(key, max_age)

        if on_update is not None and fresh != cached:
            try:
                on_update(fresh)
            except Exception as e:
                logger.error(f"Update callback for {key} failed: {e}", exc_info=True)
        return fresh

    def clear(self, key: str):
        """Explicit cache clear: payload and metadata."""
        with self._lock:
            self._memory.pop(key, None)
        if self.store is None:
            return
        try:
            self.store.clear_cached_value(key)
        except _STORE_ERRORS as e:
            logger.warning(f"Cache clear for {key} failed: {e}")

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
