# -*- coding: utf-8 -*-
"""
Background Sync Scheduler

Periodically refreshes the local cache for the selected tenant.
A pass only runs when a tenant is selected and the session is elevated.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..auth import SecurityLevel, SessionManager
from .cache import CacheSyncEngine
from .mapping_tables import MappingTablesSync
from .models import SyncResult
from .reconciler import MappingConfigReconciler, import_groups_key

if TYPE_CHECKING:
    from ..services.hotels import HotelService

logger = logging.getLogger(__name__)

HOTELS_KEY = "hotels"
MAPPING_TABLES_KEY = "mapping_tables"


class BackgroundSyncScheduler:
    """
    Background sync scheduler.

    Features:
    - Initial delayed pass, then a fixed interval
    - Single-flight: a pass started while another runs returns immediately
    - Each sub-sync checks its own staleness and fails on its own
    - Tenant snapshot per pass; a tenant switch mid-pass discards the
      stale tenant's write and queues a follow-up pass
    """

    def __init__(
        self,
        session: SessionManager,
        cache: CacheSyncEngine,
        reconciler: MappingConfigReconciler,
        mapping_tables: MappingTablesSync,
        hotels: 'HotelService',
        interval: int = 300,
        initial_delay: int = 10,
        hotels_max_age: timedelta = timedelta(minutes=60),
        import_groups_max_age: timedelta = timedelta(minutes=30),
        mapping_tables_max_age: timedelta = timedelta(minutes=60),
        on_sync_complete: Optional[Callable[[SyncResult], None]] = None,
    ):
        """
        Args:
            interval: seconds between scheduled passes
            initial_delay: seconds before the first pass after start()
            on_sync_complete: called after every pass that ran
        """
        self.session = session
        self.cache = cache
        self.reconciler = reconciler
        self.mapping_tables = mapping_tables
        self.hotels = hotels
        self.interval = interval
        self.initial_delay = initial_delay
        self.hotels_max_age = hotels_max_age
        self.import_groups_max_age = import_groups_max_age
        self.mapping_tables_max_age = mapping_tables_max_age
        self.on_sync_complete = on_sync_complete

        self._tenant: Optional[str] = None
        self._tenant_lock = threading.Lock()
        self._follow_up = False
        self._sync_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._last_result: Optional[SyncResult] = None
        self._sync_count = 0
        self._failure_count = 0

    @property
    def tenant(self) -> Optional[str]:
        return self._tenant

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start(self, tenant: Optional[str] = None):
        """Start the timer thread. No-op when already running."""
        if self.is_running:
            logger.debug("Background sync already running")
            return

        if tenant is not None:
            with self._tenant_lock:
                self._tenant = tenant

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.name = "BackgroundSync"
        self._thread.start()
        logger.info(
            f"Background sync started (tenant={self._tenant}, interval={self.interval}s, "
            f"initial delay={self.initial_delay}s)"
        )

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Background sync stopped")

    def _run_loop(self):
        if self._stop_event.wait(self.initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self.sync_all()
            except Exception as e:
                logger.error(f"Background sync pass crashed: {e}", exc_info=True)
            if self._stop_event.wait(self.interval):
                break

    def set_tenant(self, tenant: Optional[str]) -> threading.Thread:
        """
        Switch tenant and run an out-of-band pass for it.

        Returns the thread running that pass.
        """
        with self._tenant_lock:
            changed = tenant != self._tenant
            self._tenant = tenant
            if changed and self.is_syncing:
                self._follow_up = True
        logger.info(f"Sync tenant set to {tenant}")

        thread = threading.Thread(target=self._out_of_band_sync, daemon=True)
        thread.name = "TenantSync"
        thread.start()
        return thread

    def _out_of_band_sync(self):
        try:
            self.sync_all()
        except Exception as e:
            logger.error(f"Out-of-band sync crashed: {e}", exc_info=True)

    def trigger_sync(self, force: bool = False) -> SyncResult:
        """
        Manual equivalent of one scheduled tick.

        With force, every sub-sync runs regardless of staleness; a fetch
        already running for a key is still not started twice.
        """
        return self.sync_all(force=force)

    # ============================================================
    # PASS
    # ============================================================

    def sync_all(self, force: bool = False) -> SyncResult:
        """
        Run one pass unless one is already running.

        Never raises for sub-sync failures; they are in the returned result.
        """
        result: Optional[SyncResult] = None
        while True:
            if not self._sync_lock.acquire(blocking=False):
                logger.debug("Sync already in progress, skipping")
                return result or SyncResult(tenant=self._tenant, skipped_reason="already running")
            try:
                with self._tenant_lock:
                    self._follow_up = False
                result = self._run_pass(force)
            finally:
                self._sync_lock.release()

            with self._tenant_lock:
                if not self._follow_up:
                    return result
            logger.info("Tenant changed during sync, running follow-up pass")

    def _run_pass(self, force: bool = False) -> SyncResult:
        with self._tenant_lock:
            tenant = self._tenant

        result = SyncResult(tenant=tenant, started_at=datetime.now())

        if not tenant:
            result.skipped_reason = "no tenant selected"
            logger.debug("Sync skipped: no tenant selected")
            return result
        if not self.session.get_access_token() or \
                self.session.get_security_level() < SecurityLevel.ELEVATED:
            result.skipped_reason = "not authenticated"
            logger.debug("Sync skipped: session not elevated")
            return result

        result.ran = True
        logger.info(f"Sync pass started for {tenant}{' (forced)' if force else ''}")

        sub_syncs = [
            (HOTELS_KEY, self.hotels_max_age, self.hotels.refresh_hotels_cache),
            (MAPPING_TABLES_KEY, self.mapping_tables_max_age, self.mapping_tables.sync_mapping_tables),
            (import_groups_key(tenant), self.import_groups_max_age, lambda: self._sync_import_groups(tenant)),
        ]
        for key, max_age, action in sub_syncs:
            ran, failure = self.cache.run_if_stale(key, max_age, action, force=force)
            if failure is not None:
                result.failures.append(failure)
            elif ran:
                result.synced.append(key)
            else:
                result.fresh.append(key)

        result.finished_at = datetime.now()
        self._last_result = result
        self._sync_count += 1
        self._failure_count += len(result.failures)

        logger.info(
            f"Sync pass finished for {tenant}: synced={result.synced}, fresh={result.fresh}, "
            f"failed={[f.key for f in result.failures]}"
        )

        if self.on_sync_complete:
            try:
                self.on_sync_complete(result)
            except Exception as e:
                logger.error(f"Sync complete callback failed: {e}")
        return result

    def _sync_import_groups(self, tenant: str):
        self.reconciler.fetch_and_sync_import_groups(
            tenant,
            fallback_to_cache=False,
            still_current=lambda: self.tenant == tenant,
            strict_withholding=True,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            'tenant': self._tenant,
            'is_running': self.is_running,
            'is_syncing': self.is_syncing,
            'last_result': self._last_result.to_dict() if self._last_result else None,
            'sync_count': self._sync_count,
            'failure_count': self._failure_count,
            'interval': self.interval,
        }
