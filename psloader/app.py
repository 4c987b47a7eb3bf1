# -*- coding: utf-8 -*-
"""
Application container

Builds every service once, wires the dependencies and owns their
lifetime. Consumers get the services from this object instead of module
globals.
"""

import logging
import sqlite3
import threading
from datetime import timedelta
from typing import Callable, Optional

import requests

from .api_client import ApiClient
from .auth import SessionManager
from .config import AppConfig
from .hardware import HardwareInfo, HardwareProvider, collect_hardware_info
from .identity import DeviceIdentityProvider
from .services import (
    FinancialDataService,
    HotelService,
    SubmittedDataService,
    UploadPeriodsService,
    ValidationsService,
)
from .settings import SettingsKey, SettingsService
from .store import LocalStore, LocalStoreUnavailableError
from .sync import (
    BackgroundSyncScheduler,
    CacheSyncEngine,
    MappingConfigReconciler,
    MappingTablesSync,
    SyncResult,
)

logger = logging.getLogger(__name__)


class PSLoaderApp:
    """Composition root."""

    def __init__(self, config: Optional[AppConfig] = None,
                 hardware_collector: Callable[[], HardwareInfo] = collect_hardware_info,
                 http_session: Optional[requests.Session] = None):
        self.config = config or AppConfig()

        self.store = LocalStore(self.config.db_path)
        self.settings = SettingsService(self.store)
        self.hardware = HardwareProvider(hardware_collector)
        self.identity = DeviceIdentityProvider(self.store, self.hardware)

        self.api = ApiClient(self.config, session=http_session)
        self.session = SessionManager(self.api, self.identity)

        self.cache = CacheSyncEngine(
            self.store,
            max_workers=self.config.max_sync_workers,
            fetch_timeout=timedelta(minutes=self.config.fetch_timeout_minutes),
        )
        self.reconciler = MappingConfigReconciler(
            self.api, self.store, self.cache, max_workers=self.config.max_sync_workers
        )
        self.mapping_tables = MappingTablesSync(self.api, self.store)
        self.hotels = HotelService(self.api, self.store, self.cache)
        self.submitted_data = SubmittedDataService(self.api)
        self.upload_periods = UploadPeriodsService(self.api)
        self.validations = ValidationsService(self.api, self.store, self.cache)
        self.financial_data = FinancialDataService(self.api, self.store)

        self.scheduler = BackgroundSyncScheduler(
            session=self.session,
            cache=self.cache,
            reconciler=self.reconciler,
            mapping_tables=self.mapping_tables,
            hotels=self.hotels,
            interval=self.config.sync_interval_seconds,
            initial_delay=self.config.initial_sync_delay_seconds,
            hotels_max_age=timedelta(minutes=self.config.hotels_max_age_minutes),
            import_groups_max_age=timedelta(minutes=self.config.import_groups_max_age_minutes),
            mapping_tables_max_age=timedelta(minutes=self.config.mapping_tables_max_age_minutes),
        )

    @property
    def selected_tenant(self) -> Optional[str]:
        return self.settings.get_setting(SettingsKey.SELECTED_HOTEL_OU)

    def select_tenant(self, ou: str) -> threading.Thread:
        """Persist the tenant and resync for it."""
        try:
            self.settings.set_setting(SettingsKey.SELECTED_HOTEL_OU, ou)
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.warning(f"Selected tenant not persisted, queued for retry: {e}")
        return self.scheduler.set_tenant(ou)

    def start_background_sync(self):
        self.scheduler.start(self.selected_tenant)

    def sync_now(self, force: bool = False) -> SyncResult:
        """One pass for the selected tenant on the calling thread."""
        return self.scheduler.trigger_sync(force=force)

    def sign_out(self):
        self.session.clear_auth()

    def clear_cache(self):
        self.store.clear_cache()

    def shutdown(self):
        self.scheduler.stop()
        self.cache.shutdown(wait=False)
        self.settings.sync_pending_settings()
        logger.info("Application shut down")
