# -*- coding: utf-8 -*-
"""
Mapping tables

Account maps, department maps and account/department combos. The server
versions them with two counters: version (maps) and combo_version (combos).
Only the halves whose counter moved are downloaded; the local version row
is written last, so an interrupted sync is retried in full.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..api_client import ApiClient
from ..store import LocalStore

logger = logging.getLogger(__name__)


class MappingTablesSync:

    def __init__(self, api: ApiClient, store: LocalStore):
        self.api = api
        self.store = store

    def get_version(self) -> Dict[str, Any]:
        return self.api.get_mapping_tables_version()

    def get_data(self) -> Dict[str, Any]:
        return self.api.get_mapping_tables_data()

    def get_combos(self) -> Dict[str, Any]:
        return self.api.get_mapping_tables_combos()

    def get_stored_version(self) -> Optional[Dict[str, Any]]:
        try:
            return self.store.get_mapping_tables_version()
        except Exception as e:
            logger.warning(f"Stored mapping tables version unavailable: {e}")
            return None

    def _compare_versions(self) -> Tuple[bool, bool, Optional[Dict[str, Any]]]:
        try:
            local = self.get_stored_version()
            remote = self.get_version() or {}
        except Exception as e:
            logger.error(f"Could not check mapping tables version: {e}")
            return True, True, None

        if not local:
            logger.info("No local mapping tables version, full sync needed")
            return True, True, remote

        remote_version = remote.get('version')
        remote_combo_version = remote.get('combo_version') or remote_version
        needs_sync = local.get('version') != remote_version
        needs_combo_sync = local.get('combo_version') != remote_combo_version

        if needs_sync:
            logger.info(f"Mapping tables version mismatch: local={local.get('version')}, remote={remote_version}")
        if needs_combo_sync:
            logger.info(
                f"Combos version mismatch: local={local.get('combo_version')}, remote={remote_combo_version}"
            )
        return needs_sync, needs_combo_sync, remote

    def check_if_sync_needed(self) -> Tuple[bool, bool]:
        """
        Returns (needs_sync, needs_combo_sync). Both are True on any error.
        """
        needs_sync, needs_combo_sync, _ = self._compare_versions()
        return needs_sync, needs_combo_sync

    def sync_mapping_tables(self) -> bool:
        """
        Download what changed.

        Returns:
            True if anything was downloaded, False when already up to date
        """
        needs_sync, needs_combo_sync, remote = self._compare_versions()
        if not needs_sync and not needs_combo_sync:
            logger.debug("Mapping tables are up to date")
            return False

        if remote is None:
            remote = self.get_version() or {}
        version = remote.get('version')
        combo_version = remote.get('combo_version')

        if needs_sync:
            data = self.get_data()
            account_maps = data.get('account_maps') or []
            department_maps = data.get('department_maps') or []
            self.store.store_account_maps(account_maps)
            self.store.store_department_maps(department_maps)
            logger.info(f"Stored {len(account_maps)} account maps, {len(department_maps)} department maps")
            version = data.get('version') or version

        if needs_combo_sync:
            combos_data = self.get_combos()
            combos = combos_data.get('combos') or []
            self.store.store_combos(combos)
            logger.info(f"Stored {len(combos)} account/department combos")
            combo_version = combos_data.get('combo_version') or combo_version

        combo_version = combo_version or version
        self.store.set_mapping_tables_version(str(version), str(combo_version))
        logger.info(f"Mapping tables synced to version {version}, combo version {combo_version}")
        return True

    def is_valid_combo(self, account: str, department: str) -> bool:
        return self.store.is_valid_combo(account, department)

    def get_account_hierarchy(self, base_account: str) -> Optional[Dict[str, Any]]:
        return self.store.get_account_map(base_account)

    def get_department_hierarchy(self, base_department: str) -> Optional[Dict[str, Any]]:
        return self.store.get_department_map(base_department)

    def get_account_maps(self) -> List[Dict[str, Any]]:
        return self.store.get_account_maps()

    def get_department_maps(self) -> List[Dict[str, Any]]:
        return self.store.get_department_maps()
