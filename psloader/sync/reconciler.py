# -*- coding: utf-8 -*-
"""
Mapping config reconciler

Mirrors mapping configs (parents) and import groups (children) into the
local store. Imports reference configs by mapping_config_id and SQLite does
not enforce that link, so the write order does:

1. fetch the tenant's import groups
2. sync every referenced mapping config, in parallel
3. write the import groups once all config syncs have settled

A group that still references a config missing locally is withheld and its
previously cached copy is kept; all other groups are written.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..api_client import ApiClient, NetworkOrApiError
from ..store import LocalStore
from .cache import CacheSyncEngine
from .models import ImportDefinition, ImportGroup, MappingConfig, MappingEntry

logger = logging.getLogger(__name__)


class TenantChangedError(Exception):
    """The selected tenant changed while its data was being synced."""

    def __init__(self, tenant: str):
        self.tenant = tenant
        super().__init__(f"tenant changed during sync of {tenant}")


class MissingParentConfigError(Exception):
    """Some import groups were withheld because their configs are missing."""

    def __init__(self, tenant: str, withheld: Dict[str, List[int]]):
        self.tenant = tenant
        self.withheld = list(withheld)
        self.missing_config_ids = sorted({config_id for ids in withheld.values() for config_id in ids})
        super().__init__(
            f"Import groups withheld for {tenant}: {self.withheld} "
            f"(missing mapping configs: {self.missing_config_ids})"
        )


def import_groups_key(tenant: str) -> str:
    return f"import_groups_{tenant}"


class MappingConfigReconciler:
    """Dependency-ordered sync of mapping configs and import groups."""

    def __init__(self, api: ApiClient, store: LocalStore,
                 cache: Optional[CacheSyncEngine] = None, max_workers: int = 4):
        self.api = api
        self.store = store
        self.cache = cache
        self.max_workers = max_workers

    # ============================================================
    # MAPPING CONFIGS
    # ============================================================

    def get_remote_mapping_config(self, config_id: int) -> MappingConfig:
        data = dict(self.api.get_mapping_config(config_id) or {})
        data.setdefault('config_id', data.get('id', config_id))
        return MappingConfig.from_dict(data)

    def get_remote_mappings(self, config_id: int) -> List[Dict[str, Any]]:
        rows = []
        for row in self.api.get_mappings(config_id):
            row = dict(row)
            row.setdefault('mapping_config_id', config_id)
            rows.append(MappingEntry.from_dict(row).to_dict())
        return rows

    def get_stored_mapping_config(self, config_id: int) -> Optional[MappingConfig]:
        row = self.store.get_mapping_config(config_id)
        return MappingConfig.from_dict(row) if row else None

    def get_all_stored_mapping_configs(self) -> List[MappingConfig]:
        return [MappingConfig.from_dict(row) for row in self.store.get_all_mapping_configs()]

    def check_if_update_needed(self, config_id: int) -> bool:
        """Compare local and remote versions. Any error counts as 'update needed'."""
        try:
            local = self.get_stored_mapping_config(config_id)
            if local is None:
                return True
            remote = self.get_remote_mapping_config(config_id)
            if local.version != remote.version:
                logger.info(
                    f"Version mismatch for config {config_id}: local={local.version}, remote={remote.version}"
                )
                return True
            return False
        except Exception as e:
            logger.error(f"Could not check mapping config {config_id}: {e}")
            return True

    def sync_mapping_config(self, config_id: int) -> MappingConfig:
        """
        Bring one config and its mapping rows up to the remote version.

        Entries are downloaded before anything is written; header and rows are
        then replaced in one transaction. A matching version with no local
        rows (interrupted earlier sync) still downloads the rows.
        """
        remote = self.get_remote_mapping_config(config_id)
        local = self.get_stored_mapping_config(config_id)

        if local is None or local.version != remote.version:
            entries = self.get_remote_mappings(config_id)
            self.store.replace_mapping_config(remote.to_dict(), entries)
            logger.info(
                f"Mapping config {config_id} synced to version {remote.version} ({len(entries)} mappings)"
            )
        elif self.store.get_mapping_count(config_id) == 0:
            entries = self.get_remote_mappings(config_id)
            self.store.replace_mappings(config_id, entries)
            self.store.update_mapping_config_sync_time(config_id)
            logger.info(f"Mapping config {config_id} had no local mappings, stored {len(entries)}")
        else:
            self.store.update_mapping_config_sync_time(config_id)
            logger.debug(f"Mapping config {config_id} is up to date (version {local.version})")

        return self.get_stored_mapping_config(config_id)

    def sync_mapping_configs(self, config_ids: Iterable[int]) -> Tuple[Set[int], Dict[int, str]]:
        """
        Sync configs in parallel.

        Returns (synced ids, {failed id: error}). One failing config does not
        stop the others.
        """
        ids = sorted(set(config_ids))
        synced: Set[int] = set()
        failed: Dict[int, str] = {}
        if not ids:
            return synced, failed

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ids)),
                                thread_name_prefix="config-sync") as executor:
            futures: Dict[Future, int] = {
                executor.submit(self.sync_mapping_config, config_id): config_id for config_id in ids
            }
            for future in as_completed(futures):
                config_id = futures[future]
                try:
                    future.result()
                    synced.add(config_id)
                except Exception as e:
                    logger.error(f"Mapping config {config_id} sync failed: {e}")
                    failed[config_id] = str(e)

        logger.info(f"Mapping configs synced: {len(synced)}/{len(ids)}")
        return synced, failed

    def patch_mapping_config(self, config_id: int, updates: Dict[str, Any]) -> MappingConfig:
        """
        PATCH a config on the server.

        The local header is updated only when the version did not move;
        a new version is picked up with its rows by the next sync.
        """
        data = dict(self.api.patch_mapping_config(config_id, updates) or {})
        data.setdefault('config_id', data.get('id', config_id))
        updated = MappingConfig.from_dict(data)
        local = self.get_stored_mapping_config(config_id)
        if local is not None and local.version == updated.version:
            self.store.store_mapping_config(updated.to_dict())
        return updated

    def get_stored_mappings(self, config_id: int) -> List[MappingEntry]:
        return [MappingEntry.from_dict(row) for row in self.store.get_mappings(config_id)]

    def get_mapping_count(self, config_id: int) -> int:
        return self.store.get_mapping_count(config_id)

    def find_mapping(self, config_id: int, source_account: Optional[str],
                     source_department: Optional[str]) -> Optional[MappingEntry]:
        row = self.store.find_mapping(config_id, source_account, source_department)
        return MappingEntry.from_dict(row) if row else None

    # ============================================================
    # IMPORT GROUPS
    # ============================================================

    def fetch_import_groups(self, tenant: str) -> List[ImportGroup]:
        return [ImportGroup.from_dict(group) for group in self.api.get_import_groups(tenant)]

    def get_cached_import_groups(self, tenant: str) -> List[ImportGroup]:
        return [ImportGroup.from_dict(group) for group in self.store.get_import_groups(tenant)]

    @staticmethod
    def get_unique_group_names(groups: List[ImportGroup]) -> List[str]:
        names: List[str] = []
        for group in groups:
            if group.group_name not in names:
                names.append(group.group_name)
        return names

    @staticmethod
    def get_imports_by_group(groups: List[ImportGroup], group_name: str) -> List[ImportDefinition]:
        for group in groups:
            if group.group_name == group_name:
                return group.imports
        return []

    def write_import_groups(self, tenant: str, groups: List[ImportGroup]) -> Dict[str, List[int]]:
        """
        Store the groups whose configs all exist locally.

        Returns {withheld group name: missing config ids}; the old cached
        copy of a withheld group is left in place.
        """
        referenced = {config_id for group in groups for config_id in group.mapping_config_ids}
        existing = self.store.get_existing_mapping_config_ids(referenced)

        ready = []
        withheld: Dict[str, List[int]] = {}
        for group in groups:
            missing = set(group.mapping_config_ids) - existing
            if missing:
                logger.warning(
                    f"Import group '{group.group_name}' withheld for {tenant}, "
                    f"missing mapping configs: {sorted(missing)}"
                )
                withheld[group.group_name] = sorted(missing)
            else:
                ready.append(group)

        self.store.store_import_groups(
            tenant, [group.to_dict() for group in ready], keep_groups=list(withheld)
        )
        logger.info(f"Import groups cached for {tenant}: {len(ready)} written, {len(withheld)} withheld")
        return withheld

    def sync_mapping_configs_for_tenant(self, tenant: str) -> Tuple[Set[int], Dict[int, str]]:
        """
        Sync every config referenced by the tenant's import groups.

        Uses the cached groups when there are any; otherwise the groups are
        fetched and written after their configs.
        """
        groups = self.get_cached_import_groups(tenant)
        fetched = False
        if not groups:
            groups = self.fetch_import_groups(tenant)
            fetched = True

        config_ids = {config_id for group in groups for config_id in group.mapping_config_ids}
        logger.info(f"Syncing {len(config_ids)} mapping configs for {tenant}")
        result = self.sync_mapping_configs(config_ids)

        if fetched:
            self.write_import_groups(tenant, groups)
        return result

    def fetch_and_sync_import_groups(self, tenant: str, fallback_to_cache: bool = True,
                                     still_current: Optional[Callable[[], bool]] = None,
                                     strict_withholding: bool = False) -> List[ImportGroup]:
        """
        Fetch the tenant's groups, sync their configs, then cache the groups.

        Returns the groups as now cached: fetched groups that were written,
        and the previous copy of any withheld group that had one.

        Args:
            tenant: hotel OU
            fallback_to_cache: on a fetch error return the cached groups
                instead of raising
            still_current: checked right before the write; False discards it
            strict_withholding: raise when groups were withheld, after the
                ready groups are written

        Raises:
            TenantChangedError: still_current() returned False
            MissingParentConfigError: groups were withheld (strict_withholding only)
        """
        try:
            groups = self.fetch_import_groups(tenant)
        except NetworkOrApiError as e:
            if not fallback_to_cache:
                raise
            logger.warning(f"Import groups fetch failed for {tenant}, using cache: {e}")
            return self.get_cached_import_groups(tenant)

        config_ids = {config_id for group in groups for config_id in group.mapping_config_ids}
        self.sync_mapping_configs(config_ids)

        if still_current is not None and not still_current():
            raise TenantChangedError(tenant)

        withheld = self.write_import_groups(tenant, groups)
        if not withheld:
            return groups
        if strict_withholding:
            raise MissingParentConfigError(tenant, withheld)

        previous = {group.group_name: group for group in self.get_cached_import_groups(tenant)}
        return [
            previous[group.group_name] if group.group_name in withheld else group
            for group in groups
            if group.group_name not in withheld or group.group_name in previous
        ]

    def get_import_groups_cache_first(self, tenant: str,
                                      on_update: Optional[Callable[[List[ImportGroup]], None]] = None,
                                      max_age: Optional[timedelta] = None
                                      ) -> Tuple[List[ImportGroup], Future]:
        """
        Cached groups now, fresh groups through the returned future.

        A fetch error re-raises through the future. Withheld groups do not;
        the future resolves with their previous cached copy. Requires a
        cache engine.
        """
        if self.cache is None:
            raise RuntimeError("Cache engine not configured")

        def remote() -> List[Dict[str, Any]]:
            groups = self.fetch_and_sync_import_groups(tenant, fallback_to_cache=False)
            return [group.to_dict() for group in groups]

        def notify(fresh: List[Dict[str, Any]]):
            if on_update is not None:
                on_update([ImportGroup.from_dict(group) for group in fresh])

        cached, future = self.cache.get_cache_first(
            import_groups_key(tenant),
            remote,
            on_update=notify,
            max_age=max_age,
            read_cached=lambda: self.store.get_import_groups(tenant),
            write_cached=lambda value: None,
        )
        return [ImportGroup.from_dict(group) for group in cached or []], future
