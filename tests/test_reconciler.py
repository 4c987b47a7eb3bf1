# -*- coding: utf-8 -*-
"""Mapping config reconciler: configs before the import groups that use them."""

from __future__ import annotations

import sqlite3
import tempfile
import unittest
from pathlib import Path

from fakes import FakeApi, import_group

from psloader.api_client import NetworkOrApiError
from psloader.store import LocalStore
from psloader.sync.cache import CacheSyncEngine
from psloader.sync.models import CacheStatus
from psloader.sync.reconciler import (
    MappingConfigReconciler,
    MissingParentConfigError,
    TenantChangedError,
)


class ReconcilerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self._tmp.name) / "test.db")
        self.store = LocalStore(self.db_path)
        self.api = FakeApi()
        self.reconciler = MappingConfigReconciler(self.api, self.store, max_workers=3)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def orphan_imports(self) -> int:
        conn = sqlite3.connect(self.db_path)
        try:
            return conn.execute("""
                SELECT COUNT(*) FROM imports i
                LEFT JOIN mapping_configs c ON c.config_id = i.mapping_config_id
                WHERE i.mapping_config_id IS NOT NULL AND c.config_id IS NULL
            """).fetchone()[0]
        finally:
            conn.close()

    def cached_groups(self, tenant: str = "H1") -> dict:
        return {g.group_name: g for g in self.reconciler.get_cached_import_groups(tenant)}


class MappingConfigSyncTests(ReconcilerTestCase):
    def test_new_config_is_stored_with_entries(self) -> None:
        self.api.add_config(1, "1", rows=2)
        config = self.reconciler.sync_mapping_config(1)
        self.assertEqual(config.version, "1")
        self.assertEqual(self.reconciler.get_mapping_count(1), 2)

    def test_version_change_replaces_entries(self) -> None:
        self.api.add_config(1, "1", rows=2)
        self.reconciler.sync_mapping_config(1)
        self.api.add_config(1, "2", rows=3)

        config = self.reconciler.sync_mapping_config(1)

        self.assertEqual(config.version, "2")
        self.assertEqual(self.reconciler.get_mapping_count(1), 3)

    def test_up_to_date_config_skips_entries(self) -> None:
        self.api.add_config(1, "1")
        self.reconciler.sync_mapping_config(1)
        self.reconciler.sync_mapping_config(1)
        self.assertEqual(self.api.count('get_mappings'), 1)
        self.assertEqual(self.api.count('get_mapping_config'), 2)

    def test_matching_version_without_entries_downloads_them(self) -> None:
        self.api.add_config(1, "1", rows=4)
        self.store.store_mapping_config({'config_id': 1, 'version': "1"})

        self.reconciler.sync_mapping_config(1)

        self.assertEqual(self.api.count('get_mappings'), 1)
        self.assertEqual(self.reconciler.get_mapping_count(1), 4)

    def test_one_failing_config_does_not_stop_others(self) -> None:
        for config_id in (1, 2, 3):
            self.api.add_config(config_id, "1")
        self.api.failing_configs.add(2)

        synced, failed = self.reconciler.sync_mapping_configs([1, 2, 3])

        self.assertEqual(synced, {1, 3})
        self.assertEqual(list(failed), [2])
        self.assertIsNone(self.reconciler.get_stored_mapping_config(2))

    def test_check_if_update_needed(self) -> None:
        self.api.add_config(1, "1")
        self.assertTrue(self.reconciler.check_if_update_needed(1))
        self.reconciler.sync_mapping_config(1)
        self.assertFalse(self.reconciler.check_if_update_needed(1))
        self.api.add_config(1, "2")
        self.assertTrue(self.reconciler.check_if_update_needed(1))
        self.api.failing_configs.add(1)
        self.assertTrue(self.reconciler.check_if_update_needed(1))

    def test_patch_keeps_local_header_in_step(self) -> None:
        self.api.add_config(1, "1")
        self.reconciler.sync_mapping_config(1)

        self.reconciler.patch_mapping_config(1, {'description': 'Renamed'})
        self.assertEqual(self.reconciler.get_stored_mapping_config(1).description, 'Renamed')

        self.reconciler.patch_mapping_config(1, {'version': '2', 'description': 'New version'})
        stored = self.reconciler.get_stored_mapping_config(1)
        self.assertEqual(stored.version, "1")
        self.assertEqual(stored.description, 'Renamed')

    def test_find_mapping_returns_entry(self) -> None:
        self.api.add_config(1, "1", rows=2)
        self.reconciler.sync_mapping_config(1)
        entry = self.reconciler.find_mapping(1, 'SA1', 'SD1')
        self.assertEqual(entry.target_account, 'TA1')


class ImportGroupSyncTests(ReconcilerTestCase):
    def test_groups_written_after_their_configs(self) -> None:
        self.api.add_config(1, "1")
        self.api.add_config(2, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1, 2), import_group("Payroll", 2, first_id=10)]

        groups = self.reconciler.fetch_and_sync_import_groups("H1")

        self.assertEqual(self.reconciler.get_unique_group_names(groups), ["Revenue", "Payroll"])
        self.assertEqual(set(self.cached_groups()), {"Revenue", "Payroll"})
        self.assertEqual(self.orphan_imports(), 0)
        self.assertEqual(len(self.reconciler.get_imports_by_group(groups, "Revenue")), 2)

    def test_group_with_missing_config_is_withheld(self) -> None:
        self.api.add_config(1, "1")
        self.api.add_config(2, "1")
        self.api.failing_configs.add(2)
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 1, 2, first_id=10)]

        self.reconciler.fetch_and_sync_import_groups("H1")

        self.assertEqual(set(self.cached_groups()), {"Revenue"})
        self.assertEqual(self.orphan_imports(), 0)

    def test_withheld_group_keeps_previous_copy(self) -> None:
        for config_id in (1, 2, 3):
            self.api.add_config(config_id, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 2, first_id=10)]
        self.reconciler.fetch_and_sync_import_groups("H1")

        self.api.failing_configs.add(3)
        self.api.import_groups["H1"] = [import_group("Revenue", 1, 2), import_group("Payroll", 2, 3, first_id=10)]
        self.reconciler.fetch_and_sync_import_groups("H1")

        cached = self.cached_groups()
        self.assertEqual(cached["Revenue"].mapping_config_ids, [1, 2])
        self.assertEqual(cached["Payroll"].mapping_config_ids, [2])
        self.assertEqual(self.orphan_imports(), 0)

    def test_strict_mode_reports_withheld_groups(self) -> None:
        self.api.add_config(1, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 9, first_id=10)]

        with self.assertRaises(MissingParentConfigError) as ctx:
            self.reconciler.fetch_and_sync_import_groups("H1", fallback_to_cache=False, strict_withholding=True)

        self.assertEqual(ctx.exception.withheld, ["Payroll"])
        self.assertEqual(ctx.exception.missing_config_ids, [9])
        self.assertIn("missing mapping configs: [9]", str(ctx.exception))
        self.assertEqual(set(self.cached_groups()), {"Revenue"})

    def test_withholding_without_strict_mode_returns_cached_view(self) -> None:
        for config_id in (1, 2):
            self.api.add_config(config_id, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 2, first_id=10)]
        self.reconciler.fetch_and_sync_import_groups("H1")

        self.api.import_groups["H1"] = [
            import_group("Revenue", 1),
            import_group("Payroll", 2, 9, first_id=10),
            import_group("Labour", 9, first_id=20),
        ]
        groups = self.reconciler.fetch_and_sync_import_groups("H1", fallback_to_cache=False)

        self.assertEqual([g.group_name for g in groups], ["Revenue", "Payroll"])
        self.assertEqual(groups[1].mapping_config_ids, [2])

    def test_tenant_change_discards_write(self) -> None:
        self.api.add_config(1, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1)]

        with self.assertRaises(TenantChangedError):
            self.reconciler.fetch_and_sync_import_groups("H1", still_current=lambda: False)

        self.assertFalse(self.store.has_import_groups_cached("H1"))

    def test_fetch_error_falls_back_to_cache(self) -> None:
        self.api.add_config(1, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1)]
        self.reconciler.fetch_and_sync_import_groups("H1")
        del self.api.import_groups["H1"]

        groups = self.reconciler.fetch_and_sync_import_groups("H1")
        self.assertEqual([g.group_name for g in groups], ["Revenue"])

        with self.assertRaises(NetworkOrApiError):
            self.reconciler.fetch_and_sync_import_groups("H1", fallback_to_cache=False)

    def test_tenants_are_cached_separately(self) -> None:
        self.api.add_config(1, "1")
        self.api.add_config(2, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1)]
        self.api.import_groups["H2"] = [import_group("Payroll", 2)]
        self.reconciler.fetch_and_sync_import_groups("H1")
        self.reconciler.fetch_and_sync_import_groups("H2")

        self.assertEqual(set(self.cached_groups("H1")), {"Revenue"})
        self.assertEqual(set(self.cached_groups("H2")), {"Payroll"})

    def test_sync_configs_for_tenant_without_cache(self) -> None:
        self.api.add_config(1, "1")
        self.api.add_config(2, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1, 2)]

        synced, failed = self.reconciler.sync_mapping_configs_for_tenant("H1")

        self.assertEqual(synced, {1, 2})
        self.assertEqual(failed, {})
        self.assertTrue(self.store.has_import_groups_cached("H1"))

    def test_sync_configs_for_tenant_uses_cached_groups(self) -> None:
        self.api.add_config(1, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1)]
        self.reconciler.fetch_and_sync_import_groups("H1")

        self.reconciler.sync_mapping_configs_for_tenant("H1")

        self.assertEqual(self.api.count('get_import_groups'), 1)


class ImportGroupsCacheFirstTests(ReconcilerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cache = CacheSyncEngine(self.store)
        self.reconciler = MappingConfigReconciler(self.api, self.store, cache=self.cache)

    def tearDown(self) -> None:
        self.cache.shutdown()
        super().tearDown()

    def test_cached_groups_then_fresh(self) -> None:
        self.api.add_config(1, "1")
        self.api.add_config(2, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1)]
        self.reconciler.fetch_and_sync_import_groups("H1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 2, first_id=10)]
        updates = []

        cached, future = self.reconciler.get_import_groups_cache_first("H1", on_update=updates.append)

        self.assertEqual([g.group_name for g in cached], ["Revenue"])
        future.result(timeout=5)
        self.assertEqual([g.group_name for g in updates[0]], ["Revenue", "Payroll"])
        self.assertEqual(set(self.cached_groups()), {"Revenue", "Payroll"})

    def test_group_with_missing_config_still_resolves(self) -> None:
        self.api.add_config(1, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 99, first_id=10)]
        updates = []

        cached, future = self.reconciler.get_import_groups_cache_first("H1", on_update=updates.append)

        self.assertEqual(cached, [])
        fresh = future.result(timeout=5)
        self.assertEqual([group['group_name'] for group in fresh], ["Revenue"])
        self.assertEqual(len(updates), 1)
        self.assertEqual([g.group_name for g in updates[0]], ["Revenue"])
        self.assertEqual(self.cache.get_metadata("import_groups_H1").status, CacheStatus.SUCCESS)
        self.assertEqual(set(self.cached_groups()), {"Revenue"})

    def test_withheld_group_resolves_to_previous_copy(self) -> None:
        self.api.add_config(1, "1")
        self.api.add_config(2, "1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 2, first_id=10)]
        self.reconciler.fetch_and_sync_import_groups("H1")
        self.api.import_groups["H1"] = [import_group("Revenue", 1), import_group("Payroll", 2, 99, first_id=10)]

        _, future = self.reconciler.get_import_groups_cache_first("H1")

        fresh = {group['group_name']: group for group in future.result(timeout=5)}
        self.assertEqual(set(fresh), {"Revenue", "Payroll"})
        self.assertEqual([imp['mapping_config_id'] for imp in fresh["Payroll"]['imports']], [2])

    def test_fetch_error_still_fails_future(self) -> None:
        _, future = self.reconciler.get_import_groups_cache_first("H9")

        with self.assertRaises(NetworkOrApiError):
            future.result(timeout=5)
        self.assertEqual(self.cache.get_metadata("import_groups_H9").status, CacheStatus.FAILED)

    def test_requires_cache_engine(self) -> None:
        reconciler = MappingConfigReconciler(self.api, self.store)
        with self.assertRaises(RuntimeError):
            reconciler.get_import_groups_cache_first("H1")


if __name__ == "__main__":
    unittest.main()
