# -*- coding: utf-8 -*-
"""Hotels, validations and financial data services."""

from __future__ import annotations

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from fakes import FakeApi

from psloader.api_client import NetworkOrApiError
from psloader.services.financial_data import FinancialDataService
from psloader.services.hotels import HotelService
from psloader.services.validations import ValidationsService
from psloader.store import LocalStore, LocalStoreUnavailableError
from psloader.sync.cache import CacheSyncEngine
from psloader.sync.models import CacheStatus

HOTELS = [
    {'ou': 'H2', 'hotel_name': 'Summit', 'currency': 'EUR', 'room_count': 80},
    {'ou': 'H1', 'hotel_name': 'Harbour', 'currency': 'USD', 'room_count': 120},
]

VALIDATIONS = [
    {'id': 2, 'name': 'duplicate_records', 'display_name': 'Duplicate records', 'is_required': True,
     'description': 'No repeated rows', 'ou': 'H1', 'sequence': 2},
    {'id': 1, 'name': 'required_imports', 'display_name': 'Required imports', 'is_required': False,
     'description': None, 'ou': 'H1', 'sequence': 1},
]

FINANCIAL_ROWS = [
    {'id': 11, 'period': '2024-02', 'department': 'ROOMS', 'account': '4000', 'amount': 1500.5,
     'scenario': 'Actuals', 'version': '1', 'currency': 'USD', 'load_id': 'L1', 'load_date': '2024-03-01T10:00:00'},
    {'id': 10, 'period': '2024-01', 'department': 'ROOMS', 'account': '4000', 'amount': 1200,
     'scenario': 'Budget', 'version': '2', 'currency': 'USD', 'load_id': 'L2', 'load_date': None},
]


class HotelServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(str(Path(self._tmp.name) / "test.db"))
        self.cache = CacheSyncEngine(self.store)
        self.api = FakeApi()
        self.api.hotels = list(HOTELS)
        self.service = HotelService(self.api, self.store, self.cache)

    def tearDown(self) -> None:
        self.cache.shutdown()
        self._tmp.cleanup()

    def test_get_hotels_refreshes_local_copy(self) -> None:
        self.assertEqual(self.service.get_hotels(), HOTELS)
        cached = self.service.get_cached_hotels()
        self.assertEqual([h['ou'] for h in cached], ['H1', 'H2'])
        self.assertEqual(cached[0]['room_count'], 120)

    def test_cached_hotels_empty_when_store_broken(self) -> None:
        blocker = Path(self._tmp.name) / "file"
        blocker.write_text("x")
        service = HotelService(self.api, LocalStore(str(blocker / "test.db")))
        self.assertEqual(service.get_cached_hotels(), [])
        self.assertEqual(len(service.get_hotels()), 2)
        with self.assertRaises(LocalStoreUnavailableError):
            service.refresh_hotels_cache()

    def test_cache_first_returns_cached_then_fresh(self) -> None:
        self.store.cache_hotels([HOTELS[1]])
        updates = []

        cached, future = self.service.get_hotels_cache_first(on_update=updates.append)

        self.assertEqual([h['ou'] for h in cached], ['H1'])
        self.assertEqual(future.result(timeout=5), HOTELS)
        self.assertEqual(len(updates), 1)
        self.assertEqual(len(self.service.get_cached_hotels()), 2)

    def test_cache_first_requires_engine(self) -> None:
        with self.assertRaises(RuntimeError):
            HotelService(self.api, self.store).get_hotels_cache_first()


class ValidationsServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(str(Path(self._tmp.name) / "test.db"))
        self.cache = CacheSyncEngine(self.store)
        self.api = FakeApi()
        self.api.validations['H1'] = [dict(item) for item in VALIDATIONS]
        self.service = ValidationsService(self.api, self.store, self.cache)

    def tearDown(self) -> None:
        self.cache.shutdown()
        self._tmp.cleanup()

    def test_fetch_and_sync_caches_in_run_order(self) -> None:
        validations = self.service.fetch_and_sync_validations("H1")

        self.assertEqual([v['name'] for v in validations], ['required_imports', 'duplicate_records'])
        self.assertEqual(self.service.get_cached_validations("H1"), validations)
        self.assertEqual(self.cache.get_metadata("validations_H1").status, CacheStatus.SUCCESS)

    def test_fetch_error_returns_cached_copy(self) -> None:
        synced = self.service.fetch_and_sync_validations("H1")
        del self.api.validations['H1']

        self.assertEqual(self.service.fetch_and_sync_validations("H1"), synced)
        metadata = self.cache.get_metadata("validations_H1")
        self.assertEqual(metadata.status, CacheStatus.FAILED)
        self.assertIn("No validations for H1", metadata.error)

    def test_fetch_error_without_cache(self) -> None:
        self.assertEqual(self.service.fetch_and_sync_validations("H2", silent=True), [])
        with self.assertRaises(NetworkOrApiError):
            self.service.fetch_and_sync_validations("H2")
        self.assertIsNone(self.service.get_cached_validations("H2"))

    def test_cache_first_returns_cached_then_fresh(self) -> None:
        self.service.cache_validations("H1", self.service.get_validations("H1")[:1])
        updates = []

        cached, future = self.service.get_validations_cache_first("H1", on_update=updates.append)

        self.assertEqual([v['name'] for v in cached], ['required_imports'])
        fresh = future.result(timeout=5)
        self.assertEqual(len(fresh), 2)
        self.assertEqual(updates, [fresh])
        self.assertEqual(len(self.service.get_cached_validations("H1")), 2)

    def test_unchanged_list_does_not_notify(self) -> None:
        self.service.fetch_and_sync_validations("H1")
        updates = []

        _, future = self.service.get_validations_cache_first("H1", on_update=updates.append)

        future.result(timeout=5)
        self.assertEqual(updates, [])

    def test_ous_are_cached_separately(self) -> None:
        self.api.validations['H2'] = [dict(VALIDATIONS[0], ou='H2')]
        self.service.fetch_and_sync_validations("H1")
        self.service.fetch_and_sync_validations("H2")

        self.assertEqual(len(self.service.get_cached_validations("H1")), 2)
        self.assertEqual([v['ou'] for v in self.service.get_cached_validations("H2")], ['H2'])

    def test_cache_first_requires_engine(self) -> None:
        with self.assertRaises(RuntimeError):
            ValidationsService(self.api, self.store).get_validations_cache_first("H1")


class FinancialDataServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(str(Path(self._tmp.name) / "test.db"))
        self.api = FakeApi()
        self.api.financial_data['H1'] = [dict(row) for row in FINANCIAL_ROWS]
        self.service = FinancialDataService(self.api, self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_import_stores_rows_for_ou(self) -> None:
        result = self.service.import_financial_data("H1")

        self.assertTrue(result.success)
        self.assertEqual(result.count, 2)
        self.assertEqual(result.message, "Successfully imported 2 financial records")
        self.assertEqual(self.service.get_stored_data_count("H1"), 2)
        self.assertEqual(self.service.get_stored_data_count("H2"), 0)

        stored = self.service.get_stored_data("H1")
        self.assertEqual([r.period for r in stored], ['2024-01', '2024-02'])
        self.assertEqual(stored[0].ou, 'H1')
        february = self.service.get_stored_data("H1", period='2024-02')
        self.assertEqual(len(february), 1)
        self.assertEqual(february[0].amount, 1500.5)
        self.assertEqual(february[0].scenario, 'Actuals')

    def test_last_import_timestamp(self) -> None:
        self.assertIsNone(self.service.get_last_import_timestamp("H1"))
        before = datetime.now()
        self.service.import_financial_data("H1")
        self.assertGreaterEqual(self.service.get_last_import_timestamp("H1"), before)

    def test_reimport_replaces_rows(self) -> None:
        self.service.import_financial_data("H1")
        self.api.financial_data['H1'] = [dict(FINANCIAL_ROWS[0])]

        self.assertEqual(self.service.import_financial_data("H1").count, 1)
        self.assertEqual(self.service.get_stored_data_count("H1"), 1)

    def test_empty_response_keeps_previous_import(self) -> None:
        self.service.import_financial_data("H1")
        self.api.financial_data['H1'] = []

        result = self.service.import_financial_data("H1")

        self.assertTrue(result.success)
        self.assertEqual(result.count, 0)
        self.assertEqual(result.message, "No financial data found for this OU")
        self.assertEqual(self.service.get_stored_data_count("H1"), 2)

    def test_forbidden_ou(self) -> None:
        self.api.denied_ous.add("H1")

        with self.assertRaises(NetworkOrApiError) as ctx:
            self.service.import_financial_data("H1")

        self.assertEqual(str(ctx.exception), "Access denied to this OU")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(self.service.get_stored_data_count("H1"), 0)

    def test_broken_store(self) -> None:
        blocker = Path(self._tmp.name) / "file"
        blocker.write_text("x")
        service = FinancialDataService(self.api, LocalStore(str(blocker / "test.db")))

        self.assertEqual(service.get_stored_data_count("H1"), 0)
        self.assertIsNone(service.get_last_import_timestamp("H1"))
        with self.assertRaises(LocalStoreUnavailableError):
            service.import_financial_data("H1")


if __name__ == "__main__":
    unittest.main()
