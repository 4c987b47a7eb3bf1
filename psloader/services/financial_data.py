# -*- coding: utf-8 -*-
"""
Financial data

Actual, budget and forecast rows already loaded on the server, imported
into the local store per OU for offline reporting.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..api_client import ApiClient, NetworkOrApiError
from ..store import LocalStore, LocalStoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class FinancialDataRecord:
    id: int
    ou: str
    period: str
    department: str
    account: str
    amount: float
    scenario: str
    version: str
    currency: str
    load_id: str
    load_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'FinancialDataRecord':
        return cls(
            id=int(d['id']),
            ou=d['ou'],
            period=d['period'],
            department=d.get('department') or '',
            account=d.get('account') or '',
            amount=float(d.get('amount') or 0),
            scenario=d.get('scenario') or '',
            version=str(d.get('version') or ''),
            currency=d.get('currency') or '',
            load_id=d.get('load_id') or '',
            load_date=d.get('load_date'),
        )


@dataclass
class ImportResult:
    success: bool
    count: int
    message: str


class FinancialDataService:

    def __init__(self, api: ApiClient, store: LocalStore):
        self.api = api
        self.store = store

    def fetch_financial_data(self, ou: str) -> List[FinancialDataRecord]:
        """
        Raises:
            NetworkOrApiError: "Access denied to this OU" on 403, else the API error
        """
        try:
            rows = self.api.get_financial_data(ou)
        except NetworkOrApiError as e:
            if e.status_code == 403:
                raise NetworkOrApiError("Access denied to this OU", 403, e.detail) from e
            raise
        return [FinancialDataRecord.from_dict({'ou': ou, **row}) for row in rows]

    def import_financial_data(self, ou: str) -> ImportResult:
        """
        Fetch the OU's rows and replace the local copy.

        An empty response leaves previously imported rows in place.
        Store errors propagate.
        """
        records = self.fetch_financial_data(ou)
        if not records:
            logger.info(f"No financial data for {ou}")
            return ImportResult(True, 0, "No financial data found for this OU")

        self.store.store_financial_data(ou, [record.to_dict() for record in records])
        logger.info(f"Imported {len(records)} financial records for {ou}")
        return ImportResult(True, len(records), f"Successfully imported {len(records)} financial records")

    def get_stored_data(self, ou: str, period: Optional[str] = None) -> List[FinancialDataRecord]:
        return [FinancialDataRecord.from_dict(row) for row in self.store.get_financial_data(ou, period)]

    def get_stored_data_count(self, ou: str) -> int:
        try:
            return self.store.get_financial_data_count(ou)
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.warning(f"Stored data count for {ou} unavailable: {e}")
            return 0

    def get_last_import_timestamp(self, ou: str) -> Optional[datetime]:
        try:
            value = self.store.get_financial_data_last_import(ou)
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.warning(f"Last import time for {ou} unavailable: {e}")
            return None
        return datetime.fromisoformat(value) if value else None
