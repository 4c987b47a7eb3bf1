# -*- coding: utf-8 -*-
"""
Upload periods

Periods a tenant can load data into. Locked periods are signed off and are
hidden unless asked for.
"""

import logging
from typing import Any, Dict, List

from ..api_client import ApiClient

logger = logging.getLogger(__name__)


class UploadPeriodsService:

    def __init__(self, api: ApiClient):
        self.api = api

    def get_upload_periods(self, ou: str, include_locked: bool = False) -> List[Dict[str, Any]]:
        periods = self.api.get_upload_periods(ou)
        if include_locked:
            return periods
        return [period for period in periods if not period.get('is_locked')]

    def get_available_upload_periods(self, ou: str) -> List[Dict[str, Any]]:
        return self.get_upload_periods(ou, include_locked=False)

    def is_period_locked(self, ou: str, period: str) -> bool:
        """False for an unknown period."""
        for item in self.get_upload_periods(ou, include_locked=True):
            if item.get('period') == period:
                return bool(item.get('is_locked'))
        return False
