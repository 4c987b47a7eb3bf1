# -*- coding: utf-8 -*-
"""
Submitted data

Bulk upload of signed-off financial rows. A rejected upload surfaces every
field-level message (ValidationError.errors), not only the first one.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Union

from ..api_client import ApiClient, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class SubmittedDataEntry:
    ou: str
    period: str
    department: str
    account: str
    amount: float
    scenario: str
    version: str
    currency: str
    load_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SubmittedDataService:

    def __init__(self, api: ApiClient):
        self.api = api

    def upload_bulk(self, entries: List[Union[SubmittedDataEntry, Dict[str, Any]]],
                    signed_by: str) -> List[Dict[str, Any]]:
        """
        Upload rows in one request.

        Returns:
            Stored rows with their id and load_date

        Raises:
            ValidationError: the server rejected one or more fields
        """
        data = [entry.to_dict() if isinstance(entry, SubmittedDataEntry) else dict(entry) for entry in entries]
        try:
            result = self.api.upload_submitted_data(data, signed_by)
        except ValidationError as e:
            logger.error(f"Bulk upload rejected with {len(e.errors)} validation errors")
            raise
        logger.info(f"Uploaded {len(data)} rows signed by {signed_by}")
        return result or []
