# -*- coding: utf-8 -*-
"""
API-backed services used next to the sync engine.
"""

from .financial_data import FinancialDataRecord, FinancialDataService, ImportResult
from .hotels import HotelService
from .submitted_data import SubmittedDataEntry, SubmittedDataService
from .upload_periods import UploadPeriodsService
from .validations import ValidationsService

__all__ = [
    'FinancialDataRecord',
    'FinancialDataService',
    'HotelService',
    'ImportResult',
    'SubmittedDataEntry',
    'SubmittedDataService',
    'UploadPeriodsService',
    'ValidationsService',
]
