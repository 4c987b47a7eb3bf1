# -*- coding: utf-8 -*-
"""
Cache synchronization

Local mirror of the remote configuration entities:

- CacheSyncEngine: cache-first reads and per-key staleness metadata
- MappingConfigReconciler: parent configs before child import groups
- MappingTablesSync: account/department maps and combos by version
- BackgroundSyncScheduler: periodic single-flight pass per tenant
"""

from .models import (
    CacheKeyMetadata,
    CacheStatus,
    ImportDefinition,
    ImportGroup,
    MappingConfig,
    MappingEntry,
    SyncFailure,
    SyncResult,
)
from .cache import CacheSyncEngine
from .reconciler import MappingConfigReconciler
from .mapping_tables import MappingTablesSync
from .scheduler import BackgroundSyncScheduler

__all__ = [
    'BackgroundSyncScheduler',
    'CacheKeyMetadata',
    'CacheStatus',
    'CacheSyncEngine',
    'ImportDefinition',
    'ImportGroup',
    'MappingConfig',
    'MappingConfigReconciler',
    'MappingEntry',
    'MappingTablesSync',
    'SyncFailure',
    'SyncResult',
]
