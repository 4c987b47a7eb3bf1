# -*- coding: utf-8 -*-
"""
Sync data models

Data structures shared by the cache engine, the reconciler and the
scheduler.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class CacheStatus(Enum):
    """Cache key states"""
    IDLE = "idle"             # Never fetched
    FETCHING = "fetching"     # Claimed by a running fetch
    SUCCESS = "success"
    FAILED = "failed"         # Last fetch failed, old payload kept


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class CacheKeyMetadata:
    """Staleness bookkeeping for one logical cache key."""
    key: str
    status: CacheStatus = CacheStatus.IDLE
    last_synced_at: Optional[datetime] = None
    max_age: timedelta = timedelta(minutes=60)
    error: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_stale(self, now: datetime, max_age: Optional[timedelta] = None) -> bool:
        if self.last_synced_at is None:
            return True
        return now - self.last_synced_at > (max_age if max_age is not None else self.max_age)

    def claim_expired(self, now: datetime, fetch_timeout: timedelta) -> bool:
        """A fetching claim older than fetch_timeout is treated as abandoned."""
        if self.status != CacheStatus.FETCHING:
            return False
        return self.updated_at is None or now - self.updated_at > fetch_timeout

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'status': self.status.value,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'max_age_seconds': int(self.max_age.total_seconds()),
            'error_message': self.error,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'CacheKeyMetadata':
        max_age = d.get('max_age_seconds')
        return cls(
            key=d['key'],
            status=CacheStatus(d.get('status') or CacheStatus.IDLE.value),
            last_synced_at=_parse_dt(d.get('last_synced_at')),
            max_age=timedelta(seconds=max_age) if max_age is not None else timedelta(minutes=60),
            error=d.get('error_message'),
            updated_at=_parse_dt(d.get('updated_at')),
        )


@dataclass
class MappingConfig:
    """Versioned mapping rule set (parent of MappingEntry and ImportDefinition)."""
    config_id: int
    version: str
    is_locked: bool = False
    description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_synced: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'config_id': self.config_id,
            'version': self.version,
            'is_locked': self.is_locked,
            'description': self.description,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'last_synced': self.last_synced,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'MappingConfig':
        """Accepts both API (id) and store (config_id) rows."""
        config_id = d.get('config_id') if d.get('config_id') is not None else d.get('id')
        return cls(
            config_id=int(config_id),
            version=str(d['version']),
            is_locked=bool(d.get('is_locked', False)),
            description=d.get('description'),
            created_at=d.get('created_at'),
            updated_at=d.get('updated_at'),
            last_synced=d.get('last_synced'),
        )


@dataclass
class MappingEntry:
    """One source -> target mapping row."""
    id: int
    mapping_config_id: int
    source_account: Optional[str] = None
    source_department: Optional[str] = None
    source_account_department: Optional[str] = None
    target_account: Optional[str] = None
    target_department: Optional[str] = None
    target_account_department: Optional[str] = None
    priority: int = 0
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'mapping_config_id': self.mapping_config_id,
            'source_account': self.source_account,
            'source_department': self.source_department,
            'source_account_department': self.source_account_department,
            'target_account': self.target_account,
            'target_department': self.target_department,
            'target_account_department': self.target_account_department,
            'priority': self.priority,
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'MappingEntry':
        return cls(
            id=int(d['id']),
            mapping_config_id=int(d['mapping_config_id']),
            source_account=d.get('source_account'),
            source_department=d.get('source_department'),
            source_account_department=d.get('source_account_department'),
            target_account=d.get('target_account'),
            target_department=d.get('target_department'),
            target_account_department=d.get('target_account_department'),
            priority=int(d.get('priority') or 0),
            is_active=bool(d.get('is_active', True)),
        )


@dataclass
class ImportDefinition:
    """One importable file type inside an import group."""
    id: int
    name: str
    display_name: str = ""
    description: str = ""
    order: int = 0
    mapping_config_id: Optional[int] = None
    required: bool = False
    file_types: List[str] = field(default_factory=list)
    required_columns: List[str] = field(default_factory=list)
    optional_columns: List[str] = field(default_factory=list)
    validation_rules: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """API shape (camelCase)."""
        return {
            'id': self.id,
            'name': self.name,
            'displayName': self.display_name,
            'description': self.description,
            'order': self.order,
            'mapping_config_id': self.mapping_config_id,
            'required': self.required,
            'fileTypes': list(self.file_types),
            'requiredColumns': list(self.required_columns),
            'optionalColumns': list(self.optional_columns),
            'validationRules': list(self.validation_rules),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ImportDefinition':
        return cls(
            id=int(d['id']),
            name=d.get('name') or "",
            display_name=d.get('displayName') or "",
            description=d.get('description') or "",
            order=int(d.get('order') or 0),
            mapping_config_id=d.get('mapping_config_id'),
            required=bool(d.get('required', False)),
            file_types=list(d.get('fileTypes') or []),
            required_columns=list(d.get('requiredColumns') or []),
            optional_columns=list(d.get('optionalColumns') or []),
            validation_rules=list(d.get('validationRules') or []),
        )


@dataclass
class ImportGroup:
    group_name: str
    imports: List[ImportDefinition] = field(default_factory=list)

    @property
    def mapping_config_ids(self) -> List[int]:
        return sorted({imp.mapping_config_id for imp in self.imports if imp.mapping_config_id})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'group_name': self.group_name,
            'imports': [imp.to_dict() for imp in self.imports],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ImportGroup':
        return cls(
            group_name=d['group_name'],
            imports=[ImportDefinition.from_dict(imp) for imp in d.get('imports') or []],
        )


@dataclass
class SyncFailure:
    """A sub-sync failure. Recorded and returned, never raised."""
    key: str
    error: str
    occurred_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'error': self.error,
            'occurred_at': self.occurred_at.isoformat(),
        }


@dataclass
class SyncResult:
    """Outcome of one scheduler pass."""
    tenant: Optional[str] = None
    ran: bool = False
    skipped_reason: Optional[str] = None
    synced: List[str] = field(default_factory=list)
    fresh: List[str] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.ran and not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant': self.tenant,
            'ran': self.ran,
            'skipped_reason': self.skipped_reason,
            'synced': list(self.synced),
            'fresh': list(self.fresh),
            'failures': [f.to_dict() for f in self.failures],
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }
