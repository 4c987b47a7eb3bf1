# -*- coding: utf-8 -*-
"""
Local Store

SQLite backed key/value and relational cache:

- settings (key -> JSON value)
- permanent device salt (written once)
- cache metadata per logical cache key
- cached API entities: hotels, mapping configs and their mapping rows,
  import groups, account/department maps and combos, validations
- imported actual/budget/forecast rows per OU

Referential integrity between imports and mapping configs is not declared
to SQLite (foreign_keys pragma stays off). It is guaranteed by write
ordering in the reconciler and re-checked in store_import_groups().
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

LEVEL_COUNT = 31  # level_0 .. level_30


class LocalStoreUnavailableError(Exception):
    """The local database cannot be opened."""
    pass


class ReferentialIntegrityError(ValueError):
    """An import references a mapping config that is not stored locally."""

    def __init__(self, ou: str, missing_ids: Iterable[int]):
        self.ou = ou
        self.missing_ids = sorted(set(missing_ids))
        super().__init__(
            f"Import groups for {ou} reference missing mapping configs: {self.missing_ids}"
        )


def _now() -> str:
    return datetime.now().isoformat()


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


class LocalStore:
    """
    Local store client.

    Every call opens its own connection so the store can be used from the
    scheduler thread and from worker threads at the same time. Writes go
    through a single lock.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._write_lock = threading.RLock()
        self.available = False
        try:
            self._ensure_tables()
            self.available = True
        except LocalStoreUnavailableError as e:
            logger.error(f"Local store unavailable, caching disabled: {e}")

    def _get_connection(self) -> sqlite3.Connection:
        """Open a connection to the local database."""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=30)
        except (sqlite3.Error, OSError) as e:
            raise LocalStoreUnavailableError(f"{self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_tables(self):
        conn = self._get_connection()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );

                CREATE TABLE IF NOT EXISTS device_salt (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    salt TEXT NOT NULL,
                    created_at DATETIME NOT NULL
                );

                CREATE TABLE IF NOT EXISTS cache_metadata (
                    key TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'idle',
                    last_synced_at DATETIME,
                    max_age_seconds INTEGER,
                    error_message TEXT,
                    updated_at DATETIME
                );

                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    payload TEXT,
                    updated_at DATETIME
                );

                CREATE TABLE IF NOT EXISTS hotels (
                    ou TEXT PRIMARY KEY,
                    hotel_name TEXT NOT NULL,
                    room_count INTEGER,
                    currency TEXT,
                    country TEXT,
                    city TEXT,
                    local_id_1 TEXT,
                    local_id_2 TEXT,
                    local_id_3 TEXT,
                    cached_at DATETIME
                );

                CREATE TABLE IF NOT EXISTS mapping_configs (
                    config_id INTEGER PRIMARY KEY,
                    version TEXT NOT NULL,
                    is_locked INTEGER NOT NULL DEFAULT 0,
                    description TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    last_synced DATETIME
                );

                CREATE TABLE IF NOT EXISTS mappings (
                    id INTEGER PRIMARY KEY,
                    mapping_config_id INTEGER NOT NULL,
                    source_account TEXT,
                    source_department TEXT,
                    source_account_department TEXT,
                    target_account TEXT,
                    target_department TEXT,
                    target_account_department TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS import_groups (
                    ou TEXT NOT NULL,
                    group_name TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    cached_at DATETIME,
                    PRIMARY KEY (ou, group_name)
                );

                CREATE TABLE IF NOT EXISTS imports (
                    ou TEXT NOT NULL,
                    group_name TEXT NOT NULL,
                    import_id INTEGER NOT NULL,
                    name TEXT,
                    display_name TEXT,
                    description TEXT,
                    sort_order INTEGER,
                    mapping_config_id INTEGER,
                    required INTEGER NOT NULL DEFAULT 0,
                    file_types TEXT,
                    required_columns TEXT,
                    optional_columns TEXT,
                    validation_rules TEXT,
                    PRIMARY KEY (ou, group_name, import_id)
                );

                CREATE TABLE IF NOT EXISTS account_maps (
                    base_account TEXT PRIMARY KEY,
                    levels TEXT,
                    description TEXT
                );

                CREATE TABLE IF NOT EXISTS department_maps (
                    base_department TEXT PRIMARY KEY,
                    levels TEXT,
                    description TEXT
                );

                CREATE TABLE IF NOT EXISTS account_department_combos (
                    account TEXT NOT NULL,
                    department TEXT NOT NULL,
                    combo_id INTEGER,
                    description TEXT,
                    PRIMARY KEY (account, department)
                );

                CREATE TABLE IF NOT EXISTS mapping_tables_version (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    version TEXT,
                    combo_version TEXT,
                    updated_at DATETIME
                );

                CREATE TABLE IF NOT EXISTS validations (
                    ou TEXT NOT NULL,
                    validation_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    display_name TEXT,
                    description TEXT,
                    is_required INTEGER NOT NULL DEFAULT 0,
                    sequence INTEGER NOT NULL DEFAULT 0,
                    cached_at DATETIME,
                    PRIMARY KEY (ou, validation_id)
                );

                CREATE TABLE IF NOT EXISTS financial_data (
                    ou TEXT NOT NULL,
                    record_id INTEGER NOT NULL,
                    period TEXT NOT NULL,
                    department TEXT,
                    account TEXT,
                    amount REAL NOT NULL,
                    scenario TEXT,
                    version TEXT,
                    currency TEXT,
                    load_id TEXT,
                    load_date TEXT,
                    imported_at DATETIME,
                    PRIMARY KEY (ou, record_id)
                );

                CREATE INDEX IF NOT EXISTS idx_mappings_config
                    ON mappings(mapping_config_id);
                CREATE INDEX IF NOT EXISTS idx_imports_config
                    ON imports(mapping_config_id);
                CREATE INDEX IF NOT EXISTS idx_financial_data_period
                    ON financial_data(ou, period);
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise LocalStoreUnavailableError(str(e)) from e
        finally:
            conn.close()

    # ============================================================
    # SETTINGS
    # ============================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return _loads(row['value']) if row else default
        finally:
            conn.close()

    def get_all_settings(self) -> Dict[str, Any]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
            return {row['key']: _loads(row['value']) for row in rows}
        finally:
            conn.close()

    def set_setting(self, key: str, value: Any):
        self.set_settings({key: value})

    def set_settings(self, values: Dict[str, Any]):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executemany(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                    [(key, _dumps(value)) for key, value in values.items()]
                )
                conn.commit()
            finally:
                conn.close()

    def delete_setting(self, key: str):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM settings WHERE key = ?", (key,))
                conn.commit()
            finally:
                conn.close()

    # ============================================================
    # DEVICE SALT
    # ============================================================

    def get_permanent_salt(self) -> Optional[str]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT salt FROM device_salt WHERE id = 1").fetchone()
            return row['salt'] if row else None
        finally:
            conn.close()

    def create_permanent_salt(self, candidate: str) -> str:
        """
        Persist the salt unless one exists already.

        Returns the stored salt, which is the candidate only for the first
        writer.
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO device_salt (id, salt, created_at) VALUES (1, ?, ?)",
                    (candidate, _now())
                )
                conn.commit()
                return conn.execute("SELECT salt FROM device_salt WHERE id = 1").fetchone()['salt']
            finally:
                conn.close()

    # ============================================================
    # CACHE METADATA / GENERIC PAYLOADS
    # ============================================================

    def get_cache_metadata(self, key: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM cache_metadata WHERE key = ?", (key,)).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def get_all_cache_metadata(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            return [dict(row) for row in conn.execute("SELECT * FROM cache_metadata ORDER BY key")]
        finally:
            conn.close()

    def save_cache_metadata(self, metadata: Dict[str, Any]):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT OR REPLACE INTO cache_metadata
                    (key, status, last_synced_at, max_age_seconds, error_message, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    metadata['key'],
                    metadata['status'],
                    metadata.get('last_synced_at'),
                    metadata.get('max_age_seconds'),
                    metadata.get('error_message'),
                    metadata.get('updated_at') or _now(),
                ))
                conn.commit()
            finally:
                conn.close()

    def delete_cache_metadata(self, key: str):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM cache_metadata WHERE key = ?", (key,))
                conn.commit()
            finally:
                conn.close()

    def get_cached_value(self, key: str) -> Any:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT payload FROM cache_entries WHERE key = ?", (key,)).fetchone()
            return _loads(row['payload']) if row else None
        finally:
            conn.close()

    def set_cached_value(self, key: str, value: Any):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, payload, updated_at) VALUES (?, ?, ?)",
                    (key, _dumps(value), _now())
                )
                conn.commit()
            finally:
                conn.close()

    def clear_cached_value(self, key: str):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                conn.execute("DELETE FROM cache_metadata WHERE key = ?", (key,))
                conn.commit()
            finally:
                conn.close()

    def clear_cache(self):
        """Drop every cached entity and all staleness metadata."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                for table in (
                    'cache_entries', 'cache_metadata', 'hotels', 'imports',
                    'import_groups', 'mappings', 'mapping_configs', 'account_maps',
                    'department_maps', 'account_department_combos', 'mapping_tables_version',
                    'validations', 'financial_data',
                ):
                    conn.execute(f"DELETE FROM {table}")
                conn.commit()
                logger.info("Local cache cleared")
            finally:
                conn.close()

    # ============================================================
    # HOTELS
    # ============================================================

    def cache_hotels(self, hotels: List[Dict[str, Any]]):
        """Replace the cached hotel list."""
        cached_at = _now()
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM hotels")
                conn.executemany("""
                    INSERT INTO hotels
                    (ou, hotel_name, room_count, currency, country, city,
                     local_id_1, local_id_2, local_id_3, cached_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [(
                    hotel['ou'],
                    hotel.get('hotel_name') or hotel['ou'],
                    hotel.get('room_count'),
                    hotel.get('currency'),
                    hotel.get('country'),
                    hotel.get('city'),
                    hotel.get('local_id_1'),
                    hotel.get('local_id_2'),
                    hotel.get('local_id_3'),
                    cached_at,
                ) for hotel in hotels])
                conn.commit()
            finally:
                conn.close()

    def get_cached_hotels(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT ou, hotel_name, room_count, currency, country, city,
                       local_id_1, local_id_2, local_id_3
                FROM hotels ORDER BY hotel_name
            """).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def clear_hotels_cache(self):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM hotels")
                conn.commit()
            finally:
                conn.close()

    # ============================================================
    # MAPPING CONFIGS / MAPPINGS
    # ============================================================

    @staticmethod
    def _write_config_header(conn: sqlite3.Connection, config: Dict[str, Any]):
        conn.execute("""
            INSERT OR REPLACE INTO mapping_configs
            (config_id, version, is_locked, description, created_at, updated_at, last_synced)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            config['config_id'],
            str(config['version']),
            1 if config.get('is_locked') else 0,
            config.get('description'),
            config.get('created_at'),
            config.get('updated_at'),
            _now(),
        ))

    @staticmethod
    def _write_mappings(conn: sqlite3.Connection, config_id: int, entries: List[Dict[str, Any]]):
        conn.execute("DELETE FROM mappings WHERE mapping_config_id = ?", (config_id,))
        conn.executemany("""
            INSERT OR REPLACE INTO mappings
            (id, mapping_config_id, source_account, source_department, source_account_department,
             target_account, target_department, target_account_department, priority, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [(
            entry['id'],
            config_id,
            entry.get('source_account'),
            entry.get('source_department'),
            entry.get('source_account_department'),
            entry.get('target_account'),
            entry.get('target_department'),
            entry.get('target_account_department'),
            entry.get('priority') or 0,
            0 if entry.get('is_active') is False else 1,
        ) for entry in entries])

    def store_mapping_config(self, config: Dict[str, Any]):
        """Upsert a mapping config header only."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                self._write_config_header(conn, config)
                conn.commit()
            finally:
                conn.close()

    def replace_mapping_config(self, config: Dict[str, Any], entries: List[Dict[str, Any]]):
        """Header and all of its mapping rows in one transaction."""
        with self._write_lock:
            conn = self._get_connection()
            try:
                self._write_config_header(conn, config)
                self._write_mappings(conn, config['config_id'], entries)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def replace_mappings(self, config_id: int, entries: List[Dict[str, Any]]):
        with self._write_lock:
            conn = self._get_connection()
            try:
                self._write_mappings(conn, config_id, entries)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def update_mapping_config_sync_time(self, config_id: int):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE mapping_configs SET last_synced = ? WHERE config_id = ?",
                    (_now(), config_id)
                )
                conn.commit()
            finally:
                conn.close()

    @staticmethod
    def _config_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data['is_locked'] = bool(data['is_locked'])
        return data

    def get_mapping_config(self, config_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM mapping_configs WHERE config_id = ?", (config_id,)
            ).fetchone()
            return self._config_row(row) if row else None
        finally:
            conn.close()

    def get_all_mapping_configs(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT * FROM mapping_configs ORDER BY config_id").fetchall()
            return [self._config_row(row) for row in rows]
        finally:
            conn.close()

    def get_existing_mapping_config_ids(self, config_ids: Iterable[int]) -> Set[int]:
        ids = list(set(config_ids))
        if not ids:
            return set()
        conn = self._get_connection()
        try:
            placeholders = ",".join("?" * len(ids))
            rows = conn.execute(
                f"SELECT config_id FROM mapping_configs WHERE config_id IN ({placeholders})", ids
            ).fetchall()
            return {row['config_id'] for row in rows}
        finally:
            conn.close()

    @staticmethod
    def _mapping_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data['is_active'] = bool(data['is_active'])
        return data

    def get_mappings(self, config_id: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM mappings WHERE mapping_config_id = ? ORDER BY priority DESC, id",
                (config_id,)
            ).fetchall()
            return [self._mapping_row(row) for row in rows]
        finally:
            conn.close()

    def get_mapping_count(self, config_id: int) -> int:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM mappings WHERE mapping_config_id = ?", (config_id,)
            ).fetchone()[0]
        finally:
            conn.close()

    def find_mapping(self, config_id: int, source_account: Optional[str],
                     source_department: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Best active mapping row for a source account/department.

        Exact account+department rows win over account-only and
        department-only rows; ties are broken by priority.
        """
        conn = self._get_connection()
        try:
            row = conn.execute("""
                SELECT *,
                       CASE
                           WHEN source_account = :acc AND source_department = :dep THEN 0
                           WHEN source_account = :acc AND source_department IS NULL THEN 1
                           WHEN source_account IS NULL AND source_department = :dep THEN 2
                           ELSE 3
                       END AS match_rank
                FROM mappings
                WHERE mapping_config_id = :cfg
                  AND is_active = 1
                  AND (source_account = :acc OR source_account IS NULL)
                  AND (source_department = :dep OR source_department IS NULL)
                  AND NOT (source_account IS NULL AND source_department IS NULL)
                ORDER BY match_rank, priority DESC, id
                LIMIT 1
            """, {'cfg': config_id, 'acc': source_account, 'dep': source_department}).fetchone()
            if not row:
                return None
            data = self._mapping_row(row)
            data.pop('match_rank', None)
            return data
        finally:
            conn.close()

    # ============================================================
    # IMPORT GROUPS
    # ============================================================

    def store_import_groups(self, ou: str, groups: List[Dict[str, Any]],
                            keep_groups: Iterable[str] = ()):
        """
        Replace the cached import groups of a tenant.

        Groups named in keep_groups keep their previously cached rows.
        Raises ReferentialIntegrityError if an import references a mapping
        config that is not stored.
        """
        keep = set(keep_groups)
        referenced = {
            imp['mapping_config_id']
            for group in groups
            for imp in group.get('imports', [])
            if imp.get('mapping_config_id')
        }
        cached_at = _now()

        with self._write_lock:
            conn = self._get_connection()
            try:
                if referenced:
                    ids = list(referenced)
                    placeholders = ",".join("?" * len(ids))
                    existing = {
                        row['config_id'] for row in conn.execute(
                            f"SELECT config_id FROM mapping_configs WHERE config_id IN ({placeholders})",
                            ids
                        )
                    }
                    missing = referenced - existing
                    if missing:
                        raise ReferentialIntegrityError(ou, missing)

                if keep:
                    placeholders = ",".join("?" * len(keep))
                    params = [ou, *sorted(keep)]
                    conn.execute(
                        f"DELETE FROM imports WHERE ou = ? AND group_name NOT IN ({placeholders})", params
                    )
                    conn.execute(
                        f"DELETE FROM import_groups WHERE ou = ? AND group_name NOT IN ({placeholders})", params
                    )
                else:
                    conn.execute("DELETE FROM imports WHERE ou = ?", (ou,))
                    conn.execute("DELETE FROM import_groups WHERE ou = ?", (ou,))

                for position, group in enumerate(groups):
                    name = group['group_name']
                    conn.execute(
                        "INSERT OR REPLACE INTO import_groups (ou, group_name, position, cached_at) "
                        "VALUES (?, ?, ?, ?)",
                        (ou, name, position, cached_at)
                    )
                    conn.execute(
                        "DELETE FROM imports WHERE ou = ? AND group_name = ?", (ou, name)
                    )
                    conn.executemany("""
                        INSERT INTO imports
                        (ou, group_name, import_id, name, display_name, description, sort_order,
                         mapping_config_id, required, file_types, required_columns,
                         optional_columns, validation_rules)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, [(
                        ou,
                        name,
                        imp['id'],
                        imp.get('name'),
                        imp.get('displayName'),
                        imp.get('description'),
                        imp.get('order'),
                        imp.get('mapping_config_id'),
                        1 if imp.get('required') else 0,
                        _dumps(imp.get('fileTypes') or []),
                        _dumps(imp.get('requiredColumns') or []),
                        _dumps(imp.get('optionalColumns') or []),
                        _dumps(imp.get('validationRules') or []),
                    ) for imp in group.get('imports', [])])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def get_import_groups(self, ou: str) -> List[Dict[str, Any]]:
        """Cached groups in API shape (camelCase import fields)."""
        conn = self._get_connection()
        try:
            groups = conn.execute(
                "SELECT group_name FROM import_groups WHERE ou = ? ORDER BY position, group_name", (ou,)
            ).fetchall()
            result = []
            for group in groups:
                rows = conn.execute(
                    "SELECT * FROM imports WHERE ou = ? AND group_name = ? ORDER BY sort_order, import_id",
                    (ou, group['group_name'])
                ).fetchall()
                result.append({
                    'group_name': group['group_name'],
                    'imports': [{
                        'id': row['import_id'],
                        'name': row['name'],
                        'displayName': row['display_name'],
                        'description': row['description'],
                        'order': row['sort_order'],
                        'mapping_config_id': row['mapping_config_id'],
                        'required': bool(row['required']),
                        'fileTypes': _loads(row['file_types'], []),
                        'requiredColumns': _loads(row['required_columns'], []),
                        'optionalColumns': _loads(row['optional_columns'], []),
                        'validationRules': _loads(row['validation_rules'], []),
                    } for row in rows],
                })
            return result
        finally:
            conn.close()

    def get_mapping_config_ids_for_ou(self, ou: str) -> List[int]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT DISTINCT mapping_config_id FROM imports
                WHERE ou = ? AND mapping_config_id IS NOT NULL
                ORDER BY mapping_config_id
            """, (ou,)).fetchall()
            return [row['mapping_config_id'] for row in rows]
        finally:
            conn.close()

    def has_import_groups_cached(self, ou: str) -> bool:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM import_groups WHERE ou = ?", (ou,)
            ).fetchone()[0] > 0
        finally:
            conn.close()

    # ============================================================
    # MAPPING TABLES
    # ============================================================

    @staticmethod
    def _levels(row: Dict[str, Any]) -> List[Optional[str]]:
        return [row.get(f'level_{i}') for i in range(LEVEL_COUNT)]

    def _store_hierarchy(self, table: str, key_column: str, rows: List[Dict[str, Any]]):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute(f"DELETE FROM {table}")
                conn.executemany(
                    f"INSERT OR REPLACE INTO {table} ({key_column}, levels, description) VALUES (?, ?, ?)",
                    [(row[key_column], _dumps(self._levels(row)), row.get('description')) for row in rows]
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _get_hierarchy(self, table: str, key_column: str,
                       key: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            if key is None:
                rows = conn.execute(f"SELECT * FROM {table} ORDER BY {key_column}").fetchall()
            else:
                rows = conn.execute(f"SELECT * FROM {table} WHERE {key_column} = ?", (key,)).fetchall()
            result = []
            for row in rows:
                item = {key_column: row[key_column], 'description': row['description']}
                for i, value in enumerate(_loads(row['levels'], [])):
                    item[f'level_{i}'] = value
                result.append(item)
            return result
        finally:
            conn.close()

    def store_account_maps(self, rows: List[Dict[str, Any]]):
        self._store_hierarchy('account_maps', 'base_account', rows)

    def store_department_maps(self, rows: List[Dict[str, Any]]):
        self._store_hierarchy('department_maps', 'base_department', rows)

    def get_account_maps(self) -> List[Dict[str, Any]]:
        return self._get_hierarchy('account_maps', 'base_account')

    def get_department_maps(self) -> List[Dict[str, Any]]:
        return self._get_hierarchy('department_maps', 'base_department')

    def get_account_map(self, base_account: str) -> Optional[Dict[str, Any]]:
        rows = self._get_hierarchy('account_maps', 'base_account', base_account)
        return rows[0] if rows else None

    def get_department_map(self, base_department: str) -> Optional[Dict[str, Any]]:
        rows = self._get_hierarchy('department_maps', 'base_department', base_department)
        return rows[0] if rows else None

    def store_combos(self, combos: List[Dict[str, Any]]):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM account_department_combos")
                conn.executemany("""
                    INSERT OR REPLACE INTO account_department_combos
                    (account, department, combo_id, description)
                    VALUES (?, ?, ?, ?)
                """, [(
                    combo['account'], combo['department'], combo.get('id'), combo.get('description')
                ) for combo in combos])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def get_combos(self) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT combo_id AS id, account, department, description
                FROM account_department_combos ORDER BY account, department
            """).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def is_valid_combo(self, account: str, department: str) -> bool:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT 1 FROM account_department_combos WHERE account = ? AND department = ?",
                (account, department)
            ).fetchone() is not None
        finally:
            conn.close()

    def get_mapping_tables_version(self) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT version, combo_version, updated_at FROM mapping_tables_version WHERE id = 1"
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def set_mapping_tables_version(self, version: str, combo_version: str):
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    INSERT OR REPLACE INTO mapping_tables_version (id, version, combo_version, updated_at)
                    VALUES (1, ?, ?, ?)
                """, (version, combo_version, _now()))
                conn.commit()
            finally:
                conn.close()

    # ============================================================
    # VALIDATIONS
    # ============================================================

    def store_validations(self, ou: str, validations: List[Dict[str, Any]]):
        """Replace the cached validations of an OU."""
        cached_at = _now()
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM validations WHERE ou = ?", (ou,))
                conn.executemany("""
                    INSERT OR REPLACE INTO validations
                    (ou, validation_id, name, display_name, description, is_required, sequence, cached_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [(
                    ou,
                    validation['id'],
                    validation['name'],
                    validation.get('display_name'),
                    validation.get('description'),
                    1 if validation.get('is_required') else 0,
                    validation.get('sequence') or 0,
                    cached_at,
                ) for validation in validations])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def get_validations(self, ou: str) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT validation_id AS id, name, display_name, is_required, description, ou, sequence
                FROM validations WHERE ou = ? ORDER BY sequence, validation_id
            """, (ou,)).fetchall()
            result = []
            for row in rows:
                data = dict(row)
                data['is_required'] = bool(data['is_required'])
                result.append(data)
            return result
        finally:
            conn.close()

    # ============================================================
    # FINANCIAL DATA
    # ============================================================

    def store_financial_data(self, ou: str, records: List[Dict[str, Any]]):
        """Replace the imported rows of an OU in one transaction."""
        imported_at = _now()
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM financial_data WHERE ou = ?", (ou,))
                conn.executemany("""
                    INSERT OR REPLACE INTO financial_data
                    (ou, record_id, period, department, account, amount, scenario,
                     version, currency, load_id, load_date, imported_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [(
                    ou,
                    record['id'],
                    record['period'],
                    record.get('department'),
                    record.get('account'),
                    record.get('amount') or 0,
                    record.get('scenario'),
                    record.get('version'),
                    record.get('currency'),
                    record.get('load_id'),
                    record.get('load_date'),
                    imported_at,
                ) for record in records])
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def get_financial_data(self, ou: str, period: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        try:
            query = """
                SELECT record_id AS id, ou, period, department, account, amount, scenario,
                       version, currency, load_id, load_date
                FROM financial_data WHERE ou = ?
            """
            params: List[Any] = [ou]
            if period is not None:
                query += " AND period = ?"
                params.append(period)
            query += " ORDER BY period, account, department, record_id"
            return [dict(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_financial_data_count(self, ou: str) -> int:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM financial_data WHERE ou = ?", (ou,)
            ).fetchone()[0]
        finally:
            conn.close()

    def get_financial_data_last_import(self, ou: str) -> Optional[str]:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT MAX(imported_at) FROM financial_data WHERE ou = ?", (ou,)
            ).fetchone()[0]
        finally:
            conn.close()
