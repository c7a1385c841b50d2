"""
Property store: the authoritative record collection.

Interface (rows use store column names):
    select(offset, length, orderBy, columns, listingFilter)
                                             -> SelectResult(items, totalCount of the filtered set)
    selectById(recordId, columns)            -> row or None
    insert(payload)                          -> row
    update(recordId, payload)                -> row
    delete(recordId)                         -> bool

Implementations:
    RestPropertyStore   - remote PostgREST table
    SqlitePropertyStore - embedded database; publishes a change event on the
                          channel after every committed write, the same way the
                          remote store's realtime feed does

Property of Uncompromising Sensors LLC.
"""

import asyncio
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import orjson

from sdk.logging import getLogger
from sdk.transport import TransportBase

from .errors import PersistentFailure, TransientFailure
from .filters import ListingFilter
from .models import ChangeKind, FIELD_COLUMNS, RecordId
from .restClient import PostgrestClient
from .resources import SharedResources


OrderBy = Sequence[Tuple[str, str]]

# Newest first; id breaks ties so repeated reads paginate identically
DEFAULT_ORDER: OrderBy = (('created_at', 'desc'), ('id', 'desc'))

KNOWN_COLUMNS = frozenset(FIELD_COLUMNS.values())

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass
class SelectResult:
    items: List[Dict[str, Any]] = field(default_factory=list)
    totalCount: int = 0


class PropertyStoreBase(ABC):
    """Remote property store verbs"""

    @abstractmethod
    async def select(self, offset: int, length: int, orderBy: OrderBy = DEFAULT_ORDER,
                     columns: Sequence[str] = ('*',), listingFilter: Optional[ListingFilter] = None) -> SelectResult:
        pass

    @abstractmethod
    async def selectById(self, recordId: RecordId, columns: Sequence[str] = ('*',)) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update(self, recordId: RecordId, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete(self, recordId: RecordId) -> bool:
        pass

    async def close(self) -> None:
        pass


# ============================================================================
# Remote store
# ============================================================================

class RestPropertyStore(PropertyStoreBase):
    """PostgREST-backed property table"""

    def __init__(self, baseUrl: str, apiKey: str = '', table: str = 'properties',
                 resources: Optional[SharedResources] = None):
        self.table = table
        self.client = PostgrestClient(baseUrl, apiKey, resources=resources)

    async def select(self, offset, length, orderBy=DEFAULT_ORDER, columns=('*',), listingFilter=None) -> SelectResult:
        filters = listingFilter.postgrestParams() if listingFilter is not None else None
        rows, total = await self.client.select(self.table, columns, orderBy, offset=offset, length=length,
                                               filters=filters)
        return SelectResult(items=rows, totalCount=total if total is not None else len(rows))

    async def selectById(self, recordId, columns=('*',)):
        rows, _ = await self.client.select(self.table, columns, (), filters={'id': f"eq.{recordId}"})
        return rows[0] if rows else None

    async def insert(self, payload):
        return await self.client.insert(self.table, payload)

    async def update(self, recordId, payload):
        return await self.client.update(self.table, recordId, payload)

    async def delete(self, recordId):
        return await self.client.delete(self.table, recordId)


# ============================================================================
# Embedded store
# ============================================================================

class SqlitePropertyStore(PropertyStoreBase):
    """
    SQLite property table.

    Blocking sqlite calls run in worker threads; a lock serializes them so
    each select reads items and count from one snapshot.
    """

    def __init__(self, dbPath: str, table: str = 'properties', publisher: Optional[TransportBase] = None,
                 subjectPrefix: str = 'catalog.changes'):
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table}")
        self.log = getLogger()
        self.table = table
        self.publisher = publisher
        self.subject = f"{subjectPrefix}.{table}"
        self.dbPath = Path(dbPath)
        if str(dbPath) != ':memory:':
            self.dbPath.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(dbPath), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._initSchema()

    def _initSchema(self):
        with self._lock, self.conn:
            self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL CHECK (length(title) > 0),
                    description TEXT NOT NULL DEFAULT '',
                    price REAL NOT NULL DEFAULT 0,
                    type TEXT NOT NULL DEFAULT 'sale' CHECK (type IN ('sale', 'rental', 'venta', 'alquiler')),
                    zone TEXT NOT NULL DEFAULT '',
                    bedrooms INTEGER NOT NULL DEFAULT 0,
                    bathrooms INTEGER NOT NULL DEFAULT 0,
                    area REAL NOT NULL DEFAULT 0,
                    latitude REAL NOT NULL DEFAULT 0,
                    longitude REAL NOT NULL DEFAULT 0,
                    address TEXT NOT NULL DEFAULT '',
                    images TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                )
            """)
            self.conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{self.table}_created "
                              f"ON {self.table}(created_at DESC, id DESC)")

    # ===== Helpers =====
    def _columns(self, columns: Sequence[str]) -> str:
        if not columns or tuple(columns) == ('*',):
            return '*'
        unknown = set(columns) - KNOWN_COLUMNS
        if unknown:
            raise PersistentFailure(f"Unknown columns: {sorted(unknown)}", status=400)
        return ', '.join(columns)

    def _orderClause(self, orderBy: OrderBy) -> str:
        parts = []
        for column, direction in orderBy:
            if column not in KNOWN_COLUMNS or direction.lower() not in ('asc', 'desc'):
                raise PersistentFailure(f"Invalid ordering: {column} {direction}", status=400)
            parts.append(f"{column} {direction.upper()}")
        return f"ORDER BY {', '.join(parts)}" if parts else ''

    def _assignments(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for column, value in payload.items():
            if column == 'id':
                continue
            if column not in KNOWN_COLUMNS:
                raise PersistentFailure(f"Unknown column: {column}", status=400)
            values[column] = orjson.dumps(list(value or [])).decode() if column == 'images' else value
        return values

    @staticmethod
    def _toRow(row: sqlite3.Row) -> Dict[str, Any]:
        result = dict(row)
        if 'images' in result and isinstance(result['images'], str):
            result['images'] = orjson.loads(result['images'])
        return result

    async def _run(self, fn, *args):
        def locked():
            with self._lock:
                return fn(*args)
        try:
            return await asyncio.to_thread(locked)
        except sqlite3.IntegrityError as e:
            self.log.error("Constraint violation", table=self.table, errorMsg=str(e))
            raise PersistentFailure(f"Constraint violation: {e}", status=409) from e
        except sqlite3.OperationalError as e:
            self.log.warning("Database unavailable", table=self.table, errorMsg=str(e))
            raise TransientFailure(f"Database unavailable: {e}") from e

    async def _publishChange(self, kind: ChangeKind, record: Optional[Dict[str, Any]], oldRecord: Optional[Dict[str, Any]]):
        if self.publisher is None or not self.publisher.isConnected:
            return
        payload = {'type': kind.value.upper(), 'table': self.table,
                   'record': record or {}, 'old_record': oldRecord or {}}
        try:
            await self.publisher.publish(self.subject, orjson.dumps(payload))
        except Exception as e:
            self.log.error("Change publish failed", subject=self.subject, errorClass=type(e).__name__, errorMsg=str(e))

    # ===== Verbs =====
    async def select(self, offset, length, orderBy=DEFAULT_ORDER, columns=('*',), listingFilter=None) -> SelectResult:
        columnSql = self._columns(columns)
        orderSql = self._orderClause(orderBy)
        whereSql, whereArgs = listingFilter.sqlWhere() if listingFilter is not None else ('', ())

        def query():
            rows = self.conn.execute(f"SELECT {columnSql} FROM {self.table} {whereSql} {orderSql} LIMIT ? OFFSET ?",
                                     whereArgs + (length, offset)).fetchall()
            total = self.conn.execute(f"SELECT COUNT(*) FROM {self.table} {whereSql}", whereArgs).fetchone()[0]
            return [self._toRow(r) for r in rows], total

        items, total = await self._run(query)
        return SelectResult(items=items, totalCount=total)

    async def selectById(self, recordId, columns=('*',)):
        columnSql = self._columns(columns)

        def query():
            row = self.conn.execute(f"SELECT {columnSql} FROM {self.table} WHERE id = ?", (recordId,)).fetchone()
            return self._toRow(row) if row else None

        return await self._run(query)

    async def insert(self, payload):
        values = self._assignments(payload)
        values.setdefault('created_at', datetime.now(timezone.utc).isoformat(timespec='microseconds'))

        def write():
            with self.conn:
                placeholders = ', '.join('?' for _ in values)
                cursor = self.conn.execute(f"INSERT INTO {self.table} ({', '.join(values)}) VALUES ({placeholders})",
                                           tuple(values.values()))
                row = self.conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return self._toRow(row)

        row = await self._run(write)
        self.log.info("Record inserted", table=self.table, recordId=row['id'])
        await self._publishChange(ChangeKind.INSERT, row, None)
        return row

    async def update(self, recordId, payload):
        values = self._assignments(payload)

        def write():
            with self.conn:
                old = self.conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (recordId,)).fetchone()
                if old is None:
                    return None, None
                if values:
                    assignments = ', '.join(f"{column} = ?" for column in values)
                    self.conn.execute(f"UPDATE {self.table} SET {assignments} WHERE id = ?",
                                      tuple(values.values()) + (recordId,))
                row = self.conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (recordId,)).fetchone()
            return self._toRow(old), self._toRow(row)

        old, row = await self._run(write)
        if row is None:
            raise PersistentFailure(f"No record {recordId} in {self.table}", status=404)
        self.log.info("Record updated", table=self.table, recordId=recordId)
        await self._publishChange(ChangeKind.UPDATE, row, old)
        return row

    async def delete(self, recordId):

        def write():
            with self.conn:
                cursor = self.conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (recordId,))
            return cursor.rowcount > 0

        deleted = await self._run(write)
        if deleted:
            self.log.info("Record deleted", table=self.table, recordId=recordId)
            await self._publishChange(ChangeKind.DELETE, None, {'id': recordId})
        return deleted

    async def close(self) -> None:
        with self._lock:
            self.conn.close()
