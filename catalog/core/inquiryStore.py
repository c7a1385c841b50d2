"""
Inquiry repository: persisted visitor inquiries.

    list(limit)              -> newest first
    insert(inquiry)          -> stored Inquiry (id and createdAt assigned)
    delete(inquiryId)        -> bool
    markRead(inquiryId, read)-> updated Inquiry

Implementations:
    SqliteInquiryRepository - embedded database
    RestInquiryRepository   - remote PostgREST table

Property of Uncompromising Sensors LLC.
"""

import asyncio
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from sdk.logging import getLogger

from .errors import PersistentFailure, TransientFailure
from .models import Inquiry, RecordId
from .restClient import PostgrestClient
from .resources import SharedResources


class InquiryRepository(ABC):

    @abstractmethod
    async def list(self, limit: Optional[int] = None) -> List[Inquiry]:
        pass

    @abstractmethod
    async def insert(self, inquiry: Inquiry) -> Inquiry:
        pass

    @abstractmethod
    async def delete(self, inquiryId: RecordId) -> bool:
        pass

    @abstractmethod
    async def markRead(self, inquiryId: RecordId, read: bool = True) -> Inquiry:
        pass

    async def close(self) -> None:
        pass


def _newRow(inquiry: Inquiry) -> dict:
    row = inquiry.toRow()
    row.pop('id', None)
    row['created_at'] = inquiry.createdAt or datetime.now(timezone.utc).isoformat(timespec='microseconds')
    row['read'] = bool(inquiry.read)
    return row


class SqliteInquiryRepository(InquiryRepository):
    """Inquiries in an SQLite table; blocking calls run in worker threads"""

    def __init__(self, dbPath: str, table: str = 'contacts'):
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table}")
        self.log = getLogger()
        self.table = table
        if str(dbPath) != ':memory:':
            Path(dbPath).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(dbPath), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self._lock, self.conn:
            self.conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    phone TEXT NOT NULL DEFAULT '',
                    message TEXT NOT NULL,
                    contact_type TEXT NOT NULL DEFAULT '',
                    property_id TEXT,
                    property_title TEXT,
                    created_at TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0
                )
            """)

    async def _run(self, fn):
        def locked():
            with self._lock:
                return fn()
        try:
            return await asyncio.to_thread(locked)
        except sqlite3.IntegrityError as e:
            raise PersistentFailure(f"Constraint violation: {e}", status=409) from e
        except sqlite3.OperationalError as e:
            self.log.warning("Database unavailable", table=self.table, errorMsg=str(e))
            raise TransientFailure(f"Database unavailable: {e}") from e

    async def list(self, limit=None):
        def query():
            sql = f"SELECT * FROM {self.table} ORDER BY created_at DESC, id DESC"
            if limit is not None:
                return self.conn.execute(sql + " LIMIT ?", (int(limit),)).fetchall()
            return self.conn.execute(sql).fetchall()
        return [Inquiry.fromRow(dict(r)) for r in await self._run(query)]

    async def insert(self, inquiry):
        row = _newRow(inquiry)
        if row.get('property_id') is not None:
            row['property_id'] = str(row['property_id'])

        def write():
            with self.conn:
                cursor = self.conn.execute(
                    f"INSERT INTO {self.table} ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                    tuple(row.values()))
                return self.conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (cursor.lastrowid,)).fetchone()

        stored = Inquiry.fromRow(dict(await self._run(write)))
        self.log.info("Inquiry stored", inquiryId=stored.id, contactType=stored.contactType)
        return stored

    async def delete(self, inquiryId):
        def write():
            with self.conn:
                return self.conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (inquiryId,)).rowcount > 0
        return await self._run(write)

    async def markRead(self, inquiryId, read=True):
        def write():
            with self.conn:
                self.conn.execute(f"UPDATE {self.table} SET read = ? WHERE id = ?", (int(bool(read)), inquiryId))
                return self.conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (inquiryId,)).fetchone()

        row = await self._run(write)
        if row is None:
            raise PersistentFailure(f"No inquiry {inquiryId}", status=404)
        return Inquiry.fromRow(dict(row))

    async def close(self):
        with self._lock:
            self.conn.close()


class RestInquiryRepository(InquiryRepository):
    """Inquiries in a remote PostgREST table"""

    def __init__(self, baseUrl: str, apiKey: str = '', table: str = 'contacts',
                 resources: Optional[SharedResources] = None):
        self.table = table
        self.client = PostgrestClient(baseUrl, apiKey, resources=resources)

    async def list(self, limit=None):
        length = int(limit) if limit is not None else None
        rows, _ = await self.client.select(self.table, ('*',), (('created_at', 'desc'), ('id', 'desc')),
                                           offset=0 if length else None, length=length)
        return [Inquiry.fromRow(r) for r in rows]

    async def insert(self, inquiry):
        return Inquiry.fromRow(await self.client.insert(self.table, _newRow(inquiry)))

    async def delete(self, inquiryId):
        return await self.client.delete(self.table, inquiryId)

    async def markRead(self, inquiryId, read=True):
        return Inquiry.fromRow(await self.client.update(self.table, inquiryId, {'read': bool(read)}))
