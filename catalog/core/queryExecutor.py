"""
Query Executor

Retry/timeout wrapper around single remote reads and writes.

Execution Contract:
- Every attempt is raced against timeoutMs; a timeout is a failed attempt
- Failed attempts are retried up to `retries` more times, waiting
  backoffBaseMs * 2^attemptIndex between attempts
- Reads run under the read policy; writes under the write policy, which
  never retries (writes are not assumed idempotent)
- Only TransientFailure, connection/OS errors and timeouts are retried;
  anything else (PersistentFailure, ValidationError, NotificationError,
  programming errors) propagates unchanged on the first occurrence
- An exhausted budget surfaces the last failure as TransientFailure

Paginated reads order by creation time descending with id descending as
tie-break, so repeated reads without intervening writes return identical pages.

Property of Uncompromising Sensors LLC.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sdk.logging import getLogger

from .errors import TransientFailure
from .filters import ListingFilter
from .models import Page, Record, RecordId, pageRange
from .projection import Projection
from .propertyStore import DEFAULT_ORDER, PropertyStoreBase


T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 3
    backoffBaseMs: float = 1000.0
    timeoutMs: float = 10000.0

    def backoffMs(self, attemptIndex: int) -> float:
        """Delay after the failed attempt with index `attemptIndex` (0-based)"""
        return self.backoffBaseMs * (2 ** attemptIndex)

    @property
    def maxAttempts(self) -> int:
        return self.retries + 1

    @classmethod
    def fromConfig(cls, section: dict) -> 'RetryPolicy':
        return cls(retries=int(section.get('retries', 3)),
                   backoffBaseMs=float(section.get('backoffBaseMs', 1000)),
                   timeoutMs=float(section.get('timeoutMs', 10000)))


READ_POLICY = RetryPolicy()
WRITE_POLICY = RetryPolicy(retries=0, backoffBaseMs=0.0)


class QueryExecutor:
    """
    Runs store operations under a retry policy.

    `operation` arguments are zero-argument callables returning a fresh
    awaitable per attempt.
    """

    def __init__(self, store: Optional[PropertyStoreBase] = None, readPolicy: RetryPolicy = READ_POLICY,
                 writePolicy: Optional[RetryPolicy] = None):
        self.log = getLogger()
        self.store = store
        self.readPolicy = readPolicy
        self.writePolicy = writePolicy or RetryPolicy(retries=0, backoffBaseMs=0.0, timeoutMs=readPolicy.timeoutMs)
        self.attempts = 0

    async def run(self, operation: Callable[[], Awaitable[T]], policy: Optional[RetryPolicy] = None,
                  label: str = 'operation') -> T:
        """
        Execute `operation` under `policy` (read policy by default).

        Raises:
            TransientFailure: When every attempt failed or timed out
            PersistentFailure: Immediately, when the store rejects the operation
            ValidationError: Immediately, when the operation refuses its input
            Any other exception: Immediately and unchanged
        """
        policy = policy or self.readPolicy
        timeout = policy.timeoutMs / 1000.0
        lastError: Optional[BaseException] = None
        started = time.monotonic()

        for attemptIndex in range(policy.maxAttempts):
            self.attempts += 1
            try:
                return await asyncio.wait_for(operation(), timeout=timeout)
            except asyncio.TimeoutError as e:
                lastError = TransientFailure(f"{label} timed out after {policy.timeoutMs:.0f}ms")
                lastError.__cause__ = e
            except (TransientFailure, ConnectionError, OSError) as e:
                lastError = e

            if attemptIndex < policy.maxAttempts - 1:
                delayMs = policy.backoffMs(attemptIndex)
                self.log.warning(f"{label} failed, retrying", attempt=attemptIndex + 1, maxAttempts=policy.maxAttempts,
                                 delayMs=delayMs, errorClass=type(lastError).__name__, errorMsg=str(lastError))
                await asyncio.sleep(delayMs / 1000.0)

        elapsedMs = (time.monotonic() - started) * 1000.0
        self.log.error(f"{label} failed", attempts=policy.maxAttempts, elapsedMs=round(elapsedMs, 1),
                       errorClass=type(lastError).__name__, errorMsg=str(lastError))
        raise TransientFailure(f"{label} failed after {policy.maxAttempts} attempt(s): {lastError}",
                               attempts=policy.maxAttempts) from lastError

    async def write(self, operation: Callable[[], Awaitable[T]], label: str = 'write') -> T:
        """Single-attempt execution under the write policy"""
        return await self.run(operation, self.writePolicy, label=label)

    # ===== Record operations =====
    def _requireStore(self) -> PropertyStoreBase:
        if self.store is None:
            raise RuntimeError("QueryExecutor has no property store")
        return self.store

    async def fetchPage(self, pageNumber: int, pageSize: int, projection: Projection = Projection.CARD,
                        listingFilter: Optional[ListingFilter] = None) -> Page:
        """Read one page plus the exact size of the (filtered) collection"""
        offset, length = pageRange(pageNumber, pageSize)
        store = self._requireStore()
        result = await self.run(lambda: store.select(offset, length, DEFAULT_ORDER, projection.columns(), listingFilter),
                                label=f"fetchPage({pageNumber})")
        return Page(pageNumber=pageNumber, pageSize=pageSize, totalCount=result.totalCount,
                    items=[Record.fromRow(row) for row in result.items])

    async def fetchRecord(self, recordId: RecordId, projection: Projection = Projection.FULL) -> Optional[Record]:
        store = self._requireStore()
        row = await self.run(lambda: store.selectById(recordId, projection.columns()), label=f"fetchRecord({recordId})")
        return Record.fromRow(row) if row else None

    async def insertRecord(self, payload: dict) -> Record:
        store = self._requireStore()
        row = await self.write(lambda: store.insert(payload), label='insertRecord')
        return Record.fromRow(row)

    async def updateRecord(self, recordId: RecordId, payload: dict) -> Record:
        store = self._requireStore()
        row = await self.write(lambda: store.update(recordId, payload), label=f"updateRecord({recordId})")
        return Record.fromRow(row)

    async def deleteRecord(self, recordId: RecordId) -> bool:
        store = self._requireStore()
        return await self.write(lambda: store.delete(recordId), label=f"deleteRecord({recordId})")
