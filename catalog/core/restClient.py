"""
PostgREST-dialect table client over aiohttp.

Shared by the REST property store and the REST inquiry repository.
Sessions come from SharedResources so every client for one base URL
reuses a single connection pool.

Error mapping:
  - connection errors, timeouts, HTTP 408/429/5xx -> TransientFailure
  - any other HTTP 4xx -> PersistentFailure

Property of Uncompromising Sensors LLC.
"""

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp
import orjson

from sdk.logging import getLogger

from .errors import PersistentFailure, TransientFailure
from .resources import SharedResources, getSharedResources


TRANSIENT_STATUSES = {408, 429}

Params = Union[Dict[str, str], Sequence[Tuple[str, str]]]

_CONTENT_RANGE = re.compile(r'^\s*(?:(\d+)-(\d+)|\*)/(\d+|\*)\s*$')


def parseContentRange(header: Optional[str]) -> Optional[int]:
    """Total count from a Content-Range header ('0-11/25', '*/0'); None if unknown"""
    if not header:
        return None
    match = _CONTENT_RANGE.match(header)
    if not match or match.group(3) == '*':
        return None
    return int(match.group(3))


def buildOrder(orderBy: Sequence[Tuple[str, str]]) -> str:
    """[('created_at', 'desc'), ('id', 'desc')] -> 'created_at.desc,id.desc'"""
    return ','.join(f"{column}.{direction.lower()}" for column, direction in orderBy)


class PostgrestClient:
    """Minimal table client: select with exact count, insert, update, delete"""

    def __init__(self, baseUrl: str, apiKey: str = '', resources: Optional[SharedResources] = None,
                 accessToken: Optional[str] = None):
        self.log = getLogger()
        self.baseUrl = baseUrl.rstrip('/')
        self.apiKey = apiKey
        self.accessToken = accessToken
        self.resources = resources or getSharedResources()

    async def _session(self) -> aiohttp.ClientSession:
        async def create():
            return aiohttp.ClientSession(json_serialize=lambda obj: orjson.dumps(obj).decode())
        return await self.resources.get(('aiohttp', self.baseUrl), create)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.apiKey:
            headers['apikey'] = self.apiKey
            headers['Authorization'] = f"Bearer {self.accessToken or self.apiKey}"
        if extra:
            headers.update(extra)
        return headers

    def _url(self, table: str) -> str:
        return f"{self.baseUrl}/rest/v1/{table}"

    async def _request(self, method: str, table: str, params: Params,
                       headers: Dict[str, str], body: Any = None) -> Tuple[int, Any, Dict[str, str]]:
        session = await self._session()
        try:
            async with session.request(method, self._url(table), params=params,
                                       headers=self._headers(headers),
                                       data=orjson.dumps(body) if body is not None else None) as resp:
                raw = await resp.read()
                status = resp.status
                respHeaders = dict(resp.headers)
        except (aiohttp.ClientError, OSError) as e:
            self.log.warning("Request failed", method=method, table=table, errorClass=type(e).__name__, errorMsg=str(e))
            raise TransientFailure(f"{method} {table} failed: {e}") from e

        try:
            data = orjson.loads(raw) if raw else None
        except orjson.JSONDecodeError:
            data = None

        if status >= 500 or status in TRANSIENT_STATUSES:
            self.log.warning("Store unavailable", method=method, table=table, status=status)
            raise TransientFailure(f"{method} {table} returned {status}")
        if status >= 400 and status != 416:
            detail = data.get('message') if isinstance(data, dict) else raw[:200].decode('utf-8', errors='replace')
            self.log.error("Store rejected request", method=method, table=table, status=status, detail=detail)
            raise PersistentFailure(f"{method} {table} rejected: {detail}", status=status)

        return status, data, respHeaders

    async def select(self, table: str, columns: Sequence[str], orderBy: Sequence[Tuple[str, str]],
                     offset: Optional[int] = None, length: Optional[int] = None,
                     filters: Optional[Params] = None) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """
        Returns (rows, exactTotalCount). `filters` may repeat a column
        ([('price', 'gte.10'), ('price', 'lte.20')]); the count covers the filtered rows.
        """
        params = [('select', ','.join(columns))]
        if orderBy:
            params.append(('order', buildOrder(orderBy)))
        if filters:
            params.extend(filters.items() if isinstance(filters, dict) else filters)

        headers = {'Prefer': 'count=exact'}
        if offset is not None and length is not None:
            headers['Range-Unit'] = 'items'
            headers['Range'] = f"{offset}-{offset + length - 1}"

        status, data, respHeaders = await self._request('GET', table, params, headers)
        total = parseContentRange(respHeaders.get('Content-Range'))
        if status == 416:
            # Range past the end of the collection
            return [], total
        return list(data or []), total

    async def insert(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        _, data, _ = await self._request('POST', table, {}, {'Prefer': 'return=representation',
                                                            'Content-Type': 'application/json'}, [payload])
        if not data:
            raise PersistentFailure(f"Insert into {table} returned no row")
        return data[0]

    async def update(self, table: str, recordId: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        _, data, _ = await self._request('PATCH', table, {'id': f"eq.{recordId}"},
                                         {'Prefer': 'return=representation', 'Content-Type': 'application/json'}, payload)
        if not data:
            raise PersistentFailure(f"No row {recordId} in {table}", status=404)
        return data[0]

    async def delete(self, table: str, recordId: Any) -> bool:
        _, data, _ = await self._request('DELETE', table, {'id': f"eq.{recordId}"}, {'Prefer': 'return=representation'})
        return bool(data)
