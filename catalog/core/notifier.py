"""
Inquiry notification endpoint client.

    notify({name, email, phone, message, context}) -> {ok} | {error}

HttpNotifier calls a serverless function over aiohttp. Any transport
failure, non-2xx status or {"error": ...} answer raises NotificationError.

Property of Uncompromising Sensors LLC.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp
import orjson

from sdk.logging import getLogger

from .errors import NotificationError
from .resources import SharedResources, getSharedResources


DEFAULT_FUNCTION = 'send-inquiry-email'


class NotifierBase(ABC):

    @abstractmethod
    async def notify(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass


class HttpNotifier(NotifierBase):
    """POST {baseUrl}/functions/v1/{functionName} with a JSON body"""

    def __init__(self, baseUrl: str, apiKey: str = '', functionName: str = DEFAULT_FUNCTION,
                 resources: Optional[SharedResources] = None):
        self.log = getLogger()
        self.baseUrl = baseUrl.rstrip('/')
        self.apiKey = apiKey
        self.functionName = functionName
        self.resources = resources or getSharedResources()

    @property
    def url(self) -> str:
        return f"{self.baseUrl}/functions/v1/{self.functionName}"

    async def _session(self) -> aiohttp.ClientSession:
        async def create():
            return aiohttp.ClientSession(json_serialize=lambda obj: orjson.dumps(obj).decode())
        return await self.resources.get(('aiohttp', self.baseUrl), create)

    async def notify(self, payload):
        headers = {'Content-Type': 'application/json'}
        if self.apiKey:
            headers['apikey'] = self.apiKey
            headers['Authorization'] = f"Bearer {self.apiKey}"

        session = await self._session()
        try:
            async with session.post(self.url, data=orjson.dumps(payload), headers=headers) as resp:
                status = resp.status
                raw = await resp.read()
        except (aiohttp.ClientError, OSError) as e:
            self.log.warning("Notification request failed", function=self.functionName,
                             errorClass=type(e).__name__, errorMsg=str(e))
            raise NotificationError(f"{self.functionName} unreachable: {e}") from e

        try:
            answer = orjson.loads(raw) if raw else {}
        except orjson.JSONDecodeError:
            answer = {}
        if not isinstance(answer, dict):
            answer = {'result': answer}

        if status >= 400 or answer.get('error'):
            detail = answer.get('error') or raw[:200].decode('utf-8', errors='replace')
            self.log.error("Notification rejected", function=self.functionName, status=status, detail=str(detail))
            raise NotificationError(f"{self.functionName} returned {status}: {detail}")

        answer.setdefault('ok', True)
        return answer
