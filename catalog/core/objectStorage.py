"""
Object storage for record assets.

    put(path, data, contentType, cacheControl) -> publicUrl

Objects are never overwritten; a path collision is a PersistentFailure.

Implementations:
    RestObjectStorage  - storage REST API (bucket/object paths, public URLs)
    LocalObjectStorage - directory on disk served under a public base URL

Property of Uncompromising Sensors LLC.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

import aiohttp
import orjson

from sdk.logging import getLogger

from .errors import PersistentFailure, TransientFailure
from .restClient import TRANSIENT_STATUSES
from .resources import SharedResources, getSharedResources


DEFAULT_CACHE_CONTROL = '31536000'


def _safePath(path: str) -> str:
    parts = PurePosixPath(path).parts
    if not parts or path.startswith('/') or any(p in ('..', '.') for p in parts):
        raise PersistentFailure(f"Invalid object path: {path}", status=400)
    return '/'.join(parts)


class ObjectStorageBase(ABC):

    @abstractmethod
    async def put(self, path: str, data: bytes, contentType: str,
                  cacheControl: str = DEFAULT_CACHE_CONTROL) -> str:
        pass

    @abstractmethod
    def publicUrl(self, path: str) -> str:
        pass


class RestObjectStorage(ObjectStorageBase):
    """Bucket on a storage REST API"""

    def __init__(self, baseUrl: str, apiKey: str = '', bucket: str = 'property-images',
                 resources: Optional[SharedResources] = None):
        self.log = getLogger()
        self.baseUrl = baseUrl.rstrip('/')
        self.apiKey = apiKey
        self.bucket = bucket
        self.resources = resources or getSharedResources()

    async def _session(self) -> aiohttp.ClientSession:
        async def create():
            return aiohttp.ClientSession(json_serialize=lambda obj: orjson.dumps(obj).decode())
        return await self.resources.get(('aiohttp', self.baseUrl), create)

    def publicUrl(self, path: str) -> str:
        return f"{self.baseUrl}/storage/v1/object/public/{self.bucket}/{_safePath(path)}"

    async def put(self, path, data, contentType, cacheControl=DEFAULT_CACHE_CONTROL) -> str:
        path = _safePath(path)
        headers = {
            'Content-Type': contentType or 'application/octet-stream',
            'Cache-Control': f"max-age={cacheControl}",
            'x-upsert': 'false',
        }
        if self.apiKey:
            headers['apikey'] = self.apiKey
            headers['Authorization'] = f"Bearer {self.apiKey}"

        session = await self._session()
        url = f"{self.baseUrl}/storage/v1/object/{self.bucket}/{path}"
        try:
            async with session.post(url, data=data, headers=headers) as resp:
                status = resp.status
                body = await resp.text()
        except (aiohttp.ClientError, OSError) as e:
            self.log.warning("Object upload failed", path=path, errorClass=type(e).__name__, errorMsg=str(e))
            raise TransientFailure(f"Upload of {path} failed: {e}") from e

        if status >= 500 or status in TRANSIENT_STATUSES:
            raise TransientFailure(f"Upload of {path} returned {status}")
        if status >= 400:
            self.log.error("Object upload rejected", path=path, status=status, detail=body[:200])
            raise PersistentFailure(f"Upload of {path} rejected: {body[:200]}", status=status)

        return self.publicUrl(path)


class LocalObjectStorage(ObjectStorageBase):
    """Objects written below `rootDir`, addressed as `publicBaseUrl/<path>`"""

    def __init__(self, rootDir: str, publicBaseUrl: str):
        self.log = getLogger()
        self.rootDir = Path(rootDir)
        self.publicBaseUrl = publicBaseUrl.rstrip('/')

    def publicUrl(self, path: str) -> str:
        return f"{self.publicBaseUrl}/{_safePath(path)}"

    async def put(self, path, data, contentType, cacheControl=DEFAULT_CACHE_CONTROL) -> str:
        path = _safePath(path)
        target = self.rootDir / path

        def write():
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'xb') as f:
                f.write(data)

        try:
            await asyncio.to_thread(write)
        except FileExistsError as e:
            raise PersistentFailure(f"Object already exists: {path}", status=409) from e
        except OSError as e:
            self.log.error("Object write failed", path=path, errorClass=type(e).__name__, errorMsg=str(e))
            raise TransientFailure(f"Object write failed: {e}") from e

        self.log.debug("Object stored", path=path, bytesLength=len(data), contentType=contentType)
        return self.publicUrl(path)
