"""
Inline image migration.

Older records carry images as inline `data:image/<type>;base64,...` strings.
This tool uploads each inline image to object storage and rewrites the
record's image list in place, keeping the position of every image.

    <prefix>/<recordId>/<index:02>-<uuid><ext>

Records are scanned newest first, up to `limit`. A failure on one record is
reported and the scan continues.

Property of Uncompromising Sensors LLC.
"""

import base64
import binascii
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sdk.logging import getLogger

from catalog.core.errors import CatalogError
from catalog.core.models import Record, RecordId
from catalog.core.objectStorage import DEFAULT_CACHE_CONTROL, ObjectStorageBase
from catalog.core.projection import Projection
from catalog.core.queryExecutor import QueryExecutor
from catalog.core.uploadCoordinator import EXTENSION_BY_MEDIA_TYPE


_DATA_URL = re.compile(r'^data:(image/[a-zA-Z0-9.+-]+);base64,(.*)$', re.DOTALL)


def isDataImage(value) -> bool:
    return isinstance(value, str) and value.startswith('data:image/')


def parseDataUrl(dataUrl: str) -> Tuple[str, bytes]:
    """
    Returns:
        (mediaType, decodedBytes)

    Raises:
        ValueError: If the string is not a base64 image data URL
    """
    match = _DATA_URL.match(dataUrl)
    if not match:
        raise ValueError('Invalid data URL')
    try:
        data = base64.b64decode(match.group(2), validate=False)
    except binascii.Error as e:
        raise ValueError(f'Invalid base64 payload: {e}') from e
    return match.group(1), data


def migrationObjectPath(prefix: str, recordId: RecordId, index: int, mediaType: str,
                        objectId: Optional[str] = None) -> str:
    ext = EXTENSION_BY_MEDIA_TYPE.get(mediaType.lower(), '')
    return f"{prefix.strip('/')}/{recordId}/{index:02d}-{objectId or uuid.uuid4()}{ext}"


@dataclass
class MigrationReport:
    scanned: int = 0
    migrated: int = 0
    uploaded: int = 0
    dryRun: bool = False
    failures: List[Tuple[RecordId, str]] = field(default_factory=list)

    def summary(self) -> str:
        suffix = ' (dry-run)' if self.dryRun else ''
        return (f"done scanned={self.scanned} migrated={self.migrated} uploaded={self.uploaded} "
                f"failed={len(self.failures)}{suffix}")


class ImageMigration:

    def __init__(self, executor: QueryExecutor, storage: ObjectStorageBase, prefix: str = 'properties',
                 cacheControl: str = DEFAULT_CACHE_CONTROL, dryRun: bool = False, limit: int = 500):
        self.log = getLogger()
        self.executor = executor
        self.storage = storage
        self.prefix = prefix
        self.cacheControl = cacheControl
        self.dryRun = dryRun
        self.limit = limit

    async def migrateRecord(self, record: Record) -> int:
        """Upload the record's inline images and rewrite its image list. Returns the upload count."""
        inlineIndexes = [i for i, ref in enumerate(record.images) if isDataImage(ref)]
        if not inlineIndexes:
            return 0

        images = list(record.images)
        for index in inlineIndexes:
            mediaType, data = parseDataUrl(images[index])
            objectPath = migrationObjectPath(self.prefix, record.id, index, mediaType)
            if self.dryRun:
                images[index] = f"dry-run://{objectPath}"
            else:
                images[index] = await self.storage.put(objectPath, data, mediaType, self.cacheControl)

        if not self.dryRun:
            await self.executor.updateRecord(record.id, {'images': images})
        return len(inlineIndexes)

    async def run(self) -> MigrationReport:
        report = MigrationReport(dryRun=self.dryRun)
        if self.limit <= 0:
            return report

        page = await self.executor.fetchPage(1, self.limit, Projection.IMAGES)
        for record in page.items:
            report.scanned += 1
            try:
                uploaded = await self.migrateRecord(record)
            except (CatalogError, ValueError) as e:
                report.failures.append((record.id, str(e)))
                self.log.error("Image migration failed", recordId=record.id, title=record.title,
                               errorClass=type(e).__name__, errorMsg=str(e))
                continue
            if uploaded:
                report.migrated += 1
                report.uploaded += uploaded
                self.log.info("Record migrated", recordId=record.id, title=record.title,
                              uploaded=uploaded, dryRun=self.dryRun)

        self.log.info(report.summary())
        return report
