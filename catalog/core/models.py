"""
Catalog data model.

Record      - catalog entry (property listing) as held by the remote store
Page        - bounded slice of the record collection plus its total size
ChangeEvent - push notification that a record was inserted/updated/deleted
Inquiry     - contact request submitted by a visitor
UploadFile  - a selected local file awaiting upload
UploadTask  - lifecycle of one upload, owned by ObjectUploadCoordinator

Store rows use the remote column names; Record fields use the client names.
FIELD_COLUMNS is the single mapping between the two.

Property of Uncompromising Sensors LLC.
"""

import asyncio
import math
import mimetypes
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ValidationError


RecordId = Union[int, str]


class RecordKind(str, Enum):
    """Listing kind"""
    SALE = "sale"
    RENTAL = "rental"

    @classmethod
    def parse(cls, value: Any) -> 'RecordKind':
        if isinstance(value, RecordKind):
            return value
        label = str(value or '').strip().lower()
        return _KIND_ALIASES.get(label) or cls(label)

    def labels(self) -> tuple:
        """Every stored label meaning this kind, canonical first"""
        return (self.value,) + tuple(alias for alias, kind in _KIND_ALIASES.items() if kind is self)


# Labels written by older clients
_KIND_ALIASES = {'venta': RecordKind.SALE, 'alquiler': RecordKind.RENTAL}


# Record field -> store column
FIELD_COLUMNS: Dict[str, str] = {
    'id': 'id',
    'title': 'title',
    'description': 'description',
    'price': 'price',
    'kind': 'type',
    'zone': 'zone',
    'bedroomCount': 'bedrooms',
    'bathroomCount': 'bathrooms',
    'area': 'area',
    'latitude': 'latitude',
    'longitude': 'longitude',
    'address': 'address',
    'images': 'images',
    'createdAt': 'created_at',
}

COLUMN_FIELDS: Dict[str, str] = {column: name for name, column in FIELD_COLUMNS.items()}

FLOAT_FIELDS = ('price', 'area', 'latitude', 'longitude')
INT_FIELDS = ('bedroomCount', 'bathroomCount')


@dataclass
class Record:
    """Catalog entry. Fields absent from a projection keep their defaults."""
    id: Optional[RecordId] = None
    title: str = ''
    description: str = ''
    price: float = 0.0
    kind: RecordKind = RecordKind.SALE
    zone: str = ''
    bedroomCount: int = 0
    bathroomCount: int = 0
    area: float = 0.0
    latitude: float = 0.0
    longitude: float = 0.0
    address: str = ''
    images: List[str] = field(default_factory=list)
    createdAt: Optional[str] = None

    @classmethod
    def fromRow(cls, row: Dict[str, Any]) -> 'Record':
        """Build a Record from a store row (column names). Unknown columns are ignored."""
        values = {}
        for column, value in row.items():
            name = COLUMN_FIELDS.get(column)
            if name is None or value is None:
                continue
            values[name] = value
        if 'kind' in values:
            values['kind'] = RecordKind.parse(values['kind'])
        if 'images' in values:
            values['images'] = list(values['images'])
        return cls(**values)

    def toPayload(self) -> Dict[str, Any]:
        """
        Write payload in store columns with numeric fields coerced.
        Identity and creation time are owned by the store and never sent.

        Raises:
            ValidationError: If a numeric field cannot be coerced
        """
        errors = {}
        values = asdict(self)
        for name in FLOAT_FIELDS + INT_FIELDS:
            raw = values[name]
            if raw is None or raw == '':
                values[name] = 0
                continue
            try:
                values[name] = float(raw) if name in FLOAT_FIELDS else int(float(raw))
            except (TypeError, ValueError):
                errors[name] = f'{name} must be numeric'
        if errors:
            raise ValidationError('Invalid numeric fields', errors)

        values['kind'] = RecordKind.parse(values['kind']).value
        values['images'] = list(values['images'] or [])
        values['address'] = values['address'] or ''

        return {FIELD_COLUMNS[name]: value for name, value in values.items()
                if name not in ('id', 'createdAt')}

    def toDict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['kind'] = self.kind.value
        return d


# ============================================================================
# Pagination
# ============================================================================

def pageCount(totalCount: int, pageSize: int) -> int:
    """ceil(totalCount / pageSize); zero records means zero pages"""
    if pageSize <= 0:
        raise ValueError("pageSize must be > 0")
    return math.ceil(max(totalCount, 0) / pageSize)


def pageItemCount(pageNumber: int, totalCount: int, pageSize: int) -> int:
    """Number of items page `pageNumber` holds for a collection of `totalCount` records"""
    pages = pageCount(totalCount, pageSize)
    if pageNumber < 1 or pageNumber > pages:
        return 0
    if pageNumber < pages:
        return pageSize
    return totalCount - pageSize * (pages - 1)


def pageRange(pageNumber: int, pageSize: int) -> tuple:
    """(offset, length) of a page"""
    if pageNumber < 1:
        raise ValidationError("pageNumber must be >= 1", {'pageNumber': str(pageNumber)})
    if pageSize <= 0:
        raise ValidationError("pageSize must be > 0", {'pageSize': str(pageSize)})
    return (pageNumber - 1) * pageSize, pageSize


@dataclass
class Page:
    pageNumber: int
    pageSize: int
    totalCount: int
    items: List[Record] = field(default_factory=list)

    @property
    def pageCount(self) -> int:
        return pageCount(self.totalCount, self.pageSize)

    @property
    def isLast(self) -> bool:
        return self.pageNumber >= self.pageCount


# ============================================================================
# Change notifications
# ============================================================================

class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeEvent:
    kind: ChangeKind
    recordId: Optional[RecordId]
    rawPayload: Dict[str, Any]

    @classmethod
    def fromPayload(cls, payload: Dict[str, Any]) -> 'ChangeEvent':
        """
        Parse a channel message: {"type": "INSERT"|"UPDATE"|"DELETE", "record": {...}, "old_record": {...}}

        Raises:
            ValueError: If the change type is missing or unknown
        """
        kindLabel = payload.get('type') or payload.get('eventType')
        if not kindLabel:
            raise ValueError("Change payload has no type")
        kind = ChangeKind(str(kindLabel).lower())
        record = payload.get('record') or {}
        oldRecord = payload.get('old_record') or {}
        recordId = record.get('id', oldRecord.get('id'))
        return cls(kind=kind, recordId=recordId, rawPayload=payload)

    def toPayload(self, table: str) -> Dict[str, Any]:
        record = self.rawPayload.get('record') or {}
        oldRecord = self.rawPayload.get('old_record') or {}
        if self.kind == ChangeKind.DELETE:
            oldRecord = oldRecord or {'id': self.recordId}
        else:
            record = record or {'id': self.recordId}
        return {'type': self.kind.value.upper(), 'table': table, 'record': record, 'old_record': oldRecord}


# ============================================================================
# Inquiries
# ============================================================================

@dataclass
class Inquiry:
    name: str
    email: str
    message: str
    phone: str = ''
    contactType: str = ''
    propertyId: Optional[RecordId] = None
    propertyTitle: Optional[str] = None
    id: Optional[RecordId] = None
    createdAt: Optional[str] = None
    read: bool = False

    _COLUMNS = {
        'id': 'id', 'name': 'name', 'email': 'email', 'phone': 'phone', 'message': 'message',
        'contactType': 'contact_type', 'propertyId': 'property_id', 'propertyTitle': 'property_title',
        'createdAt': 'created_at', 'read': 'read',
    }

    @classmethod
    def fromRow(cls, row: Dict[str, Any]) -> 'Inquiry':
        byColumn = {column: name for name, column in cls._COLUMNS.items()}
        values = {byColumn[c]: v for c, v in row.items() if c in byColumn}
        values['read'] = bool(values.get('read', False))
        return cls(**values)

    def toRow(self) -> Dict[str, Any]:
        return {column: getattr(self, name) for name, column in self._COLUMNS.items()}

    def toNotifyPayload(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'message': self.message,
            'context': {
                'contactType': self.contactType,
                'propertyId': self.propertyId,
                'propertyTitle': self.propertyTitle,
                'inquiryId': self.id,
            },
        }


# ============================================================================
# Uploads
# ============================================================================

@dataclass
class UploadFile:
    name: str
    contentType: str
    data: bytes = field(repr=False, default=b'')

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def fromPath(cls, path: Union[str, Path]) -> 'UploadFile':
        path = Path(path)
        contentType, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, contentType=contentType or '', data=path.read_bytes())


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UploadTask:
    sourceBlob: UploadFile
    status: UploadStatus = UploadStatus.PENDING
    resultRef: Optional[str] = None
    objectPath: Optional[str] = None
    error: Optional[Exception] = None
    taskId: str = field(default_factory=lambda: uuid.uuid4().hex)
    _resolved: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)

    @property
    def isResolved(self) -> bool:
        return self.status in (UploadStatus.DONE, UploadStatus.FAILED)

    async def wait(self) -> 'UploadTask':
        """Wait until the upload succeeds or fails. Never raises for upload failures."""
        if self._resolved is not None and not self.isResolved:
            await asyncio.shield(self._resolved)
        return self
