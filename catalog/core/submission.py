"""
Submission Pipeline

Record writes:
    saveRecord(record, uploads) -> committed Record
        local checks first (title, price, zone, >= 1 image, no inline images,
        no upload still pending); any violation raises ValidationError and
        nothing reaches the store. Then exactly one non-retried write.
    deleteRecord(recordId) -> bool, one non-retried write

Inquiries (persist, then notify):
    submitInquiry(inquiry) -> InquiryResult
        validation failure    -> ValidationError raised
        persist failed        -> FAILED, nothing sent, fallback message attached
        persist ok, notify ok -> SENT
        persist ok, notify failed -> PARTIAL, inquiry stays stored, fallback attached
        no notifier configured    -> PARTIAL after persisting, as a failed notify

Property of Uncompromising Sensors LLC.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence

from sdk.logging import getLogger

from .editSession import EditSession
from .errors import CatalogError, NotificationError, ValidationError
from .fallback import FallbackMessage, composeFallback
from .inquiryStore import InquiryRepository
from .models import Inquiry, Record, RecordId
from .notifier import NotifierBase
from .queryExecutor import QueryExecutor
from .uploadCoordinator import ObjectUploadCoordinator


REQUIRED_RECORD_FIELDS = ('title', 'price', 'zone')

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def _isBlank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validateRecord(record: Record, pendingCount: int = 0) -> None:
    """
    Raises:
        ValidationError: With one message per offending field
    """
    errors: Dict[str, str] = {}
    for name in REQUIRED_RECORD_FIELDS:
        if _isBlank(getattr(record, name)):
            errors[name] = f'{name} is required'

    if pendingCount > 0:
        errors['images'] = f'{pendingCount} upload(s) still in progress'
    elif not record.images:
        errors['images'] = 'at least one image is required'
    elif any(isinstance(ref, str) and ref.startswith('data:image/') for ref in record.images):
        errors['images'] = 'inline data URL images are not accepted'

    if errors:
        raise ValidationError(f"Record is not ready to save: {', '.join(sorted(errors))}", errors)


def validateInquiry(inquiry: Inquiry) -> None:
    errors: Dict[str, str] = {}
    if _isBlank(inquiry.name):
        errors['name'] = 'name is required'
    if _isBlank(inquiry.email):
        errors['email'] = 'email is required'
    elif not EMAIL_PATTERN.match(inquiry.email.strip()):
        errors['email'] = 'email format is not valid'
    if _isBlank(inquiry.message):
        errors['message'] = 'message is required'
    if errors:
        raise ValidationError(f"Inquiry is incomplete: {', '.join(sorted(errors))}", errors)


class InquiryStatus(str, Enum):
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class InquiryResult:
    status: InquiryStatus
    inquiry: Optional[Inquiry] = None
    error: Optional[Exception] = None
    fallback: Optional[FallbackMessage] = None

    @property
    def persisted(self) -> bool:
        return self.status in (InquiryStatus.SENT, InquiryStatus.PARTIAL)


class SubmissionPipeline:
    """Record and inquiry writes through the query executor"""

    def __init__(self, executor: QueryExecutor, inquiries: Optional[InquiryRepository] = None,
                 notifier: Optional[NotifierBase] = None, fallbackRecipients: Sequence[str] = (),
                 whatsappNumber: Optional[str] = None):
        self.log = getLogger()
        self.executor = executor
        self.inquiries = inquiries
        self.notifier = notifier
        self.fallbackRecipients = list(fallbackRecipients)
        self.whatsappNumber = whatsappNumber

    # ===== Records =====
    async def saveRecord(self, record: Record, uploads: Optional[ObjectUploadCoordinator] = None) -> Record:
        pendingCount = uploads.pendingCount if uploads is not None else 0
        try:
            validateRecord(record, pendingCount)
            payload = record.toPayload()
        except ValidationError as e:
            self.log.info("Record rejected locally", recordId=record.id, fields=sorted(e.fields))
            raise

        if record.id is None:
            saved = await self.executor.insertRecord(payload)
            self.log.info("Record created", recordId=saved.id, images=len(saved.images))
        else:
            saved = await self.executor.updateRecord(record.id, payload)
            self.log.info("Record updated", recordId=saved.id, images=len(saved.images))
        return saved

    async def saveSession(self, session: EditSession, uploads: Optional[ObjectUploadCoordinator] = None) -> Record:
        return await self.saveRecord(session.toRecord(), uploads)

    async def deleteRecord(self, recordId: RecordId) -> bool:
        deleted = await self.executor.deleteRecord(recordId)
        self.log.info("Record deleted" if deleted else "Record not found for delete", recordId=recordId)
        return deleted

    # ===== Inquiries =====
    def _fallback(self, inquiry: Inquiry) -> FallbackMessage:
        return composeFallback(inquiry, self.fallbackRecipients, self.whatsappNumber)

    async def _notify(self, stored: Inquiry):
        if self.notifier is None:
            raise NotificationError("no notification endpoint configured")
        try:
            await self.executor.write(lambda: self.notifier.notify(stored.toNotifyPayload()), label='notifyInquiry')
        except NotificationError:
            raise
        except CatalogError as e:
            # Timeout of the notify step
            raise NotificationError(f"notification failed: {e}") from e

    async def submitInquiry(self, inquiry: Inquiry) -> InquiryResult:
        if self.inquiries is None:
            raise RuntimeError("SubmissionPipeline needs an inquiry repository for inquiries")
        validateInquiry(inquiry)

        try:
            stored = await self.executor.write(lambda: self.inquiries.insert(inquiry), label='persistInquiry')
        except CatalogError as e:
            self.log.error("Inquiry not stored", contactType=inquiry.contactType,
                           errorClass=type(e).__name__, errorMsg=str(e))
            return InquiryResult(InquiryStatus.FAILED, inquiry=None, error=e, fallback=self._fallback(inquiry))

        try:
            await self._notify(stored)
        except NotificationError as e:
            self.log.warning("Inquiry stored but notification failed", inquiryId=stored.id,
                             errorClass=type(e).__name__, errorMsg=str(e))
            return InquiryResult(InquiryStatus.PARTIAL, inquiry=stored, error=e, fallback=self._fallback(stored))

        self.log.info("Inquiry sent", inquiryId=stored.id, contactType=stored.contactType)
        return InquiryResult(InquiryStatus.SENT, inquiry=stored)
