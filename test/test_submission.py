"""
Submission Pipeline Tests

Tests for:
- Record create/update/delete as single non-retried writes
- Local rejection (missing fields, no images, pending uploads, inline images)
  with no store call
- Inquiry persist-then-notify: sent, partial (notify failed, timed out or not
  configured), failed (persist failed)
- Manual fallback message contents

Run: python -m pytest test/test_submission.py -v

Property of Uncompromising Sensors LLC.
"""

import asyncio
import sys
import uuid
from pathlib import Path
from urllib.parse import unquote

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from catalog.client import CatalogClient, StaticSessionProvider
from catalog.config import DEFAULT_CONFIG, deepMerge
from catalog.core.editSession import EditSession, ImageUrlAdded
from catalog.core.errors import NotificationError, PersistentFailure, TransientFailure, ValidationError
from catalog.core.fallback import composeFallback
from catalog.core.inquiryStore import InquiryRepository, SqliteInquiryRepository
from catalog.core.models import Inquiry, Record, RecordKind, UploadFile
from catalog.core.notifier import NotifierBase
from catalog.core.objectStorage import ObjectStorageBase
from catalog.core.propertyStore import SqlitePropertyStore
from catalog.core.queryExecutor import QueryExecutor, RetryPolicy
from catalog.core.submission import InquiryStatus, SubmissionPipeline
from catalog.core.uploadCoordinator import ObjectUploadCoordinator


POLICY = RetryPolicy(retries=3, backoffBaseMs=1, timeoutMs=2000)
RECIPIENTS = ['sales@example.com', 'info@example.com']


class CountingStore(SqlitePropertyStore):
    """SQLite store that counts writes and can be told to fail them"""

    def __init__(self, dbPath):
        super().__init__(dbPath)
        self.writes = 0
        self.failWith = None

    async def insert(self, payload):
        self.writes += 1
        if self.failWith:
            raise self.failWith
        return await super().insert(payload)

    async def update(self, recordId, payload):
        self.writes += 1
        if self.failWith:
            raise self.failWith
        return await super().update(recordId, payload)


class RecordingNotifier(NotifierBase):

    def __init__(self, error=None):
        self.payloads = []
        self.error = error

    async def notify(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return {'ok': True}


class BrokenRepository(InquiryRepository):

    async def list(self, limit=None):
        return []

    async def insert(self, inquiry):
        raise PersistentFailure('permission denied', status=401)

    async def delete(self, inquiryId):
        return False

    async def markRead(self, inquiryId, read=True):
        raise PersistentFailure('permission denied', status=401)


class HeldStorage(ObjectStorageBase):
    """put() waits until release()"""

    def __init__(self):
        self.event = asyncio.Event()

    def release(self):
        self.event.set()

    def publicUrl(self, path):
        return f"https://cdn.test/{path}"

    async def put(self, path, data, contentType, cacheControl='31536000'):
        await self.event.wait()
        return self.publicUrl(path)


@pytest.fixture
def store(tmp_path):
    store = CountingStore(str(tmp_path / 'catalog.db'))
    yield store
    store.conn.close()


@pytest.fixture
def inquiries(tmp_path):
    repository = SqliteInquiryRepository(str(tmp_path / 'catalog.db'))
    yield repository
    repository.conn.close()


def listing(**overrides):
    values = dict(title='Loft in Centro', price=125000, zone='Centro', kind=RecordKind.SALE,
                  images=['https://cdn.test/properties/a.jpg'])
    values.update(overrides)
    return Record(**values)


def visitor(**overrides):
    values = dict(name='Ana', email='ana@example.com', phone='+54 11 5555 0000',
                  message='Is it still available?', contactType='property', propertyId=7, propertyTitle='Loft')
    values.update(overrides)
    return Inquiry(**values)


# =============================================================================
# RECORD WRITES
# =============================================================================

class TestRecordWrites:

    @pytest.mark.asyncio
    async def test_create_then_update(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))

        created = await pipeline.saveRecord(listing(price='125000', bedroomCount='3'))
        assert created.id is not None
        assert created.price == 125000.0
        assert created.bedroomCount == 3
        assert created.createdAt

        created.title = 'Loft, renovated'
        updated = await pipeline.saveRecord(created)
        assert updated.id == created.id
        assert updated.title == 'Loft, renovated'
        assert store.writes == 2

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        with pytest.raises(PersistentFailure) as excInfo:
            await pipeline.saveRecord(listing(id=404))
        assert excInfo.value.status == 404

    @pytest.mark.asyncio
    async def test_write_failure_not_retried(self, store):
        store.failWith = TransientFailure('connection reset')
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))

        with pytest.raises(TransientFailure):
            await pipeline.saveRecord(listing())

        assert store.writes == 1

    @pytest.mark.asyncio
    async def test_delete(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        created = await pipeline.saveRecord(listing())

        assert await pipeline.deleteRecord(created.id) is True
        assert await pipeline.deleteRecord(created.id) is False

    @pytest.mark.asyncio
    async def test_saveSession_uses_draft(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        session = EditSession()
        session.setFields(title='Casa', price=90000, zone='Norte', kind='rental')
        session.dispatch(ImageUrlAdded('https://cdn.test/manual.jpg'))

        saved = await pipeline.saveSession(session)
        assert saved.kind == RecordKind.RENTAL
        assert saved.images == ['https://cdn.test/manual.jpg']


# =============================================================================
# LOCAL PRECONDITIONS
# =============================================================================

class TestPreconditions:

    @pytest.mark.asyncio
    async def test_pending_uploads_block_submission(self, store):
        storage = HeldStorage()
        session = EditSession(listing())
        uploads = ObjectUploadCoordinator(storage, session)
        uploads.submit(UploadFile('b.jpg', 'image/jpeg', b'B'))
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))

        with pytest.raises(ValidationError) as excInfo:
            await pipeline.saveSession(session, uploads)

        assert 'images' in excInfo.value.fields
        assert store.writes == 0

        storage.release()
        await uploads.close()
        saved = await pipeline.saveSession(session, uploads)
        assert len(saved.images) == 2
        assert store.writes == 1

    @pytest.mark.asyncio
    async def test_no_images(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        with pytest.raises(ValidationError) as excInfo:
            await pipeline.saveRecord(listing(images=[]))
        assert 'images' in excInfo.value.fields
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_required_fields(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        with pytest.raises(ValidationError) as excInfo:
            await pipeline.saveRecord(listing(title='  ', zone='', price=None))
        assert set(excInfo.value.fields) == {'title', 'zone', 'price'}
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_inline_images_rejected(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        with pytest.raises(ValidationError):
            await pipeline.saveRecord(listing(images=['data:image/png;base64,iVBORw0KGgo=']))
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_non_numeric_price(self, store):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY))
        with pytest.raises(ValidationError) as excInfo:
            await pipeline.saveRecord(listing(price='a lot'))
        assert 'price' in excInfo.value.fields
        assert store.writes == 0


# =============================================================================
# INQUIRIES
# =============================================================================

class TestInquiries:

    @pytest.mark.asyncio
    async def test_sent(self, store, inquiries):
        notifier = RecordingNotifier()
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY), inquiries, notifier, RECIPIENTS)

        result = await pipeline.submitInquiry(visitor())

        assert result.status == InquiryStatus.SENT
        assert result.fallback is None
        payload = notifier.payloads[0]
        assert payload['email'] == 'ana@example.com'
        assert payload['context'] == {'contactType': 'property', 'propertyId': '7',
                                      'propertyTitle': 'Loft', 'inquiryId': result.inquiry.id}

    @pytest.mark.asyncio
    async def test_notify_failure_is_partial_and_inquiry_kept(self, store, inquiries):
        notifier = RecordingNotifier(error=NotificationError('function returned 500'))
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY), inquiries, notifier, RECIPIENTS, '+54 9 11 5341-3959')

        result = await pipeline.submitInquiry(visitor())

        assert result.status == InquiryStatus.PARTIAL
        assert result.persisted
        assert isinstance(result.error, NotificationError)
        stored = await inquiries.list()
        assert [i.id for i in stored] == [result.inquiry.id]
        assert len(notifier.payloads) == 1

        fallback = result.fallback
        assert fallback.recipients == RECIPIENTS
        assert fallback.mailtoUrl.startswith('mailto:sales@example.com,info@example.com?subject=')
        assert 'Is it still available?' in unquote(fallback.mailtoUrl)
        assert fallback.whatsappUrl.startswith('https://wa.me/5491153413959?text=')

    @pytest.mark.asyncio
    async def test_no_notifier_is_partial_and_inquiry_kept(self, store, inquiries):
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY), inquiries, None, RECIPIENTS)

        result = await pipeline.submitInquiry(visitor())

        assert result.status == InquiryStatus.PARTIAL
        assert isinstance(result.error, NotificationError)
        assert 'no notification endpoint configured' in str(result.error)
        assert [i.id for i in await inquiries.list()] == [result.inquiry.id]
        assert result.fallback.recipients == RECIPIENTS

    @pytest.mark.asyncio
    async def test_notify_timeout_is_partial(self, store, inquiries):
        class SlowNotifier(NotifierBase):
            async def notify(self, payload):
                await asyncio.sleep(1)

        executor = QueryExecutor(store, POLICY, RetryPolicy(retries=0, backoffBaseMs=0, timeoutMs=20))
        pipeline = SubmissionPipeline(executor, inquiries, SlowNotifier(), RECIPIENTS)

        result = await pipeline.submitInquiry(visitor())

        assert result.status == InquiryStatus.PARTIAL
        assert isinstance(result.error, NotificationError)
        assert isinstance(result.error.__cause__, TransientFailure)
        assert len(await inquiries.list()) == 1

    @pytest.mark.asyncio
    async def test_default_config_client_stores_inquiry(self, tmp_path):
        config = deepMerge(DEFAULT_CONFIG, {
            'store': {'dbPath': str(tmp_path / 'catalog.db')},
            'storage': {'rootDir': str(tmp_path / 'objects')},
            'channel': {'uri': f"memory://inquiries-{uuid.uuid4().hex[:8]}"},
        })
        client = await CatalogClient.fromConfig(config, StaticSessionProvider('editor@example.com'))
        try:
            assert client.notifier is None

            result = await client.submitInquiry(visitor())

            assert result.status == InquiryStatus.PARTIAL
            assert isinstance(result.error, NotificationError)
            assert result.persisted
            stored = await client.listInquiries()
            assert [i.email for i in stored] == ['ana@example.com']
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_persist_failure_sends_nothing(self, store):
        notifier = RecordingNotifier()
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY), BrokenRepository(), notifier, RECIPIENTS)

        result = await pipeline.submitInquiry(visitor())

        assert result.status == InquiryStatus.FAILED
        assert not result.persisted
        assert isinstance(result.error, PersistentFailure)
        assert notifier.payloads == []
        assert result.fallback.body.startswith('Name: Ana')

    @pytest.mark.asyncio
    async def test_validation(self, store, inquiries):
        notifier = RecordingNotifier()
        pipeline = SubmissionPipeline(QueryExecutor(store, POLICY), inquiries, notifier)

        with pytest.raises(ValidationError) as excInfo:
            await pipeline.submitInquiry(visitor(name='', email='not-an-email', message=' '))

        assert set(excInfo.value.fields) == {'name', 'email', 'message'}
        assert await inquiries.list() == []
        assert notifier.payloads == []

    @pytest.mark.asyncio
    async def test_markRead_and_delete(self, inquiries):
        stored = await inquiries.insert(visitor())
        assert stored.read is False

        updated = await inquiries.markRead(stored.id)
        assert updated.read is True
        assert await inquiries.delete(stored.id) is True
        with pytest.raises(PersistentFailure):
            await inquiries.markRead(stored.id)


class TestFallback:

    def test_general_contact_without_property(self):
        fallback = composeFallback(visitor(propertyId=None, propertyTitle=None, contactType='general'), RECIPIENTS)

        assert fallback.subject == 'Inquiry (general)'
        assert 'Property:' not in fallback.body
        assert fallback.whatsappUrl is None
