"""
CatalogClient: wires stores, storage, channel and pipelines from configuration.

    client = await CatalogClient.fromConfig(config, StaticSessionProvider('editor@example.com'))

    view = client.createView()
    await view.mount()

    async with client.editRecord() as edit:
        edit.setFields(title='Loft', price=120000, zone='Centro')
        edit.addFile(UploadFile.fromPath('front.jpg'))
        await edit.uploads.waitIdle()
        record = await edit.save()

    await client.close()

With an empty store URL the client runs against an embedded SQLite store that
publishes its own change events on the configured channel.

Property of Uncompromising Sensors LLC.
"""

from typing import List, Optional

from sdk.logging import getLogger, setSessionContext
from sdk.transport import TransportBase, connectTransport

from .config import DEFAULT_CONFIG
from .core.changeBridge import ChangeNotificationBridge
from .core.editSession import EditSession, ImageRemoved, ImageUrlAdded
from .core.errors import ValidationError
from .core.filters import ListingFilter
from .core.inquiryStore import InquiryRepository, RestInquiryRepository, SqliteInquiryRepository
from .core.models import Inquiry, Record, RecordId, UploadFile, UploadTask
from .core.notifier import HttpNotifier, NotifierBase
from .core.objectStorage import LocalObjectStorage, ObjectStorageBase, RestObjectStorage
from .core.projection import Projection
from .core.propertyStore import PropertyStoreBase, RestPropertyStore, SqlitePropertyStore
from .core.queryExecutor import QueryExecutor, RetryPolicy
from .core.resources import SharedResources
from .core.submission import InquiryResult, SubmissionPipeline
from .core.uploadCoordinator import ObjectUploadCoordinator
from .core.viewSynchronizer import ViewSynchronizer


class StaticSessionProvider:
    """Session provider with a fixed identity; authenticated when an identity is given"""

    def __init__(self, identity: Optional[str] = None, authenticated: Optional[bool] = None):
        self.identity = identity
        self.isAuthenticated = bool(identity) if authenticated is None else authenticated


class RecordEdit:
    """One record being created or edited: draft state plus its uploads"""

    def __init__(self, client: 'CatalogClient', record: Optional[Record] = None):
        self.client = client
        self.session = EditSession(record)
        storageConfig = client.config['storage']
        self.uploads = ObjectUploadCoordinator(client.storage, self.session,
                                               prefix=storageConfig['prefix'],
                                               cacheControl=str(storageConfig['cacheControl']),
                                               maxBytes=int(storageConfig['maxUploadBytes']))

    def setFields(self, **values):
        return self.session.setFields(**values)

    def addFile(self, file: UploadFile) -> UploadTask:
        return self.uploads.submit(file)

    def addImageUrl(self, url: str):
        return self.session.dispatch(ImageUrlAdded(url))

    def removeImage(self, index: int):
        return self.session.dispatch(ImageRemoved(index))

    async def save(self) -> Record:
        return await self.client.saveRecord(self)

    async def close(self):
        await self.uploads.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class CatalogClient:

    def __init__(self, store: PropertyStoreBase, storage: ObjectStorageBase, channel: Optional[TransportBase],
                 inquiries: Optional[InquiryRepository] = None, notifier: Optional[NotifierBase] = None,
                 sessionProvider: Optional[StaticSessionProvider] = None, config: Optional[dict] = None,
                 resources: Optional[SharedResources] = None):
        self.log = getLogger()
        self.config = config or DEFAULT_CONFIG
        self.store = store
        self.storage = storage
        self.channel = channel
        self.inquiries = inquiries
        self.notifier = notifier
        self.sessionProvider = sessionProvider or StaticSessionProvider()
        self.resources = resources

        self.executor = QueryExecutor(store, RetryPolicy.fromConfig(self.config['readPolicy']),
                                      RetryPolicy.fromConfig(self.config['writePolicy']))
        inquiryConfig = self.config['inquiries']
        self.pipeline = SubmissionPipeline(self.executor, inquiries, notifier,
                                           fallbackRecipients=inquiryConfig.get('fallbackRecipients') or (),
                                           whatsappNumber=inquiryConfig.get('whatsappNumber'))

        setSessionContext(self.sessionProvider.identity, self.config['store']['table'])

    @classmethod
    async def fromConfig(cls, config: dict, sessionProvider: Optional[StaticSessionProvider] = None) -> 'CatalogClient':
        log = getLogger()
        resources = SharedResources()
        storeConfig = config['store']
        storageConfig = config['storage']
        inquiryConfig = config['inquiries']
        channelConfig = config['channel']

        channel = await connectTransport(channelConfig['uri'])

        storeUrl = storeConfig.get('url')
        apiKey = storeConfig.get('apiKey') or ''
        if storeUrl:
            store = RestPropertyStore(storeUrl, apiKey, table=storeConfig['table'], resources=resources)
            storage = RestObjectStorage(storeUrl, apiKey, bucket=storageConfig['bucket'], resources=resources)
            inquiries = RestInquiryRepository(storeUrl, apiKey, table=inquiryConfig['table'], resources=resources)
        else:
            store = SqlitePropertyStore(storeConfig['dbPath'], table=storeConfig['table'], publisher=channel,
                                        subjectPrefix=channelConfig['subjectPrefix'])
            storage = LocalObjectStorage(storageConfig['rootDir'], storageConfig['publicBaseUrl'])
            inquiries = SqliteInquiryRepository(storeConfig['dbPath'], table=inquiryConfig['table'])

        notifierUrl = inquiryConfig.get('notifierUrl') or storeUrl
        notifier = None
        if notifierUrl:
            notifier = HttpNotifier(notifierUrl, apiKey, functionName=inquiryConfig['function'], resources=resources)
        else:
            log.warning("No notification endpoint configured, inquiries will be stored with a manual fallback")

        log.info("Catalog client ready", store='rest' if storeUrl else 'sqlite', channelUri=channelConfig['uri'],
                 notifier=bool(notifier))
        return cls(store, storage, channel, inquiries, notifier, sessionProvider, config, resources)

    # ===== Session =====
    def _requireAuthenticated(self, operation: str):
        if not self.sessionProvider.isAuthenticated:
            self.log.warning("Unauthenticated write refused", operation=operation)
            raise ValidationError(f"{operation} requires an authenticated session", {'session': 'not authenticated'})

    # ===== Views =====
    def createView(self, pageSize: Optional[int] = None, projection: Optional[Projection] = None,
                   listingFilter: Optional[ListingFilter] = None) -> ViewSynchronizer:
        viewConfig = self.config['view']
        channelConfig = self.config['channel']
        bridge = None
        if self.channel is not None:
            bridge = ChangeNotificationBridge(self.channel, subjectPrefix=channelConfig['subjectPrefix'],
                                              windowMs=float(channelConfig['windowMs']))
        return ViewSynchronizer(self.executor, bridge, collectionName=self.config['store']['table'],
                                pageSize=pageSize or int(viewConfig['pageSize']),
                                projection=projection or Projection.named(viewConfig['projection']),
                                listingFilter=listingFilter)

    async def fetchRecord(self, recordId: RecordId, projection: Projection = Projection.FULL) -> Optional[Record]:
        return await self.executor.fetchRecord(recordId, projection)

    # ===== Records =====
    def editRecord(self, record: Optional[Record] = None) -> RecordEdit:
        self._requireAuthenticated('editRecord')
        return RecordEdit(self, record)

    async def saveRecord(self, edit: RecordEdit) -> Record:
        self._requireAuthenticated('saveRecord')
        return await self.pipeline.saveSession(edit.session, edit.uploads)

    async def deleteRecord(self, recordId: RecordId) -> bool:
        self._requireAuthenticated('deleteRecord')
        return await self.pipeline.deleteRecord(recordId)

    # ===== Inquiries =====
    async def submitInquiry(self, inquiry: Inquiry) -> InquiryResult:
        return await self.pipeline.submitInquiry(inquiry)

    async def listInquiries(self, limit: Optional[int] = None) -> List[Inquiry]:
        self._requireAuthenticated('listInquiries')
        return await self.executor.run(lambda: self.inquiries.list(limit), label='listInquiries')

    async def markInquiryRead(self, inquiryId: RecordId, read: bool = True) -> Inquiry:
        self._requireAuthenticated('markInquiryRead')
        return await self.executor.write(lambda: self.inquiries.markRead(inquiryId, read), label='markInquiryRead')

    async def deleteInquiry(self, inquiryId: RecordId) -> bool:
        self._requireAuthenticated('deleteInquiry')
        return await self.executor.write(lambda: self.inquiries.delete(inquiryId), label='deleteInquiry')

    # ===== Teardown =====
    async def close(self):
        await self.store.close()
        if self.inquiries is not None:
            await self.inquiries.close()
        if self.channel is not None:
            await self.channel.close()
        if self.resources is not None:
            await self.resources.close()
        self.log.info("Catalog client closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
