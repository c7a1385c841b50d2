"""
Catalog Core Package

QueryExecutor, ObjectUploadCoordinator, ChangeNotificationBridge,
ViewSynchronizer and SubmissionPipeline, plus the store, storage, channel
and notifier adapters they run against.

Invariants:
- Page contents reflect at most one snapshot per request token
- New images are appended in upload completion order
- Writes are attempted once; reads retry with exponential backoff
- A refetch never starts before the coalescing window closes
"""

from .errors import (
    CatalogError,
    ValidationError,
    TransientFailure,
    PersistentFailure,
    UploadError,
    NotificationError
)
from .models import (
    Record,
    RecordKind,
    Page,
    ChangeEvent,
    ChangeKind,
    Inquiry,
    UploadFile,
    UploadStatus,
    UploadTask,
    pageCount,
    pageItemCount
)
from .filters import ListingFilter
from .projection import Projection
from .queryExecutor import QueryExecutor, RetryPolicy, READ_POLICY, WRITE_POLICY
from .editSession import EditSession
from .uploadCoordinator import ObjectUploadCoordinator
from .changeBridge import ChangeNotificationBridge
from .viewSynchronizer import ViewSynchronizer, ViewState, LoadingState
from .submission import SubmissionPipeline, InquiryResult, InquiryStatus

__all__ = [
    'CatalogError', 'ValidationError', 'TransientFailure', 'PersistentFailure', 'UploadError', 'NotificationError',
    'Record', 'RecordKind', 'Page', 'ChangeEvent', 'ChangeKind', 'Inquiry',
    'UploadFile', 'UploadStatus', 'UploadTask', 'pageCount', 'pageItemCount',
    'ListingFilter', 'Projection', 'QueryExecutor', 'RetryPolicy', 'READ_POLICY', 'WRITE_POLICY',
    'EditSession', 'ObjectUploadCoordinator', 'ChangeNotificationBridge',
    'ViewSynchronizer', 'ViewState', 'LoadingState',
    'SubmissionPipeline', 'InquiryResult', 'InquiryStatus'
]
