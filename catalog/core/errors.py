"""
Catalog error taxonomy.

- ValidationError: local precondition failure, raised before any network call
- TransientFailure: network/timeout failure, retried on reads only
- PersistentFailure: remote rejected the operation outright, never retried
- UploadError: per-file upload failure, never aborts sibling uploads
- NotificationError: notification step failed after a successful persist

Property of Uncompromising Sensors LLC.
"""

from typing import Dict, Optional


class CatalogError(Exception):
    """Base class for all catalog errors"""
    pass


class ValidationError(CatalogError):
    """Local precondition failure. `fields` maps field name -> message."""

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}


class TransientFailure(CatalogError):
    """Network or timeout failure. `attempts` is how many attempts were made."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class PersistentFailure(CatalogError):
    """Remote store rejected the operation (constraint violation, bad request, auth)"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UploadError(CatalogError):
    """Upload of a single file failed or was refused during pre-flight"""

    def __init__(self, message: str, fileName: Optional[str] = None):
        super().__init__(message)
        self.fileName = fileName


class NotificationError(CatalogError):
    """Notification endpoint failed or answered with an error"""
    pass
