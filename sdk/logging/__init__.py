"""
SDK Logging - hierarchical structured logger with automatic name detection.

API:
    from sdk.logging import getLogger

    # Class-level (auto-detect once in __init__)
    class ObjectUploadCoordinator:
        def __init__(self):
            self.log = getLogger()  # Auto: 'catalog.core.uploadCoordinator.ObjectUploadCoordinator'

        def submit(self, file):
            self.log.info("Upload accepted", fileName=file.name)

    # Module-level (auto-detect once at import)
    log = getLogger()

    # Global configuration (once at app startup)
    from sdk.logging import configureLogging
    configureLogging(logDir='./logs', level='DEBUG')
"""

from .logger import getLogger, configureLogging
from .context import (
    setSessionContext,
    getSessionContext,
    clearSessionContext,
    installSessionContextFilter
)

__all__ = [
    'getLogger',
    'configureLogging',
    'setSessionContext',
    'getSessionContext',
    'clearSessionContext',
    'installSessionContextFilter'
]
