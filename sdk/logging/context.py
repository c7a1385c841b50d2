"""
Logging Session Context

Tags every log record with the identity of the current catalog session
(who is editing, which collection is being viewed). Values live in
context variables so concurrent asyncio tasks each see their own.

Property of Uncompromising Sensors LLC.
"""

import logging
from typing import Optional
from contextvars import ContextVar

_identity: ContextVar[Optional[str]] = ContextVar('identity', default=None)
_collection: ContextVar[Optional[str]] = ContextVar('collection', default=None)


class SessionContextFilter(logging.Filter):
    """Logging filter that adds session context to log records"""

    def filter(self, record):
        identity = _identity.get()
        collection = _collection.get()

        if identity:
            record.identity = identity
        if collection:
            record.collection = collection

        return True


def setSessionContext(identity: Optional[str], collection: Optional[str] = None):
    """
    Set session-level context for logging

    Args:
        identity: Authenticated identity from the session provider (None for anonymous)
        collection: Collection the session works against (optional)
    """
    _identity.set(identity)
    if collection:
        _collection.set(collection)


def getSessionContext() -> dict:
    """Get current session context"""
    return {
        'identity': _identity.get(),
        'collection': _collection.get()
    }


def clearSessionContext():
    """Clear session context"""
    _identity.set(None)
    _collection.set(None)


def installSessionContextFilter(logger: Optional[logging.Logger] = None):
    """
    Install the session context filter on every handler of `logger`
    (or of all sdk-configured loggers when omitted).

    Handler-level filters are used because sdk loggers do not propagate.
    """
    if logger is not None:
        loggers = [logger]
    else:
        loggers = [lg for lg in logging.Logger.manager.loggerDict.values()
                   if isinstance(lg, logging.Logger) and getattr(lg, '_configured_by_sdk', False)]

    for lg in loggers:
        for handler in lg.handlers:
            if not any(isinstance(f, SessionContextFilter) for f in handler.filters):
                handler.addFilter(SessionContextFilter())
