"""
Hierarchical structured logger for catalog-sync.

Features:
- Logger name auto-detected from the caller (module + class), computed once
- Structured fields passed as keyword arguments: log.info("Saved", recordId=7)
- Optional rotating file output, enabled only when a log directory is configured
- Console output on by default
- Optional JSON-lines file output (one orjson object per record) for log shippers

Usage:
    from sdk.logging import getLogger

    class ViewSynchronizer:
        def __init__(self):
            self.log = getLogger()  # Auto: 'catalog.core.viewSynchronizer.ViewSynchronizer'

        def goToPage(self, pageNumber):
            self.log.info("Page change", pageNumber=pageNumber)

Property of Uncompromising Sensors LLC.
"""

# Imports
import inspect, logging, logging.handlers, os, socket
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone as tz

import orjson

from .context import SessionContextFilter


# Global state
_hostname = socket.gethostname()
_configured = False
_fileHandlers = {}  # logPath -> handler
_config = {
    'logDir': None,
    'maxBytes': 10_000_000,
    'backupCount': 5,
    'console': True,
    'level': logging.INFO,
    'utc': False,
    'fileFormat': 'text'
}

# Attributes every LogRecord carries; anything else is a structured field
_RESERVED_FIELDS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName',
    'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'hostname', 'asctime', 'taskName'
}


def configureLogging(logDir: Optional[str] = None, maxBytes: int = 10_000_000,
                     backupCount: int = 5, console: bool = True,
                     level: str = 'INFO', utc: bool = False, fileFormat: str = 'text'):
    """
    Configure global logging settings (call once at app startup).

    Args:
        logDir: Directory for rotating log files. Falls back to CATALOG_LOG_DIR;
                when neither is set no file output is produced.
        maxBytes: Maximum size per log file before rotation
        backupCount: Number of rotated files kept per app
        console: Also log to console
        level: Minimum log level name
        utc: Use UTC timestamps
        fileFormat: 'text' or 'json' (one JSON object per line)
    """
    global _configured

    logDir = logDir or os.environ.get('CATALOG_LOG_DIR') or None
    _config.update({'logDir': logDir, 'maxBytes': maxBytes, 'backupCount': backupCount,
                    'console': console, 'level': getattr(logging, level.upper(), logging.INFO), 'utc': utc,
                    'fileFormat': fileFormat})

    if logDir:
        Path(logDir).mkdir(parents=True, exist_ok=True)

    # Re-apply level to loggers already handed out
    for name, logger in logging.Logger.manager.loggerDict.items():
        if isinstance(logger, logging.Logger) and getattr(logger, '_configured_by_sdk', False):
            logger.setLevel(_config['level'])
            for handler in logger.handlers:
                handler.setLevel(_config['level'])

    _configured = True


def _autoDetectName() -> str:
    """Build a logger name like 'catalog.core.uploadCoordinator.ObjectUploadCoordinator' from the call stack."""

    frame = inspect.currentframe()
    try:
        current = frame
        while current is not None:
            current = current.f_back
            if current is None:
                break

            module = inspect.getmodule(current)
            if module is None:
                continue

            moduleName = module.__name__

            # Skip this package and the import machinery
            if moduleName.startswith('sdk.logging'):
                continue
            if moduleName.startswith('importlib') or moduleName == '__main__':
                continue

            parts = moduleName.split('.')
            if parts and parts[0] == 'sdk':
                parts = parts[1:]

            className = None
            if current.f_locals:
                if 'self' in current.f_locals:
                    className = current.f_locals['self'].__class__.__name__
                elif 'cls' in current.f_locals:
                    className = current.f_locals['cls'].__name__

            hierarchy = '.'.join(parts) if parts else 'unknown'
            if className:
                hierarchy = f"{hierarchy}.{className}"

            return hierarchy
        return 'unknown'
    finally:
        del frame


class StructuredFormatter(logging.Formatter):
    """Format: timestamp - hostname - logger.name - level - message [field1=value1, field2=value2]"""

    def __init__(self, fmt=None, datefmt=None, utc=False):
        super().__init__(fmt, datefmt)
        self.utc = utc

    def formatTime(self, record, datefmt=None):
        if self.utc:
            ct = datetime.fromtimestamp(record.created, tz=tz.utc)
        else:
            ct = datetime.fromtimestamp(record.created)

        if datefmt:
            return ct.strftime(datefmt)
        return f"{ct.strftime('%Y-%m-%d %H:%M:%S')},{int(record.msecs):03d}"

    def format(self, record):
        record.hostname = _hostname

        structuredFields = [f"{key}={value}" for key, value in record.__dict__.items()
                            if key not in _RESERVED_FIELDS and not key.startswith('_')]

        # Keep record.msg intact for other handlers
        originalMsg = record.msg
        if structuredFields:
            record.msg = f"{originalMsg} [{', '.join(structuredFields)}]"
        try:
            return super().format(record)
        finally:
            record.msg = originalMsg


class JsonLinesFormatter(StructuredFormatter):
    """One JSON object per record: ts, host, logger, level, msg, then the structured fields"""

    def format(self, record):
        entry = {
            'ts': self.formatTime(record),
            'host': _hostname,
            'logger': record.name,
            'level': record.levelname,
            'msg': record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_FIELDS and not key.startswith('_'):
                entry[key] = value
        if record.exc_info:
            entry['exc'] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode()


def getLogger(name: Optional[str] = None, separateFile: bool = False) -> logging.Logger:
    """
    Get or create a logger with automatic hierarchy detection.

    Stack inspection happens once per call; keep the returned logger on the
    instance or at module level.

    Args:
        name: Logger name (auto-detected from call stack if None)
        separateFile: Write to '<name>.log' instead of the top-level app log

    Returns:
        logging.Logger whose level methods accept structured fields as **kwargs
    """
    if not _configured:
        configureLogging()

    if name is None:
        name = _autoDetectName()

    logger = logging.getLogger(name)
    logger.propagate = False

    if not logger.handlers and not hasattr(logger, '_configured_by_sdk'):
        logger.setLevel(_config['level'])

        if _config['logDir']:
            logFilename = f"{name}.log" if separateFile else f"{name.split('.')[0]}.log"
            logPath = str(Path(_config['logDir']) / logFilename)

            if logPath not in _fileHandlers:
                fileHandler = logging.handlers.RotatingFileHandler(
                    logPath,
                    maxBytes=_config['maxBytes'],
                    backupCount=_config['backupCount'],
                    encoding='utf-8'
                )
                fileHandler.setLevel(_config['level'])
                fileHandler.addFilter(SessionContextFilter())
                if _config['fileFormat'] == 'json':
                    fileHandler.setFormatter(JsonLinesFormatter(utc=_config['utc']))
                else:
                    fileHandler.setFormatter(StructuredFormatter(
                        '%(asctime)s - %(hostname)s - %(name)s - %(levelname)s - %(message)s',
                        utc=_config['utc']
                    ))
                _fileHandlers[logPath] = fileHandler

            logger.addHandler(_fileHandlers[logPath])

        if _config['console']:
            consoleHandler = logging.StreamHandler()
            consoleHandler.setLevel(_config['level'])
            consoleHandler.addFilter(SessionContextFilter())
            consoleHandler.setFormatter(StructuredFormatter('%(name)s - %(levelname)s - %(message)s', utc=_config['utc']))
            logger.addHandler(consoleHandler)

        logger._configured_by_sdk = True

    return _wrapLogger(logger)


def _wrapLogger(logger: logging.Logger) -> logging.Logger:
    """
    Let level methods take structured fields directly.

    log.info("Message", field1=value1) instead of log.info("Message", extra={'field1': value1})
    """
    if hasattr(logger, '_is_wrapped'):
        return logger

    def _wrap(original):
        def method(msg, *args, **kwargs):
            excInfo = kwargs.pop('exc_info', False)
            if kwargs:
                original(msg, *args, extra=kwargs, exc_info=excInfo)
            else:
                original(msg, *args, exc_info=excInfo)
        return method

    logger.debug = _wrap(logger.debug)
    logger.info = _wrap(logger.info)
    logger.warning = _wrap(logger.warning)
    logger.error = _wrap(logger.error)
    logger.critical = _wrap(logger.critical)
    logger._is_wrapped = True

    return logger
