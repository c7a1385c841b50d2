"""
catalog-sync configuration.

JSON file deep-merged over DEFAULT_CONFIG, then environment overrides:
    CATALOG_STORE_URL     -> store.url (empty = embedded SQLite store)
    CATALOG_API_KEY       -> store.apiKey
    CATALOG_CHANNEL_URI   -> channel.uri
    CATALOG_NOTIFIER_URL  -> inquiries.notifierUrl
    CATALOG_LOG_LEVEL     -> logging.level
    CATALOG_LOG_DIR       -> logging.logDir

A missing or invalid file falls back to the defaults and says so.

Property of Uncompromising Sensors LLC.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import orjson


DEFAULT_CONFIG: Dict[str, Any] = {
    'configVersion': '1.0',
    'store': {
        'url': '',
        'apiKey': '',
        'table': 'properties',
        'dbPath': './data/catalog.db',
    },
    'storage': {
        'bucket': 'property-images',
        'prefix': 'properties',
        'rootDir': './data/objects',
        'publicBaseUrl': 'http://localhost:8000/objects',
        'cacheControl': '31536000',
        'maxUploadBytes': 5 * 1024 * 1024,
    },
    'inquiries': {
        'table': 'contacts',
        'notifierUrl': '',
        'function': 'send-inquiry-email',
        'fallbackRecipients': [],
        'whatsappNumber': None,
    },
    'channel': {
        'uri': 'memory://catalog',
        'subjectPrefix': 'catalog.changes',
        'windowMs': 50,
    },
    'view': {
        'pageSize': 12,
        'projection': 'card',
    },
    'readPolicy': {'retries': 3, 'backoffBaseMs': 1000, 'timeoutMs': 10000},
    'writePolicy': {'retries': 0, 'backoffBaseMs': 0, 'timeoutMs': 10000},
    'logging': {
        'level': 'INFO',
        'logDir': None,
        'console': True,
        'fileFormat': 'text',
    },
}

_ENV_OVERRIDES = {
    'CATALOG_STORE_URL': ('store', 'url'),
    'CATALOG_API_KEY': ('store', 'apiKey'),
    'CATALOG_CHANNEL_URI': ('channel', 'uri'),
    'CATALOG_NOTIFIER_URL': ('inquiries', 'notifierUrl'),
    'CATALOG_LOG_LEVEL': ('logging', 'level'),
    'CATALOG_LOG_DIR': ('logging', 'logDir'),
}


def deepMerge(base: dict, override: dict) -> dict:
    """New dict: `override` merged into `base`, recursing into nested dicts"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deepMerge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def applyEnvOverrides(config: dict, environ: Optional[Dict[str, str]] = None) -> dict:
    environ = os.environ if environ is None else environ
    for variable, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            config.setdefault(section, {})[key] = value
    return config


def validateConfig(config: dict) -> None:
    if not isinstance(config, dict):
        raise ValueError('config is not a JSON object')
    pageSize = config['view'].get('pageSize')
    if not isinstance(pageSize, int) or pageSize <= 0:
        raise ValueError(f"view.pageSize must be a positive integer, got {pageSize!r}")
    for section in ('readPolicy', 'writePolicy'):
        policy = config[section]
        if int(policy.get('retries', 0)) < 0 or float(policy.get('timeoutMs', 0)) <= 0:
            raise ValueError(f"{section} needs retries >= 0 and timeoutMs > 0")
    if float(config['channel'].get('windowMs', 0)) < 0:
        raise ValueError("channel.windowMs must be >= 0")
    if not urlparse(config['channel'].get('uri') or '').scheme:
        raise ValueError("channel.uri must include a scheme (memory://, nats://)")


def loadConfig(path: Optional[str] = None, log: Optional[object] = None,
               environ: Optional[Dict[str, str]] = None) -> Tuple[dict, bool]:
    """
    Load configuration.

    Returns:
        (config, usedDefaults) - usedDefaults is True when the file was
        missing or invalid and DEFAULT_CONFIG was used instead
    """
    usedDefaults = False
    fileConfig: dict = {}

    if path is not None:
        configPath = Path(path)
        try:
            fileConfig = orjson.loads(configPath.read_bytes())
            merged = deepMerge(DEFAULT_CONFIG, fileConfig)
            validateConfig(merged)
            if log:
                log.info('Loaded configuration', configPath=str(configPath),
                         configVersion=merged.get('configVersion'))
        except (OSError, ValueError, TypeError, AttributeError, KeyError) as exc:
            if log:
                log.error('Failed to load configuration', configPath=str(configPath),
                          errorClass=type(exc).__name__, errorMsg=str(exc))
                log.warning('Using default configuration', configVersion=DEFAULT_CONFIG['configVersion'])
            fileConfig = {}
            usedDefaults = True
    else:
        usedDefaults = True

    config = applyEnvOverrides(deepMerge(DEFAULT_CONFIG, fileConfig), environ)
    validateConfig(config)
    return config, usedDefaults
