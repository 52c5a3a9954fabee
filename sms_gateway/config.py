"""
UART SMS Gateway - Configuration
Flat options file (JSON, or YAML by extension) merged over defaults

Licensed under Apache License 2.0
"""

import json
import logging
import os
import secrets
from typing import Any, Dict, Optional

import yaml

from .const import (
    DEFAULT_SCHEDULER_CHECK_HOUR,
    RECONNECT_MAX_DELAY,
    RECONNECT_MIN_DELAY,
    SEND_CONFIRM_TIMEOUT,
    STATUS_CACHE_TTL,
    STATUS_REFRESH_INTERVAL,
)
from .models import as_bool
from .storage import DEFAULT_MAX_MESSAGES

CONFIG_ENV = 'SMS_GATEWAY_CONFIG'
DEFAULT_CONFIG_PATH = '/data/options.json'

DEFAULTS: Dict[str, Any] = {
    'serial_port': '',
    'host': '0.0.0.0',
    'port': 5000,
    'ssl': False,
    'api_token': '',
    'data_dir': '/data',
    'log_level': 'info',
    'status_refresh_interval': STATUS_REFRESH_INTERVAL,
    'status_cache_ttl': STATUS_CACHE_TTL,
    'reconnect_min_delay': RECONNECT_MIN_DELAY,
    'reconnect_max_delay': RECONNECT_MAX_DELAY,
    'send_confirm_timeout': SEND_CONFIRM_TIMEOUT,
    'max_messages': DEFAULT_MAX_MESSAGES,
    'scheduler_enabled': True,
    'scheduler_check_hour': DEFAULT_SCHEDULER_CHECK_HOUR,
    'notification_channels': [],
}

_NUMERIC = {
    'port': int,
    'status_refresh_interval': float,
    'status_cache_ttl': float,
    'reconnect_min_delay': float,
    'reconnect_max_delay': float,
    'send_confirm_timeout': float,
    'max_messages': int,
    'scheduler_check_hour': int,
}

_BOOLEAN = ('ssl', 'scheduler_enabled')


class ConfigError(ValueError):
    """Options file is unreadable or holds invalid values"""


def config_path() -> str:
    return os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the options file over DEFAULTS. A missing file yields the defaults."""
    path = path or config_path()
    config = dict(DEFAULTS)

    if os.path.exists(path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                if path.endswith(('.yaml', '.yml')):
                    options = yaml.safe_load(f) or {}
                else:
                    options = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        if not isinstance(options, dict):
            raise ConfigError(f"Config {path} must contain a mapping")
        config.update(options)
    else:
        logging.info(f"Config {path} not found, using defaults")

    for key, kind in _NUMERIC.items():
        try:
            config[key] = kind(config[key])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {config[key]!r}") from e
    for key in _BOOLEAN:
        config[key] = as_bool(config[key])

    if config['log_level'] not in ('debug', 'info', 'warning'):
        config['log_level'] = 'info'
    if not 0 <= config['scheduler_check_hour'] <= 23:
        raise ConfigError("scheduler_check_hour must be between 0 and 23")
    if config['reconnect_min_delay'] <= 0 or config['reconnect_max_delay'] < config['reconnect_min_delay']:
        raise ConfigError("reconnect delays must satisfy 0 < reconnect_min_delay <= reconnect_max_delay")
    if not isinstance(config['notification_channels'], list):
        raise ConfigError("notification_channels must be a list")

    return config


def ensure_api_token(config: Dict[str, Any]) -> bool:
    """Generate an API token when none is configured. Returns True if one was generated."""
    if config.get('api_token'):
        return False
    config['api_token'] = secrets.token_urlsafe(32)
    return True
