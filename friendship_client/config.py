"""
Configuration Management for the Friendship session client.

This module handles client configuration (server URL, request limits,
refresh timing, credential storage, logging) with support for an INI
configuration file and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from configparser import ConfigParser

from friendship_client.api_client import (
    DEFAULT_PUBLIC_ENDPOINTS, DEFAULT_MAX_CONCURRENT_REQUESTS, DEFAULT_TIMEOUT,
    DEFAULT_REFRESH_PATH, DEFAULT_LOGIN_PATH
)
from friendship_client.auth.refresh_scheduler import DEFAULT_SAFETY_MARGIN, DEFAULT_MINIMUM_DELAY
from friendship_client.auth.token_storage import DEFAULT_SERVICE_NAME
from friendship_shared.exceptions import ConfigurationError, ErrorCode
from friendship_shared.interfaces import IConfigurationManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_TEMPLATE = """# Friendship Client Configuration
# Configuration file: {config_path}

[server]
# Backend base URL
url = http://localhost:8080/api

# Per-request timeout in seconds
timeout = 10

[auth]
# Maximum number of requests in flight at once
max_concurrent_requests = 50

# Refresh this many seconds before the access token expires
refresh_safety_margin = 120

# Never schedule a proactive refresh sooner than this many seconds
refresh_minimum_delay = 30

[storage]
# Credential storage backend: auto, keyring, file, memory
backend = auto

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = WARNING
"""


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the Friendship client.

    Supports configuration from:
    1. Overrides set at runtime, e.g. from command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating a default file if needed."""
        config_dir = Path.home() / '.friendship'
        config_dir.mkdir(parents=True, exist_ok=True)
        user_config_path = str(config_dir / 'client.conf')

        if not os.path.exists(user_config_path):
            self._create_default_config(user_config_path)

        return user_config_path

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        try:
            with open(config_path, 'w') as f:
                f.write(DEFAULT_CONFIG_TEMPLATE.format(config_path=config_path))

            logger.info(f"Created default configuration file: {config_path}")

        except OSError as e:
            logger.error(f"Failed to create default configuration: {e}")
            raise

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()

        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # JSON for numbers, booleans and lists; plain string otherwise
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'FRIENDSHIP_SERVER_URL': ('server', 'url'),
            'FRIENDSHIP_TIMEOUT': ('server', 'timeout'),
            'FRIENDSHIP_MAX_CONCURRENT_REQUESTS': ('auth', 'max_concurrent_requests'),
            'FRIENDSHIP_REFRESH_SAFETY_MARGIN': ('auth', 'refresh_safety_margin'),
            'FRIENDSHIP_REFRESH_MINIMUM_DELAY': ('auth', 'refresh_minimum_delay'),
            'FRIENDSHIP_STORAGE_BACKEND': ('storage', 'backend'),
            'FRIENDSHIP_STORAGE_PATH': ('storage', 'path'),
            'FRIENDSHIP_LOG_LEVEL': ('logging', 'level'),
            'FRIENDSHIP_LOG_FILE': ('logging', 'file'),
            'FRIENDSHIP_LOG_FORMAT': ('logging', 'format'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in self._config_data:
                    self._config_data[section] = {}

                if value.lower() in ('true', 'false'):
                    self._config_data[section][key] = value.lower() == 'true'
                elif value.isdigit():
                    self._config_data[section][key] = int(value)
                else:
                    self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': 'http://localhost:8080/api',
                'timeout': DEFAULT_TIMEOUT
            },
            'auth': {
                'max_concurrent_requests': DEFAULT_MAX_CONCURRENT_REQUESTS,
                'refresh_safety_margin': DEFAULT_SAFETY_MARGIN,
                'refresh_minimum_delay': DEFAULT_MINIMUM_DELAY,
                'refresh_path': DEFAULT_REFRESH_PATH,
                'login_path': DEFAULT_LOGIN_PATH,
                'public_endpoints': list(DEFAULT_PUBLIC_ENDPOINTS)
            },
            'storage': {
                'backend': 'auto',
                'service_name': DEFAULT_SERVICE_NAME,
                'path': None
            },
            'logging': {
                'level': 'WARNING',
                'file': None,
                'format': 'standard',
                'audit_file': None
            }
        }

        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_server_url(self) -> str:
        """Get server URL."""
        return self._overrides.get('server_url') or self._config_data['server']['url']

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key ('server_url' or any 'section.key')
            value: Override value
        """
        self._overrides[key] = value

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return self._config_data.copy()

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def _get_number(self, key: str, cast, minimum: float) -> Any:
        value = self.get_config(key)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid value for {key}: {value!r}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        if number < minimum:
            raise ConfigurationError(
                f"{key} must be at least {minimum}, got {number}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        return number

    # Convenience methods for common configuration values

    def get_server_timeout(self) -> float:
        """Get per-request timeout in seconds."""
        return self._get_number('server.timeout', float, 0.1)

    def get_max_concurrent_requests(self) -> int:
        return self._get_number('auth.max_concurrent_requests', int, 1)

    def get_refresh_safety_margin(self) -> float:
        return self._get_number('auth.refresh_safety_margin', float, 0)

    def get_refresh_minimum_delay(self) -> float:
        return self._get_number('auth.refresh_minimum_delay', float, 0)

    def get_refresh_path(self) -> str:
        return self.get_config('auth.refresh_path', DEFAULT_REFRESH_PATH)

    def get_login_path(self) -> str:
        return self.get_config('auth.login_path', DEFAULT_LOGIN_PATH)

    def get_public_endpoints(self) -> List[str]:
        """Get the paths that never carry credentials."""
        endpoints = self.get_config('auth.public_endpoints', list(DEFAULT_PUBLIC_ENDPOINTS))
        if isinstance(endpoints, str):
            endpoints = [p.strip() for p in endpoints.split(',') if p.strip()]
        if not isinstance(endpoints, list) or not all(isinstance(p, str) for p in endpoints):
            raise ConfigurationError(
                "auth.public_endpoints must be a list of paths",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                config_key='auth.public_endpoints'
            )
        return endpoints

    def get_storage_backend(self) -> str:
        return str(self.get_config('storage.backend', 'auto'))

    def get_storage_service_name(self) -> str:
        return str(self.get_config('storage.service_name', DEFAULT_SERVICE_NAME))

    def get_storage_path(self) -> Optional[str]:
        return self.get_config('storage.path')

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'WARNING')).upper()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
