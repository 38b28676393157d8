"""
Configuration loading and management for REST User Sync.

This module handles loading configuration from YAML files and environment variables,
resolution of ``${KEY}`` placeholders, validation and defaults.
"""

import os
import re
import yaml
import logging
from urllib.parse import urlparse
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

URL_MIN_LENGTH = 10
PREFIX_MIN_LENGTH = 2
SUPPORTED_HASH_ALGORITHMS = ['SHA256', 'PBKDF2-SHA256']
REQUIRED_ACTIONS = [
    'VERIFY_EMAIL',
    'UPDATE_PROFILE',
    'CONFIGURE_TOTP',
    'UPDATE_PASSWORD',
    'TERMS_AND_CONDITIONS',
]

# Federation values kept unresolved at load time
RAW_FEDERATION_KEYS = ('by_pass',)

PLACEHOLDER_PATTERN = re.compile(r'(\$?)\$\{([^}]+)\}')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class PlaceholderError(ConfigurationError):
    """Raised when a ``${KEY}`` placeholder cannot be resolved."""
    pass


def resolve_placeholders(value: Optional[str], environ: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    Replace ``${KEY}`` placeholders with values from the environment.

    ``$${KEY}`` is an escape and yields the literal ``${KEY}``.

    Args:
        value: String possibly containing placeholders
        environ: Mapping to resolve from (defaults to ``os.environ``)

    Returns:
        Resolved string, or the input unchanged if it is not a string

    Raises:
        PlaceholderError: If a referenced key is missing or blank
    """
    if not isinstance(value, str):
        return value

    env = os.environ if environ is None else environ

    def _replace(match):
        escape, key = match.group(1), match.group(2)
        if escape:
            return '${' + key + '}'
        resolved = env.get(key)
        if resolved is None or not resolved.strip():
            raise PlaceholderError(f"key {key} is not found in the env variables")
        return resolved

    return PLACEHOLDER_PATTERN.sub(_replace, value)


def parse_bool(value: Any) -> bool:
    """Interpret a configuration value as a boolean; only 'true' (any case) is true for strings."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() == 'true'


def parse_reset_actions(value: Optional[str]) -> List[str]:
    """Split a comma separated post-creation action list."""
    if not value or not str(value).strip():
        return []
    return [action.strip() for action in str(value).split(',') if action.strip()]


def evaluate_by_pass(raw_value: Optional[str], environ: Optional[Dict[str, str]] = None) -> bool:
    """
    Evaluate the by-pass expression.

    An unresolvable placeholder is logged and counts as an inactive by-pass.
    """
    if raw_value is None or raw_value == '':
        return False
    try:
        return parse_bool(resolve_placeholders(str(raw_value), environ))
    except PlaceholderError:
        logger.warning(f"By pass parameter '{re.sub(r'[${}]', '', str(raw_value))}' not exists.")
        return False


def proxy_from_environment() -> Optional[Dict[str, Any]]:
    """Proxy host and port from HTTPS_PROXY/HTTP_PROXY, if set."""
    for env_var in ('HTTPS_PROXY', 'https_proxy', 'HTTP_PROXY', 'http_proxy'):
        value = os.getenv(env_var)
        if value:
            parsed = urlparse(value if '://' in value else f'http://{value}')
            if parsed.hostname:
                return {'host': parsed.hostname, 'port': parsed.port or 8080}
    return None


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.auth.password': 'DIRECTORY_PASSWORD',
        'directory.auth.token': 'DIRECTORY_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'notifications.action_token_secret': 'ACTION_TOKEN_SECRET',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._resolve_federation_placeholders()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _resolve_federation_placeholders(self):
        """Resolve ``${KEY}`` placeholders in federation settings."""
        federation = self.config.get('federation') or {}
        errors = []
        for key, value in federation.items():
            if key in RAW_FEDERATION_KEYS or not isinstance(value, str):
                continue
            try:
                federation[key] = resolve_placeholders(value)
            except PlaceholderError as e:
                errors.append(f"federation.{key}: {e}")
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        federation = self.config.get('federation')
        if not federation:
            raise ConfigurationError("Configuration validation failed:\n  - Missing federation section")

        url = federation.get('url')
        if not url:
            errors.append("Missing required federation field: url")
        elif len(str(url)) < URL_MIN_LENGTH:
            errors.append("Please check the url.")

        public_url = federation.get('public_url')
        if public_url is not None and len(str(public_url)) < URL_MIN_LENGTH:
            errors.append("Please check the public url. ex: https://xxx/auth")

        # Role/attribute sync default to enabled
        role_sync = parse_bool(federation.get('role_sync', True))
        attr_sync = parse_bool(federation.get('attr_sync', True))
        prefix = federation.get('prefix')
        if role_sync or attr_sync:
            if prefix is None:
                errors.append("Please define prefix.")
            elif len(str(prefix)) < PREFIX_MIN_LENGTH:
                errors.append("Please check prefix size.")

        if parse_bool(federation.get('proxy_enabled', False)):
            directory = self.config.get('directory') or {}
            if not directory.get('proxy_host') and not proxy_from_environment():
                errors.append("Please check 'proxy_host' setting or HTTPS_PROXY/HTTP_PROXY environment.")

        if parse_bool(federation.get('password_sync', False)):
            algorithm = federation.get('password_hash_algorithm', 'SHA256')
            if not algorithm:
                errors.append(f"Please select algorithm for hashing password: {','.join(SUPPORTED_HASH_ALGORITHMS)} .")
            elif str(algorithm).upper() not in SUPPORTED_HASH_ALGORITHMS:
                errors.append(f"Not supported algorithm or syntax error ({algorithm}).")
            try:
                int(federation.get('password_hash_iteration', 500000))
            except (TypeError, ValueError):
                errors.append("Please insert an integer for password_hash_iteration.")

        not_found = [
            action for action in parse_reset_actions(federation.get('reset_action'))
            if action not in REQUIRED_ACTIONS and '.ftl' not in action
        ]
        if not_found:
            errors.append(f"Please check actions: {', '.join(not_found)}")

        by_pass = federation.get('by_pass')
        if by_pass:
            try:
                resolve_placeholders(str(by_pass))
            except PlaceholderError:
                errors.append(f"By pass parameter '{re.sub(r'[${}]', '', str(by_pass))}' not exists.")

        store = self.config.get('store') or {}
        store_type = store.get('type', 'memory')
        if store_type not in ('memory', 'yaml'):
            errors.append(f"Unknown store type: {store_type}")
        if store_type == 'yaml' and not store.get('path'):
            errors.append("Missing store.path for yaml store")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        federation_defaults = {
            'name': 'rest-user-federation',
            'proxy_enabled': False,
            'prefix': '',
            'uppercase': True,
            'role_sync': True,
            'role_client_sync': '',
            'attr_sync': True,
            'password_sync': False,
            'password_hash_algorithm': 'SHA256',
            'password_hash_iteration': 500000,
            'uncheck_federation': False,
            'not_create_users': False,
            'reset_action': '',
            'by_pass': None,
            'public_url': None,
        }
        federation = self.config.setdefault('federation', {})
        for key, value in federation_defaults.items():
            federation.setdefault(key, value)
        federation.setdefault('id', federation['name'])

        directory_defaults = {
            'auth': {},
            'verify_ssl': True,
            'timeout': 30,
            'proxy_port': 8080,
        }
        directory = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory.setdefault(key, value)

        store_defaults = {
            'type': 'memory',
            'realm': 'master',
            'clients': [],
        }
        store = self.config.setdefault('store', {})
        for key, value in store_defaults.items():
            store.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'audit_file': True
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True,
            'templates_dir': 'templates',
            'action_token_lifespan': 43200,
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)

        scheduler_defaults = {
            'full_sync_period': 86400,
            'changed_sync_period': 900,
        }
        scheduler_config = self.config.setdefault('scheduler', {})
        for key, value in scheduler_defaults.items():
            scheduler_config.setdefault(key, value)


def build_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the flat federation settings consumed by the sync engine.

    Args:
        config: Loaded configuration dictionary

    Returns:
        Settings dictionary with typed values
    """
    federation = config.get('federation', {})
    password_sync = parse_bool(federation.get('password_sync', False))

    algorithm = ''
    iterations = 0
    if password_sync:
        algorithm = str(federation.get('password_hash_algorithm') or 'SHA256').lower()
        iterations = int(federation.get('password_hash_iteration') or 0)

    return {
        'id': federation.get('id') or federation.get('name'),
        'name': federation.get('name'),
        'url': federation.get('url'),
        'proxy_enabled': parse_bool(federation.get('proxy_enabled', False)),
        'prefix': federation.get('prefix') or '',
        'uppercase': parse_bool(federation.get('uppercase', True)),
        'role_sync': parse_bool(federation.get('role_sync', True)),
        'role_client': federation.get('role_client_sync') or '',
        'attr_sync': parse_bool(federation.get('attr_sync', True)),
        'password_sync': password_sync,
        'password_algorithm': algorithm,
        'password_iterations': iterations,
        'uncheck_federation': parse_bool(federation.get('uncheck_federation', False)),
        'not_create_users': parse_bool(federation.get('not_create_users', False)),
        'reset_actions': parse_reset_actions(federation.get('reset_action')),
        'by_pass': federation.get('by_pass'),
        'public_url': federation.get('public_url'),
    }


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
