"""
Configuration loading and management for Directory Sync.

Reads the YAML configuration, takes secrets from the environment, reports
every validation problem at once and fills in defaults. Durations may be
written as seconds or as strings such as ``30s`` or ``1h30m``.
"""

import os
import copy
import re
import yaml
import logging
from datetime import timedelta
from typing import Dict, Any, List, Optional, Union

logger = logging.getLogger(__name__)

DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def parse_duration(value: Union[None, int, float, str, timedelta]) -> timedelta:
    """
    Parse a duration given as seconds or as a string like ``30s``, ``10m``, ``1h30m`` or ``2d``.

    Empty values mean zero.

    Raises:
        ConfigurationError: If the value can't be parsed or is negative
    """
    if value is None or value == '':
        return timedelta(0)
    if isinstance(value, timedelta):
        result = value
    elif isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        result = timedelta(seconds=value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if re.fullmatch(r'\d+(?:\.\d+)?', text):
            result = timedelta(seconds=float(text))
        else:
            position = 0
            seconds = 0.0
            for match in DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
                position = match.end()
            if position == 0 or position != len(text):
                raise ConfigurationError(f"Invalid duration: {value!r}")
            result = timedelta(seconds=seconds)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if result < timedelta(0):
        raise ConfigurationError(f"Duration must not be negative: {value!r}")
    return result


class ConfigLoader:
    """Loads, validates and completes the application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    SOURCE_SECTIONS = ('azure', 'ldap')

    DEFAULTS = {
        'app': {
            'sync_interval': None,
            'username_replacements': [],
            'groupname_replacements': [],
            'remove_limit': 10,
            'ban_before_remove_duration': 0,
        },
        'ytsaurus': {
            'secret_env_var': 'YT_TOKEN',
            'apply_user_changes': False,
            'apply_group_changes': False,
            'apply_member_changes': False,
            'timeout': 30,
            'source_attribute_name': 'source',
            'debug_usernames': [],
            'debug_groupnames': [],
            'verify_ssl': True,
        },
        'azure': {
            'client_secret_env_var': 'AZURE_CLIENT_SECRET',
            'users_filter': '',
            'groups_filter': '',
            'timeout': 30,
            'debug_azure_ids': [],
        },
        'ldap': {
            'bind_password_env_var': 'LDAP_BIND_PASSWORD',
            'page_size': 1000,
        },
        'ldap.users': {
            'filter': '(objectClass=posixAccount)',
            'username_attribute_type': 'uid',
            'uid_attribute_type': 'uidNumber',
        },
        'ldap.groups': {
            'filter': '(objectClass=posixGroup)',
            'groupname_attribute_type': 'cn',
            'member_uid_attribute_type': 'memberUid',
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
        },
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        },
        'notifications': {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True,
        },
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
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        return self.load_dict(self.config)

    def load_dict(self, config: Any) -> Dict[str, Any]:
        """Validate and complete an already parsed configuration."""
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a mapping")
        self.config = config

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()
        self._normalize()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Take secrets of configured sections from the environment when set there."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            section_path, key = config_key.rsplit('.', 1)
            env_value = os.getenv(env_var)
            if env_value and isinstance(self.config.get(section_path.split('.')[0]), dict):
                self._section(section_path)[key] = env_value
                logger.debug(f"Took {config_key} from {env_var}")

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        app_config = self.config.get('app') or {}
        if not isinstance(app_config, dict):
            errors.append("app section must be a mapping")
            app_config = {}

        for key in ('username_replacements', 'groupname_replacements'):
            errors.extend(self._validate_replacements(key, app_config.get(key)))

        remove_limit = app_config.get('remove_limit', 0)
        if isinstance(remove_limit, bool) or not isinstance(remove_limit, int) or remove_limit < 0:
            errors.append(f"app.remove_limit must be a non-negative integer, got {remove_limit!r}")

        for key in ('sync_interval', 'ban_before_remove_duration'):
            try:
                parse_duration(app_config.get(key))
            except ConfigurationError as e:
                errors.append(f"app.{key}: {e}")

        has_azure = bool(self.config.get('azure'))
        has_ldap = bool(self.config.get('ldap'))
        if has_azure and has_ldap:
            errors.append("Only one of azure and ldap sources may be configured")
        elif not has_azure and not has_ldap:
            errors.append("A directory source must be configured: azure or ldap")

        if has_azure:
            azure_config = self.config['azure']
            for field in ('tenant', 'client_id'):
                if not azure_config.get(field):
                    errors.append(f"Missing required azure field: {field}")
            post_filter = azure_config.get('groups_display_name_regex_post_filter')
            if post_filter:
                try:
                    re.compile(post_filter)
                except re.error as e:
                    errors.append(f"Invalid azure.groups_display_name_regex_post_filter: {e}")
            if azure_config.get('groups_display_name_suffix_post_filter'):
                errors.append("azure.groups_display_name_suffix_post_filter is deprecated, "
                              "use groups_display_name_regex_post_filter")

        if has_ldap:
            ldap_config = self.config['ldap']
            for field in ('server_url', 'base_dn'):
                if not ldap_config.get(field):
                    errors.append(f"Missing required LDAP field: {field}")

        ytsaurus_config = self.config.get('ytsaurus') or {}
        if not ytsaurus_config.get('proxy'):
            errors.append("Missing required ytsaurus field: proxy")

        notifications = self.config.get('notifications') or {}
        if notifications.get('enable_email'):
            for field in ('smtp_server', 'email_from', 'email_to'):
                if not notifications.get(field):
                    errors.append(f"Missing required notifications field: {field}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_replacements(self, key: str, replacements: Any) -> List[str]:
        if replacements is None:
            return []
        if not isinstance(replacements, list):
            return [f"app.{key} must be a list"]
        errors = []
        for i, item in enumerate(replacements):
            if not isinstance(item, dict) or not item.get('from'):
                errors.append(f"app.{key}[{i}] must be a mapping with a non-empty 'from'")
        return errors

    def _section(self, path: str) -> Dict[str, Any]:
        """Return the mapping at a dotted path, creating empty sections on the way."""
        current = self.config
        for key in path.split('.'):
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        return current

    def _apply_defaults(self):
        """Fill in optional settings; source sections only when that source is configured."""
        for path, defaults in self.DEFAULTS.items():
            root = path.split('.')[0]
            if root in self.SOURCE_SECTIONS and not self.config.get(root):
                continue
            section = self._section(path)
            for key, value in defaults.items():
                section.setdefault(key, copy.deepcopy(value))

    def _normalize(self):
        """Convert durations into timedeltas and timeouts into seconds."""
        app_config = self.config['app']
        app_config['sync_interval'] = parse_duration(app_config['sync_interval'])
        app_config['ban_before_remove_duration'] = parse_duration(app_config['ban_before_remove_duration'])

        for section in ('ytsaurus', 'azure'):
            if self.config.get(section):
                self.config[section]['timeout'] = parse_duration(self.config[section]['timeout']).total_seconds()


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
