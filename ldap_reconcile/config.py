"""
Configuration loading and management for LDAP Reconcile.

This module handles loading configuration from YAML files and environment
variables, validation, defaults, and construction of the immutable
SyncContext each reconciliation run works with.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from ldap_reconcile.context import (
    KINDS, SCOPES, RestorePolicy, SyncContext, TargetTable, normalize_dn, replace_filter_markers
)
from ldap_reconcile.exceptions import ConfigurationError
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.mapping import MappingRule, MappingTable, get_ldap_attributes
from ldap_reconcile.postprocessing import PostProcessor, load_post_processors

logger = logging.getLogger(__name__)

USER_DEFAULTS = {
    'natural_key': 'dn',
    'username_field': 'username',
    'password_field': 'password',
    'membership_attribute': 'memberOf',
    'required_groups': [],
    'assign_groups': [],
    'keep_local_groups': False,
    'import_missing_groups': False,
    'restore_behavior': 'both',
}

GROUP_DEFAULTS = {
    'natural_key': 'dn',
    'parent_group': None,
    'dn_attribute': 'distinguishedName',
    'restore_behavior': 'both',
}


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'store.auth.password': 'STORE_PASSWORD',
        'store.auth.token': 'STORE_TOKEN',
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

        Post-processors are imported and instantiated here, so the returned
        ``post_processors`` list holds PostProcessor objects.

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
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        audit_logger.log_configuration_access(self.config_path)
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
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate the configuration, collecting every problem before failing."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ('server_url', 'bind_dn', 'bind_password'):
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        if self.config.get('scope') not in SCOPES:
            errors.append(f"Invalid scope '{self.config.get('scope')}' (expected one of: {', '.join(SCOPES)})")

        sections = [kind for kind in KINDS if self.config.get(kind)]
        if not sections:
            errors.append("At least one of 'users' or 'groups' must be configured")

        for kind in sections:
            errors.extend(self._validate_section(kind, self.config[kind]))

        store_config = self.config.get('store') or {}
        if not store_config.get('module'):
            errors.append("Missing store.module")
        elif store_config['module'] == 'rest' and not store_config.get('base_url'):
            errors.append("store.base_url is required for the rest store")

        try:
            self.config['post_processors'] = load_post_processors(self.config.get('post_processors'))
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_section(self, kind: str, section: Dict[str, Any]) -> List[str]:
        errors = []
        for field in ('base_dn', 'filter', 'mapping'):
            if not section.get(field):
                errors.append(f"Missing required field {kind}.{field}")

        mapping = None
        try:
            mapping = MappingTable.parse(section.get('mapping'))
        except ConfigurationError as e:
            errors.append(f"{kind}.mapping: {e}")

        if kind == 'users' and section.get('extra_data'):
            try:
                MappingTable.parse(section['extra_data'], reserved=())
            except ConfigurationError as e:
                errors.append(f"{kind}.extra_data: {e}")

        if kind == 'groups' and section.get('parent_group'):
            try:
                MappingRule('parent_group', section['parent_group'])
            except ConfigurationError as e:
                errors.append(f"{kind}.parent_group: {e}")

        try:
            RestorePolicy.from_value(section.get('restore_behavior'))
        except ConfigurationError as e:
            errors.append(f"{kind}.restore_behavior: {e}")

        natural_key = section.get('natural_key', 'dn')
        if mapping is not None and natural_key != 'dn' and natural_key not in mapping:
            errors.append(f"{kind}.natural_key '{natural_key}' must be 'dn' or a mapped field")

        if kind == 'users' and not self.config.get('groups') and section.get('import_missing_groups'):
            errors.append("users.import_missing_groups requires a 'groups' section")

        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        self.config.setdefault('configuration_id', 'default')
        self.config.setdefault('scope', 'be')
        self.config.setdefault('filter_markers', {})

        ldap_config = self.config.setdefault('ldap', {}) or {}
        ldap_config.setdefault('page_size', 500)

        for kind, defaults in (('users', USER_DEFAULTS), ('groups', GROUP_DEFAULTS)):
            section = self.config.get(kind)
            if isinstance(section, dict):
                for key, value in defaults.items():
                    section.setdefault(key, list(value) if isinstance(value, list) else value)

        store_config = self.config.setdefault('store', {})
        store_config.setdefault('module', 'memory')
        store_config.setdefault('verify_ssl', True)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'max_errors_per_run': 10
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


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


def build_sync_context(config: Dict[str, Any], kind: str, restore_policy: Any = None) -> SyncContext:
    """
    Build the immutable run context for ``users`` or ``groups``.

    Args:
        config: Loaded configuration
        kind: 'users' or 'groups'
        restore_policy: Override of the section's ``restore_behavior``

    Returns:
        SyncContext for the run

    Raises:
        ConfigurationError: If the section is missing or invalid
    """
    section = config.get(kind)
    if not section:
        raise ConfigurationError(f"No '{kind}' section configured")

    defaults = USER_DEFAULTS if kind == 'users' else GROUP_DEFAULTS
    settings = dict(defaults)
    settings.update(section)

    target = TargetTable(kind, config.get('scope', 'be'))
    mapping = MappingTable.parse(settings.get('mapping'))
    policy = RestorePolicy.from_value(restore_policy if restore_policy is not None else settings.get('restore_behavior'))
    search_filter = replace_filter_markers(settings.get('filter') or '(objectClass=*)', config.get('filter_markers'))

    post_processors = []
    for processor in config.get('post_processors') or []:
        if isinstance(processor, PostProcessor):
            post_processors.append(processor)
        else:
            post_processors.extend(load_post_processors([processor]))

    extra_attributes = []
    if settings['natural_key'] != 'dn' and settings['natural_key'] not in mapping:
        raise ConfigurationError(f"{kind}.natural_key '{settings['natural_key']}' must be 'dn' or a mapped field")

    common = {
        'target': target,
        'base_dn': settings.get('base_dn') or '',
        'search_filter': search_filter,
        'mapping': mapping,
        'configuration_id': str(config.get('configuration_id', 'default')),
        'natural_key': settings['natural_key'],
        'restore_policy': policy,
        'post_processors': tuple(post_processors),
    }

    if kind == 'users':
        extra_mapping = None
        if settings.get('extra_data'):
            extra_mapping = MappingTable.parse(settings['extra_data'], reserved=())
        extra_attributes.append(settings['membership_attribute'])

        group_context = None
        if settings['import_missing_groups'] and config.get('groups'):
            group_context = build_sync_context(config, 'groups', restore_policy)

        attributes = () if post_processors else tuple(get_ldap_attributes(mapping, extra_mapping, extra=extra_attributes))
        return SyncContext(
            attributes=attributes,
            required_groups=frozenset(normalize_dn(dn) for dn in settings.get('required_groups') or []),
            assign_groups=tuple(settings.get('assign_groups') or []),
            membership_attribute=settings['membership_attribute'],
            keep_local_groups=bool(settings['keep_local_groups']),
            import_missing_groups=bool(settings['import_missing_groups']),
            username_field=settings['username_field'],
            password_field=settings['password_field'],
            extra_mapping=extra_mapping,
            group_context=group_context,
            **common
        )

    parent_group = None
    if settings.get('parent_group'):
        parent_group = MappingRule('parent_group', settings['parent_group'])
        extra_attributes.extend(parent_group.attributes)

    attributes = () if post_processors else tuple(get_ldap_attributes(mapping, extra=extra_attributes))
    return SyncContext(
        attributes=attributes,
        parent_group=parent_group,
        dn_attribute=settings['dn_attribute'],
        **common
    )
