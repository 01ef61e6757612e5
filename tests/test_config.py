#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, environment variable overrides, defaults, collected
validation errors and construction of the per-run SyncContext.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.config import ConfigLoader, build_sync_context, load_config
from ldap_reconcile.context import RestorePolicy
from ldap_reconcile.exceptions import ConfigurationError
from ldap_reconcile.postprocessing import PostProcessor


class CountingProcessor(PostProcessor):

    def process_imported_record(self, table, record):
        pass


def valid_config() -> Dict[str, Any]:
    return {
        'configuration_id': 'corp',
        'ldap': {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'CN=Service,DC=example,DC=com',
            'bind_password': 'password',
        },
        'users': {
            'base_dn': 'OU=People,DC=example,DC=com',
            'filter': '(&(objectClass=person)(sAMAccountName={USERNAME}))',
            'mapping': {
                'username': '<sAMAccountName>',
                'email': '<mail>',
                'name': '<givenName> <sn>',
            },
            'required_groups': ['CN=Staff, OU=Groups,DC=example,DC=com'],
        },
        'groups': {
            'base_dn': 'OU=Groups,DC=example,DC=com',
            'filter': '(objectClass=group)',
            'mapping': 'title = <cn>',
            'parent_group': '<memberOf:all>',
        },
    }


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        self.files = []

    def tearDown(self):
        for path in self.files:
            os.unlink(path)

    def create_test_config(self, config_data) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            if isinstance(config_data, str):
                f.write(config_data)
            else:
                yaml.safe_dump(config_data, f)
            self.files.append(f.name)
            return f.name

    def test_valid_config(self):
        config = ConfigLoader(self.create_test_config(valid_config())).load()

        self.assertEqual(config['configuration_id'], 'corp')
        self.assertEqual(config['scope'], 'be')
        self.assertEqual(config['store']['module'], 'memory')
        self.assertEqual(config['ldap']['page_size'], 500)
        self.assertEqual(config['users']['restore_behavior'], 'both')
        self.assertEqual(config['users']['username_field'], 'username')
        self.assertEqual(config['groups']['dn_attribute'], 'distinguishedName')
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertEqual(config['error_handling']['max_errors_per_run'], 10)
        self.assertFalse(config['notifications']['enable_email'])
        self.assertEqual(config['post_processors'], [])

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(context.exception))

    def test_invalid_yaml(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.create_test_config("ldap: [unclosed")).load()
        self.assertIn('Invalid YAML', str(context.exception))

    def test_non_mapping_yaml(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.create_test_config("- just\n- a list\n")).load()

    @patch.dict(os.environ, {'CONFIG_PATH': '/etc/reconcile/config.yaml'})
    def test_config_path_from_environment(self):
        self.assertEqual(ConfigLoader().config_path, '/etc/reconcile/config.yaml')

    @patch.dict(os.environ, {
        'LDAP_BIND_PASSWORD': 'env_ldap_pass',
        'STORE_TOKEN': 'env_token',
        'SMTP_PASSWORD': 'env_smtp_pass',
    })
    def test_env_var_overrides(self):
        config = load_config(self.create_test_config(valid_config()))

        self.assertEqual(config['ldap']['bind_password'], 'env_ldap_pass')
        self.assertEqual(config['store']['auth']['token'], 'env_token')
        self.assertEqual(config['notifications']['smtp_password'], 'env_smtp_pass')

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'env_ldap_pass'})
    def test_env_var_fills_missing_required_field(self):
        data = valid_config()
        del data['ldap']['bind_password']
        config = load_config(self.create_test_config(data))
        self.assertEqual(config['ldap']['bind_password'], 'env_ldap_pass')

    def test_all_validation_errors_are_reported(self):
        data = valid_config()
        del data['ldap']['server_url']
        data['scope'] = 'xx'
        del data['users']['base_dn']
        data['groups']['restore_behavior'] = 'revive'
        data['groups']['mapping'] = {'uid': '<uidNumber>'}

        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))

        message = str(context.exception)
        self.assertIn('server_url', message)
        self.assertIn("Invalid scope 'xx'", message)
        self.assertIn('users.base_dn', message)
        self.assertIn('groups.restore_behavior', message)
        self.assertIn('groups.mapping', message)

    def test_no_sections(self):
        data = valid_config()
        del data['users']
        del data['groups']
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))
        self.assertIn("'users' or 'groups'", str(context.exception))

    def test_malformed_mapping_expression(self):
        data = valid_config()
        data['users']['mapping']['email'] = '<mail:bogus>'
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))
        self.assertIn('users.mapping', str(context.exception))

    def test_invalid_natural_key(self):
        data = valid_config()
        data['users']['natural_key'] = 'employeeNumber'
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))
        self.assertIn('natural_key', str(context.exception))

    def test_import_missing_groups_requires_groups_section(self):
        data = valid_config()
        del data['groups']
        data['users']['import_missing_groups'] = True
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))
        self.assertIn('import_missing_groups', str(context.exception))

    def test_rest_store_requires_base_url(self):
        data = valid_config()
        data['store'] = {'module': 'rest'}
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))
        self.assertIn('store.base_url', str(context.exception))

    def test_post_processors_are_loaded(self):
        data = valid_config()
        data['post_processors'] = [f'{__name__}:CountingProcessor']

        config = load_config(self.create_test_config(data))

        self.assertEqual(len(config['post_processors']), 1)
        self.assertIsInstance(config['post_processors'][0], CountingProcessor)

    def test_unknown_post_processor_fails_at_load(self):
        data = valid_config()
        data['post_processors'] = ['nonexistent_module_xyz:Hook']
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(data))
        self.assertIn('nonexistent_module_xyz', str(context.exception))


class TestBuildSyncContext(unittest.TestCase):
    """Test cases for build_sync_context()."""

    def setUp(self):
        self.config = valid_config()
        self.config['scope'] = 'fe'

    def test_user_context(self):
        context = build_sync_context(self.config, 'users')

        self.assertEqual(context.table, 'fe_users')
        self.assertEqual(context.group_table, 'fe_groups')
        self.assertEqual(context.configuration_id, 'corp')
        self.assertEqual(context.search_filter, '(&(objectClass=person)(sAMAccountName=*))')
        self.assertEqual(context.required_groups, frozenset(['cn=staff,ou=groups,dc=example,dc=com']))
        self.assertIs(context.restore_policy, RestorePolicy.BOTH)
        self.assertEqual(context.attributes, ('sAMAccountName', 'mail', 'givenName', 'sn', 'memberOf'))
        self.assertIsNone(context.group_context)

    def test_restore_policy_override(self):
        context = build_sync_context(self.config, 'users', restore_policy='nothing')
        self.assertIs(context.restore_policy, RestorePolicy.NOTHING)

    def test_group_context(self):
        context = build_sync_context(self.config, 'groups')

        self.assertEqual(context.table, 'fe_groups')
        self.assertEqual(context.parent_group.attributes, ['memberOf'])
        self.assertEqual(context.attributes, ('cn', 'memberOf'))
        self.assertEqual(context.dn_attribute, 'distinguishedName')

    def test_extra_data_mapping(self):
        self.config['users']['extra_data'] = {'phone': '<telephoneNumber>'}

        context = build_sync_context(self.config, 'users')

        self.assertIn('phone', context.extra_mapping)
        self.assertIn('telephoneNumber', context.attributes)

    def test_import_missing_groups_builds_group_context(self):
        self.config['users']['import_missing_groups'] = True

        context = build_sync_context(self.config, 'users')

        self.assertEqual(context.group_context.table, 'fe_groups')
        self.assertIsNotNone(context.group_context.parent_group)

    def test_post_processors_fetch_all_attributes(self):
        self.config['post_processors'] = [CountingProcessor()]

        context = build_sync_context(self.config, 'users')

        self.assertEqual(context.attributes, ())
        self.assertEqual(len(context.post_processors), 1)

    def test_missing_section(self):
        del self.config['groups']
        with self.assertRaises(ConfigurationError):
            build_sync_context(self.config, 'groups')


if __name__ == '__main__':
    unittest.main()
