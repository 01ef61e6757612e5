#!/usr/bin/env python3
"""
Unit tests for DirectoryPageSource.
"""

import unittest
from unittest.mock import Mock
import sys
import os

# Add parent directory to path to import ldap_reconcile modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.context import SyncContext, TargetTable
from ldap_reconcile.exceptions import DirectoryUnavailable
from ldap_reconcile.ldap_client import LDAPConnectionError
from ldap_reconcile.mapping import MappingTable
from ldap_reconcile.models import DirectoryEntry
from ldap_reconcile.page_source import DirectoryPageSource


class TestDirectoryPageSource(unittest.TestCase):
    """Test cases for DirectoryPageSource."""

    def setUp(self):
        self.client = Mock()
        self.context = SyncContext(
            target=TargetTable('groups'),
            base_dn='ou=groups,dc=example,dc=com',
            search_filter='(objectClass=group)',
            mapping=MappingTable.parse({'title': '<cn>'}),
            attributes=('cn', 'memberOf'),
        )
        self.source = DirectoryPageSource(self.client, size_limit=100)

    def test_fresh_search(self):
        entry = DirectoryEntry('cn=a,ou=groups,dc=example,dc=com', {'cn': ['a']})
        self.client.search.return_value = ([entry], True)

        entries, has_more = self.source.fetch(self.context)

        self.assertEqual(entries, [entry])
        self.assertTrue(has_more)
        self.assertTrue(self.source.has_more)
        self.assertEqual(self.source.pages_fetched, 1)
        self.client.search.assert_called_once_with(
            'ou=groups,dc=example,dc=com', '(objectClass=group)', ['cn', 'memberOf'], False, 100, False
        )

    def test_resume_passes_flag(self):
        self.client.search.return_value = ([], False)

        entries, has_more = self.source.fetch(self.context, resume=True)

        self.assertEqual(entries, [])
        self.assertFalse(has_more)
        self.assertTrue(self.client.search.call_args[0][5])

    def test_missing_base_dn_returns_empty_page(self):
        context = SyncContext(
            target=TargetTable('groups'),
            base_dn='',
            search_filter='(objectClass=group)',
            mapping=MappingTable.parse({'title': '<cn>'}),
        )
        self.assertEqual(self.source.fetch(context), ([], False))
        self.client.search.assert_not_called()

    def test_client_errors_become_directory_unavailable(self):
        self.client.search.side_effect = OSError("connection reset")

        with self.assertRaises(DirectoryUnavailable):
            self.source.fetch(self.context)
        self.assertFalse(self.source.has_more)

    def test_directory_errors_propagate_unchanged(self):
        self.client.search.side_effect = LDAPConnectionError("server down")

        with self.assertRaises(LDAPConnectionError):
            self.source.fetch(self.context)

    def test_fetch_by_dn_escapes_filter(self):
        entry = DirectoryEntry('cn=R&D (Lab),ou=groups,dc=example,dc=com', {'cn': ['R&D (Lab)']})
        self.client.search.return_value = ([entry], False)

        found = self.source.fetch_by_dn(self.context, 'cn=R&D (Lab),ou=groups,dc=example,dc=com')

        self.assertIs(found, entry)
        args = self.client.search.call_args[0]
        self.assertEqual(
            args[1],
            '(&(objectClass=group)(distinguishedName=cn=R&D \\28Lab\\29,ou=groups,dc=example,dc=com))'
        )
        self.assertTrue(args[3])
        self.assertFalse(args[5])

    def test_fetch_by_dn_does_not_count_pages(self):
        self.client.search.return_value = ([], False)

        self.assertIsNone(self.source.fetch_by_dn(self.context, 'cn=none'))
        self.assertEqual(self.source.pages_fetched, 0)

    def test_fetch_by_dn_error(self):
        self.client.search.side_effect = RuntimeError("boom")

        with self.assertRaises(DirectoryUnavailable):
            self.source.fetch_by_dn(self.context, 'cn=x')


if __name__ == '__main__':
    unittest.main()
