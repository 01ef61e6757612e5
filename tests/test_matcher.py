#!/usr/bin/env python3
"""
Unit tests for LocalRecordMatcher.
"""

import unittest
from unittest.mock import Mock
import sys
import os

# Add parent directory to path to import ldap_reconcile modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.context import SyncContext, TargetTable
from ldap_reconcile.mapping import MappingTable
from ldap_reconcile.matcher import LocalRecordMatcher
from ldap_reconcile.models import DirectoryEntry, LocalRecord
from ldap_reconcile.stores.memory import InMemoryStore


def entries(*names):
    return [DirectoryEntry(f'uid={name},ou=people,dc=example,dc=com',
                           {'uid': [name], 'mail': [f'{name}@example.com']}) for name in names]


class TestLocalRecordMatcher(unittest.TestCase):
    """Test cases for LocalRecordMatcher."""

    def setUp(self):
        self.store = InMemoryStore()
        self.matcher = LocalRecordMatcher(self.store)
        self.context = SyncContext(
            target=TargetTable('users'),
            base_dn='ou=people,dc=example,dc=com',
            search_filter='(objectClass=person)',
            mapping=MappingTable.parse({'username': '<uid:first>', 'email': '<mail>'}),
            configuration_id='corp',
        )

    def test_empty_page(self):
        self.assertEqual(self.matcher.match(self.context, []), [])
        self.assertEqual(self.store.lookups, 0)

    def test_empty_table_yields_blank_records(self):
        page = entries('alice', 'bob')
        pairs = self.matcher.match(self.context, page)

        self.assertEqual([p.entry for p in pairs], page)
        for pair in pairs:
            self.assertTrue(pair.local.is_new)
            self.assertEqual(pair.local.configuration_id, 'corp')

    def test_all_entries_found(self):
        page = entries('alice', 'bob')
        self.store.seed('be_users', LocalRecord(uid=7, dn=page[1].dn))
        self.store.seed('be_users', LocalRecord(uid=3, dn=page[0].dn.upper()))

        pairs = self.matcher.match(self.context, page)

        self.assertEqual([p.local.uid for p in pairs], [3, 7])

    def test_subset_found_keeps_input_order(self):
        page = entries('carol', 'alice', 'bob')
        self.store.seed('be_users', LocalRecord(uid=1, dn=page[1].dn))

        pairs = self.matcher.match(self.context, page)

        self.assertEqual([p.entry.dn for p in pairs], [e.dn for e in page])
        self.assertEqual([p.local.uid for p in pairs], [0, 1, 0])

    def test_single_batched_lookup(self):
        self.matcher.match(self.context, entries('a', 'b', 'c', 'd'))
        self.assertEqual(self.store.lookups, 1)

    def test_duplicate_entries_are_kept(self):
        page = entries('alice') * 2
        self.store.seed('be_users', LocalRecord(uid=4, dn=page[0].dn))

        pairs = self.matcher.match(self.context, page)

        self.assertEqual(len(pairs), 2)
        self.assertEqual([p.local.uid for p in pairs], [4, 4])
        self.assertIsNot(pairs[0].local, pairs[1].local)

    def test_disabled_and_deleted_records_are_matched(self):
        page = entries('alice')
        self.store.seed('be_users', LocalRecord(uid=9, dn=page[0].dn, disabled=True, deleted=True))

        pair = self.matcher.match(self.context, page)[0]

        self.assertEqual(pair.local.uid, 9)
        self.assertTrue(pair.local.deleted)

    def test_mapped_natural_key(self):
        context = SyncContext(
            target=TargetTable('users'),
            base_dn='ou=people,dc=example,dc=com',
            search_filter='(objectClass=person)',
            mapping=MappingTable.parse({'email': '<mail>'}),
            natural_key='email',
        )
        self.store.seed('be_users', LocalRecord(uid=2, dn='uid=old', fields={'email': 'BOB@example.com'}))

        pairs = self.matcher.match(context, entries('alice', 'bob'))

        self.assertEqual([p.local.uid for p in pairs], [0, 2])

    def test_entry_without_natural_key_gets_blank_record(self):
        context = SyncContext(
            target=TargetTable('users'),
            base_dn='ou=people,dc=example,dc=com',
            search_filter='(objectClass=person)',
            mapping=MappingTable.parse({'phone': '<telephoneNumber>'}),
            natural_key='phone',
        )
        store = Mock()
        pairs = LocalRecordMatcher(store).match(context, entries('alice'))

        self.assertTrue(pairs[0].local.is_new)
        store.find_by_keys.assert_not_called()

    def test_duplicate_local_records_use_first(self):
        page = entries('alice')
        store = Mock()
        store.find_by_keys.return_value = [
            LocalRecord(uid=5, dn=page[0].dn),
            LocalRecord(uid=6, dn=page[0].dn),
        ]
        with self.assertLogs('ldap_reconcile.matcher', level='WARNING'):
            pairs = LocalRecordMatcher(store).match(self.context, page)

        self.assertEqual(pairs[0].local.uid, 5)

    def test_returned_records_are_copies(self):
        page = entries('alice')
        store = Mock()
        found = LocalRecord(uid=5, dn=page[0].dn)
        store.find_by_keys.return_value = [found]

        pair = LocalRecordMatcher(store).match(self.context, page)[0]
        pair.local.memberships.append(1)

        self.assertEqual(found.memberships, [])


if __name__ == '__main__':
    unittest.main()
