#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

Covers configuration parsing, connect with retry, paged search with
resume, single-entry lookups and error translation.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3.core.exceptions import LDAPSocketOpenError

from ldap_reconcile.exceptions import DirectoryUnavailable
from ldap_reconcile.ldap_client import LDAPClient, LDAPConnectionError, PAGED_RESULTS_OID


BASE_CONFIG = {
    'server_url': 'ldaps://ldap.example.com:636',
    'bind_dn': 'cn=service,dc=example,dc=com',
    'bind_password': 'password123',
}


def search_result(dns, cookie=None, code=0):
    """Build the (result, response) pair ldap3 leaves on the connection after a search."""
    result = {'result': code, 'description': 'success' if code == 0 else 'operationsError', 'message': ''}
    if cookie is not None:
        result['controls'] = {PAGED_RESULTS_OID: {'value': {'size': 0, 'cookie': cookie}}}
    response = [{'type': 'searchResEntry', 'dn': dn, 'attributes': {'cn': [dn.split(',')[0][3:]]}} for dn in dns]
    response.append({'type': 'searchResRef', 'uri': ['ldap://other.example.com/']})
    return result, response


class TestLDAPClientConfiguration(unittest.TestCase):
    """Test cases for LDAPClient initialization."""

    def test_basic_initialization(self):
        client = LDAPClient(BASE_CONFIG)
        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertTrue(client.verify_ssl)
        self.assertEqual(client.page_size, 500)
        self.assertEqual(client.max_retries, 3)
        self.assertFalse(client.connected)

    def test_advanced_initialization(self):
        client = LDAPClient(dict(BASE_CONFIG, **{
            'server_url': 'ldap://ldap.example.com:389',
            'start_tls': True,
            'verify_ssl': False,
            'page_size': 100,
            'error_handling': {'max_retries': 5, 'retry_wait_seconds': 10},
        }))
        self.assertFalse(client.use_ssl)
        self.assertTrue(client.start_tls)
        self.assertEqual(client.page_size, 100)
        self.assertEqual(client.max_retries, 5)
        self.assertEqual(client.retry_wait, 10)

    def test_tls_configuration(self):
        plain = LDAPClient(dict(BASE_CONFIG, server_url='ldap://ldap.example.com:389'))
        self.assertIsNone(plain._create_tls_config())
        self.assertIsNotNone(LDAPClient(dict(BASE_CONFIG, verify_ssl=False))._create_tls_config())

    def test_search_requires_connection(self):
        with self.assertRaises(DirectoryUnavailable):
            LDAPClient(BASE_CONFIG).search('dc=example,dc=com', '(objectClass=*)')


@patch('ldap_reconcile.retry.time.sleep')
@patch('ldap_reconcile.ldap_client.Connection')
@patch('ldap_reconcile.ldap_client.Server')
class TestLDAPClientConnect(unittest.TestCase):
    """Test cases for connect() and disconnect()."""

    def test_successful_connection(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = True

        client = LDAPClient(BASE_CONFIG)

        self.assertTrue(client.connect())
        self.assertTrue(client.connected)
        conn.start_tls.assert_not_called()
        mock_sleep.assert_not_called()

    def test_start_tls(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.start_tls.return_value = True
        conn.bind.return_value = True

        LDAPClient(dict(BASE_CONFIG, server_url='ldap://ldap.example.com', start_tls=True)).connect()

        conn.start_tls.assert_called_once()

    def test_bind_failure_is_retried_then_raised(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = False
        conn.result = {'description': 'invalidCredentials'}

        client = LDAPClient(BASE_CONFIG)
        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=2, retry_wait=1)

        self.assertEqual(conn.bind.call_count, 2)
        self.assertEqual(mock_sleep.call_count, 1)
        self.assertFalse(client.connected)
        self.assertIsNone(client.connection)

    def test_recovers_after_transient_failure(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.side_effect = [LDAPSocketOpenError("refused"), True]
        conn.bind.return_value = True

        client = LDAPClient(BASE_CONFIG)

        self.assertTrue(client.connect(max_retries=3, retry_wait=1))
        self.assertEqual(conn.open.call_count, 2)

    def test_directory_unavailable_is_the_base(self, mock_server, mock_connection, mock_sleep):
        mock_server.side_effect = ValueError("bad url")
        with self.assertRaises(DirectoryUnavailable):
            LDAPClient(BASE_CONFIG).connect()

    def test_disconnect(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = True
        client = LDAPClient(BASE_CONFIG)
        client.connect()

        client.disconnect()

        conn.unbind.assert_called_once()
        self.assertFalse(client.connected)

    def test_server_info(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = True
        mock_server.return_value.info = Mock(
            naming_contexts=['dc=example,dc=com'],
            supported_controls=[('1.2.840.113556.1.4.319', 'CONTROL', 'LDAP Server Paged Results', 'RFC2696')],
            vendor_name=['OpenLDAP'],
            vendor_version=['2.6.7']
        )
        client = LDAPClient(BASE_CONFIG)
        self.assertEqual(client.get_server_info(), {})

        client.connect()
        info = client.get_server_info()

        self.assertEqual(info['naming_contexts'], ['dc=example,dc=com'])
        self.assertEqual(info['vendor_name'], ['OpenLDAP'])
        self.assertEqual(info['supported_controls'][0][0], '1.2.840.113556.1.4.319')

    def test_context_manager_disconnects(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.return_value = True
        conn.bind.return_value = True

        with LDAPClient(BASE_CONFIG) as client:
            client.connect()

        conn.unbind.assert_called_once()


class TestLDAPClientSearch(unittest.TestCase):
    """Test cases for search() against a stubbed ldap3 connection."""

    def setUp(self):
        self.client = LDAPClient(dict(BASE_CONFIG, page_size=2))
        self.conn = Mock()
        self.client.connection = self.conn
        self.client._connected = True
        self.pages = []
        self.conn.search.side_effect = self._next_page

    def _next_page(self, **kwargs):
        self.conn.result, self.conn.response = self.pages.pop(0)
        return True

    def test_paged_search_and_resume(self):
        self.pages = [
            search_result(['cn=a,dc=example,dc=com', 'cn=b,dc=example,dc=com'], cookie=b'page2'),
            search_result(['cn=c,dc=example,dc=com'], cookie=b''),
        ]

        entries, has_more = self.client.search('dc=example,dc=com', '(objectClass=*)', ['cn'])
        self.assertEqual([e.dn for e in entries], ['cn=a,dc=example,dc=com', 'cn=b,dc=example,dc=com'])
        self.assertTrue(has_more)
        self.assertTrue(self.client.is_partial_search_result())
        first_call = self.conn.search.call_args[1]
        self.assertEqual(first_call['paged_size'], 2)
        self.assertIsNone(first_call['paged_cookie'])

        entries, has_more = self.client.search('dc=example,dc=com', '(objectClass=*)', ['cn'], resume=True)
        self.assertEqual([e.dn for e in entries], ['cn=c,dc=example,dc=com'])
        self.assertFalse(has_more)
        self.assertEqual(self.conn.search.call_args[1]['paged_cookie'], b'page2')

    def test_resume_without_pending_search(self):
        self.assertEqual(self.client.search('dc=example,dc=com', '(objectClass=*)', resume=True), ([], False))
        self.conn.search.assert_not_called()

    def test_resume_of_different_search_starts_nothing(self):
        self.pages = [search_result(['cn=a,dc=example,dc=com'], cookie=b'more')]
        self.client.search('dc=example,dc=com', '(objectClass=user)')

        self.assertEqual(self.client.search('dc=example,dc=com', '(objectClass=group)', resume=True), ([], False))

    def test_all_attributes_when_none_requested(self):
        self.pages = [search_result([])]
        self.client.search('dc=example,dc=com', '(objectClass=*)')
        self.assertEqual(self.conn.search.call_args[1]['attributes'], ['*'])

    def test_first_entry_only_keeps_paging_state(self):
        self.pages = [
            search_result(['cn=a,dc=example,dc=com'], cookie=b'page2'),
            search_result(['cn=x,dc=example,dc=com', 'cn=y,dc=example,dc=com']),
            search_result(['cn=b,dc=example,dc=com'], cookie=b''),
        ]
        self.client.search('dc=example,dc=com', '(objectClass=*)', ['cn'])

        entries, has_more = self.client.search('dc=example,dc=com', '(cn=x)', ['cn'], first_entry_only=True)
        self.assertEqual([e.dn for e in entries], ['cn=x,dc=example,dc=com'])
        self.assertFalse(has_more)
        self.assertNotIn('paged_size', self.conn.search.call_args[1])

        entries, _ = self.client.search('dc=example,dc=com', '(objectClass=*)', ['cn'], resume=True)
        self.assertEqual([e.dn for e in entries], ['cn=b,dc=example,dc=com'])

    def test_size_limit_exceeded_is_accepted(self):
        self.pages = [search_result(['cn=a,dc=example,dc=com'], code=4)]
        entries, _ = self.client.search('dc=example,dc=com', '(objectClass=*)', size_limit=1)
        self.assertEqual(len(entries), 1)

    def test_error_result_raises(self):
        self.pages = [search_result([], code=1)]
        with self.assertRaises(DirectoryUnavailable):
            self.client.search('dc=example,dc=com', '(objectClass=*)')
        self.assertFalse(self.client.is_partial_search_result())

    def test_ldap_exception_raises(self):
        self.conn.search.side_effect = LDAPSocketOpenError("socket closed")
        with self.assertRaises(DirectoryUnavailable):
            self.client.search('dc=example,dc=com', '(objectClass=*)')

    def test_entries_keep_attributes(self):
        self.pages = [search_result(['cn=a,dc=example,dc=com'])]
        entries, _ = self.client.search('dc=example,dc=com', '(objectClass=*)')
        self.assertEqual(entries[0].first('CN'), 'a')

    def test_connection_stats(self):
        stats = self.client.get_connection_stats()
        self.assertTrue(stats['connected'])
        self.assertEqual(stats['page_size'], 2)
        self.assertFalse(stats['paged_search_active'])


if __name__ == '__main__':
    unittest.main()
