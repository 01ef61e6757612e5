"""
LDAP client for connecting to and searching LDAP directories.

This module wraps ldap3 behind the small connect/search/disconnect surface
the reconciliation engine needs. Multi-entry searches are paged with the
simple paged results control; the paging cookie is kept inside the client
so callers only ask to resume the last search.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Tuple
from ldap3 import Server, Connection, SUBTREE, ALL, ALL_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError

from ldap_reconcile.exceptions import DirectoryUnavailable
from ldap_reconcile.models import DirectoryEntry
from ldap_reconcile.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# success, sizeLimitExceeded
ACCEPTED_RESULT_CODES = (0, 4)


class LDAPConnectionError(DirectoryUnavailable):
    """Raised when the LDAP connection or bind fails."""
    pass


class LDAPClient:
    """
    LDAP client used as the directory collaborator of the reconciliation engine.

    Example:
        with LDAPClient(config['ldap']) as client:
            client.connect()
            entries, partial = client.search(base_dn, '(objectClass=user)', ['cn', 'mail'])
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 500)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False
        self._paged_search = None
        self._paged_cookie = None

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPException, LDAPConnectionError),
                on_retry=create_retry_callback("LDAP connection")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {max_retries} attempts: {e.last_exception}"
            )

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        """Open, optionally StartTLS, and bind a fresh connection."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection is None:
            return
        try:
            self.connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error while discarding LDAP connection: {e}")
        self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection and forget any paging state."""
        self._paged_search = None
        self._paged_cookie = None
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(
        self,
        base_dn: str,
        search_filter: str,
        attributes: Optional[List[str]] = None,
        first_entry_only: bool = False,
        size_limit: int = 0,
        resume: bool = False
    ) -> Tuple[List[DirectoryEntry], bool]:
        """
        Search the directory.

        Multi-entry searches are paged; ``resume=True`` fetches the next page
        of the last paged search. Single-entry searches do not touch the
        paging state, so a lookup can run between two pages.

        Args:
            base_dn: Search base
            search_filter: LDAP filter with markers already resolved
            attributes: Attributes to fetch; empty or None fetches all
            first_entry_only: Return at most one entry, unpaged
            size_limit: Server-side size limit (0 = none)
            resume: Continue the previous paged search

        Returns:
            Tuple of (entries in server order, True if more pages are available)

        Raises:
            DirectoryUnavailable: If not connected or the search fails
        """
        if not self._connected or self.connection is None:
            raise DirectoryUnavailable("Not connected to LDAP server")

        requested = list(attributes) if attributes else [ALL_ATTRIBUTES]

        if first_entry_only:
            self._run_search(base_dn, search_filter, requested, size_limit=1)
            return self._collect_entries()[:1], False

        if resume:
            if self._paged_search != (base_dn, search_filter, tuple(requested)) or not self._paged_cookie:
                logger.debug("No paged search to resume")
                return [], False
            cookie = self._paged_cookie
        else:
            cookie = None

        self._paged_search = (base_dn, search_filter, tuple(requested))
        try:
            self._run_search(
                base_dn, search_filter, requested,
                size_limit=size_limit,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
        except DirectoryUnavailable:
            self._paged_search = None
            self._paged_cookie = None
            raise

        self._paged_cookie = self._extract_cookie(self.connection.result)
        entries = self._collect_entries()
        has_more = bool(self._paged_cookie)
        logger.debug(f"Search in {base_dn} returned {len(entries)} entries (more: {has_more})")
        return entries, has_more

    def is_partial_search_result(self) -> bool:
        """True if the last paged search has more pages."""
        return bool(self._paged_cookie)

    def _run_search(self, base_dn: str, search_filter: str, attributes: List[str], **kwargs):
        logger.debug(f"Searching with filter: {search_filter} in base: {base_dn}")
        try:
            self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                **kwargs
            )
        except LDAPException as e:
            raise DirectoryUnavailable(f"LDAP search failed: {e}")

        result = self.connection.result or {}
        code = result.get('result', 0)
        if code not in ACCEPTED_RESULT_CODES:
            raise DirectoryUnavailable(
                f"LDAP search failed: {result.get('description', 'error')} ({code}) {result.get('message', '')}".rstrip()
            )

    def _extract_cookie(self, result: Dict[str, Any]) -> Optional[bytes]:
        controls = (result or {}).get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID)
        if not paged:
            return None
        return (paged.get('value') or {}).get('cookie') or None

    def _collect_entries(self) -> List[DirectoryEntry]:
        """Convert the raw ldap3 response into DirectoryEntry objects, in server order."""
        entries = []
        for item in self.connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            entries.append(DirectoryEntry(item['dn'], dict(item.get('attributes') or {})))
        return entries

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect(max_retries=1)

            return bool(self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope='BASE',
                attributes=['namingContexts'],
                size_limit=1
            ))
        except (DirectoryUnavailable, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_server_info(self) -> Dict[str, Any]:
        """Return naming contexts and vendor details of the connected server."""
        if not self.server or not self.server.info:
            return {}

        info = self.server.info
        return {
            'naming_contexts': getattr(info, 'naming_contexts', []),
            'supported_controls': getattr(info, 'supported_controls', []),
            'vendor_name': getattr(info, 'vendor_name', 'Unknown'),
            'vendor_version': getattr(info, 'vendor_version', 'Unknown')
        }

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'page_size': self.page_size,
            'paged_search_active': self.is_partial_search_result()
        }

        if self.connection:
            stats.update({
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
