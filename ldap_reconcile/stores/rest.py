"""
REST-backed local store.

Talks JSON over HTTP(S) to an account service exposing the local tables:

    POST /{table}/lookup    {"key_field": ..., "keys": [...]}  -> {"records": [...]}
    POST /{table}           {record}                           -> {"uid": N}
    PUT  /{table}/{uid}     {record}                           -> {"changed": bool}
    POST /{table}/exists    {"field": ..., "value": ..., "exclude_uid": N} -> {"exists": bool}
    POST /{table}/disable   {"configuration_id": ...}          -> {"uids": [...]}
    POST /{table}/delete    {"configuration_id": ...}          -> {"uids": [...]}

Read-only calls are retried on transient failures; writes are not.
"""

import json
import ssl
import base64
import logging
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse, urljoin, quote
from http.client import HTTPSConnection, HTTPConnection

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from ldap_reconcile.exceptions import ConfigurationError, StoreError
from ldap_reconcile.models import LocalRecord
from ldap_reconcile.retry import (
    RetryableError, MaxRetriesExceeded, retry_call, retry_settings,
    is_retryable_error, create_retry_callback
)
from .base import LocalStore

logger = logging.getLogger(__name__)


class StoreHTTPError(StoreError):
    """Raised for HTTP error statuses returned by the account service."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


class RestStore(LocalStore):
    """
    Local store client for an HTTP account service.

    Supports ``basic`` and ``token``/``bearer`` authentication and custom
    PEM or PKCS12 truststores.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        if not config.get('base_url'):
            raise ConfigurationError("REST store requires store.base_url")

        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {}) or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.retry_kwargs = retry_settings(config.get('error_handling'))

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()
        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates from a PEM or PKCS12 truststore."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()
                _, certificate, additional = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )
                certificates = ([certificate] if certificate else []) + list(additional or [])
                if not certificates:
                    raise ConfigurationError(f"No certificates found in truststore {truststore_file}")
                ca_data = b'\n'.join(c.public_bytes(serialization.Encoding.PEM) for c in certificates)
                self.ssl_context.load_verify_locations(cadata=ca_data.decode('ascii'))
            else:
                raise ConfigurationError(f"Unsupported truststore type '{truststore_type}'")
            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")
        except ConfigurationError:
            raise
        except (OSError, ValueError, ssl.SSLError) as e:
            raise ConfigurationError(f"Truststore loading failed for {truststore_file}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if not (username and password):
                raise ConfigurationError(f"Basic auth configured but missing username or password for {self.name}")
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if not token:
                raise ConfigurationError(f"Token auth configured but missing token for {self.name}")
            self.auth_headers['Authorization'] = f"Bearer {token}"
        elif auth_method:
            raise ConfigurationError(f"Unknown authentication method '{auth_method}' for {self.name}")
        else:
            logger.debug(f"No authentication method configured for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make a JSON request to the account service.

        Args:
            method: HTTP method
            path: Endpoint path relative to base_url
            body: Request body

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            StoreError: If the request fails or the service answers with an error status
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        payload = None
        if body is not None:
            payload = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, payload, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            self.close()
            raise StoreError(f"Connection error to {self.name}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")
        if response.status >= 400:
            raise StoreHTTPError(response.status, f"HTTP {response.status}: {response.reason}")

        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise StoreError(f"Invalid JSON response from {self.name}: {e}")

    def _read(self, method: str, path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        """Read-only request, retried on transient failures."""
        def attempt():
            try:
                return self.request(method, path, body)
            except StoreError as e:
                if is_retryable_error(e) or not isinstance(e, StoreHTTPError):
                    raise RetryableError(str(e)) from e
                raise

        try:
            return retry_call(
                attempt,
                exceptions=(RetryableError,),
                on_retry=create_retry_callback(f"{self.name} {method} {path}"),
                **self.retry_kwargs
            )
        except MaxRetriesExceeded as e:
            raise StoreError(f"{method} {path} failed after {e.attempts} attempts: {e.last_exception}")

    def _table_path(self, table: str, *parts: Any) -> str:
        return '/' + '/'.join(quote(str(p), safe='') for p in (table,) + parts)

    def find_by_keys(self, table: str, key_field: str, keys: Iterable[Any]) -> List[LocalRecord]:
        keys = [k.decode('utf-8') if isinstance(k, bytes) else k for k in keys if k not in (None, '')]
        if not keys:
            return []
        response = self._read('POST', self._table_path(table, 'lookup'), {'key_field': key_field, 'keys': keys})
        return [LocalRecord.from_row(row) for row in response.get('records', [])]

    def insert(self, table: str, record: LocalRecord) -> int:
        row = record.to_row()
        row.pop('uid', None)
        response = self.request('POST', self._table_path(table), row)
        uid = int(response.get('uid') or 0)
        if not uid:
            raise StoreError(f"{self.name} did not return a uid for new {table} record {record.dn}")
        return uid

    def update(self, table: str, record: LocalRecord) -> bool:
        response = self.request('PUT', self._table_path(table, record.uid), record.to_row())
        return bool(response.get('changed', False))

    def exists(self, table: str, field_name: str, value: Any, exclude_uid: int = 0) -> bool:
        response = self._read('POST', self._table_path(table, 'exists'),
                              {'field': field_name, 'value': value, 'exclude_uid': exclude_uid})
        return bool(response.get('exists', False))

    def disable_for_configuration(self, table: str, configuration_id: str) -> List[int]:
        response = self.request('POST', self._table_path(table, 'disable'), {'configuration_id': configuration_id})
        return [int(uid) for uid in response.get('uids', [])]

    def delete_for_configuration(self, table: str, configuration_id: str) -> List[int]:
        response = self.request('POST', self._table_path(table, 'delete'), {'configuration_id': configuration_id})
        return [int(uid) for uid in response.get('uids', [])]

    def test_connection(self) -> bool:
        try:
            self.request('GET', '/health')
            return True
        except StoreError as e:
            logger.debug(f"Store connection test failed: {e}")
            return False

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
