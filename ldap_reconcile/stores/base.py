"""
Base local store interface.

This module defines the abstract base class every local store backend must
implement. The reconciliation engine only needs keyed lookups, inserts and
updates; everything about how rows are kept is up to the backend.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from ldap_reconcile.models import LocalRecord

logger = logging.getLogger(__name__)


class LocalStore(ABC):
    """
    Abstract base class for local record stores.

    Store modules under ``ldap_reconcile.stores`` subclass this and are
    selected by the ``store.module`` configuration value.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize store.

        Args:
            config: Store configuration dictionary
        """
        self.config = config or {}
        self.name = self.config.get('name', type(self).__name__)

    @abstractmethod
    def find_by_keys(self, table: str, key_field: str, keys: Iterable[Any]) -> List[LocalRecord]:
        """
        Fetch all records of ``table`` whose natural key is one of ``keys``.

        Matching is case-insensitive, and DN-aware when ``key_field`` is ``dn``.
        Deleted and disabled records are included. Order is not significant.

        Args:
            table: Table name, e.g. ``be_users``
            key_field: ``dn`` or the name of a mapped field
            keys: Natural key values to look up in one batch

        Returns:
            Matching records
        """
        pass

    @abstractmethod
    def insert(self, table: str, record: LocalRecord) -> int:
        """
        Persist a new record.

        Returns:
            The generated non-zero uid
        """
        pass

    @abstractmethod
    def update(self, table: str, record: LocalRecord) -> bool:
        """
        Persist changes to an existing record.

        Returns:
            True if a row actually changed
        """
        pass

    @abstractmethod
    def exists(self, table: str, field_name: str, value: Any, exclude_uid: int = 0) -> bool:
        """True if a record other than ``exclude_uid`` has ``field_name == value``."""
        pass

    @abstractmethod
    def disable_for_configuration(self, table: str, configuration_id: str) -> List[int]:
        """Disable all records owned by a configuration; returns the uids that changed."""
        pass

    @abstractmethod
    def delete_for_configuration(self, table: str, configuration_id: str) -> List[int]:
        """Flag all records owned by a configuration as deleted; returns the uids that changed."""
        pass

    def find_one(self, table: str, key_field: str, key: Any) -> Optional[LocalRecord]:
        records = self.find_by_keys(table, key_field, [key])
        return records[0] if records else None

    def test_connection(self) -> bool:
        return True

    def close(self):
        """Release any resources held by the store."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
