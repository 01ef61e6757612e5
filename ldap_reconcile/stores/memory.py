"""
In-process local store.

Keeps rows in dictionaries per table. Used for dry runs, for tests and as
the reference behaviour other backends are checked against.
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

from ldap_reconcile.context import normalize_key
from ldap_reconcile.exceptions import StoreError
from ldap_reconcile.models import LocalRecord
from .base import LocalStore

logger = logging.getLogger(__name__)


class InMemoryStore(LocalStore):
    """Local store backed by plain dictionaries."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self._tables: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_uid: Dict[str, int] = {}
        self.lookups = 0

    def _table(self, table: str) -> Dict[int, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def seed(self, table: str, record: LocalRecord) -> LocalRecord:
        """Insert a record keeping its uid (assigning one when it is 0)."""
        record = record.copy()
        if not record.uid:
            record.uid = self._allocate_uid(table)
        self._table(table)[record.uid] = record.to_row()
        self._next_uid[table] = max(self._next_uid.get(table, 1), record.uid + 1)
        return record

    def get(self, table: str, uid: int) -> Optional[LocalRecord]:
        row = self._table(table).get(uid)
        return LocalRecord.from_row(row) if row is not None else None

    def all(self, table: str) -> List[LocalRecord]:
        return [LocalRecord.from_row(row) for _, row in sorted(self._table(table).items())]

    def _allocate_uid(self, table: str) -> int:
        uid = self._next_uid.get(table, 1)
        self._next_uid[table] = uid + 1
        return uid

    def find_by_keys(self, table: str, key_field: str, keys: Iterable[Any]) -> List[LocalRecord]:
        self.lookups += 1
        wanted = {normalize_key(key_field, key) for key in keys if key not in (None, '')}
        if not wanted:
            return []

        found = []
        for _, row in sorted(self._table(table).items()):
            value = row.get(key_field)
            if value in (None, ''):
                continue
            if normalize_key(key_field, value) in wanted:
                found.append(LocalRecord.from_row(row))
        return found

    def insert(self, table: str, record: LocalRecord) -> int:
        if record.uid:
            raise StoreError(f"Cannot insert record that already has uid {record.uid} into {table}")
        uid = self._allocate_uid(table)
        row = record.to_row()
        row['uid'] = uid
        self._table(table)[uid] = row
        logger.debug(f"Inserted {table} uid={uid} dn={record.dn}")
        return uid

    def update(self, table: str, record: LocalRecord) -> bool:
        rows = self._table(table)
        current = rows.get(record.uid)
        if current is None:
            logger.warning(f"Update of unknown {table} uid={record.uid} ignored")
            return False

        row = record.to_row()
        if row == current:
            return False
        rows[record.uid] = copy.deepcopy(row)
        return True

    def exists(self, table: str, field_name: str, value: Any, exclude_uid: int = 0) -> bool:
        for uid, row in self._table(table).items():
            if uid != exclude_uid and row.get(field_name) == value:
                return True
        return False

    def _flag_for_configuration(self, table: str, configuration_id: str, flag: str) -> List[int]:
        changed = []
        for uid, row in sorted(self._table(table).items()):
            if row.get('configuration_id') == configuration_id and not row.get(flag):
                row[flag] = True
                changed.append(uid)
        return changed

    def disable_for_configuration(self, table: str, configuration_id: str) -> List[int]:
        return self._flag_for_configuration(table, configuration_id, 'disabled')

    def delete_for_configuration(self, table: str, configuration_id: str) -> List[int]:
        return self._flag_for_configuration(table, configuration_id, 'deleted')
