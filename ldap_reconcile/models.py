"""
Data structures passed between the reconciliation components.

Directory entries come from the LDAP client, local records from the store.
A page of work is a list of PairedRecord objects so that a directory entry
and its local candidate always travel together.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


class DirectoryEntry:
    """
    A single directory object with case-insensitive, possibly multi-valued attributes.

    The distinguished name is the entry's natural key and is also exposed
    as the pseudo attribute ``dn``.
    """

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        self.dn = str(dn)
        self._attributes = {}
        self._names = {}
        for name, value in (attributes or {}).items():
            self._attributes[name.lower()] = value
            self._names[name.lower()] = name

    def __contains__(self, name: str) -> bool:
        return bool(self.values(name))

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __repr__(self) -> str:
        return f"DirectoryEntry({self.dn!r})"

    def get(self, name: str, default: Any = None) -> Any:
        """Return the raw attribute value (scalar or list) or ``default``."""
        if name.lower() == 'dn':
            return self.dn
        value = self._attributes.get(name.lower())
        if value is None or value == [] or value == ():
            return default
        return value

    def values(self, name: str) -> List[Any]:
        """Return all values of an attribute as a list (empty when absent)."""
        value = self.get(name)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [v for v in value if v is not None]
        return [value]

    def first(self, name: str) -> Any:
        values = self.values(name)
        return values[0] if values else None

    def as_dict(self) -> Dict[str, Any]:
        data = {'dn': self.dn}
        for key, name in self._names.items():
            data[name] = self._attributes[key]
        return data


@dataclass
class LocalRecord:
    """
    A user or group row in the local store.

    ``uid == 0`` means the record has never been persisted. ``memberships``
    holds group uids for users and subgroup uids for groups. ``extra_data``
    is auxiliary caller data and is never written to the store.
    """

    uid: int = 0
    dn: str = ''
    disabled: bool = False
    deleted: bool = False
    memberships: List[int] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)
    configuration_id: str = ''
    extra_data: Optional[Dict[str, Any]] = None

    BOOKKEEPING = ('uid', 'dn', 'disabled', 'deleted', 'memberships', 'configuration_id')

    @property
    def is_new(self) -> bool:
        return not self.uid

    def copy(self) -> 'LocalRecord':
        return copy.deepcopy(self)

    def add_membership(self, uid: int) -> bool:
        """Append a membership uid unless already present. Returns True if added."""
        if uid in self.memberships:
            return False
        self.memberships.append(uid)
        return True

    def to_row(self) -> Dict[str, Any]:
        """Flatten to the dict shape stored by the local store (without extra data)."""
        row = dict(copy.deepcopy(self.fields))
        row.update({
            'uid': self.uid,
            'dn': self.dn,
            'disabled': self.disabled,
            'deleted': self.deleted,
            'memberships': list(self.memberships),
            'configuration_id': self.configuration_id,
        })
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'LocalRecord':
        data = dict(row)
        record = cls(
            uid=int(data.pop('uid', 0) or 0),
            dn=data.pop('dn', '') or '',
            disabled=bool(data.pop('disabled', False)),
            deleted=bool(data.pop('deleted', False)),
            memberships=[int(m) for m in data.pop('memberships', None) or []],
            configuration_id=data.pop('configuration_id', '') or '',
        )
        data.pop('extra_data', None)
        record.fields = data
        return record


@dataclass
class PairedRecord:
    """A directory entry and its existing-or-blank local candidate."""

    entry: DirectoryEntry
    local: LocalRecord


@dataclass
class Counters:
    """Run-scoped totals reported at the end of a sync run."""

    users_added: int = 0
    users_updated: int = 0
    groups_added: int = 0
    groups_updated: int = 0

    @property
    def added(self) -> int:
        return self.users_added + self.groups_added

    @property
    def updated(self) -> int:
        return self.users_updated + self.groups_updated

    def record_added(self, kind: str):
        if kind == 'groups':
            self.groups_added += 1
        else:
            self.users_added += 1

    def record_updated(self, kind: str):
        if kind == 'groups':
            self.groups_updated += 1
        else:
            self.users_updated += 1

    def as_dict(self) -> Dict[str, int]:
        return {
            'added': self.added,
            'updated': self.updated,
            'users_added': self.users_added,
            'users_updated': self.users_updated,
            'groups_added': self.groups_added,
            'groups_updated': self.groups_updated,
        }


class RunStatus(Enum):
    IDLE = 'idle'
    PAGING = 'paging'
    PER_ENTRY = 'per_entry'
    COMPLETED = 'completed'
    ABORTED = 'aborted'
    CANCELLED = 'cancelled'


class ImportOutcome(Enum):
    CREATED = 'created'
    UPDATED = 'updated'
    UNCHANGED = 'unchanged'
    REJECTED = 'rejected'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    PARTIAL = 'partial'


@dataclass
class ImportResult:
    """Outcome of importing a single directory entry."""

    record: LocalRecord
    outcome: ImportOutcome
    entry: Optional[DirectoryEntry] = None
    error: Optional[str] = None

    @property
    def persisted(self) -> bool:
        return self.outcome in (ImportOutcome.CREATED, ImportOutcome.UPDATED, ImportOutcome.UNCHANGED)


@dataclass
class RunResult:
    """Terminal report of one sync run."""

    kind: str
    status: RunStatus = RunStatus.IDLE
    counters: Counters = field(default_factory=Counters)
    pages_fetched: int = 0
    entries_seen: int = 0
    outcomes: Dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in ImportOutcome})
    errors: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.status in (RunStatus.ABORTED, RunStatus.CANCELLED)

    def count(self, outcome: ImportOutcome):
        self.outcomes[outcome.value] += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'status': self.status.value,
            'partial': self.is_partial,
            'counters': self.counters.as_dict(),
            'pages_fetched': self.pages_fetched,
            'entries_seen': self.entries_seen,
            'outcomes': dict(self.outcomes),
            'errors': list(self.errors),
        }
