"""
Per-run reconciliation context.

A SyncContext is built once from configuration at the start of a run and is
passed explicitly to every component. It is frozen; nothing in the engine
reads process-wide configuration.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from ldap_reconcile.exceptions import ConfigurationError
from ldap_reconcile.mapping import MappingRule, MappingTable


class RestorePolicy(Enum):
    """Which flags are cleared when an existing local record is updated."""

    ENABLE = 'enable'
    UNDELETE = 'undelete'
    BOTH = 'both'
    NOTHING = 'nothing'

    @classmethod
    def from_value(cls, value) -> 'RestorePolicy':
        if isinstance(value, cls):
            return value
        if value is None or value == '':
            return cls.BOTH
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ', '.join(p.value for p in cls)
            raise ConfigurationError(f"Invalid restore behavior '{value}' (expected one of: {valid})")

    @property
    def clears_disabled(self) -> bool:
        return self in (RestorePolicy.ENABLE, RestorePolicy.BOTH)

    @property
    def clears_deleted(self) -> bool:
        return self in (RestorePolicy.UNDELETE, RestorePolicy.BOTH)


SCOPES = ('be', 'fe')
KINDS = ('users', 'groups')


@dataclass(frozen=True)
class TargetTable:
    """Identity of the local table a run writes to, e.g. ``be_users``."""

    kind: str
    scope: str = 'be'

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ConfigurationError(f"Unknown record kind '{self.kind}' (expected users or groups)")
        if self.scope not in SCOPES:
            raise ConfigurationError(f"Unknown table scope '{self.scope}' (expected be or fe)")

    @property
    def name(self) -> str:
        return f"{self.scope}_{self.kind}"

    @property
    def group_table(self) -> str:
        return f"{self.scope}_groups"

    @property
    def is_users(self) -> bool:
        return self.kind == 'users'


DN_SEPARATOR = re.compile(r'(?<!\\),')

DEFAULT_FILTER_MARKERS = {
    'USERNAME': '*',
    'USERDN': '*',
}


def replace_filter_markers(search_filter: str, markers: Optional[Dict[str, str]] = None) -> str:
    """
    Resolve ``{MARKER}`` placeholders in an LDAP filter.

    Import runs search for every user, so login-time markers such as
    ``{USERNAME}`` resolve to a wildcard unless overridden.
    """
    values = dict(DEFAULT_FILTER_MARKERS)
    values.update(markers or {})
    resolved = search_filter
    for name, value in values.items():
        resolved = resolved.replace('{' + name + '}', str(value))
    return resolved


@dataclass(frozen=True)
class SyncContext:
    """Immutable configuration of one reconciliation run."""

    target: TargetTable
    base_dn: str
    search_filter: str
    mapping: MappingTable
    attributes: Tuple[str, ...] = ()
    configuration_id: str = 'default'
    natural_key: str = 'dn'
    restore_policy: RestorePolicy = RestorePolicy.BOTH
    required_groups: FrozenSet[str] = frozenset()
    assign_groups: Tuple[str, ...] = ()
    membership_attribute: str = 'memberOf'
    keep_local_groups: bool = False
    import_missing_groups: bool = False
    username_field: str = 'username'
    password_field: str = 'password'
    extra_mapping: Optional[MappingTable] = None
    parent_group: Optional[MappingRule] = None
    dn_attribute: str = 'distinguishedName'
    post_processors: Tuple = ()
    group_context: Optional['SyncContext'] = None

    @property
    def kind(self) -> str:
        return self.target.kind

    @property
    def table(self) -> str:
        return self.target.name

    @property
    def group_table(self) -> str:
        return self.target.group_table

    def misses_required_groups(self, group_dns: Iterable[str]) -> bool:
        """True when a required-group set is configured and none of ``group_dns`` is in it."""
        if not self.required_groups:
            return False
        return not any(normalize_dn(dn) in self.required_groups for dn in group_dns)


def normalize_dn(dn) -> str:
    """Case- and whitespace-insensitive DN comparison key."""
    if isinstance(dn, bytes):
        dn = dn.decode('utf-8', errors='replace')
    return ','.join(part.strip() for part in DN_SEPARATOR.split(str(dn))).lower()


def normalize_key(key_field: str, value) -> str:
    """Comparison key for natural-key matching: DN-aware for ``dn``, case-folded otherwise."""
    if key_field == 'dn':
        return normalize_dn(value)
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    return str(value).strip().casefold()
