"""
Mapping of directory attributes onto local record fields.

A mapping table associates each local field with an expression:

    username = <sAMAccountName:first>
    email    = <mail>
    name     = <givenName> <sn>
    groups   = <memberOf:all>
    tstamp   = {DATE}
    pid      = 12

``<attr>`` yields the attribute value (the full list when the directory
returned several values), ``:first`` the first value only, ``:all`` always
a list and ``:join(SEP)`` all values joined. Text mixed with markers is
rendered with the first value of each attribute. Expressions without
markers are literal constants. Resolution is pure and performs no I/O.
"""

import random
import re
import time
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ldap_reconcile.exceptions import ConfigurationError
from ldap_reconcile.models import DirectoryEntry, LocalRecord

logger = logging.getLogger(__name__)

MARKER_PATTERN = re.compile(r'<([^<>]*)>')
LITERAL_MARKER_PATTERN = re.compile(r'\{([A-Za-z_][A-Za-z0-9_]*)\}')
MARKER_BODY_PATTERN = re.compile(
    r'^\s*(?P<attribute>[A-Za-z0-9][A-Za-z0-9;=_.\-]*)\s*'
    r'(?::\s*(?P<modifier>[A-Za-z]+)\s*(?:\((?P<argument>.*)\))?)?\s*$'
)

MODIFIERS = ('first', 'all', 'join')
LITERAL_MARKERS = ('DATE', 'RAND')
DEFAULT_JOIN_SEPARATOR = ', '

RESERVED_FIELDS = ('uid', 'dn', 'disabled', 'deleted', 'memberships', 'configuration_id')


class _Missing:
    """Sentinel for a field whose referenced attribute is absent."""

    def __repr__(self) -> str:
        return 'MISSING'

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class AttributeMarker:
    """One ``<attribute:modifier>`` reference inside an expression."""

    def __init__(self, attribute: str, modifier: Optional[str] = None, separator: Optional[str] = None):
        self.attribute = attribute
        self.modifier = modifier
        self.separator = DEFAULT_JOIN_SEPARATOR if separator is None else separator

    @classmethod
    def parse(cls, body: str, expression: str) -> 'AttributeMarker':
        match = MARKER_BODY_PATTERN.match(body)
        if not match:
            raise ConfigurationError(f"Malformed attribute marker <{body}> in expression '{expression}'")

        modifier = match.group('modifier')
        argument = match.group('argument')
        if modifier is not None:
            modifier = modifier.lower()
            if modifier not in MODIFIERS:
                raise ConfigurationError(f"Unknown modifier '{modifier}' in expression '{expression}'")
            if argument is not None and modifier != 'join':
                raise ConfigurationError(f"Modifier '{modifier}' takes no argument in expression '{expression}'")

        return cls(match.group('attribute'), modifier, argument)

    def value(self, entry: DirectoryEntry) -> Any:
        """Value of the marker when it is the whole expression."""
        values = entry.values(self.attribute)
        if not values:
            return MISSING
        if self.modifier == 'first':
            return values[0]
        if self.modifier == 'all':
            return list(values)
        if self.modifier == 'join':
            return self.separator.join(_text(v) for v in values)
        return values[0] if len(values) == 1 else list(values)

    def text(self, entry: DirectoryEntry) -> Any:
        """Value of the marker when embedded in surrounding text."""
        values = entry.values(self.attribute)
        if not values:
            return MISSING
        if self.modifier in ('join', 'all'):
            return self.separator.join(_text(v) for v in values)
        return _text(values[0])


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def _literal_marker_value(name: str) -> int:
    if name == 'DATE':
        return int(time.time())
    return random.randint(0, 2 ** 31 - 1)


class MappingRule:
    """
    Expression populating one local field.

    Args:
        field: Local field name
        expression: Mapping expression, or a non-string literal (int, bool)

    Raises:
        ConfigurationError: If the expression is malformed
    """

    def __init__(self, field: str, expression: Any):
        self.field = field
        self.expression = expression
        self.markers: List[AttributeMarker] = []
        self._parts: List[Union[str, AttributeMarker]] = []

        if isinstance(expression, str):
            self._parse(expression)

    def _parse(self, expression: str):
        position = 0
        for match in MARKER_PATTERN.finditer(expression):
            self._parts.append(expression[position:match.start()])
            marker = AttributeMarker.parse(match.group(1), expression)
            self._parts.append(marker)
            self.markers.append(marker)
            position = match.end()
        self._parts.append(expression[position:])

        for text in self._parts:
            if isinstance(text, str) and ('<' in text or '>' in text):
                raise ConfigurationError(f"Unbalanced attribute marker in expression '{expression}' for field '{self.field}'")
            if isinstance(text, str):
                for name in LITERAL_MARKER_PATTERN.findall(text):
                    if name not in LITERAL_MARKERS:
                        raise ConfigurationError(
                            f"Unknown marker {{{name}}} in expression '{expression}' for field '{self.field}'. "
                            f"Use a registered post-processor instead of mapping hooks"
                        )

        self._parts = [part for part in self._parts if part != '']

    @property
    def is_literal(self) -> bool:
        return not self.markers

    @property
    def attributes(self) -> List[str]:
        return [marker.attribute for marker in self.markers]

    def resolve(self, entry: DirectoryEntry) -> Any:
        """
        Evaluate the rule against a directory entry.

        Returns:
            The field value, or ``MISSING`` when a referenced attribute is absent
        """
        if not isinstance(self.expression, str):
            return self.expression

        if len(self._parts) == 1 and isinstance(self._parts[0], AttributeMarker):
            return self._parts[0].value(entry)

        if len(self._parts) == 1 and LITERAL_MARKER_PATTERN.fullmatch(self._parts[0]):
            return _literal_marker_value(self._parts[0][1:-1])

        rendered = []
        for part in self._parts:
            if isinstance(part, AttributeMarker):
                text = part.text(entry)
                if text is MISSING:
                    return MISSING
                rendered.append(text)
            else:
                rendered.append(LITERAL_MARKER_PATTERN.sub(lambda m: str(_literal_marker_value(m.group(1))), part))
        return ''.join(rendered)

    def resolve_list(self, entry: DirectoryEntry) -> List[Any]:
        """Evaluate the rule and always return a list (empty when missing)."""
        value = self.resolve(entry)
        if value is MISSING or value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]

    def __repr__(self) -> str:
        return f"MappingRule({self.field!r}, {self.expression!r})"


class MappingTable:
    """Immutable mapping from local field name to MappingRule."""

    def __init__(self, rules: Iterable[MappingRule]):
        self._rules: Tuple[MappingRule, ...] = tuple(rules)
        self._by_field = {rule.field: rule for rule in self._rules}

    @classmethod
    def parse(cls, source: Union[None, str, Dict[str, Any]], reserved: Iterable[str] = RESERVED_FIELDS) -> 'MappingTable':
        """
        Build a table from a dict or from ``field = expression`` lines.

        Raises:
            ConfigurationError: On malformed lines, expressions or reserved field names
        """
        if source is None:
            return cls([])

        if isinstance(source, str):
            pairs = _parse_text_mapping(source)
        elif isinstance(source, dict):
            pairs = list(source.items())
        else:
            raise ConfigurationError(f"Mapping must be a dictionary or text, got {type(source).__name__}")

        reserved = {name.lower() for name in reserved}
        rules = []
        for field_name, expression in pairs:
            field_name = str(field_name).strip()
            if not field_name:
                raise ConfigurationError("Mapping contains an empty field name")
            if field_name.lower() in reserved:
                raise ConfigurationError(f"Field '{field_name}' is managed by the reconciler and cannot be mapped")
            rules.append(MappingRule(field_name, expression))
        return cls(rules)

    def __iter__(self) -> Iterator[MappingRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, field_name: str) -> bool:
        return field_name in self._by_field

    def get(self, field_name: str) -> Optional[MappingRule]:
        return self._by_field.get(field_name)

    def fields(self) -> List[str]:
        return [rule.field for rule in self._rules]

    def attributes(self) -> List[str]:
        """Directory attributes referenced by the table, in first-use order."""
        seen = []
        for rule in self._rules:
            for attribute in rule.attributes:
                if attribute.lower() != 'dn' and attribute.lower() not in [a.lower() for a in seen]:
                    seen.append(attribute)
        return seen


def _parse_text_mapping(text: str) -> List[Tuple[str, str]]:
    pairs = []
    for number, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if '=' not in line:
            raise ConfigurationError(f"Mapping line {number} is not of the form 'field = expression': {line}")
        field_name, expression = line.split('=', 1)
        pairs.append((field_name.strip(), expression.strip()))
    return pairs


def get_ldap_attributes(*tables: Optional[MappingTable], extra: Iterable[str] = ()) -> List[str]:
    """Union of attributes referenced by several tables plus ``extra`` names."""
    attributes = []
    lowered = set()
    for name in [a for table in tables if table for a in table.attributes()] + list(extra):
        if name and name.lower() not in lowered and name.lower() != 'dn':
            lowered.add(name.lower())
            attributes.append(name)
    return attributes


def resolve(entry: DirectoryEntry, table: MappingTable) -> Dict[str, Any]:
    """
    Compute the field values a directory entry contributes to a local record.

    Fields whose referenced attribute is absent are omitted.
    """
    values = {}
    for rule in table:
        value = rule.resolve(entry)
        if value is MISSING:
            logger.debug(f"Attribute for field '{rule.field}' missing on {entry.dn}")
            continue
        values[rule.field] = value
    return values


def merge(
    entry: DirectoryEntry,
    local: LocalRecord,
    table: MappingTable,
    preserve: Iterable[str] = ()
) -> LocalRecord:
    """
    Combine a directory entry with an existing-or-blank local record.

    Returns a new record: bookkeeping (uid, flags, memberships, owning
    configuration, extra data) is copied from ``local``, the DN comes from
    the entry and mapped fields overwrite local ones. Fields listed in
    ``preserve`` keep their local value when the local record has one.
    """
    record = local.copy()
    record.dn = entry.dn
    preserve = set(preserve)
    for field_name, value in resolve(entry, table).items():
        if field_name in preserve and record.fields.get(field_name) not in (None, ''):
            continue
        record.fields[field_name] = value
    return record
