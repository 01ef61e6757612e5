"""
Local record matching.

Pairs every directory entry of a page with its existing local record, or a
blank one when the store has none, using a single batched store lookup.
"""

import logging
from typing import Any, Dict, List, Sequence

from ldap_reconcile.context import SyncContext, normalize_key
from ldap_reconcile.mapping import MISSING
from ldap_reconcile.models import DirectoryEntry, LocalRecord, PairedRecord

logger = logging.getLogger(__name__)


class LocalRecordMatcher:
    """
    Finds existing local candidates for a page of directory entries.

    The returned pairs follow the input order exactly: nothing is reordered,
    deduplicated or dropped.
    """

    def __init__(self, store):
        self.store = store

    def natural_key(self, context: SyncContext, entry: DirectoryEntry) -> Any:
        """Natural-key value of an entry, or None when it cannot be derived."""
        if context.natural_key == 'dn':
            return entry.dn

        rule = context.mapping.get(context.natural_key)
        value = rule.resolve(entry) if rule else entry.first(context.natural_key)
        if value is MISSING or value in (None, ''):
            return None
        if isinstance(value, list):
            value = value[0] if value else None
        return value

    def match(self, context: SyncContext, entries: Sequence[DirectoryEntry]) -> List[PairedRecord]:
        """
        Pair each entry with its local record.

        Args:
            context: Run context naming the table and natural key
            entries: Directory entries in page order

        Returns:
            One PairedRecord per entry, in the same order
        """
        if not entries:
            return []

        keys = [self.natural_key(context, entry) for entry in entries]
        lookup_keys = [key for key in keys if key is not None]

        found = []
        if lookup_keys:
            found = self.store.find_by_keys(context.table, context.natural_key, lookup_keys)

        index: Dict[str, LocalRecord] = {}
        for record in found:
            value = record.dn if context.natural_key == 'dn' else record.fields.get(context.natural_key)
            if value in (None, ''):
                continue
            normalized = normalize_key(context.natural_key, value)
            if normalized in index:
                logger.warning(f"Several {context.table} records share {context.natural_key}={value}; "
                               f"using uid {index[normalized].uid}")
                continue
            index[normalized] = record

        pairs = []
        for entry, key in zip(entries, keys):
            local = None
            if key is not None:
                local = index.get(normalize_key(context.natural_key, key))
            if local is None:
                local = LocalRecord(configuration_id=context.configuration_id)
            else:
                local = local.copy()
            pairs.append(PairedRecord(entry, local))

        logger.debug(f"Matched {sum(1 for p in pairs if not p.local.is_new)} of {len(pairs)} "
                     f"entries to existing {context.table} records")
        return pairs
