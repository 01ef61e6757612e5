"""
Group hierarchy resolution.

After a group is imported, its parent-group references (a multi-valued
attribute of parent DNs) are walked: existing parents get the child linked
into their subgroup list, missing parents are fetched from the directory,
created with the child as their first subgroup and then walked in turn.

The walk is an explicit worklist with a visited set of (child, parent DN)
links, so parent-reference cycles in the directory terminate.
"""

import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from ldap_reconcile.context import SyncContext, normalize_dn
from ldap_reconcile.exceptions import ReconcileError
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.mapping import merge
from ldap_reconcile.models import Counters, DirectoryEntry, LocalRecord

logger = logging.getLogger(__name__)


class GroupHierarchyResolver:
    """
    Links imported groups into their parents, creating missing parents.

    Args:
        store: Local store collaborator
        page_source: DirectoryPageSource used for by-DN lookups of parents
        counters: Run counters; created parents increment ``groups_added``

    ``touched`` holds the normalized DNs of every group the resolver has written.
    """

    def __init__(self, store, page_source, counters: Optional[Counters] = None):
        self.store = store
        self.page_source = page_source
        self.counters = counters if counters is not None else Counters()
        self.touched: Set[str] = set()

    def parent_dns(self, context: SyncContext, entry: DirectoryEntry) -> List[str]:
        """Parent group DNs referenced by a group entry."""
        if context.parent_group is None:
            return []
        return [str(dn) for dn in context.parent_group.resolve_list(entry) if dn]

    def resolve(self, context: SyncContext, group: LocalRecord, entry: DirectoryEntry) -> List[LocalRecord]:
        """
        Walk the parents of a just-persisted group.

        Args:
            context: Group run context (parent reference rule, group table)
            group: The persisted child group; must have a non-zero uid
            entry: Directory entry the child was imported from

        Returns:
            Parent groups created during the walk

        Raises:
            ReconcileError: If the child group has not been persisted
            DirectoryUnavailable: If a parent lookup against the directory fails
            StoreError: If the store rejects a read or write
        """
        if group.is_new:
            raise ReconcileError(f"Cannot link unsaved group {group.dn} into its parents")

        worklist: Deque[Tuple[LocalRecord, List[str]]] = deque()
        worklist.append((group, self.parent_dns(context, entry)))
        return self._walk(context, worklist)

    def _walk(self, context: SyncContext, worklist: Deque[Tuple[LocalRecord, List[str]]]) -> List[LocalRecord]:
        visited: Set[Tuple[int, str]] = set()
        known: Dict[str, LocalRecord] = {}
        missing: Set[str] = set()
        created: List[LocalRecord] = []

        while worklist:
            child, parents = worklist.popleft()
            child_key = normalize_dn(child.dn)
            known.setdefault(child_key, child)

            for parent_dn in parents:
                parent_key = normalize_dn(parent_dn)
                if parent_key == child_key:
                    logger.warning(f"Group {child.dn} references itself as parent, ignored")
                    continue
                if (child.uid, parent_key) in visited:
                    continue
                visited.add((child.uid, parent_key))

                parent = known.get(parent_key) or self.store.find_one(context.group_table, 'dn', parent_dn)
                if parent is not None:
                    known[parent_key] = parent
                    self._link(context, parent, child)
                    continue

                if parent_key in missing:
                    continue

                parent_entry = self.page_source.fetch_by_dn(context, parent_dn)
                if parent_entry is None:
                    logger.warning(f"Parent group {parent_dn} of {child.dn} not found in directory")
                    missing.add(parent_key)
                    continue

                parent = self._create(context, parent_entry, [child.uid])
                known[parent_key] = parent
                created.append(parent)
                worklist.append((parent, self.parent_dns(context, parent_entry)))

        if created:
            logger.info(f"Created {len(created)} parent groups while resolving hierarchy")
        return created

    def _link(self, context: SyncContext, parent: LocalRecord, child: LocalRecord):
        if not parent.add_membership(child.uid):
            logger.debug(f"Group {child.dn} already linked into {parent.dn}")
            return
        self.store.update(context.group_table, parent)
        self.touched.add(normalize_dn(parent.dn))
        logger.debug(f"Linked group uid={child.uid} into parent {parent.dn} (uid={parent.uid})")

    def _create(self, context: SyncContext, entry: DirectoryEntry, memberships: List[int]) -> LocalRecord:
        record = merge(entry, LocalRecord(configuration_id=context.configuration_id), context.mapping)
        record.memberships = list(memberships)
        record.uid = self.store.insert(context.group_table, record)
        if not record.uid:
            raise ReconcileError(f"Store returned no uid for new group {record.dn}")
        self.touched.add(normalize_dn(record.dn))

        self.counters.groups_added += 1
        audit_logger.log_record_created(context.group_table, record.uid, record.dn)
        logger.info(f"Created group {record.dn} (uid={record.uid})")
        return record

    def ensure_group(self, context: SyncContext, dn: str) -> Tuple[Optional[LocalRecord], List[LocalRecord]]:
        """
        Return the local group for a DN, importing it from the directory if missing.

        Args:
            context: Group run context
            dn: Group DN

        Returns:
            Tuple of (local group or None if the directory has no such group,
            all groups created including the group itself and its parents)
        """
        existing = self.store.find_one(context.group_table, 'dn', dn)
        if existing is not None:
            return existing, []

        entry = self.page_source.fetch_by_dn(context, dn)
        if entry is None:
            logger.warning(f"Group {dn} not found in directory, membership skipped")
            return None, []

        group = self._create(context, entry, [])
        worklist: Deque[Tuple[LocalRecord, List[str]]] = deque([(group, self.parent_dns(context, entry))])
        return group, [group] + self._walk(context, worklist)
