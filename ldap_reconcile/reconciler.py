"""
Directory reconciliation engine.

The Reconciler drives one sync run for one SyncContext: it pages through
the directory, pairs each entry with its local record, applies required-group
gating, decides between create and update, applies the restore policy,
persists, and for groups links the result into the group hierarchy.

Run states: idle -> paging -> per_entry -> (completed | aborted | cancelled).
"""

import logging
import secrets
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ldap_reconcile.context import RestorePolicy, SyncContext, normalize_dn
from ldap_reconcile.exceptions import (
    ConfigurationError, DirectoryUnavailable, PartialImportError, ReconcileError
)
from ldap_reconcile.hierarchy import GroupHierarchyResolver
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.mapping import MISSING, merge, resolve
from ldap_reconcile.matcher import LocalRecordMatcher
from ldap_reconcile.models import (
    Counters, DirectoryEntry, ImportOutcome, ImportResult, LocalRecord,
    PairedRecord, RunResult, RunStatus
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERRORS = 10
MAX_LOGIN_SUFFIX = 1000


class Reconciler:
    """
    Orchestrates one reconciliation run.

    Args:
        context: Immutable run configuration
        page_source: DirectoryPageSource for the run
        matcher: LocalRecordMatcher (built from ``store`` when None)
        store: Local store collaborator
        hierarchy: GroupHierarchyResolver (built on demand when None)
        cancel_event: Optional event; when set, no further entry or page is started
        max_errors: Failed entries tolerated before the run is aborted
    """

    def __init__(
        self,
        context: SyncContext,
        page_source,
        matcher: Optional[LocalRecordMatcher],
        store,
        hierarchy: Optional[GroupHierarchyResolver] = None,
        cancel_event: Optional[threading.Event] = None,
        max_errors: int = DEFAULT_MAX_ERRORS
    ):
        self.context = context
        self.page_source = page_source
        self.store = store
        self.matcher = matcher or LocalRecordMatcher(store)
        self.counters = Counters()
        self.hierarchy = hierarchy or GroupHierarchyResolver(store, page_source, self.counters)
        self.hierarchy.counters = self.counters
        self.cancel_event = cancel_event
        self.max_errors = max_errors
        self.status = RunStatus.IDLE

    # Caller-facing API

    def fetch_next_batch(self, resume: bool = False) -> Tuple[List[DirectoryEntry], bool]:
        """Fetch the next page of directory entries and whether more are available."""
        return self.page_source.fetch(self.context, resume)

    def match_local_records(self, entries: List[DirectoryEntry]) -> List[PairedRecord]:
        """Pair each entry with its existing-or-blank local record, preserving order."""
        return self.matcher.match(self.context, entries)

    def get_counters(self) -> Dict[str, int]:
        return self.counters.as_dict()

    def gate(self, entry: DirectoryEntry) -> Optional[List[str]]:
        """
        Evaluate required-group gating for an entry.

        Returns:
            The entry's directory group DNs, or None if the entry must be rejected
        """
        if not self.context.target.is_users:
            return []

        group_dns = [str(dn) for dn in entry.values(self.context.membership_attribute)]
        if self.context.misses_required_groups(group_dns):
            return None
        return group_dns

    def merge(self, pair: PairedRecord) -> LocalRecord:
        """
        Merge a directory entry onto its local candidate.

        The login of an existing user is kept; auxiliary data is resolved
        from the ``extra_mapping`` table when one is configured.
        """
        preserve = ()
        if self.context.target.is_users and not pair.local.is_new:
            preserve = (self.context.username_field,)

        record = merge(pair.entry, pair.local, self.context.mapping, preserve=preserve)
        if not record.configuration_id:
            record.configuration_id = self.context.configuration_id
        if self.context.extra_mapping is not None:
            record.extra_data = resolve(pair.entry, self.context.extra_mapping)
        return record

    def import_entry(
        self,
        record: LocalRecord,
        entry: DirectoryEntry,
        restore_policy: Any = None,
        group_dns: Optional[List[str]] = None
    ) -> ImportResult:
        """
        Create or update the local record for one directory entry.

        Args:
            record: Merged record (see ``merge``)
            entry: Raw directory entry the record was merged from
            restore_policy: Override of the run's restore policy
            group_dns: Already gated group DNs; gating is evaluated here when None

        Returns:
            ImportResult carrying the final record with ``extra_data`` restored

        Raises:
            ConfigurationError: On an invalid restore policy or a failing post-processor
            DirectoryUnavailable: If a group lookup against the directory fails
            StoreError: If the store rejects a read or write
            PartialImportError: If a step fails after records for the entry were already written
        """
        policy = self.context.restore_policy if restore_policy is None else RestorePolicy.from_value(restore_policy)

        if group_dns is None:
            group_dns = self.gate(entry)
            if group_dns is None:
                return self._reject(record, entry)

        extra_data = record.extra_data
        record = record.copy()
        record.extra_data = None
        created_groups: List[LocalRecord] = []
        written: List[str] = []

        try:
            if self.context.target.is_users:
                memberships, created_groups = self._resolve_memberships(record, group_dns, written)
                record.memberships = memberships

            if record.is_new:
                outcome = self._create(record)
            else:
                outcome = self._update(record, policy)
            if outcome is not ImportOutcome.UNCHANGED:
                written.append(record.dn)

            if not self.context.target.is_users:
                created_groups = self.hierarchy.resolve(self.context, record, entry)
                written.extend(group.dn for group in created_groups)

            record.extra_data = extra_data
            self._post_process(self.context.table, record)
            for group in created_groups:
                self._post_process(self.context.group_table, group)
        except ReconcileError as e:
            if not written or isinstance(e, (ConfigurationError, DirectoryUnavailable, PartialImportError)):
                raise
            raise PartialImportError(f"{e} (already written: {', '.join(written)})", written) from e

        return ImportResult(record, outcome, entry)

    def run(
        self,
        selected_dns: Optional[Iterable[str]] = None,
        on_result: Optional[Callable[[ImportResult], None]] = None
    ) -> RunResult:
        """
        Run the reconciliation over all directory pages.

        Args:
            selected_dns: Import only these DNs; other entries are reported as skipped
            on_result: Called with every ImportResult as it is produced

        Returns:
            RunResult with the terminal status and counters

        Raises:
            ConfigurationError: Propagated after marking the run aborted
        """
        result = RunResult(kind=self.context.kind, counters=self.counters)
        selected = None
        if selected_dns is not None:
            selected = {normalize_dn(dn) for dn in selected_dns}

        logger.info(f"Starting {self.context.table} reconciliation for configuration "
                    f"'{self.context.configuration_id}' (base {self.context.base_dn})")
        try:
            self.status = self._run_pages(result, selected, on_result)
        except DirectoryUnavailable as e:
            self.status = RunStatus.ABORTED
            result.errors.append(f"Directory unavailable: {e}")
            logger.error(f"Directory unavailable, aborting {self.context.table} run after "
                         f"{result.entries_seen} entries: {e}")
        except ConfigurationError as e:
            self.status = RunStatus.ABORTED
            result.errors.append(f"Configuration error: {e}")
            logger.error(f"Configuration error, aborting {self.context.table} run: {e}")
            raise
        finally:
            result.status = self.status

        logger.info(f"Finished {self.context.table} reconciliation: status={result.status.value}, "
                    f"entries={result.entries_seen}, added={self.counters.added}, updated={self.counters.updated}")
        return result

    def disable_records(self) -> List[int]:
        """Disable every local record owned by this configuration."""
        uids = self.store.disable_for_configuration(self.context.table, self.context.configuration_id)
        audit_logger.log_bulk_operation('disable', self.context.table, self.context.configuration_id, len(uids))
        logger.info(f"Disabled {len(uids)} {self.context.table} records")
        return uids

    def delete_records(self) -> List[int]:
        """Flag every local record owned by this configuration as deleted."""
        uids = self.store.delete_for_configuration(self.context.table, self.context.configuration_id)
        audit_logger.log_bulk_operation('delete', self.context.table, self.context.configuration_id, len(uids))
        logger.info(f"Deleted {len(uids)} {self.context.table} records")
        return uids

    # Run loop

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _run_pages(self, result: RunResult, selected: Optional[Set[str]],
                   on_result: Optional[Callable[[ImportResult], None]]) -> RunStatus:
        self.status = RunStatus.PAGING
        failures = 0
        resume = False

        while True:
            if self._cancelled():
                logger.warning(f"{self.context.table} run cancelled before page {result.pages_fetched + 1}")
                return RunStatus.CANCELLED

            self.status = RunStatus.PAGING
            entries, has_more = self.fetch_next_batch(resume)
            result.pages_fetched += 1

            self.status = RunStatus.PER_ENTRY
            self.hierarchy.touched.clear()
            for pair in self.match_local_records(entries):
                if self._cancelled():
                    logger.warning(f"{self.context.table} run cancelled at {pair.entry.dn}")
                    return RunStatus.CANCELLED

                result.entries_seen += 1
                import_result = self._process(pair, selected)
                result.count(import_result.outcome)
                if on_result:
                    on_result(import_result)

                if import_result.outcome in (ImportOutcome.FAILED, ImportOutcome.PARTIAL):
                    failures += 1
                    result.errors.append(f"{pair.entry.dn}: {import_result.error}")
                    if failures >= self.max_errors:
                        logger.error(f"Aborting {self.context.table} run after {failures} failed entries")
                        return RunStatus.ABORTED

            if not has_more:
                return RunStatus.COMPLETED
            resume = True

    def _process(self, pair: PairedRecord, selected: Optional[Set[str]]) -> ImportResult:
        entry = pair.entry
        if selected is not None and normalize_dn(entry.dn) not in selected:
            return ImportResult(pair.local, ImportOutcome.SKIPPED, entry)

        group_dns = self.gate(entry)
        if group_dns is None:
            return self._reject(pair.local, entry)

        record = self.merge(self._refresh(pair))
        try:
            return self.import_entry(record, entry, group_dns=group_dns)
        except (ConfigurationError, DirectoryUnavailable):
            raise
        except PartialImportError as e:
            logger.error(f"Import of {entry.dn} into {self.context.table} failed part way: {e}")
            return ImportResult(record, ImportOutcome.PARTIAL, entry, error=str(e))
        except ReconcileError as e:
            logger.error(f"Failed to import {entry.dn} into {self.context.table}: {e}")
            return ImportResult(record, ImportOutcome.FAILED, entry, error=str(e))

    def _refresh(self, pair: PairedRecord) -> PairedRecord:
        """Re-read a group candidate that the hierarchy walk wrote after the page was matched."""
        if self.context.target.is_users or normalize_dn(pair.entry.dn) not in self.hierarchy.touched:
            return pair

        current = self.store.find_one(self.context.table, 'dn', pair.entry.dn)
        if current is None:
            return pair
        logger.debug(f"Reloaded {self.context.table} record {pair.entry.dn} (uid={current.uid}) "
                     f"after hierarchy changes")
        return PairedRecord(pair.entry, current)

    def _reject(self, record: LocalRecord, entry: DirectoryEntry) -> ImportResult:
        logger.debug(f"{entry.dn} is not a member of any required group, not imported")
        audit_logger.log_record_rejected(self.context.table, entry.dn, 'required group mismatch')
        return ImportResult(record, ImportOutcome.REJECTED, entry)

    # Persistence paths

    def _create(self, record: LocalRecord) -> ImportOutcome:
        if self.context.target.is_users:
            record.fields[self.context.username_field] = self._unique_login(record)
            record.fields[self.context.password_field] = secrets.token_urlsafe(32)

        uid = self.store.insert(self.context.table, record)
        if not uid:
            raise ReconcileError(f"Store returned no uid for new record {record.dn}")
        record.uid = uid

        self.counters.record_added(self.context.kind)
        audit_logger.log_record_created(self.context.table, uid, record.dn)
        logger.info(f"Created {self.context.table} record {record.dn} (uid={uid})")
        return ImportOutcome.CREATED

    def _update(self, record: LocalRecord, policy: RestorePolicy) -> ImportOutcome:
        if policy.clears_disabled:
            record.disabled = False
        if policy.clears_deleted:
            record.deleted = False

        changed = self.store.update(self.context.table, record)
        audit_logger.log_record_updated(self.context.table, record.uid, record.dn, changed)
        if not changed:
            logger.debug(f"No changes for {self.context.table} record {record.dn} (uid={record.uid})")
            return ImportOutcome.UNCHANGED

        self.counters.record_updated(self.context.kind)
        logger.info(f"Updated {self.context.table} record {record.dn} (uid={record.uid})")
        return ImportOutcome.UPDATED

    def _unique_login(self, record: LocalRecord) -> str:
        """Login derived from the mapped username, numbered on collision: jdoe, jdoe1, jdoe2."""
        base = record.fields.get(self.context.username_field)
        if isinstance(base, list):
            base = base[0] if base else None
        if base in (None, '') or base is MISSING:
            base = _first_rdn_value(record.dn)
        if isinstance(base, bytes):
            base = base.decode('utf-8', errors='replace')
        base = str(base)

        candidate = base
        for suffix in range(1, MAX_LOGIN_SUFFIX + 1):
            if not self.store.exists(self.context.table, self.context.username_field, candidate, record.uid):
                return candidate
            candidate = f"{base}{suffix}"
        raise ReconcileError(f"Could not find a free login for {record.dn} based on '{base}'")

    def _resolve_memberships(self, record: LocalRecord, group_dns: List[str],
                             written: List[str]) -> Tuple[List[int], List[LocalRecord]]:
        """
        Local group uids for a user, in directory order followed by assigned groups.

        Returns:
            Tuple of (membership uids, groups created on the way)
        """
        wanted = list(group_dns) + list(self.context.assign_groups)
        memberships = list(record.memberships) if self.context.keep_local_groups else []
        created: List[LocalRecord] = []
        if not wanted:
            return memberships, created

        found = self.store.find_by_keys(self.context.group_table, 'dn', wanted)
        groups = {normalize_dn(group.dn): group for group in found}

        for dn in wanted:
            key = normalize_dn(dn)
            group = groups.get(key)
            if group is None and self.context.import_missing_groups:
                group = self._import_missing_group(dn, created, written)
                if group is not None:
                    groups[key] = group
            if group is None:
                logger.debug(f"Group {dn} of {record.dn} has no local record, membership skipped")
                continue
            if group.deleted:
                logger.debug(f"Group {dn} of {record.dn} is deleted locally, membership skipped")
                continue
            if group.uid not in memberships:
                memberships.append(group.uid)

        return memberships, created

    def _import_missing_group(self, dn: str, created: List[LocalRecord], written: List[str]) -> Optional[LocalRecord]:
        group_context = self.context.group_context
        if group_context is None:
            logger.warning(f"Cannot import missing group {dn}: no group configuration")
            return None
        group, new_groups = self.hierarchy.ensure_group(group_context, dn)
        created.extend(new_groups)
        written.extend(new.dn for new in new_groups)
        return group

    def _post_process(self, table: str, record: LocalRecord):
        for processor in self.context.post_processors:
            try:
                processor.process_imported_record(table, record)
            except ConfigurationError:
                raise
            except Exception as e:
                raise ReconcileError(f"Post-processor {processor.name} failed for {record.dn}: {e}") from e


def _first_rdn_value(dn: str) -> str:
    first = dn.split(',', 1)[0]
    return first.split('=', 1)[1].strip() if '=' in first else first.strip()
