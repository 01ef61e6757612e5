"""
Paginated access to directory search results.

The page source turns a SyncContext into searches against the directory
client: a fresh paged search on the first call, the next page on resume,
and single-entry lookups by DN for the group hierarchy resolver.
"""

import logging
from typing import List, Optional, Tuple

from ldap3.utils.conv import escape_filter_chars

from ldap_reconcile.context import SyncContext
from ldap_reconcile.exceptions import DirectoryUnavailable
from ldap_reconcile.models import DirectoryEntry

logger = logging.getLogger(__name__)


class DirectoryPageSource:
    """
    Resumable, paginated sequence of directory entries.

    Args:
        client: Directory client exposing ``search(base_dn, filter, attributes,
            first_entry_only, size_limit, resume) -> (entries, is_partial)``
        size_limit: Server-side size limit passed to every paged search
    """

    def __init__(self, client, size_limit: int = 0):
        self.client = client
        self.size_limit = size_limit
        self.pages_fetched = 0
        self._has_more = False

    @property
    def has_more(self) -> bool:
        return self._has_more

    def fetch(self, context: SyncContext, resume: bool = False) -> Tuple[List[DirectoryEntry], bool]:
        """
        Fetch the next page of entries for a context.

        Args:
            context: Run context providing base DN, filter and attribute allow-list
            resume: False starts a fresh search, True continues the previous one

        Returns:
            Tuple of (entries in directory order, True if more pages are available)

        Raises:
            DirectoryUnavailable: If the directory cannot be searched
        """
        if not context.base_dn:
            logger.warning(f"No base DN configured for {context.kind}, nothing to fetch")
            self._has_more = False
            return [], False

        try:
            entries, has_more = self.client.search(
                context.base_dn,
                context.search_filter,
                list(context.attributes),
                False,
                self.size_limit,
                resume
            )
        except DirectoryUnavailable:
            self._has_more = False
            raise
        except Exception as e:
            self._has_more = False
            raise DirectoryUnavailable(f"Directory search failed: {e}")

        self.pages_fetched += 1
        self._has_more = bool(has_more)
        logger.debug(f"Fetched page {self.pages_fetched} for {context.table}: "
                     f"{len(entries)} entries, more available: {self._has_more}")
        return list(entries), self._has_more

    def fetch_by_dn(self, context: SyncContext, dn: str) -> Optional[DirectoryEntry]:
        """
        Look up a single entry by DN within the context's base and filter.

        Does not disturb the paging state of an ongoing ``fetch`` sequence.

        Returns:
            The entry, or None if the directory has no matching object
        """
        search_filter = f"(&{context.search_filter}({context.dn_attribute}={escape_filter_chars(dn)}))"
        try:
            entries, _ = self.client.search(
                context.base_dn,
                search_filter,
                list(context.attributes),
                True,
                1,
                False
            )
        except DirectoryUnavailable:
            raise
        except Exception as e:
            raise DirectoryUnavailable(f"Directory lookup of {dn} failed: {e}")

        if not entries:
            logger.debug(f"No directory entry found for {dn}")
            return None
        return entries[0]
