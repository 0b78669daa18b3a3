"""Paginated scan of the MasterUserRecords using a tier on one cluster."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from .store import RecordPage, StoreError, TierStore

logger = logging.getLogger(__name__)


class RecordScanner:
    """Lazy, finite, restartable sequence of record pages.

    The cursor lives only as long as one ``pages()`` iteration; abandoning the
    iteration at any point is safe and the next scan starts from the beginning.
    """

    def __init__(self, store: TierStore, page_size: int) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._store = store
        self._page_size = page_size

    @property
    def page_size(self) -> int:
        return self._page_size

    async def pages(self, cluster: str, tier_name: str) -> AsyncIterator[RecordPage]:
        """Yield pages until the store returns an empty cursor.

        Short or empty pages are not treated as exhaustion.

        Raises:
            StoreError: On read failures, or if the store hands back the cursor
                it was given (the scan would never terminate).
        """
        cursor = ""
        while True:
            page = await self._store.list_records(cluster, tier_name, self._page_size, cursor)
            logger.debug(
                "Fetched record page",
                extra={
                    "cluster": cluster,
                    "tier": tier_name,
                    "records": len(page.records),
                    "last_page": page.is_last,
                },
            )
            yield page

            if page.is_last:
                return
            if page.next_cursor == cursor:
                raise StoreError(
                    f"Record listing for cluster '{cluster}' returned a cursor that did not advance"
                )
            cursor = page.next_cursor
