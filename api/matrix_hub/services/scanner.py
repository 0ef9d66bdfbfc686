# matrix_hub/services/scanner.py
"""
Paginated Source Scanner.

Pages through merchants/<id>/inventory ordered by document id, resuming after
the last document of the previous page. Stops on an empty page, or once the
(run-wide) distinct-GTIN budget is used up.
"""
from __future__ import annotations
import logging
from typing import AsyncIterator, List, Optional, Set

from matrix_hub.models import RawInventoryRecord
from matrix_hub.services.identifiers import canonical_gtin, MAX_GTIN_LENGTH
from matrix_hub.store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_READ_PAGE = 1000
MAX_READ_PAGE = 2000


class GtinBudget:
    """Cap on distinct canonical GTINs processed in one run (None = unlimited)."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self.seen: Set[str] = set()

    def admit(self, gtin: str) -> bool:
        if self.limit is None or gtin in self.seen:
            self.seen.add(gtin)
            return True
        if len(self.seen) >= self.limit:
            return False
        self.seen.add(gtin)
        return True

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and len(self.seen) >= self.limit


class PartitionScanner:
    def __init__(
        self,
        store: DocumentStore,
        merchant_id: str,
        page_size: int = DEFAULT_READ_PAGE,
        budget: Optional[GtinBudget] = None,
    ):
        self.store = store
        self.merchant_id = merchant_id
        self.page_size = page_size
        self.budget = budget

        self.last_doc_id: Optional[str] = None
        self.scanned = 0
        self.pages = 0
        self.stopped_by_budget = False

    async def pages_iter(self) -> AsyncIterator[List[RawInventoryRecord]]:
        while True:
            docs = await self.store.fetch_inventory_page(self.merchant_id, self.last_doc_id, self.page_size)
            if not docs:
                return

            page: List[RawInventoryRecord] = []
            for doc_id, data in docs:
                record = RawInventoryRecord.from_document(doc_id, self.merchant_id, data)
                if self.budget is not None:
                    gtin = canonical_gtin(record.gtin)
                    if gtin and len(gtin) <= MAX_GTIN_LENGTH and not self.budget.admit(gtin):
                        self.stopped_by_budget = True
                        break
                page.append(record)

            self.last_doc_id = docs[-1][0]
            self.scanned += len(page)
            self.pages += 1
            yield page

            if self.stopped_by_budget or (self.budget is not None and self.budget.exhausted):
                self.stopped_by_budget = True
                logger.info("LIMIT_GTINS reached (%s). Stopping early.", self.budget.limit)
                return

    def __aiter__(self) -> AsyncIterator[List[RawInventoryRecord]]:
        return self.pages_iter()
