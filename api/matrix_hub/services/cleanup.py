# matrix_hub/services/cleanup.py
"""
Maintenance for the derived views.

- clean_derived_views: delete every gtin_inventory_matrix and location_index
  document (a full rebuild starts from nothing)
- prune_empty_entries: delete matrix entries whose location map is empty

Deletes go through the same BoundedBatchWriter as the rebuild, so DRY_RUN
counts the documents without touching them.
"""
from __future__ import annotations
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from matrix_hub.services.batch_writer import BoundedBatchWriter
from matrix_hub.store import DocumentStore, DeleteDoc, MATRIX_COLLECTION, LOCATION_COLLECTION, MatrixQuery

logger = logging.getLogger(__name__)

LIST_PAGE = 400

IdLister = Callable[[Optional[str], int], Awaitable[List[str]]]


async def _delete_all(writer: BoundedBatchWriter, collection: str, list_ids: IdLister) -> int:
    deleted = 0
    last_id: Optional[str] = None
    while True:
        ids = await list_ids(last_id, LIST_PAGE)
        if not ids:
            break
        for doc_id in ids:
            writer.enqueue(DeleteDoc(collection, doc_id))
            await writer.commit()
        await writer.commit(force=True)
        deleted += len(ids)
        last_id = ids[-1]
        logger.info("   %s: deleted=%d lastDoc=%s", collection, deleted, last_id)
    return deleted


async def clean_derived_views(store: DocumentStore, writer: BoundedBatchWriter) -> Dict[str, int]:
    """Delete both derived views; returns {collection: documents deleted}."""
    logger.info("Cleaning derived views (dryRun=%s)", writer.dry_run)
    counts = {
        MATRIX_COLLECTION: await _delete_all(writer, MATRIX_COLLECTION, store.list_matrix_ids),
        LOCATION_COLLECTION: await _delete_all(writer, LOCATION_COLLECTION, store.list_location_ids),
    }
    logger.info("Clean done. %s", counts)
    return counts


async def prune_empty_entries(store: DocumentStore, writer: BoundedBatchWriter) -> int:
    """Delete matrix entries with no locations left; returns the count."""
    pruned = 0
    last_id: Optional[str] = None
    while True:
        docs = await store.run_matrix_query(MatrixQuery(start_after_id=last_id, limit=LIST_PAGE))
        if not docs:
            break
        for doc in docs:
            if not doc.get("prices_by_location"):
                writer.enqueue(DeleteDoc(MATRIX_COLLECTION, doc["gtin"]))
                await writer.commit()
                pruned += 1
        last_id = docs[-1]["gtin"]
    await writer.commit(force=True)
    logger.info("Pruned %d empty matrix entries (dryRun=%s)", pruned, writer.dry_run)
    return pruned
