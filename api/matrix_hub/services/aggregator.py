# matrix_hub/services/aggregator.py
"""
Per-GTIN Aggregator.

Groups a page of raw inventory records by canonical GTIN and folds them into
MatrixEntry aggregates:

- one slot per LocationKey; duplicates resolved by ``should_replace``
- header fields (item_name, category_name, sku): first non-empty wins
- up to MAX_RAW_VARIANTS raw digit strings kept for debugging
- identifiers longer than MAX_GTIN_LENGTH digits are skipped like missing ones
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional

from matrix_hub.models import (
    RawInventoryRecord, LocationSnapshot, MatrixEntry, MatrixHeader
)
from matrix_hub.services.identifiers import canonical_gtin, normalize_digits, MAX_GTIN_LENGTH
from matrix_hub.services.metrics import compute_mismatch_metrics
from matrix_hub.services.search_tokens import make_search_key, make_search_tokens

logger = logging.getLogger(__name__)

MAX_RAW_VARIANTS = 5

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

KeyFor = Callable[[RawInventoryRecord], str]


def should_replace(existing: Optional[LocationSnapshot], candidate: LocationSnapshot) -> bool:
    """
    Conflict rule for two records in the same (gtin, locKey) slot.

    Priced beats unpriced; otherwise the newer calculated_at (falling back to
    updated_at) wins, and ties go to the candidate (later in scan order).
    """
    if existing is None:
        return True

    if existing.price is None and candidate.price is not None:
        return True
    if existing.price is not None and candidate.price is None:
        return False

    return (candidate.freshness or _EPOCH) >= (existing.freshness or _EPOCH)


def _fill_header(header: MatrixHeader, item_name: str, category_name: str, sku: str) -> None:
    if not header.item_name and item_name:
        header.item_name = item_name
    if not header.category_name and category_name:
        header.category_name = category_name
    if not header.sku and sku:
        header.sku = sku


def _add_raw_variant(entry: MatrixEntry, raw_digits: str) -> None:
    if raw_digits and raw_digits not in entry.gtin_raws and len(entry.gtin_raws) < MAX_RAW_VARIANTS:
        entry.gtin_raws.append(raw_digits)


def finalize_entry(entry: MatrixEntry, now: Optional[datetime] = None) -> MatrixEntry:
    """Recompute metrics and search fields from the entry's current state."""
    entry.metrics = compute_mismatch_metrics(entry.prices_by_location)
    entry.name_key = make_search_key(entry.header.item_name) or None
    entry.sku_key = make_search_key(entry.header.sku) or None
    entry.search_tokens = make_search_tokens(entry.header.item_name, entry.header.sku)
    entry.updated_at = now or entry.updated_at or datetime.now(timezone.utc)
    return entry


def merge_entries(stored: Optional[MatrixEntry], incoming: MatrixEntry) -> MatrixEntry:
    """
    Merge-on-write into the derived view.

    Incoming location slots overwrite stored ones, stored slots for other
    locations are kept, non-empty incoming header fields win, raw variants
    are unioned (capped). Metrics and tokens are recomputed over the result.
    """
    if stored is None:
        merged = incoming.model_copy(deep=True)
        return finalize_entry(merged, incoming.updated_at)

    merged = stored.model_copy(deep=True)
    merged.gtin = incoming.gtin

    h = incoming.header
    if h.item_name:
        merged.header.item_name = h.item_name
    if h.category_name:
        merged.header.category_name = h.category_name
    if h.sku:
        merged.header.sku = h.sku

    for raw in incoming.gtin_raws:
        _add_raw_variant(merged, raw)

    for loc_key, snap in incoming.prices_by_location.items():
        merged.prices_by_location[loc_key] = snap.model_copy()

    return finalize_entry(merged, incoming.updated_at)


class GtinAggregator:
    """Folds pages of raw records into per-GTIN aggregates."""

    def __init__(self, key_for: KeyFor):
        self.key_for = key_for
        self.skipped_no_gtin = 0
        self.skipped_no_location = 0

    def aggregate(self, records: Iterable[RawInventoryRecord]) -> Dict[str, MatrixEntry]:
        page: Dict[str, MatrixEntry] = {}

        for record in records:
            gtin = canonical_gtin(record.gtin)
            if not gtin or len(gtin) > MAX_GTIN_LENGTH:
                self.skipped_no_gtin += 1
                continue

            loc_key = self.key_for(record)
            if not loc_key:
                self.skipped_no_location += 1
                continue

            entry = page.get(gtin)
            if entry is None:
                entry = MatrixEntry(gtin=gtin)
                page[gtin] = entry

            _add_raw_variant(entry, normalize_digits(record.gtin))
            _fill_header(entry.header, record.item_name, record.category_name, record.sku)

            candidate = LocationSnapshot.from_record(record)
            if should_replace(entry.prices_by_location.get(loc_key), candidate):
                entry.prices_by_location[loc_key] = candidate

        return page


def aggregate_page(records: Iterable[RawInventoryRecord], key_for: KeyFor) -> Dict[str, MatrixEntry]:
    return GtinAggregator(key_for).aggregate(records)
