# matrix_hub/services/export.py
"""
CSV export of gtin_inventory_matrix: one row per GTIN, one price column per
location (columns ordered by location label).
"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from matrix_hub.models import LocationIndexEntry
from matrix_hub.store import DocumentStore, MatrixQuery

logger = logging.getLogger(__name__)

EXPORT_PAGE = 250

BASE_COLUMNS = [
    "gtin", "item_name", "sku", "category_name",
    "priced_location_count", "min_price", "max_price", "price_spread", "has_mismatch",
]


async def _location_columns(store: DocumentStore) -> List[str]:
    entries = [LocationIndexEntry(**d) for d in await store.list_location_entries() if d.get("loc_key")]
    entries.sort(key=lambda e: (e.label.lower(), e.loc_key))
    return [e.loc_key for e in entries]


async def matrix_to_frame(store: DocumentStore, mismatch_only: bool = False) -> pd.DataFrame:
    loc_keys = await _location_columns(store)
    rows: List[Dict[str, Any]] = []
    last_id: Optional[str] = None

    while True:
        docs = await store.run_matrix_query(
            MatrixQuery(mismatch_only=mismatch_only, start_after_id=last_id, limit=EXPORT_PAGE)
        )
        if not docs:
            break
        for doc in docs:
            row = {c: doc.get(c) for c in BASE_COLUMNS}
            prices = doc.get("prices_by_location") or {}
            for loc_key, snap in prices.items():
                if loc_key not in loc_keys:
                    loc_keys.append(loc_key)
                row[loc_key] = (snap or {}).get("price")
            rows.append(row)
        last_id = docs[-1]["gtin"]

    df = pd.DataFrame(rows, columns=BASE_COLUMNS + loc_keys)
    if loc_keys and not df.empty:
        df[loc_keys] = df[loc_keys].apply(pd.to_numeric, errors="coerce")
    return df


async def export_matrix_csv(store: DocumentStore, out: Path, mismatch_only: bool = False) -> int:
    """Write the matrix to ``out``; returns the number of rows."""
    df = await matrix_to_frame(store, mismatch_only=mismatch_only)
    out = Path(out)
    out.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out, index=False, encoding="utf-8")
    logger.info("Exported %d matrix rows to %s", len(df), out)
    return len(df)
