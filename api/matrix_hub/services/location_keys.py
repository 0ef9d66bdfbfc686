# matrix_hub/services/location_keys.py
"""
Location Key Registry.

One LocationKey per physical (merchant, location) pair:
    "<merchant label> – <location label>"

merchant label: external label map > record merchant_name > raw merchant id
location label: location_name > location_id > "Default"

The key is fixed the first time a pair is seen in a run; later sightings only
backfill missing display fields. All observed keys are written to
location_index at the end of the run (doc id = sha1 of the key, so re-runs
merge into the same document).
"""
from __future__ import annotations
import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from matrix_hub.models import RawInventoryRecord, LocationIndexEntry
from matrix_hub.store import LocationMerge

logger = logging.getLogger(__name__)

KEY_SEPARATOR = " – "
DEFAULT_LOCATION_LABEL = "Default"


def location_doc_id(loc_key: str) -> str:
    """Deterministic location_index document id for a LocationKey."""
    return hashlib.sha1(loc_key.encode("utf-8")).hexdigest()


def make_location_key(merchant_label: str, location_label: str) -> str:
    merchant_label = (merchant_label or "").strip()
    if not merchant_label:
        return ""
    location_label = (location_label or "").strip() or DEFAULT_LOCATION_LABEL
    return f"{merchant_label}{KEY_SEPARATOR}{location_label}"


class LocationKeyRegistry:
    """Assigns and remembers LocationKeys for one reconciliation run."""

    def __init__(self, labels: Optional[Mapping[str, str]] = None):
        self.labels: Dict[str, str] = dict(labels or {})
        self._by_pair: Dict[Tuple[str, str], str] = {}
        self._entries: Dict[str, LocationIndexEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def key_for(self, record: RawInventoryRecord) -> str:
        """LocationKey for the record's (merchant, location); "" if unusable."""
        pair = (record.merchant_id, record.location_id or record.location_name or "")
        key = self._by_pair.get(pair)

        if key is None:
            merchant_label = self.labels.get(record.merchant_id) or record.merchant_name or record.merchant_id
            key = make_location_key(merchant_label, record.location_name or record.location_id or "")
            if not key:
                return ""
            self._by_pair[pair] = key

        sighting = LocationIndexEntry(
            loc_key=key,
            merchant_id=record.merchant_id,
            merchant_name=record.merchant_name,
            location_id=record.location_id,
            location_name=record.location_name,
        )
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = sighting
        else:
            entry.backfill(sighting)
        return key

    def observed(self) -> List[LocationIndexEntry]:
        return [self._entries[k] for k in sorted(self._entries)]

    def flush_ops(self, now: Optional[datetime] = None) -> List[LocationMerge]:
        now = now or datetime.now(timezone.utc)
        ops = []
        for entry in self.observed():
            stamped = entry.model_copy(update={"backfilled_at": now})
            ops.append(LocationMerge(doc_id=location_doc_id(entry.loc_key), entry=stamped))
        return ops

    async def flush(self, writer) -> int:
        """Enqueue every observed key and force-commit; returns the key count."""
        ops = self.flush_ops()
        logger.info("Writing location_index (%d keys)", len(ops))
        for op in ops:
            writer.enqueue(op)
            await writer.commit()
        await writer.commit(force=True)
        return len(ops)
