# matrix_hub/services/query_planner.py
"""
Query Planner + Cursor Codec for gtin_inventory_matrix.

Mode selection for a free-text query:
    exact   all digits (spaces ignored), >= 8 chars -> doc id lookup (canonical GTIN)
    token   short non-numeric term ("200ml", "titos") -> search_tokens membership,
            ordered by price_spread desc
    prefix  anything else -> name_key / sku_key range [key, key + "\\uf8ff"]
    all     empty query -> every entry by doc id

On a first page (no usable cursor) with zero rows, the planner falls back
once to the next mode of FALLBACK_ORDER.

Cursors are opaque tokens: urlsafe base64 of {"m": mode, "id": last doc id,
"v": last sort value}. Anything that does not decode, or that points at a
document which no longer exists, is ignored (query restarts from the top).
"""
from __future__ import annotations
import base64
import enum
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from matrix_hub.errors import QueryError
from matrix_hub.models import (
    MatrixQueryRequest, MatrixQueryResponse, LocationIndexEntry, LocationMeta
)
from matrix_hub.services.identifiers import canonicalize_query
from matrix_hub.services.search_tokens import make_search_key, MIN_TOKEN_LENGTH
from matrix_hub.store import DocumentStore, MatrixQuery

logger = logging.getLogger(__name__)

EXACT_MIN_DIGITS = 8
TOKEN_QUERY_MAX_LENGTH = 10
MAX_PAGE_SIZE = 250

# "missing in location" filter: over-fetch and filter in memory
MISSING_FETCH_MULTIPLIER = 4
MISSING_HARD_CAP_SCANS = 8

_DIGITS = re.compile(r"^[0-9]+$")
_WHITESPACE = re.compile(r"\s+")


class QueryMode(str, enum.Enum):
    exact = "exact"
    token = "token"
    prefix = "prefix"
    all = "all"


FALLBACK_ORDER = (QueryMode.exact, QueryMode.token, QueryMode.prefix)


def fallback_for(mode: QueryMode) -> Optional[QueryMode]:
    if mode not in FALLBACK_ORDER:
        return None
    i = FALLBACK_ORDER.index(mode)
    return FALLBACK_ORDER[i + 1] if i + 1 < len(FALLBACK_ORDER) else None


# ============================================================================
# Cursor codec
# ============================================================================

@dataclass(frozen=True)
class Cursor:
    mode: QueryMode
    last_id: str
    last_value: Any = None


def encode_cursor(cursor: Cursor) -> str:
    payload: Dict[str, Any] = {"m": cursor.mode.value, "id": cursor.last_id}
    if cursor.last_value is not None:
        payload["v"] = cursor.last_value
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: Optional[str]) -> Optional[Cursor]:
    """Cursor from an opaque token, or None for anything malformed."""
    if not token:
        return None
    try:
        s = str(token).strip()
        raw = base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))
        payload = json.loads(raw.decode("utf-8"))
        mode = QueryMode(payload["m"])
        last_id = payload["id"]
        value = payload.get("v")
        if mode is QueryMode.token:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            value = float(value)
    except (ValueError, TypeError, KeyError, OverflowError):
        return None

    if not isinstance(last_id, str) or not last_id:
        return None
    if mode is QueryMode.token and not math.isfinite(value):
        return None
    if mode is QueryMode.prefix and not isinstance(value, str):
        return None
    if mode in (QueryMode.exact, QueryMode.all) and value is not None:
        return None
    return Cursor(mode=mode, last_id=last_id, last_value=value)


# ============================================================================
# Planner
# ============================================================================

@dataclass
class QueryPlan:
    mode: QueryMode
    text: str = ""
    key: str = ""
    gtin: str = ""


def plan_query(query: Optional[str]) -> QueryPlan:
    """Pick the query mode for the raw search text."""
    q = (query or "").strip()
    if not q:
        return QueryPlan(mode=QueryMode.all)

    compact = _WHITESPACE.sub("", q.lower())
    if _DIGITS.match(compact) and len(compact) >= EXACT_MIN_DIGITS:
        return QueryPlan(
            mode=QueryMode.exact, text=q, key=compact, gtin=canonicalize_query(compact) or compact
        )

    key = make_search_key(q)
    if key and not key.isdigit() and MIN_TOKEN_LENGTH <= len(key) <= TOKEN_QUERY_MAX_LENGTH:
        return QueryPlan(mode=QueryMode.token, text=q, key=key)
    return QueryPlan(mode=QueryMode.prefix, text=q, key=key)


class QueryPlanner:
    """Executes MatrixQueryRequests against a DocumentStore."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def execute(self, request: MatrixQueryRequest) -> MatrixQueryResponse:
        page_size = max(1, min(int(request.page_size or 50), MAX_PAGE_SIZE))
        locations, locations_meta = await self.load_locations()
        self._validate_missing_filter(request, locations)

        plan = plan_query(request.query)
        cursor = await self._resolve_cursor(request.cursor, plan.mode)
        mode = cursor.mode if cursor else plan.mode

        rows, last_doc, has_more = await self._fetch(mode, plan, request, page_size, cursor)

        fallback_from: Optional[QueryMode] = None
        if not rows and cursor is None:
            next_mode = fallback_for(mode)
            if next_mode is not None:
                logger.debug("Mode %s returned nothing for %r; falling back to %s", mode.value, plan.text, next_mode.value)
                fallback_from, mode = mode, next_mode
                rows, last_doc, has_more = await self._fetch(mode, plan, request, page_size, None)

        next_cursor = None
        if has_more and last_doc is not None:
            next_cursor = encode_cursor(Cursor(mode, last_doc["gtin"], self._sort_value(mode, request, last_doc)))

        return MatrixQueryResponse(
            rows=rows,
            locations=locations,
            locations_meta=locations_meta,
            next_cursor=next_cursor,
            mode=mode.value,
            fallback_from=fallback_from.value if fallback_from else None,
        )

    # -------------------------------------------------------------------------
    # Locations
    # -------------------------------------------------------------------------

    async def load_locations(self) -> Tuple[List[str], Dict[str, LocationMeta]]:
        entries = [LocationIndexEntry(**d) for d in await self.store.list_location_entries() if d.get("loc_key")]
        entries.sort(key=lambda e: (e.label.lower(), e.loc_key))

        meta = {
            e.loc_key: LocationMeta(
                loc_key=e.loc_key,
                label=e.label,
                merchant_id=e.merchant_id,
                merchant_name=e.merchant_name,
            )
            for e in entries
        }
        return [e.loc_key for e in entries], meta

    @staticmethod
    def _validate_missing_filter(request: MatrixQueryRequest, locations: List[str]) -> None:
        if request.missing_target is None:
            if request.missing_require_present_in:
                raise QueryError("missing_require_present_in needs missing_target")
            return
        if request.missing_target not in locations:
            raise QueryError(f"missing_target must be one of locations (locKey). Got: {request.missing_target}")
        if request.missing_require_present_in and request.missing_require_present_in not in locations:
            raise QueryError(
                f"missing_require_present_in must be one of locations (locKey). Got: {request.missing_require_present_in}"
            )

    # -------------------------------------------------------------------------
    # Cursor resolution
    # -------------------------------------------------------------------------

    async def _resolve_cursor(self, token: Optional[str], planned: QueryMode) -> Optional[Cursor]:
        cursor = decode_cursor(token)
        if cursor is None:
            if token:
                logger.debug("Ignoring undecodable cursor")
            return None
        if cursor.mode not in (planned, fallback_for(planned)):
            logger.debug("Ignoring cursor for mode %s (query mode %s)", cursor.mode.value, planned.value)
            return None
        if await self.store.get_matrix_entry(cursor.last_id) is None:
            logger.debug("Ignoring stale cursor; %s no longer exists", cursor.last_id)
            return None
        return cursor

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    @staticmethod
    def _key_field(request: MatrixQueryRequest) -> str:
        return "sku_key" if request.search_field == "sku" else "name_key"

    def _sort_value(self, mode: QueryMode, request: MatrixQueryRequest, doc: Dict[str, Any]) -> Any:
        if mode is QueryMode.token:
            return float(doc.get("price_spread") or 0)
        if mode is QueryMode.prefix:
            return str(doc.get(self._key_field(request)) or "")
        return None

    def _build_query(
        self, mode: QueryMode, plan: QueryPlan, request: MatrixQueryRequest, limit: int,
        after_id: Optional[str], after_value: Any,
    ) -> MatrixQuery:
        q = MatrixQuery(
            mismatch_only=request.mismatch_only,
            start_after_id=after_id,
            start_after_value=after_value,
            limit=limit,
        )
        if mode is QueryMode.exact:
            q.exact_id = plan.gtin or plan.key
        elif mode is QueryMode.token:
            q.order_by = "price_spread"
            q.token = plan.key
        elif mode is QueryMode.prefix:
            q.order_by = self._key_field(request)
            q.key_prefix = plan.key
        return q

    async def _fetch(
        self, mode: QueryMode, plan: QueryPlan, request: MatrixQueryRequest, page_size: int,
        cursor: Optional[Cursor],
    ) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]], bool]:
        """Returns (rows, last scanned doc, more pages exist)."""
        after_id = cursor.last_id if cursor else None
        after_value = cursor.last_value if cursor else None

        if request.missing_target is None:
            docs = await self.store.run_matrix_query(
                self._build_query(mode, plan, request, page_size + 1, after_id, after_value)
            )
            rows = docs[:page_size]
            return rows, (rows[-1] if rows else None), len(docs) > page_size

        # Missing-in-location: the cursor advances from the last SCANNED doc,
        # not the last returned row.
        scan_limit = min(page_size * MISSING_FETCH_MULTIPLIER, MAX_PAGE_SIZE)
        rows: List[Dict[str, Any]] = []
        last_scanned: Optional[Dict[str, Any]] = None

        for _ in range(MISSING_HARD_CAP_SCANS):
            docs = await self.store.run_matrix_query(
                self._build_query(mode, plan, request, scan_limit, after_id, after_value)
            )
            for i, doc in enumerate(docs):
                last_scanned = doc
                if self._is_missing_row(doc, request):
                    rows.append(doc)
                if len(rows) >= page_size:
                    more_in_batch = i + 1 < len(docs)
                    return rows, last_scanned, more_in_batch or len(docs) == scan_limit
            if len(docs) < scan_limit:
                return rows, last_scanned, False
            after_id = last_scanned["gtin"]
            after_value = self._sort_value(mode, request, last_scanned)

        return rows, last_scanned, last_scanned is not None

    @staticmethod
    def _is_missing_row(doc: Dict[str, Any], request: MatrixQueryRequest) -> bool:
        locations = doc.get("prices_by_location") or {}
        if not locations:
            return False
        if request.missing_target in locations:
            return False
        if request.missing_require_present_in and request.missing_require_present_in not in locations:
            return False
        return True
