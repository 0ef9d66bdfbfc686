# matrix_hub/store.py
"""
Document store contract used by the pipeline and the query planner.

The pipeline never talks to SQLAlchemy directly: it receives a
``DocumentStore`` (page / get / commit) in its constructor. ``SqlDocumentStore``
is the production implementation; tests substitute an in-memory fake.

Collections:
    inventory            merchant partitions, read-only here
    gtin_inventory_matrix derived per-GTIN view (doc id = canonical GTIN)
    location_index       derived location registry (doc id = sha1(locKey))
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from sqlalchemy import select, delete, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matrix_hub.db_models import (
    Merchant, InventoryRecord, MatrixEntryRow, MatrixTokenRow, LocationIndexRow
)
from matrix_hub.models import MatrixEntry, LocationIndexEntry

logger = logging.getLogger(__name__)

MATRIX_COLLECTION = "gtin_inventory_matrix"
LOCATION_COLLECTION = "location_index"

# Upper bound appended to a prefix for range queries.
PREFIX_SENTINEL = "\uf8ff"

Document = Dict[str, Any]


# ============================================================================
# Write operations (merge semantics, never whole-document overwrite)
# ============================================================================

@dataclass
class MatrixMerge:
    """Merge one aggregate into gtin_inventory_matrix/<gtin>."""
    entry: MatrixEntry
    collection: str = MATRIX_COLLECTION

    @property
    def doc_id(self) -> str:
        return self.entry.gtin

    def apply(self, existing: Optional[Document]) -> Document:
        from matrix_hub.services.aggregator import merge_entries

        stored = MatrixEntry.from_document(existing) if existing else None
        return merge_entries(stored, self.entry).to_document()


@dataclass
class LocationMerge:
    """Merge one observed location into location_index/<id>."""
    doc_id: str
    entry: LocationIndexEntry
    collection: str = LOCATION_COLLECTION

    def apply(self, existing: Optional[Document]) -> Document:
        merged = LocationIndexEntry(**existing) if existing else LocationIndexEntry(loc_key=self.entry.loc_key)
        merged.loc_key = self.entry.loc_key
        merged.backfill(self.entry)
        merged.backfilled_at = self.entry.backfilled_at or datetime.now(timezone.utc)
        return merged.model_dump()


@dataclass
class DeleteDoc:
    collection: str
    doc_id: str


WriteOp = Union[MatrixMerge, LocationMerge, DeleteDoc]


# ============================================================================
# Matrix queries
# ============================================================================

@dataclass
class MatrixQuery:
    """
    One keyset-paginated read of gtin_inventory_matrix.

    order_by: "gtin" | "price_spread" (desc) | "name_key" | "sku_key"
    """
    order_by: str = "gtin"
    exact_id: Optional[str] = None
    token: Optional[str] = None
    key_prefix: Optional[str] = None
    mismatch_only: bool = False
    start_after_id: Optional[str] = None
    start_after_value: Any = None
    limit: int = 50


class DocumentStore(Protocol):
    async def list_merchant_ids(self) -> List[str]: ...

    async def fetch_inventory_page(
        self, merchant_id: str, start_after: Optional[str], limit: int
    ) -> List[Tuple[str, Document]]: ...

    async def get_matrix_entry(self, gtin: str) -> Optional[Document]: ...

    async def run_matrix_query(self, query: MatrixQuery) -> List[Document]: ...

    async def list_matrix_ids(self, start_after: Optional[str], limit: int) -> List[str]: ...

    async def get_location_entry(self, doc_id: str) -> Optional[Document]: ...

    async def list_location_entries(self) -> List[Document]: ...

    async def list_location_ids(self, start_after: Optional[str], limit: int) -> List[str]: ...

    async def commit(self, ops: Sequence[WriteOp]) -> None: ...


# ============================================================================
# SQLAlchemy implementation
# ============================================================================

_LOCATION_FIELDS = ("loc_key", "merchant_id", "merchant_name", "location_id", "location_name", "backfilled_at")


class SqlDocumentStore:
    """DocumentStore over the tables in matrix_hub.db_models."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Source partitions
    # -------------------------------------------------------------------------

    async def list_merchant_ids(self) -> List[str]:
        async with self._session_factory() as db:
            result = await db.execute(select(Merchant.id).order_by(Merchant.id))
            return list(result.scalars())

    async def fetch_inventory_page(
        self, merchant_id: str, start_after: Optional[str], limit: int
    ) -> List[Tuple[str, Document]]:
        stmt = (
            select(InventoryRecord.doc_id, InventoryRecord.data)
            .where(InventoryRecord.merchant_id == merchant_id)
            .order_by(InventoryRecord.doc_id)
            .limit(limit)
        )
        if start_after is not None:
            stmt = stmt.where(InventoryRecord.doc_id > start_after)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [(doc_id, dict(data or {})) for doc_id, data in result.all()]

    # -------------------------------------------------------------------------
    # Matrix view
    # -------------------------------------------------------------------------

    async def get_matrix_entry(self, gtin: str) -> Optional[Document]:
        async with self._session_factory() as db:
            row = await db.get(MatrixEntryRow, gtin)
            return dict(row.data) if row else None

    async def run_matrix_query(self, query: MatrixQuery) -> List[Document]:
        T = MatrixEntryRow
        stmt = select(T.data)

        if query.exact_id is not None:
            stmt = stmt.where(T.gtin == query.exact_id)
        if query.token:
            stmt = stmt.where(
                T.gtin.in_(select(MatrixTokenRow.gtin).where(MatrixTokenRow.token == query.token))
            )
        if query.mismatch_only:
            stmt = stmt.where(T.has_mismatch.is_(True))

        after_id, after_value = query.start_after_id, query.start_after_value
        if query.order_by == "price_spread":
            stmt = stmt.order_by(T.price_spread.desc(), T.gtin)
            if after_id is not None:
                v = float(after_value or 0)
                stmt = stmt.where(or_(T.price_spread < v, and_(T.price_spread == v, T.gtin > after_id)))
        elif query.order_by in ("name_key", "sku_key"):
            col = T.name_key if query.order_by == "name_key" else T.sku_key
            if query.key_prefix is not None:
                stmt = stmt.where(col >= query.key_prefix, col <= query.key_prefix + PREFIX_SENTINEL)
            else:
                stmt = stmt.where(col.is_not(None))
            stmt = stmt.order_by(col, T.gtin)
            if after_id is not None:
                v = str(after_value or "")
                stmt = stmt.where(or_(col > v, and_(col == v, T.gtin > after_id)))
        else:
            stmt = stmt.order_by(T.gtin)
            if after_id is not None:
                stmt = stmt.where(T.gtin > after_id)

        stmt = stmt.limit(query.limit)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [dict(d) for d in result.scalars()]

    async def list_matrix_ids(self, start_after: Optional[str], limit: int) -> List[str]:
        stmt = select(MatrixEntryRow.gtin).order_by(MatrixEntryRow.gtin).limit(limit)
        if start_after is not None:
            stmt = stmt.where(MatrixEntryRow.gtin > start_after)
        async with self._session_factory() as db:
            return list((await db.execute(stmt)).scalars())

    # -------------------------------------------------------------------------
    # Location index
    # -------------------------------------------------------------------------

    async def get_location_entry(self, doc_id: str) -> Optional[Document]:
        async with self._session_factory() as db:
            row = await db.get(LocationIndexRow, doc_id)
            return _location_doc(row) if row else None

    async def list_location_entries(self) -> List[Document]:
        async with self._session_factory() as db:
            result = await db.execute(select(LocationIndexRow).order_by(LocationIndexRow.id))
            return [_location_doc(row) for row in result.scalars()]

    async def list_location_ids(self, start_after: Optional[str], limit: int) -> List[str]:
        stmt = select(LocationIndexRow.id).order_by(LocationIndexRow.id).limit(limit)
        if start_after is not None:
            stmt = stmt.where(LocationIndexRow.id > start_after)
        async with self._session_factory() as db:
            return list((await db.execute(stmt)).scalars())

    # -------------------------------------------------------------------------
    # Writes: one transaction per batch
    # -------------------------------------------------------------------------

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        if not ops:
            return
        async with self._session_factory() as db:
            async with db.begin():
                for op in ops:
                    if isinstance(op, MatrixMerge):
                        await self._merge_matrix(db, op)
                    elif isinstance(op, LocationMerge):
                        await self._merge_location(db, op)
                    elif isinstance(op, DeleteDoc):
                        await self._delete(db, op)
                    else:
                        raise TypeError(f"Unsupported write op: {op!r}")
                    await db.flush()

    async def _merge_matrix(self, db: AsyncSession, op: MatrixMerge) -> None:
        row = await db.get(MatrixEntryRow, op.doc_id)
        doc = op.apply(dict(row.data) if row else None)

        if row is None:
            row = MatrixEntryRow(gtin=op.doc_id)
            db.add(row)
        row.data = doc
        row.name_key = doc.get("name_key")
        row.sku_key = doc.get("sku_key")
        row.price_spread = float(doc.get("price_spread") or 0.0)
        row.has_mismatch = bool(doc.get("has_mismatch"))
        row.updated_at = datetime.now(timezone.utc)
        await db.flush()  # parent row before its token rows

        await db.execute(delete(MatrixTokenRow).where(MatrixTokenRow.gtin == op.doc_id))
        for token in doc.get("search_tokens") or []:
            db.add(MatrixTokenRow(gtin=op.doc_id, token=token))

    async def _merge_location(self, db: AsyncSession, op: LocationMerge) -> None:
        row = await db.get(LocationIndexRow, op.doc_id)
        doc = op.apply(_location_doc(row) if row else None)
        if row is None:
            row = LocationIndexRow(id=op.doc_id)
            db.add(row)
        for name in _LOCATION_FIELDS:
            setattr(row, name, doc.get(name))

    async def _delete(self, db: AsyncSession, op: DeleteDoc) -> None:
        if op.collection == MATRIX_COLLECTION:
            await db.execute(delete(MatrixTokenRow).where(MatrixTokenRow.gtin == op.doc_id))
            await db.execute(delete(MatrixEntryRow).where(MatrixEntryRow.gtin == op.doc_id))
        elif op.collection == LOCATION_COLLECTION:
            await db.execute(delete(LocationIndexRow).where(LocationIndexRow.id == op.doc_id))
        else:
            raise ValueError(f"Unknown collection: {op.collection}")


def _location_doc(row: LocationIndexRow) -> Document:
    return {name: getattr(row, name) for name in _LOCATION_FIELDS}
