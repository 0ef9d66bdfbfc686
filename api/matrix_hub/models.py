"""
Typed records for the reconciliation pipeline and the read API.

Stored documents are loosely shaped (legacy field names, prices as strings or
numbers, ISO timestamps); ``from_document`` is the one place where they are
normalized into these models.
"""
from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ============================================================================
# Coercion helpers
# ============================================================================

def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a price/qty value; None for missing, unparseable or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, Decimal):
            d = value
        elif isinstance(value, (int, float)):
            d = Decimal(str(value))
        else:
            s = str(value).strip().replace(",", ".")
            if not s:
                return None
            d = Decimal(s)
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def to_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (``Z`` suffix allowed); naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _opt_text(value: Any) -> Optional[str]:
    s = _text(value)
    return s or None


def _pick(data: Mapping[str, Any], *names: str) -> Any:
    """First present, non-empty value among alias field names."""
    for name in names:
        v = data.get(name)
        if v is not None and v != "":
            return v
    return None


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _num(d: Optional[Decimal]) -> Optional[float]:
    return float(d) if d is not None else None


# ============================================================================
# Source partition
# ============================================================================

class RawInventoryRecord(BaseModel):
    """One (merchant, location, catalog line) row from a merchant partition."""
    model_config = ConfigDict(frozen=True)

    doc_id: str
    merchant_id: str
    gtin: str = ""
    item_name: str = ""
    sku: str = ""
    category_name: str = ""
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    qty: Optional[Decimal] = None
    state: Optional[str] = None
    calculated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    merchant_name: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    item_id: Optional[str] = None
    variation_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc_id: str, merchant_id: str, data: Optional[Mapping[str, Any]]) -> "RawInventoryRecord":
        d = data or {}
        return cls(
            doc_id=str(doc_id),
            merchant_id=_text(_pick(d, "merchant_id", "merchantId")) or str(merchant_id),
            gtin=_text(_pick(d, "gtin", "upc", "gtin_raw")),
            item_name=_text(_pick(d, "item_name", "itemName", "name")),
            sku=_text(_pick(d, "sku", "variation_sku")),
            category_name=_text(_pick(d, "category_name", "categoryName", "category")),
            price=to_decimal(_pick(d, "price", "price_amount")),
            currency=_opt_text(_pick(d, "currency", "price_currency")),
            qty=to_decimal(_pick(d, "qty", "quantity")),
            state=_opt_text(d.get("state")),
            calculated_at=to_datetime(_pick(d, "calculated_at", "calculatedAt")),
            updated_at=to_datetime(_pick(d, "updated_at", "updatedAt")),
            merchant_name=_opt_text(_pick(d, "merchant_name", "merchantName")),
            location_id=_opt_text(_pick(d, "location_id", "locationId")),
            location_name=_opt_text(_pick(d, "location_name", "locationName")),
            item_id=_opt_text(_pick(d, "item_id", "itemId")),
            variation_id=_opt_text(_pick(d, "variation_id", "variationId")),
        )


# ============================================================================
# Derived matrix view
# ============================================================================

class LocationSnapshot(BaseModel):
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    variation_id: Optional[str] = None
    item_id: Optional[str] = None
    qty: Optional[Decimal] = None
    state: Optional[str] = None
    calculated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("price", "qty", mode="before")
    @classmethod
    def _decimal(cls, v: Any) -> Optional[Decimal]:
        return to_decimal(v)

    @field_validator("calculated_at", "updated_at", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> Optional[datetime]:
        return to_datetime(v)

    @classmethod
    def from_record(cls, record: RawInventoryRecord) -> "LocationSnapshot":
        return cls(
            price=record.price,
            currency=record.currency,
            merchant_id=record.merchant_id,
            merchant_name=record.merchant_name,
            location_id=record.location_id,
            location_name=record.location_name,
            variation_id=record.variation_id,
            item_id=record.item_id,
            qty=record.qty,
            state=record.state,
            calculated_at=record.calculated_at,
            updated_at=record.updated_at,
        )

    @property
    def freshness(self) -> Optional[datetime]:
        return self.calculated_at or self.updated_at

    def to_document(self) -> Dict[str, Any]:
        return {
            "price": _num(self.price),
            "currency": self.currency,
            "merchant_id": self.merchant_id,
            "merchant_name": self.merchant_name,
            "location_id": self.location_id,
            "location_name": self.location_name,
            "variation_id": self.variation_id,
            "item_id": self.item_id,
            "qty": _num(self.qty),
            "state": self.state,
            "calculated_at": _iso(self.calculated_at),
            "updated_at": _iso(self.updated_at),
        }


class MismatchMetrics(BaseModel):
    priced_location_count: int = 0
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    price_spread: Decimal = Decimal("0")
    has_mismatch: bool = False


class MatrixHeader(BaseModel):
    item_name: str = ""
    category_name: str = ""
    sku: str = ""


class MatrixEntry(BaseModel):
    """Per-GTIN aggregate stored in gtin_inventory_matrix (doc id = gtin)."""
    gtin: str
    gtin_raws: List[str] = Field(default_factory=list)
    header: MatrixHeader = Field(default_factory=MatrixHeader)
    prices_by_location: Dict[str, LocationSnapshot] = Field(default_factory=dict)
    metrics: MismatchMetrics = Field(default_factory=MismatchMetrics)
    name_key: Optional[str] = None
    sku_key: Optional[str] = None
    search_tokens: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        h = self.header
        m = self.metrics
        doc: Dict[str, Any] = {"gtin": self.gtin}
        if self.gtin_raws:
            doc["gtin_raws"] = list(self.gtin_raws)
        if h.item_name:
            doc["item_name"] = h.item_name
            doc["item_name_lc"] = h.item_name.lower()
        if self.name_key:
            doc["name_key"] = self.name_key
        if h.category_name:
            doc["category_name"] = h.category_name
        if h.sku:
            doc["sku"] = h.sku
        if self.sku_key:
            doc["sku_key"] = self.sku_key
        if self.search_tokens:
            doc["search_tokens"] = list(self.search_tokens)
        doc["prices_by_location"] = {k: v.to_document() for k, v in self.prices_by_location.items()}
        doc.update(
            priced_location_count=m.priced_location_count,
            min_price=_num(m.min_price),
            max_price=_num(m.max_price),
            price_spread=float(m.price_spread),
            has_mismatch=m.has_mismatch,
            updated_at=_iso(self.updated_at),
        )
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "MatrixEntry":
        locations = doc.get("prices_by_location") or {}
        return cls(
            gtin=str(doc.get("gtin") or ""),
            gtin_raws=[str(x) for x in (doc.get("gtin_raws") or [])],
            header=MatrixHeader(
                item_name=_text(doc.get("item_name")),
                category_name=_text(doc.get("category_name")),
                sku=_text(doc.get("sku")),
            ),
            prices_by_location={
                str(k): LocationSnapshot.model_validate(v)
                for k, v in locations.items()
                if isinstance(v, Mapping)
            },
            metrics=MismatchMetrics(
                priced_location_count=int(doc.get("priced_location_count") or 0),
                min_price=to_decimal(doc.get("min_price")),
                max_price=to_decimal(doc.get("max_price")),
                price_spread=to_decimal(doc.get("price_spread")) or Decimal("0"),
                has_mismatch=bool(doc.get("has_mismatch")),
            ),
            name_key=doc.get("name_key") or None,
            sku_key=doc.get("sku_key") or None,
            search_tokens=[str(t) for t in (doc.get("search_tokens") or [])],
            updated_at=to_datetime(doc.get("updated_at")),
        )


# ============================================================================
# Location index view
# ============================================================================

class LocationIndexEntry(BaseModel):
    loc_key: str
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    backfilled_at: Optional[datetime] = None

    def backfill(self, other: "LocationIndexEntry") -> None:
        """Fill missing display fields from ``other``; never overwrite."""
        for name in ("merchant_id", "merchant_name", "location_id", "location_name"):
            if not getattr(self, name) and getattr(other, name):
                setattr(self, name, getattr(other, name))

    @property
    def label(self) -> str:
        return self.merchant_name or self.location_name or self.loc_key


# ============================================================================
# Read API
# ============================================================================

class MatrixQueryRequest(BaseModel):
    query: str = ""
    cursor: Optional[str] = None
    page_size: int = 50
    mismatch_only: bool = False
    search_field: Literal["name", "sku"] = "name"
    missing_target: Optional[str] = None
    missing_require_present_in: Optional[str] = None


class LocationMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    loc_key: str = Field(serialization_alias="locKey")
    label: str
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None


class MatrixQueryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rows: List[Dict[str, Any]] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    locations_meta: Dict[str, LocationMeta] = Field(default_factory=dict, serialization_alias="locationsMeta")
    next_cursor: Optional[str] = Field(default=None, serialization_alias="nextCursor")
    mode: str = "all"
    fallback_from: Optional[str] = Field(default=None, serialization_alias="fallbackFrom")
