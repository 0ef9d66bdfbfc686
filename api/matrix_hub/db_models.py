# matrix_hub/db_models.py
"""
SQLAlchemy ORM Models for GTIN Matrix Hub.

Source partitions (merchants + inventory_records) are written by the external
catalog sync and only read here. The derived views (gtin_inventory_matrix,
gtin_matrix_tokens, location_index) are written only by the reconciliation
pipeline.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Boolean, Float, DateTime, ForeignKey, Index, JSON, func
)
from sqlalchemy.orm import Mapped, mapped_column

from matrix_hub.database import Base


# ============================================================================
# MIXIN for updated_at
# ============================================================================

class TimestampMixin:
    """Mixin for created_at and updated_at columns."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================================================
# 1. MERCHANTS (tenants)
# ============================================================================

class Merchant(TimestampMixin, Base):
    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))


# ============================================================================
# 2. INVENTORY RECORDS (per-merchant partition)
# ============================================================================

class InventoryRecord(Base):
    __tablename__ = "inventory_records"

    merchant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("merchants.id", ondelete="CASCADE"), primary_key=True
    )
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


# ============================================================================
# 3. GTIN INVENTORY MATRIX (derived, cross-tenant)
# ============================================================================

class MatrixEntryRow(Base):
    __tablename__ = "gtin_inventory_matrix"

    gtin: Mapped[str] = mapped_column(String(32), primary_key=True)
    name_key: Mapped[Optional[str]] = mapped_column(String(512))
    sku_key: Mapped[Optional[str]] = mapped_column(String(255))
    price_spread: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    has_mismatch: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_matrix_name_key", "name_key", "gtin"),
        Index("idx_matrix_sku_key", "sku_key", "gtin"),
        Index("idx_matrix_spread", "price_spread", "gtin"),
        Index("idx_matrix_mismatch", "has_mismatch"),
    )


class MatrixTokenRow(Base):
    """Array-membership index: one row per (gtin, search token)."""
    __tablename__ = "gtin_matrix_tokens"

    gtin: Mapped[str] = mapped_column(
        String(32), ForeignKey("gtin_inventory_matrix.gtin", ondelete="CASCADE"), primary_key=True
    )
    token: Mapped[str] = mapped_column(String(32), primary_key=True)

    __table_args__ = (
        Index("idx_matrix_tokens_token", "token", "gtin"),
    )


# ============================================================================
# 4. LOCATION INDEX (derived)
# ============================================================================

class LocationIndexRow(Base):
    __tablename__ = "location_index"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    loc_key: Mapped[str] = mapped_column(String(512), nullable=False)
    merchant_id: Mapped[Optional[str]] = mapped_column(String(64))
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    location_id: Mapped[Optional[str]] = mapped_column(String(64))
    location_name: Mapped[Optional[str]] = mapped_column(String(255))
    backfilled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
