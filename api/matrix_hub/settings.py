"""
GTIN Matrix Hub Settings - PostgreSQL + reconciliation options.
"""
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices, field_validator

logger = logging.getLogger(__name__)

# Store hard limit is 500 operations per transaction; stay below it.
MAX_READ_PAGE = 2000
MAX_WRITE_BATCH = 450


class Settings(BaseSettings):
    # =========================================================================
    # File Storage (logs)
    # =========================================================================
    MATRIX_DATA_ROOT: Path = Field(
        default=(Path(__file__).resolve().parents[2] / "matrix-data"),
        validation_alias=AliasChoices("MATRIX_DATA_ROOT", "DATA_ROOT"),
    )

    # =========================================================================
    # PostgreSQL Database
    # =========================================================================
    DB_HOST: str = Field(default="localhost", validation_alias="DB_HOST")
    DB_PORT: int = Field(default=5432, validation_alias="DB_PORT")
    DB_NAME: str = Field(default="gtin_matrix", validation_alias="DB_NAME")
    DB_USER: str = Field(default="postgres", validation_alias="DB_USER")
    DB_PASSWORD: str = Field(default="postgres", validation_alias="DB_PASSWORD")

    # Connection pool settings
    DB_POOL_SIZE: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    DB_MAX_OVERFLOW: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    # Full URL override (e.g. sqlite+aiosqlite:///matrix.db for local runs)
    DATABASE_URL: Optional[str] = Field(default=None, validation_alias="DATABASE_URL")

    # =========================================================================
    # Reconciliation
    # =========================================================================
    DRY_RUN: bool = Field(default=False, validation_alias="DRY_RUN")
    READ_PAGE: int = Field(default=1000, validation_alias="READ_PAGE")
    WRITE_BATCH: int = Field(default=400, validation_alias="WRITE_BATCH")
    TARGET_MERCHANT_ID: Optional[str] = Field(default=None, validation_alias="TARGET_MERCHANT_ID")
    LIMIT_GTINS: Optional[int] = Field(default=None, validation_alias="LIMIT_GTINS")
    MERCHANT_LABELS: Optional[str] = Field(
        default=None,
        validation_alias="MERCHANT_LABELS",
        description='JSON object, e.g. {"ML1...":"Plano","MLRE...":"GP1"}',
    )

    # =========================================================================
    # Read API
    # =========================================================================
    QUERY_PAGE_SIZE: int = Field(default=50, validation_alias="QUERY_PAGE_SIZE")
    QUERY_MAX_PAGE_SIZE: int = Field(default=250, validation_alias="QUERY_MAX_PAGE_SIZE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("READ_PAGE")
    @classmethod
    def _clamp_read_page(cls, v: int) -> int:
        return max(1, min(v, MAX_READ_PAGE))

    @field_validator("WRITE_BATCH")
    @classmethod
    def _clamp_write_batch(cls, v: int) -> int:
        return max(1, min(v, MAX_WRITE_BATCH))

    @field_validator("LIMIT_GTINS")
    @classmethod
    def _positive_limit(cls, v: Optional[int]) -> Optional[int]:
        return v if v and v > 0 else None

    @property
    def merchant_labels(self) -> Dict[str, str]:
        """Parsed MERCHANT_LABELS; invalid JSON is logged and ignored."""
        raw = (self.MERCHANT_LABELS or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("MERCHANT_LABELS is not valid JSON; ignoring")
            return {}
        if not isinstance(data, dict):
            logger.warning("MERCHANT_LABELS must be a JSON object; ignoring")
            return {}
        return {str(k): str(v) for k, v in data.items() if v}


settings = Settings()
