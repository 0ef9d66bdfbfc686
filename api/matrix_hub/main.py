# matrix_hub/main.py
# GTIN Matrix Hub - read API over gtin_inventory_matrix + location_index
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from matrix_hub.settings import settings
from matrix_hub.database import init_db, close_db, check_db_health, create_schema, get_session_factory
from matrix_hub.routers.matrix import router as matrix_router
from matrix_hub.store import DocumentStore, SqlDocumentStore

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(store: Optional[DocumentStore] = None, init_schema: bool = False) -> FastAPI:
    """
    Build the FastAPI app.

    A preset ``store`` (tests) skips the database lifecycle entirely.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        if store is not None:
            app.state.store = store
            yield
            return

        await init_db()
        if init_schema:
            await create_schema()
        app.state.store = SqlDocumentStore(await get_session_factory())
        logger.info("Database connected")
        yield
        await close_db()
        logger.info("Database disconnected")

    app = FastAPI(
        title="GTIN Matrix Hub API",
        version=VERSION,
        description="Cross-location price/availability matrix per canonical GTIN",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.include_router(matrix_router)
    if store is not None:
        app.state.store = store

    @app.get("/health")
    async def health():
        """Health check endpoint with database status."""
        result = {"status": "ok", "version": VERSION}
        if store is None:
            db_health = await check_db_health()
            result["database"] = db_health
            if db_health.get("status") != "healthy":
                result["status"] = "degraded"
        return result

    return app


# ---------------------------------------------------------
# Logging setup + ASGI app (uvicorn matrix_hub.main:app)
# ---------------------------------------------------------
def build_default_app() -> FastAPI:
    from matrix_hub.logging_setup import setup_logging
    setup_logging(settings)
    return create_app()


app = build_default_app()
