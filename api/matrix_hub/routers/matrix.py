# matrix_hub/routers/matrix.py
"""
GTIN Inventory Matrix Router - read API over the derived view.

GET /api/gtin-inventory-matrix           paged search (exact / token / prefix / all)
GET /api/gtin-inventory-matrix/{gtin}    one entry (id canonicalized first)
"""
from __future__ import annotations
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from matrix_hub.errors import QueryError
from matrix_hub.models import MatrixQueryRequest
from matrix_hub.services.identifiers import canonicalize_query
from matrix_hub.services.query_planner import QueryPlanner
from matrix_hub.settings import settings
from matrix_hub.store import DocumentStore

router = APIRouter(prefix="/api/gtin-inventory-matrix", tags=["Matrix"])

NO_STORE_HEADERS = {"Cache-Control": "no-store, max-age=0"}


def get_store(request: Request) -> DocumentStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(503, detail="Document store not initialized")
    return store


# ============================================================================
# Endpoints
# ============================================================================

@router.get("")
async def query_matrix(
    response: Response,
    q: str = Query("", description="GTIN, short term (200ml) or name/SKU prefix"),
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1),
    mismatch_only: bool = Query(False, alias="mismatchOnly"),
    search_field: Literal["name", "sku"] = Query("name", alias="searchField"),
    missing_target: Optional[str] = Query(None, alias="missingTarget"),
    missing_require_present_in: Optional[str] = Query(None, alias="missingRequirePresentIn"),
    store: DocumentStore = Depends(get_store),
) -> Dict[str, Any]:
    """
    Search gtin_inventory_matrix.

    Pass `nextCursor` from the previous response as `cursor` to get the next page.
    """
    response.headers.update(NO_STORE_HEADERS)

    req = MatrixQueryRequest(
        query=q,
        cursor=cursor,
        page_size=min(page_size or settings.QUERY_PAGE_SIZE, settings.QUERY_MAX_PAGE_SIZE),
        mismatch_only=mismatch_only,
        search_field=search_field,
        missing_target=(missing_target or "").strip() or None,
        missing_require_present_in=(missing_require_present_in or "").strip() or None,
    )
    try:
        result = await QueryPlanner(store).execute(req)
    except QueryError as e:
        return JSONResponse({"error": str(e)}, status_code=400, headers=NO_STORE_HEADERS)

    return result.model_dump(mode="json", by_alias=True)


@router.get("/{gtin}")
async def get_matrix_entry(
    gtin: str,
    response: Response,
    store: DocumentStore = Depends(get_store),
) -> Dict[str, Any]:
    response.headers.update(NO_STORE_HEADERS)

    canonical = canonicalize_query(gtin)
    if not canonical:
        raise HTTPException(400, detail="gtin must contain digits")

    doc = await store.get_matrix_entry(canonical)
    if doc is None:
        raise HTTPException(404, detail=f"GTIN {canonical} not found")
    return doc
