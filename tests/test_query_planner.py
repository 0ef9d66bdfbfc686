import base64
import json

import pytest
import pytest_asyncio

from matrix_hub.errors import QueryError
from matrix_hub.models import MatrixQueryRequest
from matrix_hub.services.query_planner import (
    Cursor, QueryMode, QueryPlanner, decode_cursor, encode_cursor, fallback_for, plan_query
)
from matrix_hub.services.reconcile import ReconcileOptions, ReconciliationOrchestrator

from fakes import inv

LABELS = {"ML1": "Plano", "ML2": "Frisco"}
PLANO, FRISCO = "Plano – Main", "Frisco – Main"


def _plano(doc_id, gtin, price, name, sku):
    return doc_id, inv(gtin, price, merchant_name="Plano Liquor", name=name, sku=sku)


def _frisco(doc_id, gtin, price, name, sku):
    return doc_id, inv(gtin, price, merchant_name="Frisco Liquor", name=name, sku=sku)


@pytest_asyncio.fixture
async def planner(sql_store, seed):
    await seed({
        "ML1": [
            _plano("p1", "000002785123", "10.00", "Tito's Vodka 200 ml", "TITO-200"),
            _plano("p2", "4006381333931", "3.50", "Grey Goose 1 L", "GG-1L"),
            _plano("p3", "12345670", "20.00", "Titan Gin 750 ml", "TG-750"),
        ],
        "ML2": [
            _frisco("f1", "02785123", "12.50", "Tito's Vodka 200 ml", "TITO-200"),
            _frisco("f2", "12345670", "21.00", "Titan Gin 750 ml", "TG-750"),
            _frisco("f3", "87654321", "8.00", "Absolut Vodka 200 ml", "ABS-200"),
        ],
    })
    await ReconciliationOrchestrator(sql_store, ReconcileOptions(merchant_labels=LABELS)).run()
    return QueryPlanner(sql_store)


def _gtins(result):
    return [r["gtin"] for r in result.rows]


async def _all_pages(planner, **kwargs):
    pages, cursor = [], None
    for _ in range(20):
        result = await planner.execute(MatrixQueryRequest(cursor=cursor, **kwargs))
        pages.append(_gtins(result))
        cursor = result.next_cursor
        if cursor is None:
            return pages
    raise AssertionError("pagination did not terminate")


# ============================================================================
# Cursor codec
# ============================================================================

@pytest.mark.parametrize(
    "cursor",
    [
        Cursor(QueryMode.all, "02785123"),
        Cursor(QueryMode.exact, "4006381333931"),
        Cursor(QueryMode.token, "12345670", 2.5),
        Cursor(QueryMode.token, "12345670", 0),
        Cursor(QueryMode.prefix, "87654321", "absolutvodka200ml"),
    ],
)
def test_cursor_round_trip(cursor):
    token = encode_cursor(cursor)
    assert "=" not in token
    assert decode_cursor(token) == cursor


def _raw_token(payload):
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


@pytest.mark.parametrize(
    "token",
    [
        None,
        "",
        "!!!not-base64!!!",
        "aGVsbG8",  # "hello"
        _raw_token(["m", "id"]),
        _raw_token({"m": "bogus", "id": "1"}),
        _raw_token({"m": "all"}),
        _raw_token({"m": "all", "id": ""}),
        _raw_token({"m": "token", "id": "1", "v": "high"}),
        _raw_token({"m": "token", "id": "1", "v": True}),
        _raw_token({"m": "prefix", "id": "1"}),
        _raw_token({"m": "exact", "id": "1", "v": 3}),
        _raw_token({"m": "token", "id": "1", "v": 10 ** 400}),
        _raw_token({"m": "token", "id": "1", "v": float("nan")}),
        _raw_token({"m": "token", "id": "1", "v": float("inf")}),
    ],
)
def test_corrupted_cursor_decodes_to_none(token):
    assert decode_cursor(token) is None


# ============================================================================
# Mode selection
# ============================================================================

@pytest.mark.parametrize(
    "query, mode",
    [
        ("", QueryMode.all),
        ("   ", QueryMode.all),
        ("0000 0278 5123", QueryMode.exact),
        ("12345678", QueryMode.exact),
        ("1234567", QueryMode.prefix),
        ("200ml", QueryMode.token),
        ("Tito's", QueryMode.token),
        ("ab", QueryMode.prefix),
        ("grey goose 1 l", QueryMode.prefix),
    ],
)
def test_plan_query_modes(query, mode):
    assert plan_query(query).mode is mode


def test_exact_plan_canonicalizes():
    assert plan_query("0000 0278 5123").gtin == "02785123"


def test_fallback_order():
    assert fallback_for(QueryMode.exact) is QueryMode.token
    assert fallback_for(QueryMode.token) is QueryMode.prefix
    assert fallback_for(QueryMode.prefix) is None
    assert fallback_for(QueryMode.all) is None


# ============================================================================
# Execution
# ============================================================================

@pytest.mark.asyncio
async def test_exact_lookup_uses_canonical_id(planner):
    result = await planner.execute(MatrixQueryRequest(query="000002785123"))
    assert result.mode == "exact"
    assert result.fallback_from is None
    assert _gtins(result) == ["02785123"]
    assert result.next_cursor is None


@pytest.mark.asyncio
async def test_empty_exact_falls_back_exactly_once(planner):
    result = await planner.execute(MatrixQueryRequest(query="99999999"))
    assert result.rows == []
    assert result.fallback_from == "exact"
    assert result.mode == "token"


@pytest.mark.asyncio
async def test_token_search_orders_by_spread(planner):
    result = await planner.execute(MatrixQueryRequest(query="vodka"))
    assert result.mode == "token"
    assert _gtins(result) == ["02785123", "87654321"]


@pytest.mark.asyncio
async def test_token_miss_falls_back_to_prefix(planner):
    result = await planner.execute(MatrixQueryRequest(query="tita"))
    assert result.fallback_from == "token"
    assert result.mode == "prefix"
    assert _gtins(result) == ["12345670"]


@pytest.mark.asyncio
async def test_prefix_search_on_name_and_sku(planner):
    by_name = await planner.execute(MatrixQueryRequest(query="grey goose 1 l"))
    assert by_name.mode == "prefix"
    assert _gtins(by_name) == ["4006381333931"]

    by_sku = await planner.execute(MatrixQueryRequest(query="tg75", search_field="sku"))
    assert by_sku.mode == "prefix"
    assert _gtins(by_sku) == ["12345670"]

    wrong_field = await planner.execute(MatrixQueryRequest(query="tg75", search_field="name"))
    assert wrong_field.rows == []


@pytest.mark.asyncio
async def test_all_mode_pages_through_everything(planner):
    pages = await _all_pages(planner, page_size=1)
    assert pages == [["02785123"], ["12345670"], ["4006381333931"], ["87654321"]]


@pytest.mark.asyncio
async def test_token_mode_pages_with_cursor(planner):
    pages = await _all_pages(planner, query="vodka", page_size=1)
    assert pages == [["02785123"], ["87654321"]]


@pytest.mark.asyncio
async def test_last_page_has_no_cursor(planner):
    result = await planner.execute(MatrixQueryRequest(page_size=4))
    assert len(result.rows) == 4
    assert result.next_cursor is None


@pytest.mark.asyncio
async def test_stale_cursor_restarts_from_top(planner):
    stale = encode_cursor(Cursor(QueryMode.all, "00000001"))
    result = await planner.execute(MatrixQueryRequest(cursor=stale, page_size=2))
    assert _gtins(result) == ["02785123", "12345670"]


@pytest.mark.asyncio
async def test_out_of_range_sort_value_restarts_from_top(planner):
    fresh = await planner.execute(MatrixQueryRequest(query="vodka"))
    huge = _raw_token({"m": "token", "id": "02785123", "v": 10 ** 400})
    result = await planner.execute(MatrixQueryRequest(query="vodka", cursor=huge))
    assert result.mode == "token"
    assert _gtins(result) == _gtins(fresh) != []


@pytest.mark.asyncio
async def test_cursor_from_unrelated_mode_is_ignored(planner):
    foreign = encode_cursor(Cursor(QueryMode.prefix, "12345670", "titangin750ml"))
    result = await planner.execute(MatrixQueryRequest(cursor=foreign, page_size=2))
    assert result.mode == "all"
    assert _gtins(result) == ["02785123", "12345670"]


@pytest.mark.asyncio
async def test_mismatch_only(planner):
    result = await planner.execute(MatrixQueryRequest(mismatch_only=True))
    assert _gtins(result) == ["02785123", "12345670"]


@pytest.mark.asyncio
async def test_locations_and_meta_sorted_by_label(planner):
    result = await planner.execute(MatrixQueryRequest(page_size=1))
    assert result.locations == [FRISCO, PLANO]
    assert result.locations_meta[PLANO].label == "Plano Liquor"
    assert result.locations_meta[FRISCO].merchant_id == "ML2"

    body = result.model_dump(mode="json", by_alias=True)
    assert body["locationsMeta"][PLANO]["locKey"] == PLANO
    assert "nextCursor" in body


@pytest.mark.asyncio
async def test_missing_in_location_filter(planner):
    missing_frisco = await planner.execute(MatrixQueryRequest(missing_target=FRISCO))
    assert _gtins(missing_frisco) == ["4006381333931"]

    missing_plano = await planner.execute(MatrixQueryRequest(missing_target=PLANO))
    assert _gtins(missing_plano) == ["87654321"]

    required = await planner.execute(MatrixQueryRequest(missing_target=PLANO, missing_require_present_in=FRISCO))
    assert _gtins(required) == ["87654321"]


@pytest.mark.asyncio
async def test_missing_filter_cursor_advances_past_scanned_docs(planner):
    first = await planner.execute(MatrixQueryRequest(missing_target=FRISCO, page_size=1))
    assert _gtins(first) == ["4006381333931"]
    assert first.next_cursor is not None

    second = await planner.execute(
        MatrixQueryRequest(missing_target=FRISCO, page_size=1, cursor=first.next_cursor)
    )
    assert second.rows == []
    assert second.next_cursor is None


@pytest.mark.asyncio
async def test_unknown_missing_target_is_rejected(planner):
    with pytest.raises(QueryError):
        await planner.execute(MatrixQueryRequest(missing_target="Nowhere – Main"))
    with pytest.raises(QueryError):
        await planner.execute(MatrixQueryRequest(missing_require_present_in=PLANO))
