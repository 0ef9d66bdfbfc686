from datetime import datetime, timezone
from decimal import Decimal

from matrix_hub.models import LocationSnapshot, MatrixEntry, MatrixHeader, RawInventoryRecord
from matrix_hub.services.aggregator import (
    GtinAggregator, MAX_RAW_VARIANTS, finalize_entry, merge_entries, should_replace
)

from fakes import inv


def _snap(price=None, calculated_at=None, updated_at=None):
    return LocationSnapshot(price=price, calculated_at=calculated_at, updated_at=updated_at)


def _record(doc_id, data, merchant_id="M1"):
    return RawInventoryRecord.from_document(doc_id, merchant_id, data)


def _by_location(record):
    return f"{record.merchant_id} – {record.location_name}" if record.location_name else ""


# ============================================================================
# should_replace
# ============================================================================

def test_priced_beats_unpriced_both_ways():
    assert should_replace(_snap(None, "2024-05-02"), _snap("5", "2024-01-01")) is True
    assert should_replace(_snap("5", "2024-01-01"), _snap(None, "2024-05-02")) is False


def test_newer_timestamp_wins_when_both_priced():
    old = _snap("5", "2024-01-01T00:00:00Z")
    new = _snap("6", "2024-02-01T00:00:00Z")
    assert should_replace(old, new) is True
    assert should_replace(new, old) is False


def test_updated_at_is_used_when_calculated_at_missing():
    a = _snap("5", calculated_at=None, updated_at="2024-03-01T00:00:00Z")
    b = _snap("5", calculated_at="2024-02-01T00:00:00Z")
    assert should_replace(b, a) is True
    assert should_replace(a, b) is False


def test_ties_go_to_the_later_record():
    a = _snap("5", "2024-01-01T00:00:00Z")
    b = _snap("7", "2024-01-01T00:00:00Z")
    assert should_replace(a, b) is True
    assert should_replace(b, a) is True


def test_missing_timestamps_count_as_oldest():
    assert should_replace(_snap("5", "2024-01-01"), _snap("6")) is False
    assert should_replace(_snap("5"), _snap("6", "2024-01-01")) is True


def test_empty_slot_always_takes_candidate():
    assert should_replace(None, _snap()) is True


# ============================================================================
# GtinAggregator
# ============================================================================

def test_groups_by_canonical_gtin_and_location():
    agg = GtinAggregator(_by_location)
    page = agg.aggregate([
        _record("a", inv("000002785123", "10.00", location="Plano")),
        _record("b", inv("02785123", "12.50", location="Frisco")),
        _record("c", inv("4006381333931", "3.00", location="Plano")),
    ])

    assert sorted(page) == ["02785123", "4006381333931"]
    entry = page["02785123"]
    assert sorted(entry.prices_by_location) == ["M1 – Frisco", "M1 – Plano"]
    assert entry.gtin_raws == ["000002785123", "02785123"]
    assert entry.header.item_name == "Tito's Vodka 200 ml"


def test_duplicate_slot_resolved_by_conflict_rule():
    agg = GtinAggregator(_by_location)
    page = agg.aggregate([
        _record("a", inv("12345678", "10", calculated_at="2024-05-02T00:00:00Z")),
        _record("b", inv("12345678", None, calculated_at="2024-06-01T00:00:00Z")),
        _record("c", inv("12345678", "11", calculated_at="2024-05-01T00:00:00Z")),
    ])
    slot = page["12345678"].prices_by_location["M1 – Main"]
    assert slot.price == Decimal("10")


def test_records_without_gtin_or_location_are_skipped_and_counted():
    agg = GtinAggregator(_by_location)
    page = agg.aggregate([
        _record("a", inv("", "10")),
        _record("b", inv("n/a", "10")),
        _record("c", inv("12345678", "10", location=None, location_id=None)),
        _record("d", inv("12345678", "10")),
    ])
    assert list(page) == ["12345678"]
    assert agg.skipped_no_gtin == 2
    assert agg.skipped_no_location == 1


def test_overlong_identifier_is_skipped_as_missing_gtin():
    agg = GtinAggregator(_by_location)
    page = agg.aggregate([
        _record("a", inv("1" * 33, "10")),
        _record("b", inv("1" * 32, "10")),
    ])
    assert list(page) == ["1" * 32]
    assert agg.skipped_no_gtin == 1


def test_first_non_empty_header_wins():
    agg = GtinAggregator(_by_location)
    page = agg.aggregate([
        _record("a", inv("12345678", "1", name="", sku="", location="A")),
        _record("b", inv("12345678", "1", name="Grey Goose", sku="GG", location="B")),
        _record("c", inv("12345678", "1", name="Other", sku="OT", location="C")),
    ])
    assert page["12345678"].header == MatrixHeader(item_name="Grey Goose", category_name="Spirits", sku="GG")


def test_raw_variants_are_capped():
    agg = GtinAggregator(_by_location)
    records = [_record(str(i), inv("0" * i + "12345678", "1")) for i in range(1, 9)]
    page = agg.aggregate(records)
    assert len(page["12345678"].gtin_raws) == MAX_RAW_VARIANTS


# ============================================================================
# merge-on-write
# ============================================================================

def _entry(prices, name="Tito's Vodka 200 ml"):
    e = MatrixEntry(
        gtin="12345678",
        header=MatrixHeader(item_name=name),
        prices_by_location={k: _snap(v) for k, v in prices.items()},
    )
    return finalize_entry(e, datetime(2024, 1, 1, tzinfo=timezone.utc))


def test_merge_keeps_other_locations_and_recomputes_metrics():
    stored = _entry({"M1 – A": "10.00"})
    incoming = _entry({"M2 – B": "12.50"})

    merged = merge_entries(stored, incoming)

    assert sorted(merged.prices_by_location) == ["M1 – A", "M2 – B"]
    assert merged.metrics.has_mismatch is True
    assert merged.metrics.price_spread == Decimal("2.50")


def test_merge_incoming_slot_overwrites_stored_slot():
    merged = merge_entries(_entry({"M1 – A": "10.00"}), _entry({"M1 – A": "11.00"}))
    assert merged.prices_by_location["M1 – A"].price == Decimal("11.00")
    assert merged.metrics.priced_location_count == 1


def test_merge_without_stored_entry_is_a_copy():
    incoming = _entry({"M1 – A": "10.00"})
    merged = merge_entries(None, incoming)
    assert merged.prices_by_location == incoming.prices_by_location
    assert merged is not incoming


def test_finalize_sets_search_fields():
    e = _entry({"M1 – A": "1"}, name="Grey Goose 1 L")
    assert e.name_key == "greygoose1l"
    assert "grey" in e.search_tokens and "goose" in e.search_tokens


def test_document_round_trip_preserves_entry_fields():
    e = _entry({"M1 – A": "10.00", "M2 – B": "12.50"})
    doc = e.to_document()
    assert doc["gtin"] == "12345678"
    assert doc["price_spread"] == 2.5
    assert doc["has_mismatch"] is True
    assert doc["item_name_lc"] == "tito's vodka 200 ml"

    back = MatrixEntry.from_document(doc)
    assert back.prices_by_location["M2 – B"].price == Decimal("12.5")
    assert back.metrics.has_mismatch is True
