# matrix_hub/services/metrics.py
from __future__ import annotations
from decimal import Decimal
from typing import List, Mapping

from matrix_hub.models import LocationSnapshot, MismatchMetrics


def compute_mismatch_metrics(prices_by_location: Mapping[str, LocationSnapshot]) -> MismatchMetrics:
    """
    Price disagreement across locations of one GTIN.

    Always computed over the whole location map; a mismatch needs at least
    two priced locations with different prices.
    """
    priced: List[Decimal] = [
        snap.price
        for snap in (prices_by_location or {}).values()
        if snap is not None and snap.price is not None and snap.price.is_finite()
    ]

    if len(priced) < 2:
        single = priced[0] if priced else None
        return MismatchMetrics(
            priced_location_count=len(priced),
            min_price=single,
            max_price=single,
            price_spread=Decimal("0"),
            has_mismatch=False,
        )

    lo, hi = min(priced), max(priced)
    spread = hi - lo
    return MismatchMetrics(
        priced_location_count=len(priced),
        min_price=lo,
        max_price=hi,
        price_spread=spread,
        has_mismatch=spread > 0,
    )
