# matrix_hub/services/__init__.py
"""
Reconciliation pipeline and read-side services for GTIN Matrix Hub.
"""
from matrix_hub.services.identifiers import canonical_gtin, canonicalize_query
from matrix_hub.services.reconcile import ReconciliationOrchestrator, ReconcileOptions, ReconcileReport
from matrix_hub.services.query_planner import QueryPlanner, encode_cursor, decode_cursor

__all__ = [
    "canonical_gtin",
    "canonicalize_query",
    "ReconciliationOrchestrator",
    "ReconcileOptions",
    "ReconcileReport",
    "QueryPlanner",
    "encode_cursor",
    "decode_cursor",
]
