# matrix_hub/cli.py
"""
Command line entry point.

    python -m matrix_hub.cli rebuild [--merchant-id ML1] [--limit-gtins 500] [--dry-run]
    python -m matrix_hub.cli clean [--dry-run] [--prune-empty]
    python -m matrix_hub.cli export --out matrix.csv [--mismatch-only]

Defaults come from Settings (env / .env); flags override them.
"""
from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from matrix_hub.settings import settings
from matrix_hub.database import init_db, close_db, create_schema, get_session_factory
from matrix_hub.errors import MatrixHubError
from matrix_hub.logging_setup import setup_logging
from matrix_hub.services.batch_writer import BoundedBatchWriter
from matrix_hub.services.cleanup import clean_derived_views, prune_empty_entries
from matrix_hub.services.export import export_matrix_csv
from matrix_hub.services.reconcile import ReconcileOptions, ReconciliationOrchestrator
from matrix_hub.store import SqlDocumentStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="matrix_hub", description="Rebuild and maintain gtin_inventory_matrix")
    ap.add_argument("--init-schema", action="store_true", help="Create missing tables first")
    sub = ap.add_subparsers(dest="command", required=True)

    rb = sub.add_parser("rebuild", help="Reconcile merchant inventory into the matrix")
    rb.add_argument("--merchant-id", default=None, help="Only this merchant (default: all)")
    rb.add_argument("--read-page", type=int, default=None, help="Source page size (max 2000)")
    rb.add_argument("--write-batch", type=int, default=None, help="Writes per commit (max 450)")
    rb.add_argument("--limit-gtins", type=int, default=None, help="Stop after N distinct GTINs")
    rb.add_argument("--dry-run", action="store_true", default=None, help="Scan and aggregate, write nothing")

    cl = sub.add_parser("clean", help="Delete the derived views")
    cl.add_argument("--dry-run", action="store_true", help="Count only")
    cl.add_argument("--prune-empty", action="store_true", help="Only delete entries without locations")

    ex = sub.add_parser("export", help="Write the matrix as CSV")
    ex.add_argument("--out", required=True, help="Output CSV path")
    ex.add_argument("--mismatch-only", action="store_true")
    return ap


async def _run(args: argparse.Namespace) -> dict:
    await init_db()
    try:
        if args.init_schema:
            await create_schema()
        store = SqlDocumentStore(await get_session_factory())

        if args.command == "rebuild":
            opts = ReconcileOptions.from_settings(
                settings,
                merchant_id=args.merchant_id,
                read_page=args.read_page,
                write_batch=args.write_batch,
                limit_gtins=args.limit_gtins,
                dry_run=args.dry_run,
            )
            report = await ReconciliationOrchestrator(store, opts).run()
            return report.as_dict()

        if args.command == "clean":
            dry_run = args.dry_run or settings.DRY_RUN
            writer = BoundedBatchWriter(store, ceiling=settings.WRITE_BATCH, dry_run=dry_run)
            if args.prune_empty:
                return {"dry_run": dry_run, "pruned": await prune_empty_entries(store, writer)}
            counts = await clean_derived_views(store, writer)
            return {"dry_run": dry_run, **counts}

        rows = await export_matrix_csv(store, Path(args.out), mismatch_only=args.mismatch_only)
        return {"out": str(args.out), "rows": rows}
    finally:
        await close_db()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(settings)
    logging.getLogger().addHandler(logging.StreamHandler(sys.stderr))

    try:
        summary = asyncio.run(_run(args))
    except MatrixHubError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2, ensure_ascii=False))
    if args.command == "rebuild" and summary.get("failed_merchants"):
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
