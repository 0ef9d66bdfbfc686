# matrix_hub/services/reconcile.py
"""
Reconciliation Orchestrator - builds gtin_inventory_matrix + location_index.

For each merchant (sequentially by default):
    scan merchants/<id>/inventory page by page
    -> aggregate per canonical GTIN
    -> recompute mismatch metrics + search tokens
    -> merge-write one document per GTIN in bounded batches
At the end of the run the observed LocationKeys are written to location_index.

Failure policy:
    - records without GTIN / LocationKey are skipped and counted
    - an error while scanning one merchant is logged, that merchant is marked
      failed and the run continues with the next one
    - a batch commit failure aborts the whole run (BatchCommitError)

DRY_RUN executes the same path; only the batch writer skips the commits.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from matrix_hub.errors import BatchCommitError
from matrix_hub.services.aggregator import GtinAggregator, finalize_entry
from matrix_hub.services.batch_writer import BoundedBatchWriter, DEFAULT_WRITE_BATCH, MAX_WRITE_BATCH
from matrix_hub.services.location_keys import LocationKeyRegistry
from matrix_hub.services.scanner import GtinBudget, PartitionScanner, DEFAULT_READ_PAGE, MAX_READ_PAGE
from matrix_hub.store import DocumentStore, MatrixMerge

logger = logging.getLogger(__name__)


# ============================================================================
# Options / report
# ============================================================================

@dataclass
class ReconcileOptions:
    dry_run: bool = False
    merchant_id: Optional[str] = None
    limit_gtins: Optional[int] = None
    read_page: int = DEFAULT_READ_PAGE
    write_batch: int = DEFAULT_WRITE_BATCH
    merchant_labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ReconcileOptions":
        """
        Options from Settings; non-None overrides (CLI flags) win.

        Overrides get the same clamping as the environment values.
        """
        opts = cls(
            dry_run=settings.DRY_RUN,
            merchant_id=settings.TARGET_MERCHANT_ID,
            limit_gtins=settings.LIMIT_GTINS,
            read_page=settings.READ_PAGE,
            write_batch=settings.WRITE_BATCH,
            merchant_labels=settings.merchant_labels,
        )
        for name, value in overrides.items():
            if value is not None:
                setattr(opts, name, value)

        opts.read_page = max(1, min(int(opts.read_page), MAX_READ_PAGE))
        opts.write_batch = max(1, min(int(opts.write_batch), MAX_WRITE_BATCH))
        if opts.limit_gtins is not None and opts.limit_gtins <= 0:
            opts.limit_gtins = None
        return opts


@dataclass
class MerchantResult:
    merchant_id: str
    scanned: int = 0
    pages: int = 0
    wrote: int = 0
    skipped: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ReconcileReport:
    dry_run: bool
    merchants: List[MerchantResult] = field(default_factory=list)
    canonical_gtins: int = 0
    location_keys: int = 0
    committed: int = 0
    batches: int = 0
    stopped_by_limit: bool = False

    @property
    def scanned(self) -> int:
        return sum(m.scanned for m in self.merchants)

    @property
    def wrote(self) -> int:
        return sum(m.wrote for m in self.merchants)

    @property
    def failed_merchants(self) -> List[str]:
        return [m.merchant_id for m in self.merchants if not m.ok]

    @property
    def ok(self) -> bool:
        return not self.failed_merchants

    def as_dict(self) -> Dict[str, object]:
        return {
            "dry_run": self.dry_run,
            "merchants": len(self.merchants),
            "failed_merchants": self.failed_merchants,
            "scanned": self.scanned,
            "wrote": self.wrote,
            "committed": self.committed,
            "batches": self.batches,
            "canonical_gtins": self.canonical_gtins,
            "location_keys": self.location_keys,
            "stopped_by_limit": self.stopped_by_limit,
        }


# ============================================================================
# Merchant iteration strategy
# ============================================================================

MerchantHandler = Callable[[str], Awaitable[bool]]


class MerchantStrategy(Protocol):
    async def run(self, merchant_ids: Sequence[str], handler: MerchantHandler) -> None: ...


class SequentialStrategy:
    """One merchant at a time, in listing order; handler returns False to stop."""

    async def run(self, merchant_ids: Sequence[str], handler: MerchantHandler) -> None:
        for merchant_id in merchant_ids:
            if not await handler(merchant_id):
                break


# ============================================================================
# Orchestrator
# ============================================================================

class ReconciliationOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        options: Optional[ReconcileOptions] = None,
        strategy: Optional[MerchantStrategy] = None,
    ):
        self.store = store
        self.options = options or ReconcileOptions()
        self.strategy = strategy or SequentialStrategy()

        self.writer = BoundedBatchWriter(store, ceiling=self.options.write_batch, dry_run=self.options.dry_run)
        self.registry = LocationKeyRegistry(self.options.merchant_labels)
        self.aggregator = GtinAggregator(self.registry.key_for)
        self.budget = GtinBudget(self.options.limit_gtins)

    async def run(self) -> ReconcileReport:
        opts = self.options
        report = ReconcileReport(dry_run=opts.dry_run)

        merchant_ids = [opts.merchant_id] if opts.merchant_id else await self.store.list_merchant_ids()
        logger.info(
            "Reconciling gtin_inventory_matrix: merchants=%d dryRun=%s readPage=%d writeBatch=%d limitGtins=%s",
            len(merchant_ids), opts.dry_run, opts.read_page, opts.write_batch, opts.limit_gtins,
        )

        async def handle(merchant_id: str) -> bool:
            result = await self.reconcile_merchant(merchant_id)
            report.merchants.append(result)
            return not self.budget.exhausted

        await self.strategy.run(merchant_ids, handle)

        await self.writer.commit(force=True)
        report.location_keys = await self.registry.flush(self.writer)

        report.canonical_gtins = len(self.budget.seen)
        report.committed = self.writer.committed
        report.batches = self.writer.batches
        report.stopped_by_limit = self.budget.exhausted

        if report.failed_merchants:
            logger.warning("Done with failures: %s", report.failed_merchants)
        logger.info("Done. %s", report.as_dict())
        return report

    async def reconcile_merchant(self, merchant_id: str) -> MerchantResult:
        """Scan and write one merchant; scan errors are contained here."""
        result = MerchantResult(merchant_id=merchant_id)
        scanner = PartitionScanner(self.store, merchant_id, self.options.read_page, self.budget)
        skipped_before = self.aggregator.skipped_no_gtin + self.aggregator.skipped_no_location
        logger.info("Merchant %s: scanning merchants/%s/inventory ...", merchant_id, merchant_id)

        try:
            async for page in scanner:
                result.wrote += await self._write_page(page)
                logger.info(
                    "   merchant=%s scanned=%d wrote=%d lastDoc=%s",
                    merchant_id, scanner.scanned, result.wrote, scanner.last_doc_id,
                )
        except BatchCommitError:
            raise
        except Exception as e:
            logger.exception("Merchant %s failed; continuing with the next merchant", merchant_id)
            result.error = f"{type(e).__name__}: {e}"

        result.scanned = scanner.scanned
        result.pages = scanner.pages
        result.skipped = self.aggregator.skipped_no_gtin + self.aggregator.skipped_no_location - skipped_before
        return result

    async def _write_page(self, page) -> int:
        now = datetime.now(timezone.utc)
        entries = self.aggregator.aggregate(page)
        for entry in entries.values():
            finalize_entry(entry, now)
            self.writer.enqueue(MatrixMerge(entry))
            await self.writer.commit()
        await self.writer.commit(force=True)
        return len(entries)
