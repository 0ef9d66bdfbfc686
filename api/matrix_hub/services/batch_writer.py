# matrix_hub/services/batch_writer.py
"""
Bounded Batch Writer.

The store rejects transactions above 500 operations; commits are chunked at a
ceiling well below that (default 400, max 450) so concurrent writers keep
headroom.
"""
from __future__ import annotations
import logging
from typing import List

from matrix_hub.errors import BatchCommitError, ConfigError
from matrix_hub.store import DocumentStore, WriteOp

logger = logging.getLogger(__name__)

STORE_HARD_LIMIT = 500
MAX_WRITE_BATCH = 450
DEFAULT_WRITE_BATCH = 400


class BoundedBatchWriter:
    """
    Usage:
        writer.enqueue(op)
        await writer.commit()            # flushes once `ceiling` writes are pending
        await writer.commit(force=True)  # end of page / end of run
    """

    def __init__(self, store: DocumentStore, ceiling: int = DEFAULT_WRITE_BATCH, dry_run: bool = False):
        if not 1 <= ceiling <= MAX_WRITE_BATCH:
            raise ConfigError(f"write batch ceiling must be between 1 and {MAX_WRITE_BATCH}, got {ceiling}")
        self.store = store
        self.ceiling = ceiling
        self.dry_run = dry_run
        self._pending: List[WriteOp] = []

        self.enqueued = 0
        self.committed = 0   # writes accepted by the store
        self.discarded = 0   # writes dropped on purpose (dry-run)
        self.batches = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def enqueue(self, op: WriteOp) -> None:
        self._pending.append(op)
        self.enqueued += 1

    async def commit(self, force: bool = False) -> int:
        """Flush full batches (or everything when forced); returns writes flushed."""
        if not self._pending:
            return 0
        if not force and len(self._pending) < self.ceiling:
            return 0

        flushed = 0
        while self._pending and (force or len(self._pending) >= self.ceiling):
            chunk = self._pending[: self.ceiling]
            if self.dry_run:
                self.discarded += len(chunk)
            else:
                try:
                    await self.store.commit(chunk)
                except Exception as e:
                    logger.error("Batch commit failed (%d writes pending): %s", len(self._pending), e)
                    raise BatchCommitError(
                        f"batch commit of {len(chunk)} writes failed: {e}", pending=len(self._pending)
                    ) from e
                self.committed += len(chunk)
            del self._pending[: len(chunk)]
            self.batches += 1
            flushed += len(chunk)
        return flushed
