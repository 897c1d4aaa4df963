"""
loaders/batcher.py — Splits an ordered write list into bounded atomic batches.

Each batch is one store.transact() call, awaited before the next is sent.
A batch applies fully or not at all; the list as a whole is NOT atomic, so
a failure can leave a prefix applied. Callers make re-runs safe with
find-before-create checks instead of relying on cross-batch atomicity.

Usage:
    from civicdata_pipeline.loaders.batcher import TransactionBatcher

    batcher = TransactionBatcher(store, batch_size=10)
    result = await batcher.submit(ops)
    print(result.batches_applied, result.ops_applied)

    # Whole list in one transaction when the store allows it:
    await batcher.submit(ops, single_transaction=True)
"""

from __future__ import annotations

import math
import time
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from civicdata_shared.config import settings
from civicdata_pipeline.exceptions import BatchWriteError, TimeoutAfterPartialWrite
from civicdata_pipeline.loaders.store import StatStore, WriteOp

log = structlog.get_logger(__name__)


@dataclass
class BatchResult:
    """Summary of one submit() call."""

    batches_total: int = 0
    batches_applied: int = 0
    ops_applied: int = 0
    duration_ms: int = 0

    @property
    def complete(self) -> bool:
        return self.batches_applied == self.batches_total


class TransactionBatcher:
    """Sequential, bounded-size batch writer over a StatStore."""

    def __init__(self, store: StatStore, batch_size: int | None = None) -> None:
        self._store = store
        self._batch_size = max(1, batch_size or settings.write_batch_size)

    @property
    def store(self) -> StatStore:
        return self._store

    def _chunk_size(self, n_ops: int, single_transaction: bool) -> int:
        limit = getattr(self._store, "atomic_batch_limit", None)
        if single_transaction:
            if limit is None or n_ops <= limit:
                return max(1, n_ops)
            log.warning(
                "single_transaction_exceeds_limit",
                ops=n_ops,
                atomic_batch_limit=limit,
            )
        size = self._batch_size
        if limit is not None:
            size = min(size, limit)
        return size

    async def submit(
        self,
        ops: Sequence[WriteOp],
        *,
        single_transaction: bool = False,
    ) -> BatchResult:
        """
        Write ``ops`` in order, one batch at a time.

        Raises:
            TimeoutAfterPartialWrite: the store timed out on a batch; it may
                or may not have landed.
            BatchWriteError: a batch failed; ``exc.result`` says how many
                earlier batches were applied.
        """
        result = BatchResult()
        if not ops:
            return result

        t0 = time.monotonic()
        size = self._chunk_size(len(ops), single_transaction)
        n_batches = math.ceil(len(ops) / size)
        result.batches_total = n_batches
        batch_log = log.bind(total_ops=len(ops), n_batches=n_batches)

        for batch_idx in range(n_batches):
            start = batch_idx * size
            batch = list(ops[start : start + size])
            try:
                await self._store.transact(batch)
            except (TimeoutError, TimeoutAfterPartialWrite) as exc:
                result.duration_ms = int((time.monotonic() - t0) * 1000)
                batch_log.warning("batch_timeout", batch=batch_idx + 1, error=str(exc))
                raise TimeoutAfterPartialWrite(
                    f"Write batch {batch_idx + 1}/{n_batches} timed out",
                    original_exception=exc,
                ) from exc
            except Exception as exc:
                result.duration_ms = int((time.monotonic() - t0) * 1000)
                batch_log.error(
                    "batch_failed",
                    batch=batch_idx + 1,
                    batches_applied=result.batches_applied,
                    error=str(exc),
                )
                raise BatchWriteError(
                    f"Batch {batch_idx + 1}/{n_batches}: {exc}",
                    result,
                    original_exception=exc,
                ) from exc

            result.batches_applied += 1
            result.ops_applied += len(batch)
            batch_log.debug("batch_applied", batch=batch_idx + 1, batch_size=len(batch))

        result.duration_ms = int((time.monotonic() - t0) * 1000)
        batch_log.debug("submit_complete", duration_ms=result.duration_ms)
        return result
