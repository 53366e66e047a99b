"""
Co-purchase Aggregator
Folds unprocessed valid orders into the symmetric pair table, one bounded batch per transaction
"""
from typing import Callable, List, Optional, Tuple
import logging
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import AsyncSessionLocal
from schemas.recommendation_schemas import (
    REFRESH_COMPLETED,
    REFRESH_LOCKED_OUT,
    REFRESH_UP_TO_DATE,
    RefreshOutcome,
)
from services.collaborators import OrderLedger, SqlOrderLedger
from services.concurrency_control import NamedLock, named_lock
from services.configuration import ConfigurationStore, configuration_store
from services.errors import LockUnavailable, StoreWriteFailure
from services.obs.metrics import MetricsCollector, metrics_collector
from services.storage import PairAggregateStore, ProcessedOrderTracker, pair_store, processed_orders
from settings import BATCH_SIZE, LOCK_NAME, LOCK_TIMEOUT_SECONDS, SETTINGS_LAST_UPDATE
from utils import chunked, is_transient_error

logger = logging.getLogger(__name__)


class CoPurchaseAggregator:
    """
    Incremental co-purchase index maintenance.

    A pass runs under the named refresh lock: it records the attempt timestamp,
    lists valid orders not yet marked processed, and folds them in batches.
    Marking a batch and merging its pair deltas commit together, so a crash
    never leaves an order counted without its marker (or the reverse).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        ledger: Optional[OrderLedger] = None,
        tracker: Optional[ProcessedOrderTracker] = None,
        pairs: Optional[PairAggregateStore] = None,
        config: Optional[ConfigurationStore] = None,
        lock: Optional[NamedLock] = None,
        metrics: Optional[MetricsCollector] = None,
        batch_size: int = BATCH_SIZE,
        lock_name: str = LOCK_NAME,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self.ledger = ledger or SqlOrderLedger(session_factory)
        self.tracker = tracker or processed_orders
        self.pairs = pairs or pair_store
        self.config = config or configuration_store
        self.lock = lock or named_lock
        self.metrics = metrics or metrics_collector
        self.batch_size = max(1, batch_size)
        self.lock_name = lock_name
        self.lock_timeout = lock_timeout
        self._clock = clock

    async def refresh(self, full: bool = False) -> RefreshOutcome:
        """
        Run one pass. Returns ``locked_out`` without writing anything when the
        lock is busy; raises StoreWriteFailure when a store write fails.
        """
        start = time.monotonic()
        try:
            async with self.lock.acquire(self.lock_name, self.lock_timeout):
                outcome = await self._run_pass(full)
        except LockUnavailable as e:
            logger.info(f"Co-purchase refresh skipped, another pass holds the lock: {e.message}")
            outcome = RefreshOutcome(status=REFRESH_LOCKED_OUT, full=full)
        except StoreWriteFailure as e:
            self.metrics.record_refresh_failure(e, full=full, duration_ms=(time.monotonic() - start) * 1000)
            raise
        except SQLAlchemyError as e:
            # Lock bookkeeping itself failed
            failure = StoreWriteFailure("acquire_lock", e, {"transient": is_transient_error(e)})
            self.metrics.record_refresh_failure(failure, full=full, duration_ms=(time.monotonic() - start) * 1000)
            raise failure from e

        outcome.duration_ms = (time.monotonic() - start) * 1000
        self.metrics.record_refresh(outcome)
        if outcome.status == REFRESH_COMPLETED:
            logger.info(
                f"Co-purchase refresh completed: {outcome.orders_processed} orders, "
                f"{outcome.pairs_merged} pair rows in {outcome.batches} batches "
                f"({outcome.duration_ms:.1f}ms, full={outcome.full})"
            )
        return outcome

    async def trigger_full_rebuild(self) -> RefreshOutcome:
        """Clear the pair table and markers, then re-fold every valid order"""
        logger.info("Full co-purchase rebuild requested")
        return await self.refresh(full=True)

    # ---------- pass internals ----------

    async def _run_pass(self, full: bool) -> RefreshOutcome:
        if full:
            await self._reset_index()

        attempted_at = await self._record_attempt()
        outcome = RefreshOutcome(status=REFRESH_UP_TO_DATE, full=full, attempted_at=attempted_at)

        try:
            async with self.metrics.phase_timer("list_orders") as phase:
                valid_ids = await self.ledger.list_valid_order_ids()
                pending = await self.tracker.unprocessed(valid_ids)
                phase.output_count = len(pending)
        except SQLAlchemyError as e:
            raise StoreWriteFailure("list_orders", e, {"transient": is_transient_error(e)}) from e

        if not pending:
            logger.debug("Co-purchase index up to date (%d valid orders)", len(valid_ids))
            return outcome

        logger.info(f"Folding {len(pending)} orders into co-purchase pairs (batch size {self.batch_size})")
        for batch in chunked(pending, self.batch_size):
            folded, merged = await self._fold_batch(batch)
            outcome.batches += 1
            outcome.orders_processed += folded
            outcome.pairs_merged += merged

        outcome.status = REFRESH_COMPLETED
        return outcome

    async def _fold_batch(self, batch: List[int]) -> Tuple[int, int]:
        """Mark a batch processed and merge its deltas in one transaction"""
        try:
            async with self.metrics.phase_timer("fold_batch", input_count=len(batch)) as phase:
                # Read before opening the write transaction
                orders = await self.ledger.load_orders(batch)

                merged = 0
                async with self._session_factory() as session:
                    async with session.begin():
                        # Orders that turned invalid since listing stay unmarked for a later pass
                        claimed = await self.tracker.mark_processed(session, [order.order_id for order in orders])
                        deltas = self.pairs.compute_pair_deltas(
                            order for order in orders if order.order_id in claimed
                        )
                        for shop_id, counts in sorted(deltas.items()):
                            merged += await self.pairs.merge_counts(
                                session,
                                shop_id,
                                ((product_a, product_b, delta) for (product_a, product_b), delta in sorted(counts.items())),
                            )
                phase.output_count = len(claimed)
        except SQLAlchemyError as e:
            raise StoreWriteFailure(
                "fold_batch",
                e,
                {"first_order_id": batch[0], "last_order_id": batch[-1], "transient": is_transient_error(e)},
            ) from e

        if len(claimed) < len(batch):
            logger.debug("Skipped %d orders already marked or no longer valid", len(batch) - len(claimed))
        return len(claimed), merged

    async def _record_attempt(self) -> int:
        attempted_at = int(self._clock())
        try:
            await self.config.update_global(SETTINGS_LAST_UPDATE, attempted_at)
        except SQLAlchemyError as e:
            raise StoreWriteFailure("record_attempt", e, {"transient": is_transient_error(e)}) from e
        return attempted_at

    async def _reset_index(self) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    pairs_removed = await self.pairs.clear(session)
                    markers_removed = await self.tracker.clear(session)
        except SQLAlchemyError as e:
            raise StoreWriteFailure("reset_index", e, {"transient": is_transient_error(e)}) from e
        logger.info(f"Cleared co-purchase index: {pairs_removed} pair rows, {markers_removed} processed markers")
