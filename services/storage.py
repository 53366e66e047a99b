"""
Storage Service Layer
Persistence for the co-purchase index: processed-order markers and pair counts
"""
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, ProcessedOrder, ProductPair, dialect_insert, utcnow
from schemas.recommendation_schemas import ScoredProduct
from services.collaborators import LedgerOrder
from utils import chunked

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bound parameters under SQLite's limit
WRITE_CHUNK_SIZE = 500
# Ids per IN (...) clause on reads
READ_CHUNK_SIZE = 500

PairDelta = Tuple[int, int, int]  # (product_a, product_b, delta)


def _dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


class ProcessedOrderTracker:
    """Remembers which ledger orders have already been folded into the pair table"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def mark_processed(self, session: AsyncSession, order_ids: Iterable[int]) -> Set[int]:
        """
        Claim orders inside the caller's transaction.

        Returns the ids whose marker row this statement inserted. Ids already
        marked, including by a concurrent transaction that committed first,
        hit the conflict clause and are not returned, so their counts are
        never folded twice.
        """
        ids = sorted(set(order_ids))
        if not ids:
            return set()

        insert = dialect_insert(_dialect_name(session))
        now = utcnow()
        claimed: Set[int] = set()
        for chunk in chunked(ids, WRITE_CHUNK_SIZE):
            stmt = (
                insert(ProcessedOrder)
                .values([{"order_id": order_id, "processed_at": now} for order_id in chunk])
                .on_conflict_do_nothing(index_elements=[ProcessedOrder.order_id])
                .returning(ProcessedOrder.order_id)
            )
            result = await session.execute(stmt)
            claimed.update(int(order_id) for order_id in result.scalars().all())

        return claimed

    async def unprocessed(self, order_ids: Iterable[int]) -> List[int]:
        """Subset of order_ids not yet marked, ascending"""
        candidates = sorted(set(order_ids))
        if not candidates:
            return []

        processed: Set[int] = set()
        async with self._session_factory() as session:
            for chunk in chunked(candidates, READ_CHUNK_SIZE):
                result = await session.execute(
                    select(ProcessedOrder.order_id).where(ProcessedOrder.order_id.in_(chunk))
                )
                processed.update(result.scalars().all())

        return [order_id for order_id in candidates if order_id not in processed]

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(ProcessedOrder))
            return int(result.scalar() or 0)

    async def clear(self, session: AsyncSession) -> int:
        result = await session.execute(delete(ProcessedOrder))
        return result.rowcount or 0


class PairAggregateStore:
    """
    Symmetric co-purchase counts per shop.

    Both directions of a pair are stored explicitly, so count(a, b) == count(b, a)
    holds as long as every merge writes mirrored deltas.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def compute_pair_deltas(orders: Iterable[LedgerOrder]) -> Dict[int, Counter]:
        """
        Count ordered pairs of line items within each order, grouped by shop.

        Two lines of the same order contribute (a, b) and (b, a) when their
        products differ. Repeated lines for one product multiply: an order with
        two lines of A and one line of B yields count(A, B) == 2.
        """
        deltas: Dict[int, Counter] = defaultdict(Counter)
        for order in orders:
            per_product = Counter(line.product_id for line in order.lines if line.product_id)
            if len(per_product) < 2:
                continue
            shop_deltas = deltas[order.shop_id]
            for product_a, lines_a in per_product.items():
                for product_b, lines_b in per_product.items():
                    if product_a != product_b:
                        shop_deltas[(product_a, product_b)] += lines_a * lines_b
        return dict(deltas)

    async def merge_counts(self, session: AsyncSession, shop_id: int, pairs: Iterable[PairDelta]) -> int:
        """
        Add deltas to existing counts (inserting missing pairs) in the caller's transaction.

        Self-pairs and non-positive deltas are dropped. Returns the number of rows written.
        """
        rows = [
            {"shop_id": shop_id, "product_a": product_a, "product_b": product_b, "count": delta}
            for product_a, product_b, delta in pairs
            if product_a != product_b and delta > 0
        ]
        if not rows:
            return 0

        insert = dialect_insert(_dialect_name(session))
        table = ProductPair.__table__
        for chunk in chunked(rows, WRITE_CHUNK_SIZE):
            stmt = insert(ProductPair).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=[ProductPair.shop_id, ProductPair.product_a, ProductPair.product_b],
                set_={"count": table.c["count"] + stmt.excluded["count"]},
            )
            await session.execute(stmt)

        logger.debug("Merged %d pair rows for shop %s", len(rows), shop_id)
        return len(rows)

    async def ranked_candidates(
        self,
        shop_id: int,
        seed_ids: Sequence[int],
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ScoredProduct]:
        """
        Products co-purchased with any seed, excluding the seeds themselves,
        scored by summed count and ordered by score desc then product id asc.
        """
        seeds = sorted(set(seed_ids))
        if not seeds:
            return []

        score = func.sum(ProductPair.count).label("score")
        stmt = (
            select(ProductPair.product_b, score)
            .where(
                ProductPair.shop_id == shop_id,
                ProductPair.product_a.in_(seeds),
                ProductPair.product_b.not_in(seeds),
            )
            .group_by(ProductPair.product_b)
            .having(func.sum(ProductPair.count) > 0)
            .order_by(score.desc(), ProductPair.product_b.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        elif offset:
            stmt = stmt.offset(offset)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ScoredProduct(product_id=int(row.product_b), score=int(row.score)) for row in result]

    async def get_count(self, shop_id: int, product_a: int, product_b: int) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProductPair.count).where(
                    ProductPair.shop_id == shop_id,
                    ProductPair.product_a == product_a,
                    ProductPair.product_b == product_b,
                )
            )
            return int(result.scalar() or 0)

    async def count_rows(self, shop_id: Optional[int] = None) -> int:
        stmt = select(func.count()).select_from(ProductPair)
        if shop_id is not None:
            stmt = stmt.where(ProductPair.shop_id == shop_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar() or 0)

    async def clear(self, session: AsyncSession) -> int:
        result = await session.execute(delete(ProductPair))
        return result.rowcount or 0


# Global instances for application use
processed_orders = ProcessedOrderTracker()
pair_store = PairAggregateStore()
