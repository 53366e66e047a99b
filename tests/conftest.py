import os
import sys
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import (
    CatalogProduct,
    CategoryGroup,
    Order,
    OrderLine,
    ProductShop,
    build_engine,
    init_db,
)
from services.obs.metrics import MetricsCollector
from services.recommendation_service import RecommendationService

START_TIME = 1_700_000_000.0
TEST_BASE_URL = "http://shop.test"


class FakeClock:
    """Controllable replacement for time.time"""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CoPurchaseEnv:
    """A file-backed SQLite database with a fully wired RecommendationService"""

    def __init__(self, engine, session_factory, clock: FakeClock, metrics: MetricsCollector, **service_kwargs):
        self.engine = engine
        self.session_factory = session_factory
        self.clock = clock
        self.metrics = metrics
        self._next_line_id = 1
        self.service = self.make_service(**service_kwargs)

    def make_service(self, **overrides) -> RecommendationService:
        """Another service over the same database, as a second process would have"""
        kwargs = {
            "session_factory": self.session_factory,
            "bind": self.engine,
            "metrics": self.metrics,
            "clock": self.clock,
            "lock_timeout": 0.2,
            "base_url": TEST_BASE_URL,
        }
        kwargs.update(overrides)
        return RecommendationService(**kwargs)

    # Shortcuts
    @property
    def aggregator(self):
        return self.service.aggregator

    @property
    def pairs(self):
        return self.service.pairs

    @property
    def tracker(self):
        return self.service.tracker

    @property
    def config(self):
        return self.service.config

    async def add_order(self, order_id: int, product_ids: Sequence[int], shop_id: int = 1, valid: bool = True) -> None:
        await self.add_orders([(order_id, product_ids)], shop_id=shop_id, valid=valid)

    async def add_orders(self, orders: Iterable[Tuple[int, Sequence[int]]], shop_id: int = 1, valid: bool = True) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                for order_id, product_ids in orders:
                    session.add(Order(order_id=order_id, shop_id=shop_id, valid=valid))
                    await session.flush()
                    for product_id in product_ids:
                        session.add(OrderLine(id=self._next_line_id, order_id=order_id, product_id=product_id))
                        self._next_line_id += 1

    async def add_product(
        self,
        product_id: int,
        shop_id: int = 1,
        active: bool = True,
        visibility: str = "both",
        category_id: Optional[int] = None,
        price: str = "10.00",
        tax_rate: str = "0",
        **fields,
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                product = await session.get(CatalogProduct, product_id)
                if product is None:
                    values = {
                        "name": f"Product {product_id}",
                        "short_description": f"About product {product_id}",
                        "link_rewrite": f"product-{product_id}",
                        "default_category_id": category_id,
                        "quantity": 5,
                    }
                    values.update(fields)
                    session.add(CatalogProduct(product_id=product_id, **values))
                session.add(
                    ProductShop(
                        product_id=product_id,
                        shop_id=shop_id,
                        active=active,
                        visibility=visibility,
                        default_category_id=category_id,
                        price=Decimal(price),
                        tax_rate=Decimal(tax_rate),
                    )
                )

    async def link_category_group(self, category_id: int, group_id: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(CategoryGroup(category_id=category_id, group_id=group_id))

    async def set_pairs(self, pairs: Iterable[Tuple[int, int, int]], shop_id: int = 1) -> None:
        """Write counts in both directions, as aggregation does"""
        mirrored = []
        for product_a, product_b, count in pairs:
            mirrored.append((product_a, product_b, count))
            mirrored.append((product_b, product_a, count))
        async with self.session_factory() as session:
            async with session.begin():
                await self.pairs.merge_counts(session, shop_id, mirrored)


@asynccontextmanager
async def copurchase_env(db_path: Path, **service_kwargs):
    engine = build_engine(f"sqlite+aiosqlite:///{db_path}")
    try:
        await init_db(engine)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        yield CoPurchaseEnv(engine, session_factory, FakeClock(), MetricsCollector(), **service_kwargs)
    finally:
        await engine.dispose()


@pytest.fixture
def env_factory(tmp_path):
    """Usage: ``async with env_factory() as env: ...`` inside ``asyncio.run``"""
    counter = {"n": 0}

    def factory(**service_kwargs):
        counter["n"] += 1
        return copurchase_env(tmp_path / f"copurchase_{counter['n']}.db", **service_kwargs)

    return factory
