"""
Collaborator Ports
Interfaces the co-purchase index consumes (order ledger, catalog, pricing, customer
groups) and their SQL implementations over the shared database
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Collection, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple
import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import (
    AsyncSessionLocal,
    CatalogProduct,
    CategoryGroup,
    Order,
    OrderLine,
    ProductShop,
)
from settings import DEFAULT_CUSTOMER_GROUP_ID, LISTING_VISIBILITIES, SETTINGS_GROUP_FEATURE_ACTIVE
from utils import chunked, retry_async

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 500
CENTS = Decimal("0.01")


# ---------- value types ----------

@dataclass(frozen=True)
class LedgerLine:
    line_id: int
    product_id: int


@dataclass(frozen=True)
class LedgerOrder:
    """An order as seen by the aggregator: its shop and its line items"""
    order_id: int
    shop_id: int
    lines: Tuple[LedgerLine, ...] = field(default_factory=tuple)


@dataclass
class ProductDisplayData:
    """Catalog fields needed to render a recommendation"""
    product_id: int
    name: str
    short_description: Optional[str]
    link_rewrite: str
    show_price: bool
    category_link_rewrite: Optional[str]
    ean13: Optional[str]
    out_of_stock: int  # 0 deny, 1 allow, 2 shop default
    quantity: int
    cover_image_id: Optional[int]


# ---------- ports ----------

class OrderLedger(Protocol):
    async def list_valid_order_ids(self) -> List[int]:
        ...

    async def load_orders(self, order_ids: Sequence[int]) -> List[LedgerOrder]:
        ...


class Catalog(Protocol):
    async def visible_in_shop(self, product_ids: Collection[int], shop_id: int) -> Dict[int, Optional[int]]:
        """Active, listable products mapped to their default category id"""
        ...

    async def is_active_and_visible(self, product_id: int, shop_id: int) -> bool:
        ...

    async def get_products(self, product_ids: Collection[int]) -> Dict[int, ProductDisplayData]:
        ...


class Pricing(Protocol):
    async def get_price(self, product_id: int, shop_id: int, tax_included: bool) -> Decimal:
        ...


class CustomerGroups(Protocol):
    async def is_feature_active(self) -> bool:
        ...

    def default_group_id(self) -> int:
        ...

    async def category_groups(self, category_ids: Collection[int]) -> Dict[int, Set[int]]:
        ...


# ---------- SQL implementations ----------

class SqlOrderLedger:
    """Reads orders and order lines from the shared database"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    @retry_async(max_retries=2, base_delay=0.2)
    async def list_valid_order_ids(self) -> List[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.order_id).where(Order.valid.is_(True)).order_by(Order.order_id)
            )
            return [int(order_id) for order_id in result.scalars().all()]

    @retry_async(max_retries=2, base_delay=0.2)
    async def load_orders(self, order_ids: Sequence[int]) -> List[LedgerOrder]:
        """Valid orders among order_ids with their lines, ascending by order id"""
        ids = sorted(set(order_ids))
        if not ids:
            return []

        headers: Dict[int, int] = {}
        lines: Dict[int, List[LedgerLine]] = {}
        async with self._session_factory() as session:
            for chunk in chunked(ids, READ_CHUNK_SIZE):
                result = await session.execute(
                    select(Order.order_id, Order.shop_id).where(
                        Order.order_id.in_(chunk), Order.valid.is_(True)
                    )
                )
                for row in result:
                    headers[int(row.order_id)] = int(row.shop_id)

                result = await session.execute(
                    select(OrderLine.order_id, OrderLine.id, OrderLine.product_id)
                    .where(OrderLine.order_id.in_(chunk))
                    .order_by(OrderLine.order_id, OrderLine.id)
                )
                for row in result:
                    lines.setdefault(int(row.order_id), []).append(
                        LedgerLine(line_id=int(row.id), product_id=int(row.product_id))
                    )

        return [
            LedgerOrder(order_id=order_id, shop_id=shop_id, lines=tuple(lines.get(order_id, ())))
            for order_id, shop_id in sorted(headers.items())
        ]


class SqlCatalog:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def visible_in_shop(self, product_ids: Collection[int], shop_id: int) -> Dict[int, Optional[int]]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}

        visible: Dict[int, Optional[int]] = {}
        async with self._session_factory() as session:
            for chunk in chunked(ids, READ_CHUNK_SIZE):
                result = await session.execute(
                    select(
                        ProductShop.product_id,
                        func.coalesce(ProductShop.default_category_id, CatalogProduct.default_category_id).label(
                            "category_id"
                        ),
                    )
                    .join(CatalogProduct, CatalogProduct.product_id == ProductShop.product_id)
                    .where(
                        ProductShop.shop_id == shop_id,
                        ProductShop.product_id.in_(chunk),
                        ProductShop.active.is_(True),
                        ProductShop.visibility.in_(LISTING_VISIBILITIES),
                    )
                )
                for row in result:
                    visible[int(row.product_id)] = int(row.category_id) if row.category_id is not None else None
        return visible

    async def is_active_and_visible(self, product_id: int, shop_id: int) -> bool:
        return product_id in await self.visible_in_shop([product_id], shop_id)

    async def get_products(self, product_ids: Collection[int]) -> Dict[int, ProductDisplayData]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}

        products: Dict[int, ProductDisplayData] = {}
        async with self._session_factory() as session:
            for chunk in chunked(ids, READ_CHUNK_SIZE):
                result = await session.execute(
                    select(CatalogProduct).where(CatalogProduct.product_id.in_(chunk))
                )
                for product in result.scalars():
                    products[product.product_id] = ProductDisplayData(
                        product_id=product.product_id,
                        name=product.name,
                        short_description=product.short_description,
                        link_rewrite=product.link_rewrite,
                        show_price=bool(product.show_price),
                        category_link_rewrite=product.category_link_rewrite,
                        ean13=product.ean13,
                        out_of_stock=int(product.out_of_stock),
                        quantity=int(product.quantity or 0),
                        cover_image_id=product.cover_image_id,
                    )
        return products


class SqlPricing:
    """Shop price with optional tax, rounded to cents"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def get_price(self, product_id: int, shop_id: int, tax_included: bool) -> Decimal:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProductShop.price, ProductShop.tax_rate).where(
                    ProductShop.product_id == product_id,
                    ProductShop.shop_id == shop_id,
                )
            )
            row = result.first()

        if row is None:
            logger.warning(f"No price for product {product_id} in shop {shop_id}")
            return Decimal("0.00")

        price = Decimal(str(row.price or 0))
        if tax_included:
            price = price * (Decimal("1") + Decimal(str(row.tax_rate or 0)) / Decimal("100"))
        return price.quantize(CENTS, rounding=ROUND_HALF_UP)


class SqlCustomerGroups:
    """Group-restricted category access, toggled by the group feature setting"""

    def __init__(self, config, session_factory: async_sessionmaker = AsyncSessionLocal,
                 default_group: int = DEFAULT_CUSTOMER_GROUP_ID):
        self._config = config
        self._session_factory = session_factory
        self._default_group = default_group

    async def is_feature_active(self) -> bool:
        return await self._config.get_bool(SETTINGS_GROUP_FEATURE_ACTIVE)

    def default_group_id(self) -> int:
        return self._default_group

    async def category_groups(self, category_ids: Iterable[int]) -> Dict[int, Set[int]]:
        ids = sorted(set(category_ids))
        if not ids:
            return {}

        groups: Dict[int, Set[int]] = {}
        async with self._session_factory() as session:
            for chunk in chunked(ids, READ_CHUNK_SIZE):
                result = await session.execute(
                    select(CategoryGroup.category_id, CategoryGroup.group_id).where(
                        CategoryGroup.category_id.in_(chunk)
                    )
                )
                for row in result:
                    groups.setdefault(int(row.category_id), set()).add(int(row.group_id))
        return groups
