"""
Database Layer
Async engine and session factory, ORM models for the co-purchase index and its
collaborator tables, and init/health helpers
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Integer, Numeric, DateTime, Boolean,
    ForeignKey, func, Index, event, CheckConstraint
)
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import logging, os

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
IN_MEMORY_SQLITE_URL = "sqlite+aiosqlite:///:memory:"


def _normalize_db_url(url: str) -> str:
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' parameter, not 'sslmode'; SSL is handled in connect_args
    for suffix in ("?sslmode=require", "&sslmode=require", "?sslmode=verify-full", "&sslmode=verify-full"):
        url = url.replace(suffix, "")
    return url


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    Deferred transactions that read first and write later can deadlock each other
    (SQLITE_BUSY without waiting); BEGIN IMMEDIATE makes concurrent writers queue on
    the busy timeout instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL with per-backend pool settings."""
    url = _normalize_db_url(url or IN_MEMORY_SQLITE_URL)

    if url.startswith("sqlite"):
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            return create_async_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        engine = create_async_engine(url, echo=echo, connect_args={"timeout": 30})
        _serialize_sqlite_writers(engine)
        return engine

    connect_args: Dict[str, Any] = {
        "server_settings": {
            "application_name": "copurchase_recommender",
        },
        "command_timeout": 60,  # Command timeout in seconds
        "timeout": 30,  # Connection timeout in seconds
    }
    if os.getenv("DB_SSL", "").lower() in ("1", "true", "require"):
        connect_args["ssl"] = "require"

    return create_async_engine(
        url,
        echo=echo,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=15,
        connect_args=connect_args,
    )


DATABASE_URL = os.getenv("DATABASE_URL", "")

if not DATABASE_URL:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "copurchase")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
    else:
        DATABASE_URL = IN_MEMORY_SQLITE_URL

engine = build_engine(DATABASE_URL, echo=os.getenv("NODE_ENV") == "development")

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
            return url
        return url
    except ValueError:
        return "******"

logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection(bind: Optional[AsyncEngine] = None):
    try:
        async with (bind or engine).begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# -------------------------------------------------------------------
# Host platform tables (order ledger + catalog collaborators)
# -------------------------------------------------------------------

class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    shop_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # Only valid (paid / accepted) orders feed the co-purchase index
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    order_lines = relationship("OrderLine", back_populates="order")


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    # required: must point to an existing order
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="order_lines")


class CatalogProduct(Base):
    __tablename__ = "catalog_products"

    product_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    short_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    link_rewrite: Mapped[str] = mapped_column(Text, nullable=False)
    show_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    default_category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    category_link_rewrite: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ean13: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    # 0 = deny orders when out of stock, 1 = allow, 2 = shop default
    out_of_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cover_image_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ProductShop(Base):
    __tablename__ = "catalog_product_shops"

    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("catalog_products.product_id"), primary_key=True)
    shop_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="both")
    default_category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False, default=Decimal("0"))
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False, default=Decimal("0"))

    __table_args__ = (
        CheckConstraint(
            "visibility IN ('both','catalog','search','none')",
            name="ck_catalog_product_shops_visibility",
        ),
    )


class CategoryGroup(Base):
    __tablename__ = "catalog_category_groups"

    category_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    group_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

# -------------------------------------------------------------------
# Co-purchase index tables
# -------------------------------------------------------------------

class ProcessedOrder(Base):
    __tablename__ = "copurchase_processed_orders"

    order_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)


class ProductPair(Base):
    __tablename__ = "copurchase_product_pairs"

    shop_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    product_a: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    product_b: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("product_a <> product_b", name="ck_copurchase_pairs_distinct"),
        CheckConstraint("count >= 0", name="ck_copurchase_pairs_count"),
    )


class ConfigurationEntry(Base):
    __tablename__ = "copurchase_configuration"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    # 0 = global scope
    shop_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False, default=0)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class LockLease(Base):
    __tablename__ = "copurchase_locks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_orders_valid_order', Order.valid, Order.order_id)
Index('ix_catalog_product_shops_shop', ProductShop.shop_id, ProductShop.active)
Index('ix_copurchase_pairs_shop_b', ProductPair.shop_id, ProductPair.product_b)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def init_db(bind: Optional[AsyncEngine] = None):
    """Ensure tables exist."""
    target = bind or engine
    await probe_db_connection(target)
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")

async def drop_copurchase_tables(bind: Optional[AsyncEngine] = None):
    """Drop the tables owned by the co-purchase index (uninstall path)."""
    target = bind or engine
    tables = [
        ProductPair.__table__,
        ProcessedOrder.__table__,
        LockLease.__table__,
        ConfigurationEntry.__table__,
    ]
    async with target.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.drop_all(sync_conn, tables=tables))
    logger.info("Co-purchase tables dropped.")

async def check_db_health(bind: Optional[AsyncEngine] = None) -> Dict[str, Any]:
    """Round-trip a trivial query and report latency."""
    import time
    target = bind or engine
    start = time.monotonic()
    try:
        async with target.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
            "dialect": target.dialect.name,
        }
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e), "dialect": target.dialect.name}

async def get_pool_status(bind: Optional[AsyncEngine] = None) -> Dict[str, Any]:
    target = bind or engine
    pool = target.pool
    status: Dict[str, Any] = {"class": type(pool).__name__}
    for attr in ("size", "checkedin", "checkedout", "overflow"):
        getter = getattr(pool, attr, None)
        if callable(getter):
            status[attr] = getter()
    return status

def dialect_insert(dialect_name: str):
    """INSERT construct supporting ON CONFLICT clauses for the active backend."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        return pg_insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect_name}'")
