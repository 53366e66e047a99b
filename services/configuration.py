"""
Configuration Store
Persistent key/value settings with per-shop overrides falling back to the global scope
"""
from typing import Any, Dict, Iterable, List, Optional
import logging
from datetime import datetime
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, ConfigurationEntry, dialect_insert, utcnow
from settings import (
    GLOBAL_SCOPE,
    SETTINGS_DISPLAY_PRICE,
    SETTINGS_GROUP_FEATURE_ACTIVE,
    SETTINGS_ORDER_OUT_OF_STOCK,
    SETTINGS_PRICE_TAX_INCLUDED,
)

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class ConfigurationChange:
    """Audit entry for a configuration write"""
    name: str
    shop_id: int
    old_value: Optional[str]
    new_value: Optional[str]
    changed_at: datetime


def _serialize(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


class ConfigurationStore:
    """Reads and writes named settings in copurchase_configuration"""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

        # Values used when a key was never written
        self.defaults: Dict[str, str] = {
            SETTINGS_DISPLAY_PRICE: "0",
            SETTINGS_GROUP_FEATURE_ACTIVE: "0",
            SETTINGS_PRICE_TAX_INCLUDED: "1",
            SETTINGS_ORDER_OUT_OF_STOCK: "0",
        }

        # Recent writes made through this instance
        self.change_history: List[ConfigurationChange] = []

    async def _lookup(self, session: AsyncSession, name: str, shop_id: int) -> Optional[ConfigurationEntry]:
        result = await session.execute(
            select(ConfigurationEntry).where(
                ConfigurationEntry.name == name,
                ConfigurationEntry.shop_id == shop_id,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, name: str, shop_id: Optional[int] = None, default: Optional[str] = None) -> Optional[str]:
        """Shop value when present, else the global value, else the registered default"""
        scopes = [GLOBAL_SCOPE] if not shop_id else [shop_id, GLOBAL_SCOPE]
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfigurationEntry.shop_id, ConfigurationEntry.value).where(
                    ConfigurationEntry.name == name,
                    ConfigurationEntry.shop_id.in_(scopes),
                )
            )
            values = {row.shop_id: row.value for row in result}

        for scope in scopes:
            if scope in values and values[scope] is not None:
                return values[scope]
        if default is not None:
            return default
        return self.defaults.get(name)

    async def get_global(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return await self.get(name, None, default)

    async def get_int(self, name: str, shop_id: Optional[int] = None, default: int = 0) -> int:
        raw = await self.get(name, shop_id)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Configuration {name} holds a non-integer value: {raw!r}")
            return default

    async def get_bool(self, name: str, shop_id: Optional[int] = None, default: bool = False) -> bool:
        raw = await self.get(name, shop_id)
        if raw is None:
            return default
        return raw.strip().lower() in TRUE_VALUES

    async def set(self, name: str, value: Any, shop_id: Optional[int] = None) -> None:
        """Upsert a value for one scope (global when shop_id is falsy)"""
        scope = shop_id or GLOBAL_SCOPE
        serialized = _serialize(value)
        now = utcnow()

        async with self._session_factory() as session:
            async with session.begin():
                previous = await self._lookup(session, name, scope)
                old_value = previous.value if previous is not None else None

                insert = dialect_insert(session.get_bind().dialect.name)
                stmt = insert(ConfigurationEntry).values(
                    name=name, shop_id=scope, value=serialized, updated_at=now
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[ConfigurationEntry.name, ConfigurationEntry.shop_id],
                    set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
                )
                await session.execute(stmt)

        self.change_history.append(
            ConfigurationChange(name=name, shop_id=scope, old_value=old_value, new_value=serialized, changed_at=now)
        )
        if len(self.change_history) > 100:
            self.change_history = self.change_history[-100:]

    async def update_global(self, name: str, value: Any) -> None:
        await self.set(name, value, GLOBAL_SCOPE)

    async def delete(self, name: str, shop_id: Optional[int] = None) -> int:
        """Remove a key; every scope when shop_id is None"""
        async with self._session_factory() as session:
            async with session.begin():
                stmt = delete(ConfigurationEntry).where(ConfigurationEntry.name == name)
                if shop_id is not None:
                    stmt = stmt.where(ConfigurationEntry.shop_id == shop_id)
                result = await session.execute(stmt)
        return result.rowcount or 0

    async def delete_many(self, names: Iterable[str]) -> int:
        removed = 0
        for name in names:
            removed += await self.delete(name)
        logger.info(f"Removed {removed} configuration rows")
        return removed


# Global instance for application use
configuration_store = ConfigurationStore()
