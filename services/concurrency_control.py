"""
Store-backed named locks
Serializes co-purchase refresh passes across processes sharing one database
"""
import asyncio
import hashlib
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from database import LockLease, dialect_insert, engine, utcnow
from services.deadlines import Deadline
from services.errors import LockUnavailable
from settings import LOCK_LEASE_SECONDS, LOCK_POLL_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class NamedLock:
    """
    Mutual exclusion keyed by name, held in the same database as the pair table:
    - PostgreSQL: session advisory lock on a dedicated connection
    - other engines: a lease row in copurchase_locks (insert-if-absent, expired leases are taken over)

    Acquisition polls until the timeout and raises LockUnavailable; release happens on every exit path.
    """

    def __init__(
        self,
        bind: AsyncEngine,
        lease_seconds: int = LOCK_LEASE_SECONDS,
        poll_interval: float = LOCK_POLL_INTERVAL_SECONDS,
    ):
        self._bind = bind
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._active_locks: Dict[str, str] = {}  # name -> owner token

    @property
    def backend(self) -> str:
        return "advisory" if self._bind.dialect.name == "postgresql" else "lease"

    def _generate_lock_key(self, name: str) -> int:
        """
        Generate a stable integer lock key from the lock name
        PostgreSQL advisory locks require integer keys
        """
        hash_digest = hashlib.sha256(f"lock:{name}".encode()).hexdigest()
        lock_key = int(hash_digest[:8], 16)
        # Ensure positive 32-bit signed integer
        if lock_key > 2147483647:
            lock_key = lock_key - 4294967296
        return abs(lock_key)

    @asynccontextmanager
    async def acquire(self, name: str, timeout_seconds: float) -> AsyncIterator[Dict[str, Any]]:
        """
        Hold the named lock for the duration of the context.

        Usage:
            async with named_lock.acquire("copurchase_update", 1.0):
                # only one holder across all processes gets here
                await fold_orders()
        """
        if not name:
            raise ValueError("Lock name cannot be empty")

        if self.backend == "advisory":
            async with self._advisory_lock(name, timeout_seconds) as handle:
                yield handle
        else:
            async with self._lease_lock(name, timeout_seconds) as handle:
                yield handle

    # ---------- PostgreSQL advisory locks ----------

    async def _try_advisory_lock(self, conn: AsyncConnection, lock_key: int, name: str, deadline: Deadline) -> bool:
        attempt = 0
        while True:
            attempt += 1
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_key)"),
                {"lock_key": lock_key},
            )
            acquired = bool(result.scalar())
            # session-level lock survives the commit; avoid idling in a transaction
            await conn.commit()
            if acquired:
                logger.info(f"Acquired advisory lock {lock_key} ({name}) on attempt {attempt}")
                return True
            if deadline.expired:
                logger.info(f"Advisory lock {lock_key} ({name}) busy after {attempt} attempts")
                return False
            await asyncio.sleep(deadline.next_sleep(self.poll_interval))

    async def _release_advisory_lock(self, conn: AsyncConnection, lock_key: int, name: str) -> bool:
        try:
            result = await conn.execute(
                text("SELECT pg_advisory_unlock(:lock_key)"),
                {"lock_key": lock_key},
            )
            released = bool(result.scalar())
            await conn.commit()
            if released:
                logger.info(f"Released advisory lock {lock_key} ({name})")
            else:
                logger.warning(f"Advisory lock {lock_key} ({name}) was not held at release")
            return released
        except Exception as e:
            logger.error(f"Error releasing advisory lock {lock_key} ({name}): {e}")
            return False

    @asynccontextmanager
    async def _advisory_lock(self, name: str, timeout_seconds: float) -> AsyncIterator[Dict[str, Any]]:
        lock_key = self._generate_lock_key(name)
        owner = uuid.uuid4().hex
        deadline = Deadline(timeout_seconds)

        # Dedicated connection: the advisory lock belongs to the database session
        conn = await self._bind.connect()
        acquired = False
        try:
            acquired = await self._try_advisory_lock(conn, lock_key, name, deadline)
            if not acquired:
                raise LockUnavailable(name, timeout_seconds)

            self._active_locks[name] = owner
            yield {"name": name, "owner": owner, "backend": "advisory", "lock_key": lock_key}
        finally:
            try:
                if acquired:
                    await self._release_advisory_lock(conn, lock_key, name)
            finally:
                self._active_locks.pop(name, None)
                try:
                    await conn.close()
                except Exception as e:
                    logger.error(f"Error closing lock connection for {name}: {e}")

    # ---------- lease rows ----------

    async def _try_lease(self, name: str, owner: str) -> bool:
        now = utcnow()
        insert = dialect_insert(self._bind.dialect.name)
        async with self._bind.begin() as conn:
            # A crashed holder never releases; its lease is taken over once expired
            await conn.execute(
                delete(LockLease).where(LockLease.name == name, LockLease.expires_at < now)
            )
            await conn.execute(
                insert(LockLease)
                .values(
                    name=name,
                    owner=owner,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .on_conflict_do_nothing(index_elements=["name"])
            )
            holder = (
                await conn.execute(select(LockLease.owner).where(LockLease.name == name))
            ).scalar()
        return holder == owner

    async def _release_lease(self, name: str, owner: str) -> None:
        try:
            async with self._bind.begin() as conn:
                result = await conn.execute(
                    delete(LockLease).where(LockLease.name == name, LockLease.owner == owner)
                )
            if result.rowcount:
                logger.info(f"Released lease lock {name}")
            else:
                logger.warning(f"Lease lock {name} was no longer held by {owner} at release")
        except Exception as e:
            logger.error(f"Error releasing lease lock {name}: {e}")

    @asynccontextmanager
    async def _lease_lock(self, name: str, timeout_seconds: float) -> AsyncIterator[Dict[str, Any]]:
        owner = uuid.uuid4().hex
        deadline = Deadline(timeout_seconds)

        attempt = 0
        while True:
            attempt += 1
            if await self._try_lease(name, owner):
                logger.info(f"Acquired lease lock {name} on attempt {attempt}")
                break
            if deadline.expired:
                logger.info(f"Lease lock {name} busy after {attempt} attempts")
                raise LockUnavailable(name, timeout_seconds)
            await asyncio.sleep(deadline.next_sleep(self.poll_interval))

        self._active_locks[name] = owner
        try:
            yield {"name": name, "owner": owner, "backend": "lease"}
        finally:
            self._active_locks.pop(name, None)
            await self._release_lease(name, owner)

    # ---------- monitoring ----------

    async def is_locked(self, name: str) -> bool:
        """Best-effort view of whether another holder currently owns the lock."""
        if name in self._active_locks:
            return True
        if self.backend == "advisory":
            async with self._bind.connect() as conn:
                result = await conn.execute(
                    text(
                        "SELECT EXISTS(SELECT 1 FROM pg_locks "
                        "WHERE locktype = 'advisory' AND objid = :lock_key AND granted)"
                    ),
                    {"lock_key": self._generate_lock_key(name)},
                )
                return bool(result.scalar())
        async with self._bind.connect() as conn:
            result = await conn.execute(
                select(LockLease.expires_at).where(LockLease.name == name)
            )
            expires_at: Optional[Any] = result.scalar()
        return expires_at is not None and expires_at >= utcnow()

    def get_active_locks(self) -> List[str]:
        """Locks held by this process, for monitoring"""
        return list(self._active_locks.keys())


# Global instance for application use
named_lock = NamedLock(engine)
