"""
Concurrency Control Service
Per-shop mutex around precompute runs so concurrent runs never race on the same shop's rows
"""
import asyncio
import hashlib
import time
import logging
import random
from typing import Dict, List, Optional
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy import text

from services.exceptions import LockTimeoutError
from settings import env_float

logger = logging.getLogger(__name__)

PRECOMPUTE_OPERATION = "precompute"


class ConcurrencyController:
    """
    Per-shop locking for long-running shop operations:
    - PostgreSQL: session-level advisory lock on a dedicated connection
    - Other dialects (SQLite locally and in tests): one in-process asyncio.Lock per shop
    - Exponential backoff with jitter while the lock is busy
    - Lock always released and connection closed on exit
    """

    def __init__(self, engine: AsyncEngine, lock_timeout_seconds: Optional[float] = None):
        self.engine = engine
        self.lock_timeout_seconds = (
            lock_timeout_seconds if lock_timeout_seconds is not None
            else env_float("PRECOMPUTE_LOCK_TIMEOUT_S", 900.0)
        )
        self.max_retries = 12
        self.base_retry_delay = 0.25
        self.max_retry_delay = 120.0
        self.jitter_factor = 0.3
        self._local_locks: Dict[str, asyncio.Lock] = {}
        self._active_locks: Dict[str, Optional[AsyncConnection]] = {}

    @property
    def uses_advisory_locks(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def _generate_lock_key(self, shop_id: str, operation: str = PRECOMPUTE_OPERATION) -> int:
        """
        Deterministic positive 32-bit key for shop_id + operation
        (PostgreSQL advisory locks take integer keys)
        """
        hash_input = f"shop:{shop_id}:operation:{operation}"
        hash_digest = hashlib.sha256(hash_input.encode()).hexdigest()
        lock_key = int(hash_digest[:8], 16)
        if lock_key > 2147483647:
            lock_key = lock_key - 4294967296
        return abs(lock_key)

    def _backoff_delay(self, attempt: int) -> float:
        base_delay = self.base_retry_delay * (2 ** attempt)
        jitter = base_delay * self.jitter_factor * random.random()
        return min(base_delay + jitter, self.max_retry_delay)

    async def _acquire_advisory_lock_with_backoff(self, conn: AsyncConnection, lock_key: int, shop_id: str) -> bool:
        """
        Try pg_try_advisory_lock until acquired, retries run out or the timeout passes
        """
        start_time = time.time()

        for attempt in range(self.max_retries):
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_key)"),
                {"lock_key": lock_key}
            )
            if result.scalar():
                logger.info(f"Acquired advisory lock {lock_key} for shop {shop_id} on attempt {attempt + 1}")
                return True

            elapsed = time.time() - start_time
            if elapsed >= self.lock_timeout_seconds:
                logger.warning(f"Lock acquisition timed out after {elapsed:.1f}s for shop {shop_id}")
                return False

            delay = min(self._backoff_delay(attempt), max(0.0, self.lock_timeout_seconds - elapsed))
            logger.info(f"Lock {lock_key} busy for shop {shop_id}, retry {attempt + 1}/{self.max_retries} in {delay:.2f}s")
            await asyncio.sleep(delay)

        logger.warning(f"Failed to acquire advisory lock {lock_key} for shop {shop_id} after {self.max_retries} attempts")
        return False

    async def _release_advisory_lock(self, conn: AsyncConnection, lock_key: int, shop_id: str) -> bool:
        result = await conn.execute(
            text("SELECT pg_advisory_unlock(:lock_key)"),
            {"lock_key": lock_key}
        )
        released = bool(result.scalar())
        if released:
            logger.info(f"Released advisory lock {lock_key} for shop {shop_id}")
        else:
            logger.warning(f"Advisory lock {lock_key} for shop {shop_id} was not held at release")
        return released

    @asynccontextmanager
    async def _advisory_lock(self, shop_id: str, operation: str):
        lock_key = self._generate_lock_key(shop_id, operation)
        lock_identifier = f"{shop_id}:{operation}"

        conn = await self.engine.connect()
        try:
            acquired = await self._acquire_advisory_lock_with_backoff(conn, lock_key, shop_id)
            if not acquired:
                raise LockTimeoutError(f"Could not acquire {operation} lock for shop {shop_id}")

            self._active_locks[lock_identifier] = conn
            yield {"shop_id": shop_id, "operation": operation, "lock_key": lock_key}
        finally:
            try:
                if lock_identifier in self._active_locks:
                    await self._release_advisory_lock(conn, lock_key, shop_id)
            except Exception as e:
                logger.error(f"Error during lock release for shop {shop_id}: {e}")
            finally:
                self._active_locks.pop(lock_identifier, None)
                await conn.close()

    @asynccontextmanager
    async def _local_lock(self, shop_id: str, operation: str):
        lock_identifier = f"{shop_id}:{operation}"
        lock = self._local_locks.setdefault(lock_identifier, asyncio.Lock())

        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise LockTimeoutError(f"Could not acquire {operation} lock for shop {shop_id}") from e

        self._active_locks[lock_identifier] = None
        logger.info(f"Acquired in-process {operation} lock for shop {shop_id}")
        try:
            yield {"shop_id": shop_id, "operation": operation, "lock_key": None}
        finally:
            self._active_locks.pop(lock_identifier, None)
            lock.release()
            logger.info(f"Released in-process {operation} lock for shop {shop_id}")

    @asynccontextmanager
    async def shop_lock(self, shop_id: str, operation: str = PRECOMPUTE_OPERATION):
        """
        Hold the per-shop lock for the whole body.

        Usage:
            async with controller.shop_lock(shop_id):
                await run_precompute()
        """
        if not shop_id:
            raise ValueError("shop_id cannot be empty")

        ctx = self._advisory_lock if self.uses_advisory_locks else self._local_lock
        async with ctx(shop_id, operation) as info:
            yield info

    def get_active_locks(self) -> List[str]:
        """Currently held locks, for diagnostics"""
        return list(self._active_locks.keys())
