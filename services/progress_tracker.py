"""
Precompute run tracking: one process_tracker row per invocation.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import ProcessTracker

logger = logging.getLogger(__name__)

RunStatus = Literal["running", "completed", "failed"]
TERMINAL_STATUSES = ("completed", "failed")


def serialize_run(run: ProcessTracker) -> Dict[str, Any]:
    return {
        "id": run.id,
        "shop_id": run.shop_id,
        "status": run.status,
        "product_count": run.product_count,
        "error_message": run.error_message,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "last_run": run.last_run.isoformat() if run.last_run else None,
    }


class ProcessTrackerStore:
    """
    Append-only run records. Status only moves running -> completed or running -> failed;
    terminal rows are never touched again.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def start_run(self, shop_id: str) -> int:
        async with self.session_factory() as session:
            run = ProcessTracker(shop_id=shop_id, status="running", product_count=0)
            session.add(run)
            await session.commit()
            logger.info("Process tracker %s started for shop %s", run.id, shop_id)
            return int(run.id)

    async def set_product_count(self, run_id: int, product_count: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ProcessTracker)
                .where(ProcessTracker.id == run_id, ProcessTracker.status == "running")
                .values(product_count=product_count, last_run=func.now())
            )
            await session.commit()

    async def _finish(self, run_id: int, status: RunStatus, **values: Any) -> bool:
        """Compare-and-set from running to a terminal status."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(ProcessTracker)
                .where(ProcessTracker.id == run_id, ProcessTracker.status == "running")
                .values(status=status, last_run=func.now(), **values)
            )
            await session.commit()

        changed = bool(result.rowcount)
        if changed:
            logger.info("Process tracker %s -> %s", run_id, status)
        else:
            logger.warning("Process tracker %s not in running state; %s ignored", run_id, status)
        return changed

    async def mark_completed(self, run_id: int) -> bool:
        return await self._finish(run_id, "completed", completed_at=datetime.now(timezone.utc).replace(tzinfo=None))

    async def mark_failed(self, run_id: int, error_message: Optional[str] = None) -> bool:
        message = (error_message or "")[:2000] or None
        return await self._finish(run_id, "failed", error_message=message)

    async def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            run = await session.get(ProcessTracker, run_id)
            return serialize_run(run) if run else None

    async def latest_run(self, shop_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProcessTracker)
                .where(ProcessTracker.shop_id == shop_id)
                .order_by(ProcessTracker.started_at.desc(), ProcessTracker.id.desc())
                .limit(1)
            )
            run = result.scalar_one_or_none()
            return serialize_run(run) if run else None
