"""
Precompute Router
Starts background precomputation runs and exposes run status for polling
"""
from fastapi import APIRouter, HTTPException, Depends, Request
from datetime import datetime, timezone
import logging

from schemas.recommendation_schemas import PrecomputeRequest
from services.pipeline_scheduler import PipelineScheduler
from services.precompute import PrecomputeOrchestrator
from services.progress_tracker import ProcessTrackerStore
from settings import sanitize_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()


def get_orchestrator(request: Request) -> PrecomputeOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> PipelineScheduler:
    return request.app.state.scheduler


def get_tracker(request: Request) -> ProcessTrackerStore:
    return request.app.state.tracker


@router.post("/precompute")
async def start_precompute(
    payload: PrecomputeRequest,
    orchestrator: PrecomputeOrchestrator = Depends(get_orchestrator),
    scheduler: PipelineScheduler = Depends(get_scheduler),
):
    """Kick off precomputation for a shop; returns immediately."""
    shop_id = sanitize_shop_id(payload.shop_id)
    if not shop_id:
        raise HTTPException(status_code=400, detail="shop_id is required")

    force_rebuild = bool(payload.force_rebuild)
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        scheduler.schedule(
            lambda: orchestrator.run(shop_id, force_rebuild),
            name=f"precompute:{shop_id}",
            key=shop_id,
        )
    except Exception as e:
        logger.error(f"Failed to schedule precompute for shop {shop_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to start precomputation")

    logger.info(f"Precomputation started for shop {shop_id} (force_rebuild={force_rebuild})")
    return {
        "message": "Precomputation started",
        "shop_id": shop_id,
        "started_at": started_at,
    }


@router.get("/precompute/{shop_id}/status")
async def get_precompute_status(
    shop_id: str,
    tracker: ProcessTrackerStore = Depends(get_tracker),
):
    """Latest precompute run for a shop."""
    shop = sanitize_shop_id(shop_id)
    if not shop:
        raise HTTPException(status_code=400, detail="shop_id is required")

    try:
        run = await tracker.latest_run(shop)
    except Exception as e:
        logger.error(f"Failed to load precompute status for shop {shop}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load precompute status")

    if run is None:
        raise HTTPException(status_code=404, detail=f"No precompute runs found for shop {shop}")
    return run
