"""
System Status Router
Readiness diagnostics: product and embedding coverage, tag graph size, recent runs
"""
from fastapi import APIRouter, HTTPException, Depends, Request
from typing import Optional
import logging

from services.storage import StorageService
from settings import load_engine_settings, sanitize_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_oracle_name(request: Request) -> Optional[str]:
    oracle = getattr(request.app.state, "oracle", None)
    return getattr(oracle, "name", None)


@router.get("/system-status")
async def system_status(
    shop_id: Optional[str] = None,
    storage: StorageService = Depends(get_storage),
    oracle_name: Optional[str] = Depends(get_oracle_name),
):
    """Report whether the shop is ready to serve recommendations"""
    try:
        status = await storage.system_status(sanitize_shop_id(shop_id))
    except Exception as e:
        logger.error(f"System status check failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to load system status")

    status["oracle"] = oracle_name
    status["config"] = load_engine_settings().as_dict()
    return status
