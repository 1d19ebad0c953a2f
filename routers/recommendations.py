"""
Recommendations Router
Upsell / crosssell recommendations for a set of source products
"""
from fastapi import APIRouter, HTTPException, Depends, Request
from typing import List, Optional, Tuple
import logging

from schemas.recommendation_schemas import RECOMMENDATION_TYPES, RecommendationRequest
from services.exceptions import NotFoundError, ValidationError
from services.ml.llm_utils import coerce_product_id
from services.recommendations import RecommendationService
from settings import sanitize_shop_id

logger = logging.getLogger(__name__)
router = APIRouter()


def get_recommendation_service(request: Request) -> RecommendationService:
    return request.app.state.recommendation_service


def validate_request(payload: RecommendationRequest) -> Tuple[str, List[int], Optional[List[str]]]:
    """Resolve shop id, integer product ids and requested types, or raise ValidationError."""
    shop_id = sanitize_shop_id(payload.shop_id)
    if not shop_id:
        raise ValidationError("shop_id is required")

    if not payload.product_ids:
        raise ValidationError("product_ids must be a non-empty array")

    product_ids = [coerce_product_id(value) for value in payload.product_ids]
    if any(pid is None for pid in product_ids):
        raise ValidationError("product_ids must contain integers only")

    recommendation_types = None
    if payload.recommendation_type is not None:
        unknown = [t for t in payload.recommendation_type if t not in RECOMMENDATION_TYPES]
        if unknown:
            raise ValidationError(f"Unknown recommendation_type: {', '.join(map(str, unknown))}")
        recommendation_types = list(dict.fromkeys(payload.recommendation_type))

    return shop_id, product_ids, recommendation_types


@router.post("/recommendations")
async def get_recommendations(
    payload: RecommendationRequest,
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Rank related products for the given source products"""
    try:
        shop_id, product_ids, recommendation_types = validate_request(payload)
    except ValidationError as e:
        logger.warning(f"Rejected recommendation request: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return await service.recommend(shop_id, product_ids, recommendation_types)
    except HTTPException:
        raise
    except NotFoundError as e:
        logger.warning(f"Recommendations for shop {shop_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.exception(f"Recommendation error for shop {shop_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate recommendations")
