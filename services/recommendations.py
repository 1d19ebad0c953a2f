"""
Recommendation request flow: candidate selection then ranking.
"""
from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

from schemas.recommendation_schemas import RecommendationLists, RecommendationResponse
from services.candidate_selector import CandidateSelector
from services.ranker import RankingEngine

logger = logging.getLogger(__name__)


class RecommendationService:
    def __init__(self, selector: CandidateSelector, ranker: RankingEngine):
        self.selector = selector
        self.ranker = ranker

    async def recommend(
        self,
        shop_id: str,
        product_ids: Sequence[int],
        recommendation_types: Optional[Sequence[str]] = None,
    ) -> RecommendationResponse:
        """
        Raises NotFoundError when none of ``product_ids`` exist for the shop.
        Zero candidates is a valid outcome and yields empty lists.
        """
        start = time.time()
        logger.info("Recommendations requested | shop=%s products=%s types=%s", shop_id, list(product_ids), recommendation_types)

        selection = await self.selector.select_candidates(shop_id, product_ids)
        result = await self.ranker.rank(
            selection.source_products, selection.candidates, recommendation_types
        )

        processing_time_ms = int((time.time() - start) * 1000)
        logger.info(
            "Recommendations ready | shop=%s state=%s upsell=%d crosssell=%d in %dms",
            shop_id, result.state.value, len(result.upsell), len(result.crosssell), processing_time_ms,
        )
        return RecommendationResponse(
            shop_id=shop_id,
            product_ids=list(product_ids),
            recommendations=RecommendationLists(upsell=result.upsell, crosssell=result.crosssell),
            processing_time_ms=processing_time_ms,
        )
