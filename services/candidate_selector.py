"""
Candidate selection: source tags -> related tags -> score-ordered candidate pool.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from schemas.recommendation_schemas import ProductRecord
from services.exceptions import NotFoundError
from services.storage import StorageService
from services.tag_graph import get_related_tags
from settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)


@dataclass
class CandidateSelection:
    source_products: List[ProductRecord]
    source_tags: List[str] = field(default_factory=list)
    related_tags: List[str] = field(default_factory=list)
    candidates: List[ProductRecord] = field(default_factory=list)


class CandidateSelector:
    def __init__(self, storage: StorageService, settings: Optional[EngineSettings] = None):
        self.storage = storage
        self.settings = settings or load_engine_settings()

    async def select_candidates(
        self,
        shop_id: str,
        source_product_ids: Sequence[int],
        pool_size: Optional[int] = None,
    ) -> CandidateSelection:
        limit = pool_size if pool_size is not None else self.settings.candidate_pool_size

        # Step 1: resolve source products
        step_start = time.time()
        source_products = await self.storage.get_products_by_ids(shop_id, source_product_ids)
        logger.info(
            "STEP 1 source lookup: %d/%d found in %dms",
            len(source_products), len(source_product_ids), int((time.time() - step_start) * 1000),
        )
        if not source_products:
            raise NotFoundError("No products found for given IDs")

        # Step 2: one primary tag per product
        source_tags = list(dict.fromkeys(p.tags for p in source_products if p.tags))
        logger.info("Source tags: %s", ", ".join(source_tags[:10]))

        selection = CandidateSelection(source_products=source_products, source_tags=source_tags)

        # Step 3: expand through the tag graph
        step_start = time.time()
        selection.related_tags = await get_related_tags(
            self.storage, source_tags, self.settings.related_tag_limit
        )
        logger.info(
            "STEP 2 related tags: %d in %dms (%s)",
            len(selection.related_tags),
            int((time.time() - step_start) * 1000),
            ", ".join(selection.related_tags[:10]),
        )
        if not selection.related_tags:
            logger.info("No related tags for %s; no candidates", source_tags)
            return selection

        # Step 4: score-ordered candidates, source products excluded
        step_start = time.time()
        source_ids = [p.id for p in source_products]
        exclude_ids = list(dict.fromkeys([*source_product_ids, *source_ids]))
        selection.candidates = await self.storage.get_candidates_by_tags(
            shop_id, selection.related_tags, exclude_ids, limit
        )
        logger.info(
            "STEP 3 candidates: %d (limit %d) in %dms",
            len(selection.candidates), limit, int((time.time() - step_start) * 1000),
        )
        return selection
