"""
Precomputation Orchestrator
Catalog -> enrichment (tag + embedding) -> products -> scores -> tag graph, tracked per run.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from services.catalog_loader import CatalogLoader
from services.concurrency_control import ConcurrencyController
from services.ml.llm_embeddings import ProductEnricher
from services.progress_tracker import ProcessTrackerStore
from services.scoring import ScoringEngine
from services.storage import StorageService
from services.tag_graph import TagGraphBuilder
from settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)


@dataclass
class PrecomputeSummary:
    shop_id: str
    tracker_id: int
    products: int
    variants: int
    unique_tags: int
    tag_relationships: int
    duration_ms: int
    force_rebuild: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PrecomputeOrchestrator:
    """
    One run = one process_tracker row, running -> completed | failed.

    The tracker row is written before the per-shop lock is taken, so a lock
    timeout shows up as a failed run. The rest of the run holds the lock.
    Enrichment batch failures degrade to fallback tags; the tag graph degrades
    to empty; anything else fails the run and is re-raised.
    """

    def __init__(
        self,
        storage: StorageService,
        tracker: ProcessTrackerStore,
        catalog_loader: CatalogLoader,
        enricher: ProductEnricher,
        scoring: ScoringEngine,
        tag_graph_builder: TagGraphBuilder,
        concurrency: ConcurrencyController,
        settings: Optional[EngineSettings] = None,
    ):
        self.storage = storage
        self.tracker = tracker
        self.catalog_loader = catalog_loader
        self.enricher = enricher
        self.scoring = scoring
        self.tag_graph_builder = tag_graph_builder
        self.concurrency = concurrency
        self.settings = settings or load_engine_settings()

    async def run(self, shop_id: str, force_rebuild: bool = False) -> PrecomputeSummary:
        overall_start = time.time()
        tracker_id = await self.tracker.start_run(shop_id)

        locked = False
        try:
            async with self.concurrency.shop_lock(shop_id):
                locked = True
                return await self._run_locked(shop_id, tracker_id, force_rebuild, overall_start)
        except Exception as exc:
            # failures after the lock was taken are recorded by _run_locked
            if not locked:
                logger.error("PRECOMPUTATION NOT STARTED | shop=%s tracker=%s: %s", shop_id, tracker_id, exc)
                await self.tracker.mark_failed(tracker_id, f"{type(exc).__name__}: {exc}")
            raise

    async def _run_locked(
        self, shop_id: str, tracker_id: int, force_rebuild: bool, overall_start: float
    ) -> PrecomputeSummary:
        logger.info("=" * 60)
        logger.info("STARTING PRECOMPUTATION | shop=%s tracker=%s force_rebuild=%s", shop_id, tracker_id, force_rebuild)
        logger.info("=" * 60)

        try:
            # Step 1: catalog
            step_start = time.time()
            products = self.catalog_loader.load(shop_id)
            await self.tracker.set_product_count(tracker_id, len(products))
            logger.info("STEP 1 catalog: %d products in %dms", len(products), int((time.time() - step_start) * 1000))

            # Step 2: tag + embedding per product, batched
            step_start = time.time()
            enrichment = await self.enricher.enrich(products)
            fallbacks = sum(1 for e in enrichment.values() if e.source == "fallback")
            logger.info(
                "STEP 2 enrichment: %d products (%d fallback) in %dms",
                len(enrichment), fallbacks, int((time.time() - step_start) * 1000),
            )

            # Step 3: persist
            step_start = time.time()
            saved = await self.storage.upsert_products(
                shop_id, products, enrichment, self.settings.embedding_version
            )
            logger.info("STEP 3 saved %d products in %dms", saved, int((time.time() - step_start) * 1000))

            # Step 4: scores
            step_start = time.time()
            await self.scoring.compute_scores(shop_id)
            logger.info("STEP 4 scores computed in %dms", int((time.time() - step_start) * 1000))

            # Step 5: tags as persisted
            step_start = time.time()
            unique_tags = await self.storage.get_distinct_tags(shop_id)
            logger.info("STEP 5 found %d unique tags in %dms", len(unique_tags), int((time.time() - step_start) * 1000))

            # Step 6: tag graph
            step_start = time.time()
            graph = await self.tag_graph_builder.build(unique_tags)
            cleaned = {}
            for tag, children in graph.items():
                kept = self.tag_graph_builder.sanitize_children(children)
                if kept:
                    cleaned[tag] = kept
                else:
                    logger.debug("Skipping tag %s with no valid related tags", tag)
            relationships = await self.storage.upsert_tag_graph(cleaned)
            logger.info("STEP 6 tag graph saved with %d tags in %dms", relationships, int((time.time() - step_start) * 1000))

            await self.tracker.mark_completed(tracker_id)
        except Exception as exc:
            logger.exception("PRECOMPUTATION FAILED | shop=%s tracker=%s", shop_id, tracker_id)
            await self.tracker.mark_failed(tracker_id, f"{type(exc).__name__}: {exc}")
            raise

        summary = PrecomputeSummary(
            shop_id=shop_id,
            tracker_id=tracker_id,
            products=len(products),
            variants=sum(len(p.variants) for p in products),
            unique_tags=len(unique_tags),
            tag_relationships=relationships,
            duration_ms=int((time.time() - overall_start) * 1000),
            force_rebuild=force_rebuild,
        )
        logger.info("PRECOMPUTATION COMPLETED | %s", summary.as_dict())
        return summary
