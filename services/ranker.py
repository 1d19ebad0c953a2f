"""
Ranking Engine
Oracle-selected upsell/crosssell lists with a deterministic fallback.

BUILD_PROMPT -> INVOKE_ORACLE -> PARSE_RESPONSE -> SUCCESS | FALLBACK
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from schemas.recommendation_schemas import RECOMMENDATION_TYPES, ProductRecord, ProductVariant, ScoredProduct
from services.exceptions import OracleError
from services.ml.llm_embeddings import cosine_similarity, mean_embedding
from services.ml.llm_utils import Malformed, coerce_product_id, decode_json_object
from services.ml.oracle import TASK_RANKING, RankingOracle
from settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)

RANKING_SYSTEM_PROMPT = "You are a product recommendation expert. Return only valid JSON with product IDs."

# embedding_similarity shown when either side has no embedding
DEFAULT_EMBEDDING_SIMILARITY = {
    ("success", "upsell"): 0.85,
    ("success", "crosssell"): 0.8,
    ("fallback", "upsell"): 0.7,
    ("fallback", "crosssell"): 0.7,
}


class RankingState(str, enum.Enum):
    BUILD_PROMPT = "build_prompt"
    INVOKE_ORACLE = "invoke_oracle"
    PARSE_RESPONSE = "parse_response"
    SUCCESS = "success"
    FALLBACK = "fallback"
    NO_CANDIDATES = "no_candidates"


@dataclass
class RankingResult:
    upsell: List[ScoredProduct] = field(default_factory=list)
    crosssell: List[ScoredProduct] = field(default_factory=list)
    state: RankingState = RankingState.SUCCESS
    fallback_reason: Optional[str] = None

    def as_dict(self) -> Dict[str, List[dict]]:
        return {
            "upsell": [p.model_dump() for p in self.upsell],
            "crosssell": [p.model_dump() for p in self.crosssell],
        }


def mean_price(products: Sequence[ProductRecord]) -> float:
    if not products:
        return 0.0
    return sum(p.price for p in products) / len(products)


def price_similarity(price: float, reference: float) -> float:
    """1 - relative price gap, clamped to [0, 1]."""
    scale = max(abs(price), abs(reference))
    if scale == 0:
        return 1.0
    return min(1.0, max(0.0, 1.0 - abs(price - reference) / scale))


class RankingEngine:
    """
    Turns a candidate pool into variant-expanded upsell and crosssell lists.

    The oracle picks product ids; if it fails in any way the pool is split by
    category and price instead. Display scores attached to each entry never
    change which entries are returned or their order.
    """

    def __init__(self, oracle: RankingOracle, settings: Optional[EngineSettings] = None):
        self.oracle = oracle
        self.settings = settings or load_engine_settings()
        self.final_recommendations = self.settings.final_recommendations
        self.fallback_window = self.settings.similarity_top_k

    # ---------- prompt ----------

    @staticmethod
    def build_prompt(source_products: Sequence[ProductRecord], candidates: Sequence[ProductRecord]) -> str:
        source_info = "\n".join(
            f"- {p.title} ({p.category}) - ${p.price:.2f}" for p in source_products
        )
        candidate_text = "\n".join(
            f"ID: {c.id} - {c.title} ({c.category}) - ${c.price:.2f} by {c.vendor}" for c in candidates
        )
        return f"""A customer is viewing these products:
{source_info}

From the following {len(candidates)} products, select the MOST relevant recommendations by their ID numbers:

{candidate_text}

Analyze based on:
1. Complementary fit (what goes well together)
2. Price appropriateness
3. Category relevance

For each recommendation type, select the best product ID NUMBERS:
- Upsell: Same/similar category, higher value (up to 10 products)
- Crosssell: Complementary products, different category (up to 10 products)

IMPORTANT: Return NUMERIC IDs only (e.g., 1001, 1002), NOT category names or strings.

Return ONLY valid JSON with numeric arrays:
{{
  "upsell": [1001, 1002],
  "crosssell": [1003, 1004]
}}"""

    # ---------- response ----------

    @staticmethod
    def parse_ids(values: object) -> List[int]:
        if not isinstance(values, list):
            return []
        ids = (coerce_product_id(v) for v in values)
        return list(dict.fromkeys(i for i in ids if i is not None))

    # ---------- display scores ----------

    def _score_entry(
        self,
        candidate: ProductRecord,
        variant: ProductVariant,
        source_embedding: Optional[List[float]],
        source_price: float,
        path: str,
        category: str,
    ) -> ScoredProduct:
        weights = self.settings.weights
        similarity = DEFAULT_EMBEDDING_SIMILARITY[(path, category)]
        if source_embedding is not None and candidate.embedding:
            try:
                similarity = max(0.0, cosine_similarity(candidate.embedding, source_embedding))
            except ValueError:
                logger.debug("Embedding dimension mismatch for product %s", candidate.id)

        price_sim = price_similarity(variant.price, source_price)
        score = (
            weights.embedding_similarity * similarity
            + weights.purchase_score * candidate.purchase_score
            + weights.merchant_score * candidate.merchant_score
            + weights.price_similarity * price_sim
        )
        return ScoredProduct(
            id=candidate.id,
            title=candidate.title,
            variant_id=variant.id,
            variant_title=variant.title,
            category=candidate.category,
            price=variant.price,
            vendor=candidate.vendor,
            score=round(score, 4),
            embedding_similarity=round(similarity, 4),
            merchant_score=candidate.merchant_score,
            purchase_score=candidate.purchase_score,
            price_similarity=round(price_sim, 4),
        )

    # ---------- paths ----------

    def _expand_selected(
        self,
        ids: Iterable[int],
        pool: Dict[int, ProductRecord],
        source_embedding: Optional[List[float]],
        source_price: float,
        category: str,
    ) -> List[ScoredProduct]:
        entries: List[ScoredProduct] = []
        for product_id in ids:
            candidate = pool.get(product_id)
            if candidate is None:
                logger.debug("Oracle returned unknown %s id %s", category, product_id)
                continue
            for variant in candidate.variants:
                entries.append(self._score_entry(
                    candidate, variant, source_embedding, source_price, "success", category
                ))
        return entries[:self.final_recommendations]

    def fallback(
        self,
        source_products: Sequence[ProductRecord],
        candidates: Sequence[ProductRecord],
    ) -> Dict[str, List[ScoredProduct]]:
        """Deterministic split: same category and variant price >= mean source price -> upsell."""
        source_price = mean_price(source_products)
        source_embedding = mean_embedding([p.embedding for p in source_products])
        source_categories = {p.category for p in source_products}

        upsell: List[ScoredProduct] = []
        crosssell: List[ScoredProduct] = []
        for candidate in candidates[:self.fallback_window]:
            same_category = candidate.category in source_categories
            for variant in candidate.variants:
                if same_category and variant.price >= source_price:
                    upsell.append(self._score_entry(
                        candidate, variant, source_embedding, source_price, "fallback", "upsell"
                    ))
                else:
                    crosssell.append(self._score_entry(
                        candidate, variant, source_embedding, source_price, "fallback", "crosssell"
                    ))

        return {
            "upsell": upsell[:self.final_recommendations],
            "crosssell": crosssell[:self.final_recommendations],
        }

    # ---------- entry point ----------

    async def rank(
        self,
        source_products: Sequence[ProductRecord],
        candidates: Sequence[ProductRecord],
        recommendation_types: Optional[Sequence[str]] = None,
    ) -> RankingResult:
        requested = set(recommendation_types or RECOMMENDATION_TYPES)
        source_ids = {p.id for p in source_products}
        pool = [c for c in candidates if c.id not in source_ids]

        if not pool:
            logger.info("No candidates to rank")
            return RankingResult(state=RankingState.NO_CANDIDATES)

        start = time.time()
        state = RankingState.BUILD_PROMPT
        prompt = self.build_prompt(source_products, pool)

        lists: Optional[Dict[str, List[ScoredProduct]]] = None
        fallback_reason: Optional[str] = None
        try:
            state = RankingState.INVOKE_ORACLE
            raw = await self.oracle.complete(prompt, system=RANKING_SYSTEM_PROMPT, task=TASK_RANKING)

            state = RankingState.PARSE_RESPONSE
            decoded = decode_json_object(raw)
            if isinstance(decoded, Malformed):
                fallback_reason = f"malformed response: {decoded.reason}"
            else:
                by_id = {c.id: c for c in pool}
                source_price = mean_price(source_products)
                source_embedding = mean_embedding([p.embedding for p in source_products])
                lists = {
                    category: self._expand_selected(
                        self.parse_ids(decoded.data.get(category)),
                        by_id, source_embedding, source_price, category,
                    )
                    for category in RECOMMENDATION_TYPES
                }
                state = RankingState.SUCCESS
        except OracleError as exc:
            fallback_reason = f"oracle error: {exc}"

        if lists is None:
            logger.warning("Oracle ranking failed at %s (%s); falling back to simple scoring", state.value, fallback_reason)
            state = RankingState.FALLBACK
            lists = self.fallback(source_products, pool)

        result = RankingResult(
            upsell=[p for p in lists["upsell"] if p.id not in source_ids] if "upsell" in requested else [],
            crosssell=[p for p in lists["crosssell"] if p.id not in source_ids] if "crosssell" in requested else [],
            state=state,
            fallback_reason=fallback_reason,
        )
        logger.info(
            "Ranking %s: %d upsell, %d crosssell from %d candidates in %dms",
            state.value, len(result.upsell), len(result.crosssell), len(pool), int((time.time() - start) * 1000),
        )
        return result
