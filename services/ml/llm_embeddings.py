"""
Oracle-assisted Product Enrichment

- One oracle call per batch of products (default 50)
- Oracle assigns a single primary product-type tag + short semantic description
- Embeddings are deterministic hashed text vectors, L2-normalized (numpy)
- Failed or malformed batches fall back to category tags + product-text embeddings
- Batches run strictly in sequence with a fixed pause between them
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import numpy as np

from schemas.recommendation_schemas import CatalogProduct
from services.exceptions import OracleError
from services.ml.llm_utils import Malformed, coerce_product_id, decode_json_array
from services.ml.oracle import TASK_ANALYSIS, RankingOracle
from services.tagging import fallback_primary_tag, normalize_tags
from settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = """You are a product analysis AI. For each product, generate:
1. Single primary product type tag based on the TITLE (e.g., "t-shirt", "jeans", "sneakers", "jacket", "hoodie", "dress", "shorts") - identify what product it actually is from the title
2. Semantic description (15-20 words capturing essence)

Return ONLY valid JSON array with this exact structure:
[{"id": 1, "tags": ["t-shirt"], "description": "semantic description here"}]

IMPORTANT: Analyze the product TITLE to determine the actual product type. Ignore the category field."""


@dataclass
class EnrichedProduct:
    id: int
    primary_tag: str
    embedding: List[float]
    description: str
    tags: List[str] = field(default_factory=list)
    source: str = "oracle"


def create_product_text(product: CatalogProduct) -> str:
    parts = [
        product.title,
        product.category,
        product.vendor,
        f"price: ${product.price:g}",
    ]
    if product.tags:
        parts.append(f"tags: {', '.join(product.tags)}")
    return " | ".join(p for p in parts if p)


def hash_embedding(text: str, dimensions: int) -> List[float]:
    """
    Deterministic text embedding: three character hashes per word spread sin/cos energy
    across the vector, plus length features, then L2 normalization.
    """
    vec = np.zeros(dimensions, dtype=np.float64)
    words = text.lower().split()

    for i, word in enumerate(words):
        for j, ch in enumerate(word):
            code = ord(ch)
            idx1 = (code * (i + 1) * (j + 1)) % dimensions
            idx2 = (code * 31 + i * 17 + j * 13) % dimensions
            idx3 = (code ^ (i << 2) ^ (j << 3)) % dimensions

            vec[idx1] += math.sin(code + i + j) * 0.3
            vec[idx2] += math.cos(code * i) * 0.2
            vec[idx3] += math.sin(code * j) * 0.1

    vec[0] += len(text) / 1000
    if dimensions > 1:
        vec[1] += len(words) / 100

    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec = vec / norm
    return vec.tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError("Embeddings must have the same dimensions")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def mean_embedding(embeddings: Sequence[Optional[Sequence[float]]]) -> Optional[List[float]]:
    vectors = [np.asarray(e, dtype=np.float64) for e in embeddings if e]
    if not vectors:
        return None
    dims = {v.shape for v in vectors}
    if len(dims) != 1:
        return None
    return np.mean(np.stack(vectors), axis=0).tolist()


class ProductEnricher:
    """
    Assign each catalog product a primary tag and an embedding.

    Public API:
      - enrich(products) -> {product_id: EnrichedProduct}
      - enrich_batch(products)
      - fallback(product)
    """

    def __init__(
        self,
        oracle: RankingOracle,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.oracle = oracle
        self.settings = settings or load_engine_settings()
        self.batch_size = max(1, self.settings.precompute_batch_size)
        self.batch_delay_s = max(0.0, self.settings.precompute_batch_delay_s)
        self.dimensions = self.settings.embedding_dim
        self._sleep = sleep

    def fallback(self, product: CatalogProduct) -> EnrichedProduct:
        text = create_product_text(product)
        tag = fallback_primary_tag(product)
        return EnrichedProduct(
            id=product.id,
            primary_tag=tag,
            tags=[tag],
            embedding=hash_embedding(text, self.dimensions),
            description=text,
            source="fallback",
        )

    def build_prompt(self, products: Sequence[CatalogProduct]) -> str:
        payload = [
            {
                "id": p.id,
                "title": p.title,
                "category": p.category,
                "vendor": p.vendor,
                "price": p.price,
                "tags": sorted(normalize_tags(p)),
            }
            for p in products
        ]
        return f"Analyze these {len(products)} products:\n{json.dumps(payload, indent=2)}"

    async def enrich_batch(self, products: Sequence[CatalogProduct]) -> List[EnrichedProduct]:
        """
        One oracle call for the batch. Raises OracleError when the call itself fails;
        a malformed payload degrades per product to fallback tags.
        """
        raw = await self.oracle.complete(self.build_prompt(products), system=ANALYSIS_SYSTEM_PROMPT, task=TASK_ANALYSIS)

        by_id: Dict[int, dict] = {}
        decoded = decode_json_array(raw)
        if isinstance(decoded, Malformed):
            logger.warning("Failed to parse enrichment response: %s", decoded.reason)
        else:
            for item in decoded.data:
                if not isinstance(item, dict):
                    continue
                pid = coerce_product_id(item.get("id"))
                if pid is not None:
                    by_id[pid] = item
            logger.info("Parsed %d products from oracle", len(by_id))

        results: List[EnrichedProduct] = []
        for product in products:
            item = by_id.get(product.id)
            if item is None:
                results.append(self.fallback(product))
                continue

            raw_tags = item.get("tags") or []
            if isinstance(raw_tags, str):
                raw_tags = [raw_tags]
            elif not isinstance(raw_tags, list):
                raw_tags = []
            tags = [
                t.strip().lower() for t in raw_tags
                if isinstance(t, str) and t.strip()
            ]
            if not tags:
                tags = [fallback_primary_tag(product)]
            description = item.get("description")
            if not isinstance(description, str) or not description.strip():
                description = create_product_text(product)

            results.append(EnrichedProduct(
                id=product.id,
                primary_tag=tags[0],
                tags=tags,
                embedding=hash_embedding(f"{description} {create_product_text(product)}", self.dimensions),
                description=description,
                source="oracle",
            ))
        return results

    async def enrich(self, products: Sequence[CatalogProduct]) -> Dict[int, EnrichedProduct]:
        results: Dict[int, EnrichedProduct] = {}
        total = len(products)
        total_batches = math.ceil(total / self.batch_size) if total else 0
        logger.info("Processing %d products in %d batches of %d", total, total_batches, self.batch_size)

        for batch_num, offset in enumerate(range(0, total, self.batch_size), start=1):
            batch = products[offset:offset + self.batch_size]
            start = time.time()
            try:
                enriched = await self.enrich_batch(batch)
            except OracleError as exc:
                logger.warning("Batch %d/%d failed: %s; using fallback", batch_num, total_batches, exc)
                enriched = [self.fallback(p) for p in batch]

            for item in enriched:
                results[item.id] = item

            done = min(offset + self.batch_size, total)
            logger.info(
                "Batch %d/%d complete in %dms | %d/%d (%d%%)",
                batch_num, total_batches, int((time.time() - start) * 1000),
                done, total, round(done / total * 100),
            )

            if done < total and self.batch_delay_s:
                await self._sleep(self.batch_delay_s)

        return results
