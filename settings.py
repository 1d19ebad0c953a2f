"""
Centralized configuration for shop scoping, ranking limits and embeddings.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SHOP_ID: str = os.getenv("DEFAULT_SHOP_ID") or "demo-shop"


def sanitize_shop_id(value: Optional[Any]) -> Optional[str]:
    """Normalize raw shop IDs (strip whitespace, reject blanks)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    text = str(value).strip()
    if not text:
        return None
    return text


def resolve_shop_id(*candidates: Optional[Any]) -> str:
    """
    Pick the first usable shop identifier from candidates, otherwise fall back to DEFAULT_SHOP_ID.
    """
    for candidate in candidates:
        normalized = sanitize_shop_id(candidate)
        if normalized:
            return normalized
    return DEFAULT_SHOP_ID


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid int for %s=%s; falling back to %s", name, value, default)
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid float for %s=%s; falling back to %s", name, value, default)
        return default


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RankingWeights:
    """Weights for the display score attached to every recommendation."""

    embedding_similarity: float = 0.45
    purchase_score: float = 0.25
    merchant_score: float = 0.20
    price_similarity: float = 0.10


@dataclass(frozen=True)
class EngineSettings:
    """Resolved limits and constants for the precompute and query paths."""

    embedding_model: str = "text-embedding-004"
    embedding_version: str = "v1"
    embedding_dim: int = 768
    weights: RankingWeights = field(default_factory=RankingWeights)
    candidate_pool_size: int = 100
    related_tag_limit: int = 50
    similarity_top_k: int = 20
    final_recommendations: int = 10
    precompute_batch_size: int = 50
    precompute_batch_delay_s: float = 1.0
    catalog_path: str = "data/products.json"
    catalog_dir: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "embedding": {
                "model": self.embedding_model,
                "version": self.embedding_version,
                "dimensions": self.embedding_dim,
            },
            "limits": {
                "candidate_pool_size": self.candidate_pool_size,
                "related_tag_limit": self.related_tag_limit,
                "similarity_top_k": self.similarity_top_k,
                "final_recommendations": self.final_recommendations,
            },
        }


@lru_cache(maxsize=1)
def load_engine_settings() -> EngineSettings:
    """Load and cache engine configuration from environment variables."""

    weights = RankingWeights(
        embedding_similarity=env_float("RANK_WEIGHT_EMBEDDING", 0.45),
        purchase_score=env_float("RANK_WEIGHT_PURCHASE", 0.25),
        merchant_score=env_float("RANK_WEIGHT_MERCHANT", 0.20),
        price_similarity=env_float("RANK_WEIGHT_PRICE", 0.10),
    )

    return EngineSettings(
        embedding_model=os.getenv("EMBED_MODEL", "text-embedding-004"),
        embedding_version=os.getenv("EMBED_VERSION", "v1"),
        embedding_dim=env_int("EMBED_DIM", 768),
        weights=weights,
        candidate_pool_size=env_int("CANDIDATE_POOL_SIZE", 100),
        related_tag_limit=env_int("RELATED_TAG_LIMIT", 50),
        similarity_top_k=env_int("SIMILARITY_TOP_K", 20),
        final_recommendations=env_int("FINAL_RECOMMENDATIONS", 10),
        precompute_batch_size=env_int("PRECOMPUTE_BATCH_SIZE", 50),
        precompute_batch_delay_s=env_float("PRECOMPUTE_BATCH_DELAY_S", 1.0),
        catalog_path=os.getenv("CATALOG_PATH", "data/products.json"),
        catalog_dir=os.getenv("CATALOG_DIR") or None,
    )


def cors_origins() -> List[str]:
    """Allowed CORS origins from comma-separated CORS_ORIGINS."""
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5000")
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["http://localhost:3000"]
