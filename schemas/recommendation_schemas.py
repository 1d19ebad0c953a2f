"""
Recommendation Schemas
======================

Canonical data structures shared by the precompute pipeline and the
recommendation endpoint.

CATALOG (input to precompute):
------------------------------
- CatalogProduct / ProductVariant: raw products as they arrive from the
  catalog file. ``stock`` is always the sum of variant inventory.

STORED (read back from the products table):
-------------------------------------------
- ProductRecord: a persisted product with its single primary tag, scores
  and embedding. Ids are plain ``int`` everywhere past ingress.

API:
----
- PrecomputeRequest / RecommendationRequest: request bodies.
- ScoredProduct: one variant-expanded recommendation entry. The score
  fields are display values only; they never drive selection.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

RecommendationType = Literal["upsell", "crosssell"]
RECOMMENDATION_TYPES: List[str] = ["upsell", "crosssell"]


def _as_float(value: Any, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    if isinstance(value, Decimal):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int = 0) -> int:
    if value in (None, ""):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


# =============================================================================
# CATALOG
# =============================================================================

@dataclass
class ProductVariant:
    id: int
    title: str
    price: float
    inventory_quantity: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductVariant":
        return cls(
            id=_as_int(data.get("id")),
            title=str(data.get("title") or ""),
            price=_as_float(data.get("price")),
            inventory_quantity=_as_int(data.get("inventory_quantity")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "price": self.price,
            "inventory_quantity": self.inventory_quantity,
        }


def compute_stock(variants: List[ProductVariant]) -> int:
    return sum(v.inventory_quantity or 0 for v in variants)


@dataclass
class CatalogProduct:
    id: int
    title: str
    category: str = ""
    price: float = 0.0
    vendor: str = ""
    status: str = "active"
    variants: List[ProductVariant] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    weight: Optional[float] = None

    @property
    def stock(self) -> int:
        return compute_stock(self.variants)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogProduct":
        raw_tags = data.get("tags") or []
        if isinstance(raw_tags, str):
            raw_tags = [t for t in raw_tags.split(",")]
        return cls(
            id=_as_int(data.get("id")),
            title=str(data.get("title") or ""),
            category=str(data.get("category") or ""),
            price=_as_float(data.get("price")),
            vendor=str(data.get("vendor") or ""),
            status=str(data.get("status") or "active"),
            variants=[ProductVariant.from_dict(v) for v in (data.get("variants") or [])],
            tags=[str(t).strip() for t in raw_tags if str(t).strip()],
            weight=_as_float(data.get("weight"), 1.0) if data.get("weight") is not None else None,
        )


# =============================================================================
# STORED
# =============================================================================

@dataclass
class ProductRecord:
    id: int
    title: str
    category: Optional[str]
    price: float
    vendor: Optional[str] = None
    tags: Optional[str] = None
    variants: List[ProductVariant] = field(default_factory=list)
    status: str = "active"
    stock: int = 0
    merchant_score: float = 0.0
    purchase_score: float = 0.0
    embedding: Optional[List[float]] = None

    @property
    def composite_score(self) -> float:
        return self.merchant_score * 0.6 + self.purchase_score * 0.4


# =============================================================================
# API
# =============================================================================

class PrecomputeRequest(BaseModel):
    shop_id: Optional[str] = None
    force_rebuild: bool = False


class RecommendationRequest(BaseModel):
    # Raw values; ids are coerced to int and types checked by the router
    shop_id: Optional[str] = None
    product_ids: Optional[List[Any]] = None
    recommendation_type: Optional[List[str]] = None


class ScoredProduct(BaseModel):
    id: int
    title: str
    variant_id: int
    variant_title: str
    category: Optional[str] = None
    price: float
    vendor: Optional[str] = None
    score: float
    embedding_similarity: float
    merchant_score: float
    purchase_score: float
    price_similarity: float


class RecommendationLists(BaseModel):
    upsell: List[ScoredProduct] = Field(default_factory=list)
    crosssell: List[ScoredProduct] = Field(default_factory=list)


class RecommendationResponse(BaseModel):
    shop_id: str
    product_ids: List[int]
    recommendations: RecommendationLists
    processing_time_ms: int
