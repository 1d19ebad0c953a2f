"""
Recommendation Schemas Package
Provides the catalog, stored-product and API data structures.
"""

from .recommendation_schemas import (
    # Catalog
    CatalogProduct,
    ProductVariant,
    compute_stock,

    # Stored
    ProductRecord,

    # API
    PrecomputeRequest,
    RecommendationRequest,
    RecommendationLists,
    RecommendationResponse,
    ScoredProduct,
    RecommendationType,
    RECOMMENDATION_TYPES,
)
