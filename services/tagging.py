"""
Rule-based tag derivation from raw product attributes.
"""
import re
from typing import Iterable, List, Set

from schemas.recommendation_schemas import CatalogProduct

STOP_WORDS = frozenset({"the", "and", "for", "with", "from", "this", "that", "pack"})
# The primary-tag fallback also skips marketing filler
FALLBACK_STOP_WORDS = STOP_WORDS | {"new"}

_TOKEN_SPLIT = re.compile(r"[\s-]+")
_WHITESPACE = re.compile(r"\s+")

# (upper bound exclusive, tag); anything above the last bound is luxury
PRICE_LADDER = (
    (30.0, "price:budget"),
    (75.0, "price:mid"),
    (150.0, "price:premium"),
)
LUXURY_TAG = "price:luxury"


def price_range_tag(price: float) -> str:
    for bound, tag in PRICE_LADDER:
        if price < bound:
            return tag
    return LUXURY_TAG


def vendor_tag(vendor: str) -> str:
    return "vendor:" + _WHITESPACE.sub("-", vendor.strip().lower())


def title_tokens(title: str, stop_words: Iterable[str] = STOP_WORDS) -> List[str]:
    stops = set(stop_words)
    return [
        word for word in _TOKEN_SPLIT.split((title or "").lower())
        if len(word) > 3 and word not in stops
    ]


def normalize_tags(product: CatalogProduct) -> Set[str]:
    """Category, meaningful title words, vendor, price bucket and any existing tags."""
    tags: Set[str] = set()

    if product.category and product.category.strip():
        tags.add(product.category.strip().lower())

    tags.update(title_tokens(product.title))

    if product.vendor and product.vendor.strip():
        tags.add(vendor_tag(product.vendor))

    if product.price is not None:
        tags.add(price_range_tag(float(product.price)))

    for tag in product.tags or []:
        cleaned = str(tag).strip().lower()
        if cleaned:
            tags.add(cleaned)

    return tags


def fallback_primary_tag(product: CatalogProduct) -> str:
    """Single primary tag when the oracle could not classify the product."""
    if product.category and product.category.strip():
        return product.category.strip().lower()

    words = title_tokens(product.title, FALLBACK_STOP_WORDS)
    if words:
        return words[0]

    return "product"
