"""
Per-product availability and engagement scores.
"""
import abc
import logging
import random
from typing import Optional

from services.storage import StorageService

logger = logging.getLogger(__name__)

# (exclusive lower stock bound, score), checked top-down
MERCHANT_SCORE_STEPS = (
    (50, 1.0),
    (20, 0.7),
    (0, 0.4),
)
MERCHANT_SCORE_FLOOR = 0.1


def merchant_score_for_stock(stock: int) -> float:
    """Step function on stock: >50 -> 1.0, >20 -> 0.7, >0 -> 0.4, else 0.1."""
    for bound, score in MERCHANT_SCORE_STEPS:
        if stock > bound:
            return score
    return MERCHANT_SCORE_FLOOR


class PurchaseSignal(abc.ABC):
    """Source of the engagement score for a product, in [0, 1]."""

    @abc.abstractmethod
    def score(self, product_id: int) -> float:
        ...


class RandomPurchaseSignal(PurchaseSignal):
    """
    Placeholder engagement signal: uniform in [0.5, 1.0), redrawn every run.
    Not derived from purchase history; swap in a real PurchaseSignal when one exists.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def score(self, product_id: int) -> float:
        return self.rng.random() * 0.5 + 0.5


class ScoringEngine:
    def __init__(self, storage: StorageService, purchase_signal: Optional[PurchaseSignal] = None):
        self.storage = storage
        self.purchase_signal = purchase_signal or RandomPurchaseSignal()

    def score_product(self, product_id: int, stock: int):
        merchant = merchant_score_for_stock(stock)
        purchase = min(1.0, max(0.0, float(self.purchase_signal.score(product_id))))
        return merchant, purchase

    async def compute_scores(self, shop_id: str) -> int:
        """Recompute and persist merchant_score and purchase_score for every product of the shop."""
        updated = await self.storage.update_scores(shop_id, self.score_product)
        logger.info("Scores computed for %d products (shop %s)", updated, shop_id)
        return updated
