import asyncio
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from fakes import make_storage, product_row, seed
from services.scoring import PurchaseSignal, RandomPurchaseSignal, ScoringEngine, merchant_score_for_stock


@pytest.mark.parametrize(
    "stock,expected",
    [(51, 1.0), (50, 0.7), (21, 0.7), (20, 0.4), (1, 0.4), (0, 0.1), (-3, 0.1)],
)
def test_merchant_score_step_function(stock, expected):
    assert merchant_score_for_stock(stock) == expected


def test_random_purchase_signal_range_and_seed():
    first = RandomPurchaseSignal(random.Random(7))
    second = RandomPurchaseSignal(random.Random(7))

    values = [first.score(i) for i in range(200)]

    assert all(0.5 <= v < 1.0 for v in values)
    assert values == [second.score(i) for i in range(200)]


class _ConstantSignal(PurchaseSignal):
    def __init__(self, value):
        self.value = value

    def score(self, product_id):
        return self.value


def test_custom_purchase_signal_is_clamped():
    engine = ScoringEngine(storage=None, purchase_signal=_ConstantSignal(1.7))

    assert engine.score_product(1, 100) == (1.0, 1.0)
    assert ScoringEngine(None, _ConstantSignal(-2)).score_product(1, 0) == (0.1, 0.0)


def test_compute_scores_persists_both_scores():
    async def scenario():
        engine, storage, _ = await make_storage()
        try:
            await seed(storage, [
                product_row(1, "a", "A", 10, stock=60, merchant_score=0, purchase_score=0),
                product_row(2, "a", "A", 10, stock=50, merchant_score=0, purchase_score=0),
                product_row(3, "a", "A", 10, stock=20, merchant_score=0, purchase_score=0),
                product_row(4, "a", "A", 10, stock=0, merchant_score=0, purchase_score=0),
                product_row(5, "a", "A", 10, shop_id="other", stock=60, merchant_score=0, purchase_score=0),
            ])
            scoring = ScoringEngine(storage, RandomPurchaseSignal(random.Random(1)))
            updated = await scoring.compute_scores("s")
            products = await storage.get_products_by_ids("s", [1, 2, 3, 4])
            untouched = await storage.get_products_by_ids("other", [5])
            return updated, products, untouched
        finally:
            await engine.dispose()

    updated, products, untouched = asyncio.run(scenario())

    assert updated == 4
    assert [p.merchant_score for p in products] == [1.0, 0.7, 0.4, 0.1]
    assert all(0.5 <= p.purchase_score < 1.0 for p in products)
    assert untouched[0].merchant_score == 0.0
