import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from fakes import FAST_SETTINGS, make_storage, product_row, seed
from services.candidate_selector import CandidateSelector
from services.exceptions import NotFoundError

GRAPH = {"t-shirt": ["jeans", "sneakers", "t-shirt"]}


def _catalog():
    return [
        product_row(1001, "t-shirt", "T-Shirts", 30, merchant_score=1.0, purchase_score=1.0),
        # composite 0.62
        product_row(1002, "t-shirt", "T-Shirts", 35, merchant_score=0.7, purchase_score=0.5),
        # composite 0.60
        product_row(2001, "jeans", "Pants", 60, merchant_score=0.4, purchase_score=0.9),
        # composite 0.80
        product_row(2002, "sneakers", "Shoes", 90, merchant_score=1.0, purchase_score=0.5),
        product_row(2003, "jeans", "Pants", 60, status="draft", merchant_score=1.0, purchase_score=1.0),
        product_row(2004, "sneakers", "Shoes", 80, inventory=0, merchant_score=1.0, purchase_score=1.0),
        product_row(2005, "hat", "Accessories", 15, merchant_score=1.0, purchase_score=1.0),
        product_row(2006, "jeans", "Pants", 60, shop_id="other", merchant_score=1.0, purchase_score=1.0),
    ]


def _select(product_ids, pool_size=None, graph=GRAPH):
    async def scenario():
        engine, storage, _ = await make_storage()
        try:
            await seed(storage, _catalog(), graph)
            selector = CandidateSelector(storage, FAST_SETTINGS)
            return await selector.select_candidates("s", product_ids, pool_size)
        finally:
            await engine.dispose()

    return asyncio.run(scenario())


def test_candidates_are_eligible_and_score_ordered():
    selection = _select([1001])

    ids = [c.id for c in selection.candidates]
    assert ids == [2002, 1002, 2001]
    assert selection.source_tags == ["t-shirt"]
    assert selection.related_tags == ["jeans", "sneakers", "t-shirt"]

    scores = [c.composite_score for c in selection.candidates]
    assert scores == sorted(scores, reverse=True)
    assert all(c.status == "active" and c.stock > 0 for c in selection.candidates)
    assert 1001 not in ids


def test_pool_size_bounds_candidates():
    selection = _select([1001], pool_size=2)

    assert [c.id for c in selection.candidates] == [2002, 1002]


def test_every_source_id_is_excluded():
    selection = _select([1001, 1002])

    ids = [c.id for c in selection.candidates]
    assert 1001 not in ids and 1002 not in ids
    assert [p.id for p in selection.source_products] == [1001, 1002]
    assert selection.source_tags == ["t-shirt"]


def test_unknown_ids_are_ignored_when_one_resolves():
    selection = _select([999999, 1001])

    assert [p.id for p in selection.source_products] == [1001]


def test_no_source_products_raises_not_found():
    with pytest.raises(NotFoundError, match="No products found for given IDs"):
        _select([424242])


def test_source_lookup_is_scoped_to_shop():
    with pytest.raises(NotFoundError):
        _select([2006])


def test_missing_tag_graph_means_no_candidates():
    selection = _select([1001], graph=None)

    assert selection.related_tags == []
    assert selection.candidates == []
    assert [p.id for p in selection.source_products] == [1001]
