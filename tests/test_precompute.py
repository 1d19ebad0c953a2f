import asyncio
import dataclasses
import json
import random
import sys
import warnings
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from sqlalchemy.exc import SAWarning

from fakes import (
    FAST_SETTINGS,
    TASK_ANALYSIS,
    TASK_TAG_GRAPH,
    ScriptedOracle,
    analysis_responder,
    make_storage,
    product_row,
    seed,
    tag_graph_responder,
)
from services.catalog_loader import CatalogLoader
from services.concurrency_control import ConcurrencyController
from services.exceptions import CatalogNotFoundError, LockTimeoutError
from services.ml.llm_embeddings import ProductEnricher
from services.precompute import PrecomputeOrchestrator
from services.scoring import RandomPurchaseSignal, ScoringEngine
from services.tag_graph import TagGraphBuilder

CATALOG = {
    "products": [
        {"id": 1, "title": "Classic Tee", "category": "T-Shirts", "vendor": "BasicWear Co.", "price": 29.99,
         "variants": [{"id": 11, "title": "S", "price": 29.99, "inventory_quantity": 30},
                      {"id": 12, "title": "M", "price": 29.99, "inventory_quantity": 25}]},
        {"id": 2, "title": "Slim Jeans", "category": "Pants", "vendor": "DenimDreams", "price": 69.99,
         "variants": [{"id": 21, "title": "32", "price": 69.99, "inventory_quantity": 10}]},
        {"id": 3, "title": "Runner Sneakers", "category": "Shoes", "vendor": "ActiveLife", "price": 99.0,
         "variants": [{"id": 31, "title": "10", "price": 99.0, "inventory_quantity": 0}]},
        {"id": 4, "title": "Graphic Tee", "category": "T-Shirts", "vendor": "UrbanStyle", "price": 34.99,
         "status": "active", "tags": "graphic, cotton",
         "variants": [{"id": 41, "title": "L", "price": 34.99, "inventory_quantity": 3}]},
    ]
}

TITLE_TAGS = {"Tee": "t-shirt", "Jeans": "jeans", "Sneakers": "sneakers"}
RELATIONS = {"t-shirt": ["jeans", "sneakers", "belt"], "jeans": ["t-shirt", "sneakers"], "sneakers": []}


def _tag_from_title(product):
    return next(tag for word, tag in TITLE_TAGS.items() if word in product["title"])


def _write_catalog(tmp_path):
    path = tmp_path / "products.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")
    return path


def _orchestrator(storage, tracker, engine, oracle, settings):
    return PrecomputeOrchestrator(
        storage=storage,
        tracker=tracker,
        catalog_loader=CatalogLoader(settings),
        enricher=ProductEnricher(oracle, settings),
        scoring=ScoringEngine(storage, RandomPurchaseSignal(random.Random(3))),
        tag_graph_builder=TagGraphBuilder(oracle),
        concurrency=ConcurrencyController(engine, lock_timeout_seconds=5),
        settings=settings,
    )


def _run(settings, oracle, shop_id="s", force_rebuild=True):
    async def scenario():
        engine, storage, tracker = await make_storage()
        try:
            orchestrator = _orchestrator(storage, tracker, engine, oracle, settings)
            try:
                summary = await orchestrator.run(shop_id, force_rebuild=force_rebuild)
                error = None
            except Exception as exc:
                summary, error = None, exc
            products = await storage.get_products_by_ids(shop_id, [1, 2, 3, 4])
            return {
                "summary": summary,
                "error": error,
                "run": await tracker.latest_run(shop_id),
                "products": products,
                "distinct_tags": await storage.get_distinct_tags(shop_id),
                "graph_size": await storage.count_tag_graph(),
                "graph": await storage.get_tag_children(["t-shirt", "jeans", "sneakers"]),
            }
        finally:
            await engine.dispose()

    return asyncio.run(scenario())


def test_force_rebuild_on_four_products(tmp_path):
    settings = dataclasses.replace(FAST_SETTINGS, catalog_path=str(_write_catalog(tmp_path)))
    oracle = ScriptedOracle({
        TASK_ANALYSIS: analysis_responder(_tag_from_title),
        TASK_TAG_GRAPH: tag_graph_responder(RELATIONS),
    })

    outcome = _run(settings, oracle)

    assert outcome["error"] is None
    run = outcome["run"]
    assert run["status"] == "completed"
    assert run["completed_at"] is not None
    assert run["product_count"] == 4

    products = outcome["products"]
    assert len(products) == 4
    assert all(p.embedding is not None and len(p.embedding) == settings.embedding_dim for p in products)
    assert all(isinstance(p.tags, str) and p.tags for p in products)
    assert [p.stock for p in products] == [55, 10, 0, 3]
    assert [p.merchant_score for p in products] == [1.0, 0.4, 0.1, 0.4]

    assert outcome["distinct_tags"] == ["jeans", "sneakers", "t-shirt"]
    assert outcome["graph_size"] <= len(outcome["distinct_tags"])
    assert outcome["graph"] == {"t-shirt": ["jeans", "sneakers"], "jeans": ["t-shirt", "sneakers"]}

    summary = outcome["summary"]
    assert summary.products == 4
    assert summary.variants == 5
    assert summary.unique_tags == 3
    assert summary.tag_relationships == 2
    assert summary.tracker_id == run["id"]
    assert summary.force_rebuild is True


def test_unavailable_oracle_still_completes(tmp_path):
    settings = dataclasses.replace(FAST_SETTINGS, catalog_path=str(_write_catalog(tmp_path)))
    oracle = ScriptedOracle()

    outcome = _run(settings, oracle)

    assert outcome["run"]["status"] == "completed"
    assert [p.tags for p in outcome["products"]] == ["t-shirts", "pants", "shoes", "t-shirts"]
    assert outcome["graph_size"] == 0


def test_missing_catalog_marks_run_failed(tmp_path):
    settings = dataclasses.replace(FAST_SETTINGS, catalog_path=str(tmp_path / "missing.json"))

    outcome = _run(settings, ScriptedOracle())

    assert isinstance(outcome["error"], CatalogNotFoundError)
    assert outcome["run"]["status"] == "failed"
    assert "CatalogNotFoundError" in outcome["run"]["error_message"]
    assert outcome["run"]["completed_at"] is None


def test_shop_catalog_file_wins(tmp_path):
    shop_dir = tmp_path / "shops"
    shop_dir.mkdir()
    (shop_dir / "s.json").write_text(json.dumps({"products": CATALOG["products"][:2]}), encoding="utf-8")
    settings = dataclasses.replace(
        FAST_SETTINGS,
        catalog_path=str(_write_catalog(tmp_path)),
        catalog_dir=str(shop_dir),
    )

    loader = CatalogLoader(settings)

    assert [p.id for p in loader.load("s")] == [1, 2]
    assert [p.id for p in loader.load("other-shop")] == [1, 2, 3, 4]


def test_catalog_stock_and_defaults(tmp_path):
    settings = dataclasses.replace(FAST_SETTINGS, catalog_path=str(_write_catalog(tmp_path)))

    products = CatalogLoader(settings).load("s")

    by_id = {p.id: p for p in products}
    for raw in CATALOG["products"]:
        assert by_id[raw["id"]].stock == sum(v["inventory_quantity"] for v in raw["variants"])
    assert by_id[1].status == "active"
    assert by_id[1].tags == []
    assert by_id[4].tags == ["graphic", "cotton"]


def test_invalid_catalog_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    settings = dataclasses.replace(FAST_SETTINGS, catalog_path=str(path))

    with pytest.raises(CatalogNotFoundError):
        CatalogLoader(settings).load("s")


def test_lock_timeout_marks_run_failed(tmp_path):
    settings = dataclasses.replace(FAST_SETTINGS, catalog_path=str(_write_catalog(tmp_path)))

    async def scenario():
        engine, storage, tracker = await make_storage()
        try:
            orchestrator = _orchestrator(storage, tracker, engine, ScriptedOracle(), settings)
            orchestrator.concurrency = ConcurrencyController(engine, lock_timeout_seconds=0.05)
            async with orchestrator.concurrency.shop_lock("s"):
                with pytest.raises(LockTimeoutError):
                    await orchestrator.run("s")
            return await tracker.latest_run("s"), await storage.count_products("s")
        finally:
            await engine.dispose()

    run, counts = asyncio.run(scenario())

    assert run is not None
    assert run["status"] == "failed"
    assert "LockTimeoutError" in run["error_message"]
    assert counts == (0, 0)


def test_distinct_tags_query_is_warning_free():
    async def scenario():
        engine, storage, _ = await make_storage()
        try:
            await seed(storage, [
                product_row(1, "t-shirt", "T-Shirts", 30),
                product_row(2, "t-shirt", "T-Shirts", 35),
                product_row(3, "jeans", "Pants", 60),
                product_row(4, "hat", "Hats", 15, shop_id="other"),
            ])
            with warnings.catch_warnings():
                warnings.simplefilter("error", SAWarning)
                return await storage.get_distinct_tags("s")
        finally:
            await engine.dispose()

    assert asyncio.run(scenario()) == ["jeans", "t-shirt"]
