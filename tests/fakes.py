"""
Shared test doubles: a scripted oracle, in-memory SQLite storage and product factories.
"""
import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database import Product, build_engine, build_session_factory, init_db
from schemas.recommendation_schemas import ProductRecord, ProductVariant
from services.exceptions import OracleError
from services.ml.llm_utils import OracleSettings, Parsed, decode_json_array
from services.ml.oracle import TASK_ANALYSIS, TASK_RANKING, TASK_TAG_GRAPH, RankingOracle
from services.progress_tracker import ProcessTrackerStore
from services.storage import StorageService
from settings import EngineSettings

TEST_ORACLE_SETTINGS = OracleSettings(
    use_sdk=False,
    sdk_api_key="",
    sdk_base_url=None,
    direct_api_key="",
    direct_url="http://oracle.test/direct/chat/completions",
    gateway_api_key="",
    gateway_url="http://oracle.test/gateway/chat/completions",
    ranking_model="rank-model",
    analysis_model="analysis-model",
    temperature=0.3,
    timeout_s=5.0,
    ranking_max_tokens=1000,
    analysis_max_tokens=16000,
    tag_graph_max_tokens=50000,
)

FAST_SETTINGS = EngineSettings(embedding_dim=32, precompute_batch_delay_s=0.0)

TAG_LIST_PREFIX = "Available product tags: "
ANALYSIS_PREFIX = "products:\n"


def offered_tags(prompt: str) -> List[str]:
    line = prompt.split("\n", 1)[0]
    assert line.startswith(TAG_LIST_PREFIX), prompt[:80]
    return json.loads(line[len(TAG_LIST_PREFIX):])


def analysis_products(prompt: str) -> List[Dict[str, Any]]:
    return json.loads(prompt.split(ANALYSIS_PREFIX, 1)[1])


class ScriptedOracle(RankingOracle):
    """
    Oracle double answering per task. A script entry is a string, an exception,
    a callable(prompt) -> str, or a list of those consumed one call at a time.

    Tag-graph answers are checked: every tag and related tag must come from the
    tag list offered in the prompt.
    """

    name = "scripted"

    def __init__(self, script: Optional[Dict[str, Any]] = None, enforce_offered_tags: bool = True):
        super().__init__(TEST_ORACLE_SETTINGS)
        self.script = dict(script or {})
        self.enforce_offered_tags = enforce_offered_tags
        self.calls: List[Dict[str, Any]] = []

    def calls_for(self, task: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["task"] == task]

    async def complete(self, prompt: str, *, system: Optional[str] = None, task: str = TASK_RANKING) -> str:
        self.calls.append({"task": task, "prompt": prompt, "system": system})
        entry = self.script.get(task)
        if isinstance(entry, list):
            if not entry:
                raise OracleError(f"script for {task} exhausted")
            entry = entry.pop(0)
        if entry is None:
            raise OracleError(f"no script for {task}")
        if isinstance(entry, Exception):
            raise entry
        answer = entry(prompt) if callable(entry) else entry

        if task == TASK_TAG_GRAPH and self.enforce_offered_tags:
            allowed = set(offered_tags(prompt))
            decoded = decode_json_array(answer)
            assert isinstance(decoded, Parsed), "tag graph answer is not a JSON array"
            for item in decoded.data:
                assert item["tag"] in allowed, f"tag {item['tag']!r} was not offered"
                extra = set(item["related"]) - allowed
                assert not extra, f"related tags {sorted(extra)} were not offered"
        return answer


def tag_graph_responder(relations: Dict[str, Sequence[str]]) -> Callable[[str], str]:
    """Answers with ``relations`` restricted to the offered tags."""

    def respond(prompt: str) -> str:
        allowed = offered_tags(prompt)
        allowed_set = set(allowed)
        items = [
            {"tag": tag, "related": [r for r in relations.get(tag, []) if r in allowed_set]}
            for tag in allowed
        ]
        return "```json\n" + json.dumps(items) + "\n```"

    return respond


def analysis_responder(tag_for: Callable[[Dict[str, Any]], str]) -> Callable[[str], str]:
    """Answers a batch analysis prompt with one tag per product from ``tag_for``."""

    def respond(prompt: str) -> str:
        items = [
            {
                "id": product["id"],
                "tags": [tag_for(product)],
                "description": f"{product['title']} for everyday wear",
            }
            for product in analysis_products(prompt)
        ]
        return "Here you go:\n" + json.dumps(items)

    return respond


async def make_storage(database_url: str = "sqlite+aiosqlite:///:memory:"):
    """Fresh in-memory database. Caller disposes the returned engine."""
    engine = build_engine(database_url)
    await init_db(engine)
    session_factory = build_session_factory(engine)
    return engine, StorageService(session_factory), ProcessTrackerStore(session_factory)


def product_row(
    product_id: int,
    tag: str,
    category: str,
    price: float,
    *,
    shop_id: str = "s",
    variant_prices: Optional[Iterable[float]] = None,
    inventory: int = 10,
    status: str = "active",
    merchant_score: float = 0.5,
    purchase_score: float = 0.5,
    stock: Optional[int] = None,
    title: Optional[str] = None,
    embedding: Optional[List[float]] = None,
) -> Product:
    prices = list(variant_prices) if variant_prices is not None else [price]
    variants = [
        {"id": product_id * 10 + i, "title": f"Variant {i}", "price": p, "inventory_quantity": inventory}
        for i, p in enumerate(prices, start=1)
    ]
    return Product(
        id=product_id,
        shop_id=shop_id,
        title=title or f"{category} {product_id}",
        category=category,
        tags=tag,
        weight=Decimal("1.0"),
        vendor="Test Vendor",
        price=Decimal(str(price)),
        variants=variants,
        status=status,
        stock=stock if stock is not None else inventory * len(prices),
        merchant_score=merchant_score,
        purchase_score=purchase_score,
        embedding=embedding,
        embedding_version="v1",
    )


async def seed(storage: StorageService, products: Sequence[Product], graph: Optional[Dict[str, List[str]]] = None) -> None:
    async with storage.get_session() as session:
        session.add_all(list(products))
        await session.commit()
    if graph:
        await storage.upsert_tag_graph(graph)


def record(
    product_id: int,
    category: str,
    variant_prices: Sequence[float],
    *,
    tag: str = "product",
    merchant_score: float = 0.5,
    purchase_score: float = 0.5,
    embedding: Optional[List[float]] = None,
) -> ProductRecord:
    variants = [
        ProductVariant(id=product_id * 10 + i, title=f"Variant {i}", price=p, inventory_quantity=5)
        for i, p in enumerate(variant_prices, start=1)
    ]
    return ProductRecord(
        id=product_id,
        title=f"{category} {product_id}",
        category=category,
        price=variant_prices[0] if variant_prices else 0.0,
        vendor="Test Vendor",
        tags=tag,
        variants=variants,
        stock=5 * len(variants),
        merchant_score=merchant_score,
        purchase_score=purchase_score,
        embedding=embedding,
    )


__all__ = [
    "TASK_ANALYSIS",
    "TASK_RANKING",
    "TASK_TAG_GRAPH",
    "FAST_SETTINGS",
    "ScriptedOracle",
    "analysis_responder",
    "make_storage",
    "product_row",
    "record",
    "seed",
    "tag_graph_responder",
]
