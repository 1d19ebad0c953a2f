"""
Tag relationship graph: built once per precompute run by the oracle, read per request.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Sequence

from services.exceptions import OracleError
from services.ml.llm_utils import Malformed, decode_json_array
from services.ml.oracle import TASK_TAG_GRAPH, RankingOracle
from services.storage import StorageService

logger = logging.getLogger(__name__)

TAG_GRAPH_SYSTEM_PROMPT = """You are an e-commerce recommendation expert. For each product tag, suggest 3-5 COMPLEMENTARY PRODUCT tags from the provided list that customers typically buy together.

Rules:
- Focus on PRODUCTS that go well together (e.g., "t-shirt" -> ["jeans", "sneakers", "jacket"])
- ONLY use tags from the provided list - do not invent new tags
- DO NOT suggest attributes like colors, materials, or styles
- DO NOT suggest the same category
- Think cross-sell: what other PRODUCTS would a customer need?

Return ONLY JSON array: [{"tag": "t-shirt", "related": ["jeans", "sneakers", "jacket"]}]"""


class TagGraphBuilder:
    def __init__(self, oracle: RankingOracle):
        self.oracle = oracle

    @staticmethod
    def build_prompt(tags: Sequence[str]) -> str:
        return (
            f"Available product tags: {json.dumps(list(tags))}\n\n"
            "For EACH tag in the list, suggest 3-5 related tags."
        )

    @staticmethod
    def sanitize_children(children: Any) -> List[str]:
        """Keep non-blank strings, in order, without duplicates."""
        if not isinstance(children, list):
            return []
        cleaned = [c.strip() for c in children if isinstance(c, str) and c.strip()]
        return list(dict.fromkeys(cleaned))

    async def build(self, tags: Sequence[str]) -> Dict[str, List[str]]:
        """
        One oracle call for the full tag list. Any oracle or parse failure yields an
        empty graph; the precompute run carries on without relationships.
        """
        graph: Dict[str, List[str]] = {}
        if not tags:
            logger.info("No tags to build a graph from")
            return graph

        logger.info("Building tag graph for %d unique tags (single oracle request)", len(tags))
        start = time.time()

        try:
            raw = await self.oracle.complete(
                self.build_prompt(tags),
                system=TAG_GRAPH_SYSTEM_PROMPT,
                task=TASK_TAG_GRAPH,
            )
        except OracleError as exc:
            logger.warning("Tag graph generation failed: %s; using empty graph", exc)
            return graph

        decoded = decode_json_array(raw)
        if isinstance(decoded, Malformed):
            logger.warning("Failed to parse tag graph response: %s; using empty graph", decoded.reason)
            return graph

        for item in decoded.data:
            if not isinstance(item, dict):
                continue
            tag = item.get("tag")
            related = item.get("related")
            if not isinstance(tag, str) or not tag.strip() or not isinstance(related, list):
                continue
            graph[tag.strip()] = list(related)

        logger.info(
            "Tag graph built with %d tags in %dms",
            len(graph), int((time.time() - start) * 1000),
        )
        return graph


async def get_related_tags(
    storage: StorageService,
    tags: Sequence[str],
    max_tags: int = 50,
) -> List[str]:
    """Union of children for ``tags`` in discovery order, deduplicated, truncated to ``max_tags``."""
    if not tags or max_tags <= 0:
        return []

    children_by_tag = await storage.get_tag_children(tags)
    related: Dict[str, None] = {}
    for tag in tags:
        for child in children_by_tag.get(tag, []):
            related.setdefault(child, None)

    return list(related)[:max_tags]
