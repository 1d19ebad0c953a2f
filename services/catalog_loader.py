"""
Catalog loading for precompute runs.

Catalog files are JSON documents of the form ``{"products": [...]}``. A shop
specific file ``<CATALOG_DIR>/<shop_id>.json`` wins over the shared
``CATALOG_PATH``.
"""
from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from schemas.recommendation_schemas import CatalogProduct
from services.exceptions import CatalogNotFoundError
from settings import EngineSettings, load_engine_settings

logger = logging.getLogger(__name__)

_SAFE_SHOP_ID = re.compile(r"[^A-Za-z0-9._-]")


class CatalogLoader:
    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or load_engine_settings()

    def resolve_path(self, shop_id: str) -> Path:
        if self.settings.catalog_dir:
            shop_file = Path(self.settings.catalog_dir) / f"{_SAFE_SHOP_ID.sub('_', shop_id)}.json"
            if shop_file.is_file():
                return shop_file
        return Path(self.settings.catalog_path)

    def load(self, shop_id: str) -> List[CatalogProduct]:
        path = self.resolve_path(shop_id)
        if not path.is_file():
            raise CatalogNotFoundError(f"Catalog file not found: {os.fspath(path)}")

        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise CatalogNotFoundError(f"Catalog file {os.fspath(path)} is not valid JSON: {exc}") from exc

        raw_products = data.get("products") if isinstance(data, dict) else data
        if not isinstance(raw_products, list):
            raise CatalogNotFoundError(f"Catalog file {os.fspath(path)} has no 'products' list")

        products: List[CatalogProduct] = []
        seen = set()
        for raw in raw_products:
            if not isinstance(raw, dict):
                continue
            product = CatalogProduct.from_dict(raw)
            if not product.id or product.id in seen:
                logger.warning("Skipping catalog entry without a unique id: %r", raw.get("id"))
                continue
            seen.add(product.id)
            products.append(product)

        logger.info("Loaded %d products for shop %s from %s", len(products), shop_id, path)
        return products
