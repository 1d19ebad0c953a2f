"""
Storage Service Layer
Provides the product and tag-graph database operations used by precompute and recommendations.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import time
from decimal import Decimal

from database import Product, TagGraphEntry, ProcessTracker, PLACEHOLDER_TAG
from schemas.recommendation_schemas import CatalogProduct, ProductRecord, ProductVariant

logger = logging.getLogger(__name__)

UPSERT_CHUNK_SIZE = 500

# merchant_score * 0.6 + purchase_score * 0.4
COMPOSITE_SCORE = (Product.merchant_score * 0.6 + Product.purchase_score * 0.4)


def _upsert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT (Postgres in production, SQLite locally)."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


def _chunks(rows: Sequence[Dict[str, Any]], size: int) -> Iterable[Sequence[Dict[str, Any]]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


def to_record(row: Product) -> ProductRecord:
    variants = [ProductVariant.from_dict(v) for v in (row.variants or [])]
    return ProductRecord(
        id=int(row.id),
        title=row.title,
        category=row.category,
        price=float(row.price) if row.price is not None else 0.0,
        vendor=row.vendor,
        tags=row.tags,
        variants=variants,
        status=row.status,
        stock=int(row.stock or 0),
        merchant_score=float(row.merchant_score or 0.0),
        purchase_score=float(row.purchase_score or 0.0),
        embedding=list(row.embedding) if row.embedding is not None else None,
    )


class StorageService:
    """Storage handle over an injected session factory; every call uses its own scoped session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        return self.session_factory()

    # ---------- products: read ----------

    async def get_products_by_ids(self, shop_id: str, product_ids: Sequence[int]) -> List[ProductRecord]:
        if not product_ids:
            return []
        async with self.get_session() as session:
            result = await session.execute(
                select(Product)
                .where(Product.shop_id == shop_id, Product.id.in_(list(product_ids)))
                .order_by(Product.id)
            )
            rows = result.scalars().all()
        by_id = {int(r.id): to_record(r) for r in rows}
        # Preserve request order
        return [by_id[pid] for pid in dict.fromkeys(product_ids) if pid in by_id]

    async def get_candidates_by_tags(
        self,
        shop_id: str,
        tags: Sequence[str],
        exclude_ids: Sequence[int],
        limit: int,
    ) -> List[ProductRecord]:
        """Active, in-stock products carrying one of ``tags``, best composite score first."""
        if not tags or limit <= 0:
            return []

        stmt = (
            select(Product)
            .where(
                Product.shop_id == shop_id,
                Product.status == "active",
                Product.stock > 0,
                Product.tags.in_(list(tags)),
            )
            .order_by(COMPOSITE_SCORE.desc(), Product.id.asc())
            .limit(limit)
        )
        if exclude_ids:
            stmt = stmt.where(Product.id.not_in(list(exclude_ids)))

        async with self.get_session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [to_record(r) for r in rows]

    async def get_distinct_tags(self, shop_id: str) -> List[str]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Product.tags).distinct()
                .where(Product.shop_id == shop_id, Product.tags.is_not(None))
                .order_by(Product.tags)
            )
            return [t for t in result.scalars().all() if t]

    async def count_products(self, shop_id: Optional[str] = None) -> Tuple[int, int]:
        """Returns (products, products with embeddings)."""
        total_stmt = select(func.count(Product.id))
        embedded_stmt = select(func.count(Product.id)).where(Product.embedding.is_not(None))
        if shop_id:
            total_stmt = total_stmt.where(Product.shop_id == shop_id)
            embedded_stmt = embedded_stmt.where(Product.shop_id == shop_id)
        async with self.get_session() as session:
            total = (await session.execute(total_stmt)).scalar() or 0
            embedded = (await session.execute(embedded_stmt)).scalar() or 0
        return int(total), int(embedded)

    # ---------- products: write ----------

    async def upsert_products(
        self,
        shop_id: str,
        products: Sequence[CatalogProduct],
        enrichment: Mapping[int, Any],
        embedding_version: str,
    ) -> int:
        """
        Insert or overwrite products with their primary tag and embedding.
        ``enrichment`` maps product id -> object with ``primary_tag`` and ``embedding``.
        Products without enrichment are skipped. Existing scores are left for the scoring pass.
        """
        rows: List[Dict[str, Any]] = []
        for product in products:
            data = enrichment.get(product.id)
            if data is None:
                continue
            rows.append({
                "id": product.id,
                "shop_id": shop_id,
                "title": product.title,
                "category": product.category,
                "tags": data.primary_tag or PLACEHOLDER_TAG,
                "weight": Decimal(str(product.weight if product.weight is not None else 1.0)),
                "vendor": product.vendor,
                "price": Decimal(str(product.price)),
                "variants": [v.to_dict() for v in product.variants],
                "status": product.status,
                "stock": product.stock,
                "merchant_score": 0.0,
                "purchase_score": 0.0,
                "embedding": list(data.embedding) if data.embedding is not None else None,
                "embedding_version": embedding_version,
            })

        if not rows:
            return 0

        start = time.time()
        async with self.get_session() as session:
            insert = _upsert_for(session)
            table = Product.__table__
            for chunk in _chunks(rows, UPSERT_CHUNK_SIZE):
                stmt = insert(table).values(list(chunk))
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.id],
                    set_={
                        "shop_id": stmt.excluded.shop_id,
                        "title": stmt.excluded.title,
                        "category": stmt.excluded.category,
                        "tags": stmt.excluded.tags,
                        "weight": stmt.excluded.weight,
                        "vendor": stmt.excluded.vendor,
                        "price": stmt.excluded.price,
                        "variants": stmt.excluded.variants,
                        "status": stmt.excluded.status,
                        "stock": stmt.excluded.stock,
                        "embedding": stmt.excluded.embedding,
                        "embedding_version": stmt.excluded.embedding_version,
                        "updated_at": func.now(),
                    },
                )
                await session.execute(stmt)
            await session.commit()

        logger.info(
            "Upserted %d products for shop %s in %dms",
            len(rows), shop_id, int((time.time() - start) * 1000),
        )
        return len(rows)

    async def update_scores(
        self,
        shop_id: str,
        score_fn: Callable[[int, int], Tuple[float, float]],
    ) -> int:
        """Recompute (merchant_score, purchase_score) for every product of a shop in one transaction."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Product.id, Product.stock)
                .where(Product.shop_id == shop_id)
                .order_by(Product.id)
            )
            updates = []
            for product_id, stock in result.all():
                merchant, purchase = score_fn(int(product_id), int(stock or 0))
                updates.append({"id": product_id, "merchant_score": merchant, "purchase_score": purchase})

            if updates:
                await session.execute(update(Product), updates)
            await session.commit()
        return len(updates)

    # ---------- tag graph ----------

    async def get_tag_children(self, tags: Sequence[str]) -> Dict[str, List[str]]:
        if not tags:
            return {}
        async with self.get_session() as session:
            result = await session.execute(
                select(TagGraphEntry.tag_name, TagGraphEntry.children)
                .where(TagGraphEntry.tag_name.in_(list(tags)))
            )
            return {name: list(children or []) for name, children in result.all()}

    async def upsert_tag_graph(self, graph: Mapping[str, Sequence[str]]) -> int:
        if not graph:
            return 0
        rows = [{"tag_name": tag, "children": list(children)} for tag, children in graph.items()]
        async with self.get_session() as session:
            insert = _upsert_for(session)
            table = TagGraphEntry.__table__
            for chunk in _chunks(rows, UPSERT_CHUNK_SIZE):
                stmt = insert(table).values(list(chunk))
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.tag_name],
                    set_={"children": stmt.excluded.children, "updated_at": func.now()},
                )
                await session.execute(stmt)
            await session.commit()
        return len(rows)

    async def count_tag_graph(self) -> int:
        async with self.get_session() as session:
            return int((await session.execute(select(func.count(TagGraphEntry.tag_name)))).scalar() or 0)

    async def sample_tag_graph(self, limit: int = 5) -> Dict[str, List[str]]:
        async with self.get_session() as session:
            result = await session.execute(
                select(TagGraphEntry.tag_name, TagGraphEntry.children)
                .order_by(TagGraphEntry.tag_name)
                .limit(limit)
            )
            return {name: list(children or []) for name, children in result.all()}

    # ---------- diagnostics ----------

    async def system_status(self, shop_id: Optional[str] = None) -> Dict[str, Any]:
        total, embedded = await self.count_products(shop_id)
        tag_count = await self.count_tag_graph()

        stmt = select(ProcessTracker).order_by(ProcessTracker.started_at.desc(), ProcessTracker.id.desc()).limit(3)
        if shop_id:
            stmt = stmt.where(ProcessTracker.shop_id == shop_id)
        async with self.get_session() as session:
            runs = (await session.execute(stmt)).scalars().all()

        issues = []
        if total == 0:
            issues.append("No products found; run precomputation")
        elif embedded == 0:
            issues.append("No products have embeddings; run precomputation")
        if tag_count == 0:
            issues.append("Tag graph is empty; run precomputation with force_rebuild")

        return {
            "shop_id": shop_id,
            "products": {
                "total": total,
                "with_embeddings": embedded,
                "embedding_coverage": round(embedded / total, 4) if total else 0.0,
            },
            "tag_graph": {
                "tags": tag_count,
                "sample": await self.sample_tag_graph() if tag_count else {},
            },
            "recent_runs": [
                {
                    "id": run.id,
                    "shop_id": run.shop_id,
                    "status": run.status,
                    "product_count": run.product_count,
                    "started_at": run.started_at.isoformat() if run.started_at else None,
                    "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                }
                for run in runs
            ],
            "issues": issues,
            "ready": not issues,
        }
