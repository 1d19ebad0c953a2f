# --- models + engine helpers ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    JSON, BigInteger, String, Text, Integer, Numeric, DateTime, Float,
    func, Index, CheckConstraint, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging, os, time

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

# JSONB on Postgres, plain JSON everywhere else (SQLite for local runs and tests)
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
def resolve_database_url() -> str:
    """
    DATABASE_URL wins; otherwise build a Postgres URL from DB_* parts when DB_HOST is set;
    otherwise fall back to an in-memory SQLite database.
    """
    url = os.getenv("DATABASE_URL", "")
    if url:
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url

    host = os.getenv("DB_HOST")
    if host:
        port = os.getenv("DB_PORT", "5432")
        name = os.getenv("DB_NAME", "recommendation_engine")
        user = os.getenv("DB_USER") or os.getenv("USER") or "postgres"
        password = os.getenv("DB_PASSWORD", "")
        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"

    return "sqlite+aiosqlite:///:memory:"


def build_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the process-wide async engine. Callers own its lifecycle (dispose on shutdown)."""
    url = database_url or resolve_database_url()
    echo = os.getenv("NODE_ENV") == "development"

    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(
            url,
            echo=echo,
            pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
            pool_pre_ping=True,  # Verify connections before use
            pool_recycle=1800,  # Recycle connections after 30 minutes
            pool_timeout=15,
        )

    logger.info(f"Creating SQL engine for { _redact_db_url(url) }")
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
        if url.startswith("sqlite"):
            return url
    except ValueError:
        pass
    return "******"


async def probe_db_connection(engine: AsyncEngine) -> None:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")


# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------
PLACEHOLDER_TAG = "product"


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)
    shop_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Exactly one primary tag per product once precomputed
    tags: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default=PLACEHOLDER_TAG)
    weight: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    vendor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variants: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    merchant_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    purchase_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    embedding: Mapped[Optional[List[float]]] = mapped_column(JSONType, nullable=True)
    embedding_version: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class TagGraphEntry(Base):
    __tablename__ = "tag_graph"

    tag_name: Mapped[str] = mapped_column(Text, primary_key=True)
    # Ordered related tag names, no weights
    children: Mapped[List[str]] = mapped_column(JSONType, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class ProcessTracker(Base):
    __tablename__ = "process_tracker"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    product_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_run: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running','completed','failed')",
            name="ck_process_tracker_status",
        ),
    )


# -------------------------------------------------------------------
# Indexes used by the candidate query path
# -------------------------------------------------------------------
Index('ix_products_shop_id', Product.shop_id)
Index('ix_products_tags', Product.tags)
Index('ix_products_category', Product.category)
Index('ix_process_tracker_shop_started', ProcessTracker.shop_id, ProcessTracker.started_at)


# -------------------------------------------------------------------
# init + health helpers
# -------------------------------------------------------------------
async def init_db(engine: AsyncEngine) -> None:
    """Ensure tables exist."""
    await probe_db_connection(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")


async def close_db(engine: AsyncEngine) -> None:
    try:
        await engine.dispose()
        logger.info("Database connection closed")
    except Exception as e:
        logger.error(f"Error closing database: {e}")


async def check_db_health(engine: AsyncEngine) -> Dict[str, Any]:
    start = time.time()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": int((time.time() - start) * 1000)}
    except Exception as e:
        logger.warning(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
