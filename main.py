"""
FastAPI Application Entry Point
Upsell / Crosssell Recommendation Engine - Python Backend
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import os
import asyncio
from dotenv import load_dotenv
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable, Optional

from routers import precompute, recommendations, system_status

from database import build_engine, build_session_factory, init_db, close_db, check_db_health
from services.candidate_selector import CandidateSelector
from services.catalog_loader import CatalogLoader
from services.concurrency_control import ConcurrencyController
from services.ml.llm_embeddings import ProductEnricher
from services.ml.llm_utils import load_settings as load_oracle_settings
from services.ml.oracle import RankingOracle, build_oracle_or_unavailable
from services.pipeline_scheduler import PipelineScheduler
from services.precompute import PrecomputeOrchestrator
from services.progress_tracker import ProcessTrackerStore
from services.ranker import RankingEngine
from services.recommendations import RecommendationService
from services.scoring import ScoringEngine
from services.storage import StorageService
from services.tag_graph import TagGraphBuilder
from settings import EngineSettings, cors_origins, env_bool, load_engine_settings

load_dotenv()

# Request id of the request being served, attached to every log line
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


# ---- Logging setup (JSON on stdout) ----
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: Optional[str] = None) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    # Quiet the chatty libraries
    for name, lib_level in (
        ("uvicorn.access", logging.INFO),
        ("uvicorn.error", logging.INFO),
        ("sqlalchemy.engine", logging.WARNING),  # INFO shows every statement
        ("httpx", logging.WARNING),
    ):
        logging.getLogger(name).setLevel(lib_level)


configure_logging()
logger = logging.getLogger(__name__)


# ---- Service wiring ----
def build_app_state(
    app: FastAPI,
    engine,
    oracle: Optional[RankingOracle] = None,
    settings: Optional[EngineSettings] = None,
) -> None:
    """Construct every service over one engine and attach them to ``app.state``."""
    settings = settings or load_engine_settings()
    session_factory = build_session_factory(engine)
    oracle = oracle or build_oracle_or_unavailable(load_oracle_settings())

    storage = StorageService(session_factory)
    tracker = ProcessTrackerStore(session_factory)

    app.state.engine = engine
    app.state.oracle = oracle
    app.state.storage = storage
    app.state.tracker = tracker
    app.state.scheduler = PipelineScheduler()
    app.state.orchestrator = PrecomputeOrchestrator(
        storage=storage,
        tracker=tracker,
        catalog_loader=CatalogLoader(settings),
        enricher=ProductEnricher(oracle, settings),
        scoring=ScoringEngine(storage),
        tag_graph_builder=TagGraphBuilder(oracle),
        concurrency=ConcurrencyController(engine),
        settings=settings,
    )
    app.state.recommendation_service = RecommendationService(
        selector=CandidateSelector(storage, settings),
        ranker=RankingEngine(oracle, settings),
    )


# --- Startup/shutdown ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Recommendation Engine API...")
    engine = build_engine()

    if env_bool("INIT_DB_ON_STARTUP", True):
        try:
            logger.info("Creating recommendation tables if missing...")
            await asyncio.wait_for(init_db(engine), timeout=120)
            logger.info("Database ready")
        except asyncio.TimeoutError:
            logger.error("DB init timed out after 120s; serving without it")
        except Exception as e:
            logger.error(f"DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")

    build_app_state(app, engine)
    logger.info("Oracle backend: %s", app.state.oracle.name)
    try:
        yield
    finally:
        logger.info("Shutting down Recommendation Engine API...")
        await app.state.scheduler.shutdown()
        await app.state.oracle.close()
        await close_db(engine)


app = FastAPI(
    title="Recommendation Engine API",
    description="Upsell and crosssell recommendations backed by a precomputed tag graph",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---- Request/Response logging middleware ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id (client supplied or generated) and logs REQ/RES lines."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        token = request_id_var.set(request_id)
        request.state.request_id = request_id
        start = time.time()

        logger.info(
            "REQ %s %s qs=%s ip=%s",
            request.method,
            request.url.path,
            request.url.query,
            request.client.host if request.client else "-",
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Uncaught exception in request pipeline")
            raise
        finally:
            request_id_var.reset(token)

        logger.info(
            "RES %s %s status=%s durMs=%d rid=%s",
            request.method,
            request.url.path,
            response.status_code,
            int((time.time() - start) * 1000),
            request_id,
        )
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestIDMiddleware)


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/health")
async def api_health(request: Request):
    """Health check including database status."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        db_health = {"status": "unhealthy", "error": "database engine not initialized"}
    else:
        db_health = await check_db_health(engine)
    return {
        "status": "healthy" if db_health["status"] == "healthy" else "degraded",
        "database": db_health,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --- Routers ---
app.include_router(precompute.router, prefix="/api", tags=["precompute"])
app.include_router(recommendations.router, prefix="/api", tags=["recommendations"])
app.include_router(system_status.router, prefix="/api", tags=["system-status"])
