"""Dispatch API -- Main Application Entry Point

Creates the FastAPI application, configures logging and CORS middleware,
and registers all API route modules under the /api/v1 prefix.

Run with::

    uvicorn src.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.core.config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Shutdown:
      - Close the shared Redis client used by the Redis Geo Index.
      - Dispose of the database engine's connection pool.
    """
    logger.info(
        "%s %s starting (geo index: %s, payments: %s)",
        settings.app_name,
        settings.app_version,
        settings.geo_index_backend,
        settings.payment_verifier,
    )

    yield

    from src.api.deps import engine
    from src.services.geoService import close_redis

    await close_redis()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness probes."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------
# Each router already defines its own prefix (e.g. /jobs, /providers) and
# tags.  We mount them under the shared /api/v1 prefix so the full paths
# become /api/v1/jobs, /api/v1/providers, etc.
# ---------------------------------------------------------------------------

from src.api.routes import (  # noqa: E402
    insurance,
    jobs,
    pricing,
    providers,
)

_prefix = settings.api_v1_prefix

app.include_router(jobs.router, prefix=_prefix)
app.include_router(providers.router, prefix=_prefix)
app.include_router(pricing.router, prefix=_prefix)
app.include_router(insurance.router, prefix=_prefix)
