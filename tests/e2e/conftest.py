"""
E2E test fixtures for the dispatch backend.

Provides:
- An in-process FastAPI test app with every router mounted under /api/v1
- httpx AsyncClient wired via ASGI transport (no network needed)
- A header builder for the gateway-asserted actor and tenant

The database session, factories and notification double come from the
top-level conftest. Payments use the simulated verifier, so any non-empty
reference settles the booking fee.
"""

from __future__ import annotations

import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_db, get_notifier, get_payment_verifier
from src.api.routes.insurance import router as insurance_router
from src.api.routes.jobs import router as jobs_router
from src.api.routes.pricing import router as pricing_router
from src.api.routes.providers import router as providers_router
from src.integrations.stripe import SimulatedPaymentVerifier


# ---------------------------------------------------------------------------
# FastAPI test application
# ---------------------------------------------------------------------------

def _create_test_app(db_session_override: AsyncSession, notifier) -> FastAPI:
    """Build a FastAPI app with all routes registered and the DB, push and
    payment dependencies pointed at test doubles."""
    app = FastAPI(title="Dispatch Test")

    async def _override_get_db():
        yield db_session_override

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_verifier] = SimulatedPaymentVerifier

    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(providers_router, prefix="/api/v1")
    app.include_router(pricing_router, prefix="/api/v1")
    app.include_router(insurance_router, prefix="/api/v1")
    return app


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, notifier) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the test app via ASGI transport."""
    app = _create_test_app(db_session, notifier)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Actor headers
# ---------------------------------------------------------------------------

@pytest.fixture
def actor_headers():
    """Return a builder for the headers the auth gateway would set."""

    def _build(actor_id: uuid.UUID, role: str, country: str = "ZA") -> dict[str, str]:
        return {
            "X-Actor-Id": str(actor_id),
            "X-Actor-Role": role,
            "X-Country-Code": country,
        }

    return _build
