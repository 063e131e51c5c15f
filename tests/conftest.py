"""
Shared pytest fixtures for the dispatch backend tests.

Provides:
- A mock ``AsyncSession`` for tests that never touch SQL
- An in-memory SQLite database (fresh per test) for services that rely on
  conditional updates and row counts
- Small factories that insert providers, jobs and insurance codes
- A notification sender double that reports every push as delivered

All coordinates sit around Johannesburg (tenant ``ZA``) so the default
pricing timezone applies.
"""

import math
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from src.integrations.fcm import DeliveryOutcome
from src.models import (
    Base,
    BookingFeeStatus,
    BroadcastRecord,
    InsuranceCode,
    InsurancePartner,
    Job,
    JobStatus,
    ProviderRole,
    ProviderState,
    VerificationStatus,
)
from src.services.geoService import SqlGeoIndex


@compiles(JSONB, "sqlite")
def compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# ---------------------------------------------------------------------------
# Shared constants
# ---------------------------------------------------------------------------

TENANT = "ZA"

# Johannesburg CBD
PICKUP_LAT = -26.2041
PICKUP_LNG = 28.0473

# Wednesday 12:00 in Johannesburg: neither night nor weekend
NOW = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)

# Great-circle kilometres per degree of latitude (haversine radius 6371 km)
KM_PER_DEGREE_LAT = 6371.0 * math.pi / 180.0


def north_of(lat: float, km: float) -> float:
    """Latitude exactly ``km`` kilometres north of ``lat`` on the same meridian."""
    return lat + km / KM_PER_DEGREE_LAT


# ---------------------------------------------------------------------------
# Database session mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession``.

    Provides a mock that supports ``db.execute()``, ``db.add()``,
    ``db.flush()``, and ``db.commit()`` out of the box.  Individual tests
    can configure ``mock_db.execute.return_value`` to control query results.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# SQLite database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine():
    """A fresh in-memory database with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def geo_index(db_session: AsyncSession) -> SqlGeoIndex:
    return SqlGeoIndex(db_session)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_provider(db_session: AsyncSession):
    """Insert an online, approved tow truck at the pickup point.

    Keyword overrides are applied to the ``ProviderState`` columns.
    """

    async def _make(**overrides) -> ProviderState:
        values = dict(
            tenant_code=TENANT,
            display_name="Test Provider",
            role=ProviderRole.TOW_TRUCK.value,
            sub_categories=[],
            type_tags=[],
            vehicle_types=[],
            latitude=PICKUP_LAT,
            longitude=PICKUP_LNG,
            location_updated_at=NOW,
            is_online=True,
            verification_status=VerificationStatus.APPROVED,
            is_banned=False,
            cancel_count=0,
            rating=Decimal("4.50"),
            jobs_completed=0,
            push_token=f"token-{uuid.uuid4().hex[:8]}",
        )
        values.update(overrides)
        provider = ProviderState(**values)
        db_session.add(provider)
        await db_session.flush()
        return provider

    return _make


@pytest.fixture
def make_job(db_session: AsyncSession):
    """Insert a tow job directly in the requested status.

    ``provider`` assigns the job (and marks the provider busy) when the
    status is ASSIGNED or IN_PROGRESS.
    """

    async def _make(
        status: JobStatus = JobStatus.BROADCASTED,
        *,
        provider: Optional[ProviderState] = None,
        assigned_at: Optional[datetime] = None,
        **overrides,
    ) -> Job:
        values = dict(
            reference_number=f"JOB-261014-{uuid.uuid4().hex[:6].upper()}",
            tenant_code=TENANT,
            customer_id=uuid.uuid4(),
            role=ProviderRole.TOW_TRUCK.value,
            pickup_latitude=PICKUP_LAT,
            pickup_longitude=PICKUP_LNG,
            pickup_address="1 Commissioner St, Johannesburg",
            dropoff_latitude=north_of(PICKUP_LAT, 10.0),
            dropoff_longitude=PICKUP_LNG,
            dropoff_address="Sandton",
            status=status,
            excluded_provider_ids=[],
            dispatch_attempts=0 if status == JobStatus.CREATED else 1,
            currency="ZAR",
            estimated_total=Decimal("200.00"),
            booking_fee=Decimal("30.00"),
            booking_fee_status=BookingFeeStatus.PAID,
            pricing_snapshot={},
        )
        if status != JobStatus.CREATED:
            values["broadcasted_at"] = NOW - timedelta(minutes=5)
        if provider is not None:
            values["assigned_provider_id"] = provider.id
            values["assigned_at"] = assigned_at
        values.update(overrides)

        job = Job(**values)
        db_session.add(job)
        await db_session.flush()

        if provider is not None and status in (JobStatus.ASSIGNED, JobStatus.IN_PROGRESS):
            provider.active_job_id = job.id
            await db_session.flush()
        return job

    return _make


@pytest.fixture
def make_broadcast_record(db_session: AsyncSession):
    async def _make(job: Job, providers: list[ProviderState], attempt: int = 1) -> BroadcastRecord:
        record = BroadcastRecord(
            job_id=job.id,
            tenant_code=job.tenant_code,
            attempt=attempt,
            provider_ids=[str(p.id) for p in providers],
            delivery={},
            created_at=NOW,
        )
        db_session.add(record)
        await db_session.flush()
        return record

    return _make


@pytest.fixture
def make_insurance_code(db_session: AsyncSession):
    """Insert a partner and one code for it."""

    async def _make(
        code: str = "CLAIM-1001",
        *,
        tenant_code: str = TENANT,
        max_uses: int = 1,
        used_count: int = 0,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
        partner_active: bool = True,
        bound_phone: Optional[str] = None,
        bound_email: Optional[str] = None,
    ) -> InsuranceCode:
        partner = InsurancePartner(
            partner_code=f"PARTNER-{uuid.uuid4().hex[:6].upper()}",
            name="Road Cover Insurance",
            tenant_code=tenant_code,
            is_active=partner_active,
        )
        db_session.add(partner)
        await db_session.flush()

        insurance_code = InsuranceCode(
            partner_id=partner.id,
            code=code,
            tenant_code=tenant_code,
            is_active=is_active,
            expires_at=expires_at or NOW + timedelta(days=30),
            bound_phone=bound_phone,
            bound_email=bound_email,
            max_uses=max_uses,
            used_count=used_count,
        )
        db_session.add(insurance_code)
        await db_session.flush()
        return insurance_code

    return _make


# ---------------------------------------------------------------------------
# Notification sender double
# ---------------------------------------------------------------------------


@pytest.fixture
def notifier() -> MagicMock:
    """Sender whose ``notify`` reports every provider as DELIVERED."""

    async def _notify(tokens_by_provider, summary):
        return {provider_id: DeliveryOutcome.DELIVERED for provider_id in tokens_by_provider}

    sender = MagicMock()
    sender.notify = AsyncMock(side_effect=_notify)
    return sender
