"""
Shared FastAPI dependencies for the dispatch backend.

Provides the async database session dependency used by all route handlers,
the tenant and actor resolvers (both read from headers set by the upstream
gateway), and the pluggable collaborators: Geo Index, notification sender
and payment verifier.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.core.config import settings
from src.integrations.fcm import NotificationSender, build_notification_sender
from src.integrations.stripe import PaymentVerifier, build_payment_verifier
from src.services import exceptions
from src.services.geoService import GeoIndex, build_geo_index
from src.services.jobStateManager import ActorType

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time.  The session factory
# produces lightweight ``AsyncSession`` instances that are scoped to a single
# request via the ``get_db`` dependency below.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session that is committed when the request
    succeeds and rolled back when it raises.

    Usage in a route::

        @router.get("/items")
        async def list_items(db: DBSession):
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ---------------------------------------------------------------------------
# Annotated type alias for convenience
# ---------------------------------------------------------------------------
DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------

def get_tenant(
    x_country_code: Annotated[Optional[str], Header()] = None,
) -> str:
    """Resolve the tenant from ``X-Country-Code``.

    Falls back to ``settings.default_country_code`` when the header is absent.
    """
    code = (x_country_code or settings.default_country_code).strip().upper()
    if len(code) != 2 or not code.isalpha():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_TENANT", "message": f"Unknown country code '{code}'"},
        )
    return code


Tenant = Annotated[str, Depends(get_tenant)]


# ---------------------------------------------------------------------------
# Actor resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActorContext:
    """Caller identity asserted by the auth gateway."""

    actor_id: uuid.UUID
    role: ActorType

    @property
    def is_operator(self) -> bool:
        return self.role in (ActorType.ADMIN, ActorType.SYSTEM)


def get_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
) -> ActorContext:
    """Read ``X-Actor-Id`` / ``X-Actor-Role``. Raises 401 if either is missing."""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Actor headers are required"},
        )
    try:
        actor_id = uuid.UUID(x_actor_id)
        role = ActorType(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Actor headers are malformed"},
        )
    return ActorContext(actor_id=actor_id, role=role)


CurrentActor = Annotated[ActorContext, Depends(get_actor)]


def require_role(actor: ActorContext, *roles: ActorType) -> None:
    """Raise 403 unless the actor has one of *roles*."""
    if actor.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "FORBIDDEN",
                "message": f"This action requires role: {', '.join(r.value for r in roles)}",
            },
        )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

_notifier: Optional[NotificationSender] = None
_payment_verifier: Optional[PaymentVerifier] = None


def get_geo_index(db: DBSession) -> GeoIndex:
    return build_geo_index(db)


def get_notifier() -> NotificationSender:
    global _notifier
    if _notifier is None:
        _notifier = build_notification_sender()
    return _notifier


def get_payment_verifier() -> PaymentVerifier:
    global _payment_verifier
    if _payment_verifier is None:
        _payment_verifier = build_payment_verifier()
    return _payment_verifier


GeoIndexDep = Annotated[GeoIndex, Depends(get_geo_index)]
NotifierDep = Annotated[NotificationSender, Depends(get_notifier)]
PaymentVerifierDep = Annotated[PaymentVerifier, Depends(get_payment_verifier)]


# ---------------------------------------------------------------------------
# Service error translation
# ---------------------------------------------------------------------------

_ERROR_STATUS: dict[type[exceptions.DispatchError], int] = {
    exceptions.JobNotFoundError: status.HTTP_404_NOT_FOUND,
    exceptions.ProviderNotFoundError: status.HTTP_404_NOT_FOUND,
    exceptions.JobValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    exceptions.InvalidLocationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    exceptions.InsuranceWaiverError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    exceptions.ServiceDisabledError: status.HTTP_403_FORBIDDEN,
    exceptions.NotJobOwnerError: status.HTTP_403_FORBIDDEN,
    exceptions.NotAssignedProviderError: status.HTTP_403_FORBIDDEN,
    exceptions.ProviderNotEligibleError: status.HTTP_403_FORBIDDEN,
    exceptions.BookingFeeNotSettledError: status.HTTP_402_PAYMENT_REQUIRED,
    exceptions.CustomerHasActiveJobError: status.HTTP_409_CONFLICT,
    exceptions.InvalidTransitionError: status.HTTP_409_CONFLICT,
    exceptions.ProviderCancelWindowExpiredError: status.HTTP_409_CONFLICT,
    exceptions.ConcurrentJobUpdateError: status.HTTP_409_CONFLICT,
    exceptions.WaiverCommitError: status.HTTP_409_CONFLICT,
}


def http_error(exc: exceptions.DispatchError) -> HTTPException:
    """Translate a service exception into an ``HTTPException``."""
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
    )
