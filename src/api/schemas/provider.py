"""
Pydantic v2 schemas for provider self-service endpoints.

Providers push their own position and availability; the dispatch core
reads them back through the Geo Index and the Eligibility Filter.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from src.models.provider import VerificationStatus


class LocationUpdateRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class AvailabilityUpdateRequest(BaseModel):
    is_online: bool
    push_token: Optional[str] = Field(
        default=None,
        max_length=512,
        description="FCM registration token; send an empty string to clear it",
    )


class ProviderStateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_code: str
    display_name: Optional[str] = None
    role: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    is_online: bool
    verification_status: VerificationStatus
    suspended_until: Optional[datetime] = None
    active_job_id: Optional[uuid.UUID] = None
    cancel_count: int
    rating: Decimal
    jobs_completed: int
