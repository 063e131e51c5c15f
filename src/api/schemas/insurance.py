"""
Pydantic v2 schemas for insurance code validation.
"""

from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, Field


class InsuranceValidateRequest(BaseModel):
    partner_id: uuid.UUID
    code: str = Field(min_length=1, max_length=64)
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=255)


class InsuranceValidateResponse(BaseModel):
    """Validation never consumes the code; usage is recorded on job creation."""

    valid: bool
    reason: Optional[str] = None
    message: str
    partner_code: Optional[str] = None
    remaining_uses: int = 0
