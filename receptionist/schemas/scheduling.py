"""Scheduling operation results.

These are returned to the model as function outputs, so every field must be
JSON serializable and ``message`` must read naturally when spoken.
"""

import uuid
from typing import Literal

from pydantic import BaseModel, Field


class AvailabilityResult(BaseModel):
    """Open start times for one local date."""

    success: bool = True
    available: bool
    closed: bool = False
    date: str
    slots: list[str] = Field(default_factory=list, description="HH:MM local start times")
    message: str
    reason: Literal["invalid_date"] | None = None


class BookingResult(BaseModel):
    """Outcome of a booking attempt."""

    success: bool
    reason: Literal["unavailable", "invalid_input", "persistence_error"] | None = None
    message: str
    appointment_id: uuid.UUID | None = None
    customer_id: uuid.UUID | None = None


class CancellationResult(BaseModel):
    """Outcome of a cancellation request."""

    success: bool
    reason: Literal["not_found", "invalid_input", "persistence_error"] | None = None
    message: str
    cancelled_count: int = 0
