# app/models/api/follow_up_request.py
"""
Follow-up API request models.
Used by routes for input validation.
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class LogActivityRequest(BaseModel):
    """Request for logging an activity against a contact."""

    type: str = Field(
        ..., min_length=1, max_length=50, description="Activity type (call, whatsapp, meeting...)"
    )
    details: str | None = Field(default=None, max_length=2000, description="Free-text notes")
    timestamp: datetime | None = Field(
        default=None, description="When the activity happened (default: now)"
    )

    @field_validator("type")
    @classmethod
    def strip_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("type must not be blank")
        return value


class RefreshFollowUpsRequest(BaseModel):
    """Request for a forced follow-up recalculation."""

    labels: list[str] = Field(default_factory=list, description="Label filter (any match)")
