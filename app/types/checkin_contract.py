"""Pydantic models shared by the check-in services, workers and API.

Kept free of FastAPI and database imports so they can be used from Celery
workers and tests alike.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

CheckInValue = Literal["better", "same", "worse"]
Branch = Literal["initial", "better", "same", "worse"]
Channel = Literal["email", "sms"]
TokenScope = Literal["reply", "note"]

CHECKIN_VALUES: tuple[str, ...] = ("better", "same", "worse")
LEGACY_DAYS: tuple[int, ...] = (3, 7, 14)
MIN_DAY = 1
MAX_DAY = 14


class TokenPayload(BaseModel):
    """Signed content of a reply or note link."""

    assessment_id: str = Field(min_length=1)
    day: int = Field(ge=MIN_DAY, le=MAX_DAY)
    value: CheckInValue
    scope: TokenScope = "reply"
    exp: Optional[int] = None

    @field_validator("day", mode="before")
    def _strict_day(cls, v):  # noqa: N805
        # JSON floats or strings are never produced by sign(); refuse them.
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("day must be an integer")
        return v


class DispatchResult(BaseModel):
    total: int = 0
    processed: int = 0
    errors: int = 0
    sent: int = 0
    suppressed: int = 0
    deferred: int = 0
    dry_run: bool = False
    error_details: list[str] = Field(default_factory=list)


class EnqueueRequest(BaseModel):
    assessment_id: str = Field(min_length=1)


class EnqueueResult(BaseModel):
    created: int = 0
    skipped_reason: Optional[str] = None
