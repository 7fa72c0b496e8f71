"""ORM models for the check-in engine.

`assessments` is owned by the wider platform; the engine only reads it and
flips the SMS opt-out flags. Everything else is written by the engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Assessment(Base):
    __tablename__ = "assessments"

    id:                 Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    email:              Mapped[str | None]
    phone_number:       Mapped[str | None]
    guide_type:         Mapped[str | None]
    initial_pain_score: Mapped[int | None]
    payment_tier:       Mapped[str] = mapped_column(default="free")
    sms_opt_in:         Mapped[bool] = mapped_column(default=False)
    sms_opted_out:      Mapped[bool] = mapped_column(default=False)
    email_opted_out:    Mapped[bool] = mapped_column(default=False)
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at:         Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_assessments_phone_number", "phone_number"),)


class CheckInQueueItem(Base):
    __tablename__ = "check_in_queue"

    id:                 Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    assessment_id:      Mapped[str]
    day:                Mapped[int]
    due_at:             Mapped[datetime] = mapped_column(DateTime(timezone=True))
    template_key:       Mapped[str]
    channel:            Mapped[str] = mapped_column(default="email")
    status:             Mapped[str] = mapped_column(default="queued")
    sent_at:            Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error:         Mapped[str | None] = mapped_column(Text)
    suppression_reason: Mapped[str | None]
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("assessment_id", "day", name="uq_check_in_queue_assessment_day"),
        Index("ix_check_in_queue_status_due_at", "status", "due_at"),
    )


class CheckInResponse(Base):
    __tablename__ = "check_in_responses"

    id:            Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    assessment_id: Mapped[str]
    day:           Mapped[int]
    value:         Mapped[str]
    pain_score:    Mapped[int | None]
    source:        Mapped[str]
    note:          Mapped[str | None] = mapped_column(Text)
    created_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("assessment_id", "day", name="uq_check_in_responses_assessment_day"),
    )


class Alert(Base):
    __tablename__ = "alerts"

    id:            Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    assessment_id: Mapped[str]
    type:          Mapped[str] = mapped_column(default="red_flag")
    payload:       Mapped[dict[str, Any]] = mapped_column(JSON)
    created_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (Index("ix_alerts_assessment_type", "assessment_id", "type"),)


class DiagnosisInsert(Base):
    __tablename__ = "diagnosis_inserts"

    id:             Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    diagnosis_code: Mapped[str]
    day:            Mapped[int]
    branch:         Mapped[str]
    insert_text:    Mapped[str] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("diagnosis_code", "day", "branch", name="uq_diagnosis_inserts_lookup"),
    )


class MessageTemplate(Base):
    __tablename__ = "message_templates"

    key:             Mapped[str] = mapped_column(String, primary_key=True)
    subject:         Mapped[str | None]
    shell_text:      Mapped[str] = mapped_column(Text)
    disclaimer_text: Mapped[str | None] = mapped_column(Text)
    channel:         Mapped[str] = mapped_column(default="email")


class Encouragement(Base):
    __tablename__ = "encouragements"

    id:   Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    text: Mapped[str] = mapped_column(Text, unique=True)


class SmsOptOut(Base):
    __tablename__ = "sms_opt_outs"

    phone_number:   Mapped[str] = mapped_column(String, primary_key=True)
    opted_out_at:   Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    opt_out_source: Mapped[str | None]
