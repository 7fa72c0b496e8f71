"""
Async DB helpers for the check-in engine.
Uses SQLAlchemy 2.0 + asyncpg driver; no raw SQL strings in app code.

Every status transition on `check_in_queue` is a conditional update
(`WHERE id = :id AND status = :expected`); callers treat a zero row count
as "someone else owns this row".
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable
from uuid import uuid4

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)

from app.utils.phone import normalize_phone_number
from db.models import (
    Alert,
    Assessment,
    Base,
    CheckInQueueItem,
    CheckInResponse,
    DiagnosisInsert,
    Encouragement,
    MessageTemplate,
    SmsOptOut,
)

MIN_DAY = 1
MAX_DAY = 14

# ──────────────────────────────────────────────────────────────────────
# 1. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith(("postgres://", "postgresql://")):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = _build_url()
        if url.startswith("sqlite"):
            _engine = create_async_engine(url)
        else:
            _engine = create_async_engine(url, pool_size=5, max_overflow=5)
    return _engine

def init_engine(engine: AsyncEngine) -> None:
    """Install an already-built engine (tests, one-off scripts)."""
    global _engine, _session_maker
    _engine = engine
    _session_maker = None

def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    maker = _session_maker
    async def _session_scope():
        async with maker() as session:
            yield session
    return _session_scope()

def _insert(model):
    """Dialect-specific INSERT so ON CONFLICT works on Postgres and SQLite."""
    if get_engine().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────────────
# 2. DDL helper (tests / local bootstrap; production uses Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 3. Assessments (platform-owned, read mostly)
# ──────────────────────────────────────────────────────────────────────
async def get_assessment(assessment_id: str) -> Assessment | None:
    async for s in get_session():
        return await s.get(Assessment, assessment_id)


async def find_assessment_by_phone(phone_number: str) -> Assessment | None:
    """Most recent assessment for a number: normalised, raw, then last 10 digits."""
    normalized = normalize_phone_number(phone_number)
    raw = phone_number.strip()
    digits = "".join(ch for ch in normalized if ch.isdigit())

    conditions = [Assessment.phone_number == normalized]
    if raw and raw != normalized:
        conditions.append(Assessment.phone_number == raw)
    if digits:
        conditions.append(Assessment.phone_number.like(f"%{digits[-10:]}"))

    async for s in get_session():
        for cond in conditions:
            res = await s.execute(
                select(Assessment)
                .where(cond)
                .order_by(Assessment.created_at.desc())
                .limit(1)
            )
            found = res.scalar_one_or_none()
            if found is not None:
                return found
        return None


# ──────────────────────────────────────────────────────────────────────
# 4. Queue
# ──────────────────────────────────────────────────────────────────────
async def upsert_queue_items(rows: Iterable[dict[str, Any]]) -> int:
    """Insert queue rows keyed on (assessment_id, day).

    Existing rows are only rewritten while still queued, so an enqueue can
    never put a sent or failed item back in line.
    """
    rows = [{"id": str(uuid4()), "status": "queued", "created_at": _utcnow(), **r} for r in rows]
    if not rows:
        return 0
    stmt = _insert(CheckInQueueItem).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["assessment_id", "day"],
        set_={
            "due_at": stmt.excluded.due_at,
            "template_key": stmt.excluded.template_key,
            "channel": stmt.excluded.channel,
        },
        where=CheckInQueueItem.status == "queued",
    )
    async for s in get_session():
        await s.execute(stmt)
        await s.commit()
    return len(rows)


async def fetch_due_queue_items(now: datetime, limit: int = 100) -> list[CheckInQueueItem]:
    async for s in get_session():
        res = await s.execute(
            select(CheckInQueueItem)
            .where(
                CheckInQueueItem.status == "queued",
                CheckInQueueItem.due_at <= now,
            )
            .order_by(CheckInQueueItem.due_at)
            .limit(limit)
        )
        return list(res.scalars().all())


async def _transition(item_id: str, expected: str, **values) -> bool:
    async for s in get_session():
        res = await s.execute(
            update(CheckInQueueItem)
            .where(
                CheckInQueueItem.id == item_id,
                CheckInQueueItem.status == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount == 1


async def claim_queue_item(item_id: str, now: datetime) -> bool:
    """queued → sent. False if another run got there first."""
    return await _transition(item_id, "queued", status="sent", sent_at=now, last_error=None)


async def suppress_queue_item(item_id: str, reason: str, now: datetime) -> bool:
    """queued → sent without transmission; the reason marks it as suppressed."""
    return await _transition(
        item_id, "queued", status="sent", sent_at=now, suppression_reason=reason
    )


async def mark_queue_item_failed(item_id: str, err: str) -> bool:
    """sent → failed after a claimed send could not be transmitted."""
    return await _transition(item_id, "sent", status="failed", sent_at=None, last_error=err[:1000])


async def get_queue_item(item_id: str) -> CheckInQueueItem | None:
    async for s in get_session():
        return await s.get(CheckInQueueItem, item_id)


async def list_queue_days(assessment_id: str, channel: str = "sms") -> list[int]:
    async for s in get_session():
        res = await s.execute(
            select(CheckInQueueItem.day)
            .where(
                CheckInQueueItem.assessment_id == assessment_id,
                CheckInQueueItem.channel == channel,
                CheckInQueueItem.day.between(MIN_DAY, MAX_DAY),
            )
            .order_by(CheckInQueueItem.day)
        )
        return sorted(set(res.scalars().all()))


# ──────────────────────────────────────────────────────────────────────
# 5. Suppression inputs
# ──────────────────────────────────────────────────────────────────────
async def has_red_flag_alert(assessment_id: str) -> bool:
    async for s in get_session():
        res = await s.execute(
            select(func.count())
            .select_from(Alert)
            .where(Alert.assessment_id == assessment_id, Alert.type == "red_flag")
        )
        return res.scalar_one() > 0


async def is_phone_opted_out(phone_number: str) -> bool:
    async for s in get_session():
        found = await s.get(SmsOptOut, normalize_phone_number(phone_number))
        return found is not None


async def record_sms_opt_out(phone_number: str, origin: str) -> int:
    """Record the opt-out and flip the flags on every matching assessment."""
    normalized = normalize_phone_number(phone_number)
    now = _utcnow()
    stmt = _insert(SmsOptOut).values(
        phone_number=normalized, opted_out_at=now, opt_out_source=origin
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["phone_number"],
        set_={"opted_out_at": stmt.excluded.opted_out_at, "opt_out_source": stmt.excluded.opt_out_source},
    )
    numbers = {normalized, phone_number.strip()}
    async for s in get_session():
        await s.execute(stmt)
        res = await s.execute(
            update(Assessment)
            .where(Assessment.phone_number.in_(numbers))
            .values(sms_opted_out=True, sms_opt_in=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount


# ──────────────────────────────────────────────────────────────────────
# 6. Content lookups
# ──────────────────────────────────────────────────────────────────────
async def get_template(key: str) -> MessageTemplate | None:
    async for s in get_session():
        return await s.get(MessageTemplate, key)


async def get_diagnosis_insert(diagnosis_code: str, day: int, branch: str) -> str | None:
    async for s in get_session():
        res = await s.execute(
            select(DiagnosisInsert.insert_text)
            .where(
                DiagnosisInsert.diagnosis_code == diagnosis_code,
                DiagnosisInsert.day == day,
                DiagnosisInsert.branch == branch,
            )
            .limit(1)
        )
        return res.scalar_one_or_none()


async def list_encouragements(limit: int = 100) -> list[str]:
    async for s in get_session():
        res = await s.execute(select(Encouragement.text).limit(limit))
        return list(res.scalars().all())


# ──────────────────────────────────────────────────────────────────────
# 7. Responses
# ──────────────────────────────────────────────────────────────────────
async def upsert_response(
    assessment_id: str,
    day: int,
    value: str,
    source: str,
    pain_score: int | None = None,
    note: str | None = None,
    created_at: datetime | None = None,
) -> None:
    """Write the (assessment_id, day) response.

    Last writer wins on every field except `note`: a stored note is kept.
    """
    stmt = _insert(CheckInResponse).values(
        id=str(uuid4()),
        assessment_id=assessment_id,
        day=day,
        value=value,
        source=source,
        pain_score=pain_score,
        note=note,
        created_at=created_at or _utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["assessment_id", "day"],
        set_={
            "value": stmt.excluded.value,
            "source": stmt.excluded.source,
            "pain_score": stmt.excluded.pain_score,
            "created_at": stmt.excluded.created_at,
            "note": func.coalesce(CheckInResponse.note, stmt.excluded.note),
        },
    )
    async for s in get_session():
        await s.execute(stmt)
        await s.commit()


async def save_note(assessment_id: str, day: int, value: str, note: str) -> bool:
    """Attach a note to a day's response. Returns False if one was already stored."""
    async for s in get_session():
        res = await s.execute(
            update(CheckInResponse)
            .where(
                CheckInResponse.assessment_id == assessment_id,
                CheckInResponse.day == day,
                CheckInResponse.note.is_(None),
            )
            .values(note=note)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        if res.rowcount == 1:
            return True
        existing = await s.execute(
            select(CheckInResponse.id).where(
                CheckInResponse.assessment_id == assessment_id,
                CheckInResponse.day == day,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return False
    # No response row yet (the landing write was lost); create one with the note.
    await upsert_response(assessment_id, day, value, "email_link", note=note)
    return True


async def get_response(assessment_id: str, day: int) -> CheckInResponse | None:
    async for s in get_session():
        res = await s.execute(
            select(CheckInResponse).where(
                CheckInResponse.assessment_id == assessment_id,
                CheckInResponse.day == day,
            )
        )
        return res.scalar_one_or_none()


async def list_response_days(assessment_id: str) -> list[int]:
    async for s in get_session():
        res = await s.execute(
            select(CheckInResponse.day).where(
                CheckInResponse.assessment_id == assessment_id,
                CheckInResponse.day.between(MIN_DAY, MAX_DAY),
            )
        )
        return sorted(set(res.scalars().all()))


async def list_scored_sms_days(assessment_id: str) -> list[int]:
    async for s in get_session():
        res = await s.execute(
            select(CheckInResponse.day)
            .where(
                CheckInResponse.assessment_id == assessment_id,
                CheckInResponse.source == "sms_reply",
                CheckInResponse.pain_score.is_not(None),
                CheckInResponse.day.between(MIN_DAY, MAX_DAY),
            )
            .order_by(CheckInResponse.day)
        )
        return sorted(set(res.scalars().all()))


# ──────────────────────────────────────────────────────────────────────
# 8. Alerts
# ──────────────────────────────────────────────────────────────────────
async def insert_alert(assessment_id: str, payload: dict[str, Any], type_: str = "red_flag") -> str:
    alert = Alert(id=str(uuid4()), assessment_id=assessment_id, type=type_, payload=payload)
    async for s in get_session():
        s.add(alert)
        await s.commit()
    return alert.id


async def list_alerts(assessment_id: str) -> list[Alert]:
    async for s in get_session():
        res = await s.execute(
            select(Alert)
            .where(Alert.assessment_id == assessment_id)
            .order_by(Alert.created_at)
        )
        return list(res.scalars().all())


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
