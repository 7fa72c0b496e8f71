from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

import db
import db.db as db_module
from app.services.content import ContentResolver
from app.services.dispatch import DispatchEngine
from app.services.tokens import TokenCodec
from db.models import Assessment, CheckInQueueItem

SECRET = "unit-test-secret"
CREATED_AT = datetime(2025, 3, 1, 15, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh SQLite database installed as the module-level engine."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkins.db'}")
    db_module.init_engine(engine)
    await db.create_all()
    yield db
    await db.dispose_engine()


@pytest.fixture
def codec():
    return TokenCodec(SECRET)


@pytest.fixture
def make_assessment(store):
    async def _make(**fields) -> Assessment:
        values = {
            "id": str(uuid4()),
            "email": "pat@example.com",
            "phone_number": None,
            "guide_type": "sciatica",
            "initial_pain_score": 6,
            "payment_tier": "free",
            "created_at": CREATED_AT,
        }
        values.update(fields)
        assessment = Assessment(**values)
        async for s in db_module.get_session():
            s.add(assessment)
            await s.commit()
        return assessment
    return _make


@pytest.fixture
def add_queue_item(store):
    async def _add(assessment_id: str, day: int, due_at: datetime, channel: str = "email",
                   template_key: str | None = None) -> CheckInQueueItem:
        await db.upsert_queue_items([{
            "assessment_id": assessment_id,
            "day": day,
            "due_at": due_at,
            "template_key": template_key or f"day{day}.initial",
            "channel": channel,
        }])
        return await fetch_queue_item(assessment_id, day)
    return _add


async def fetch_queue_item(assessment_id: str, day: int) -> CheckInQueueItem | None:
    async for s in db_module.get_session():
        res = await s.execute(
            select(CheckInQueueItem).where(
                CheckInQueueItem.assessment_id == assessment_id,
                CheckInQueueItem.day == day,
            )
        )
        return res.scalar_one_or_none()


@pytest.fixture
def queue_item_lookup():
    return fetch_queue_item


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def dispatch_engine(store, codec, outbox):
    def _build(**kwargs) -> DispatchEngine:
        transports = kwargs.pop("transports", None) or {"email": outbox.append, "sms": outbox.append}
        resolver = ContentResolver(
            lookup_insert=db.get_diagnosis_insert,
            list_encouragements=db.list_encouragements,
            lookup_template=db.get_template,
        )
        return DispatchEngine(
            codec=codec,
            resolver=resolver,
            app_url="https://app.test",
            transports=transports,
            store=db,
            **kwargs,
        )
    return _build
