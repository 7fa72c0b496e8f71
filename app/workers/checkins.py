"""Celery tasks driving the check-in dispatcher."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

import db
from app.celery_app import celery_app
from app.services.enqueue import enqueue_checkins_for_assessment
from app.services.factory import build_dispatch_engine
from config import settings

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    """Run on a fresh loop; the pooled engine cannot outlive it."""
    async def _wrapped():
        try:
            return await coro
        finally:
            await db.dispose_engine()
    return asyncio.run(_wrapped())


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.checkins.dispatch_due", bind=True)
def dispatch_due(self, limit: int | None = None, dry_run: bool = False):  # noqa: D401
    """Run one dispatch pass and return its counters."""
    if not settings.CHECKINS_ENABLED:
        _LOGGER.info("dispatch_task_skip reason=disabled")
        return None
    engine = build_dispatch_engine()
    try:
        result = _run(engine.dispatch_due(limit or settings.CHECKINS_DISPATCH_LIMIT, dry_run=dry_run))
    except Exception as exc:  # noqa: BLE001
        # Claimed items never go back to queued, so a retry only sees what is still due.
        raise self.retry(exc=exc, countdown=30)
    return result.model_dump()


@celery_app.task(name="app.workers.checkins.enqueue_for_assessment", bind=True, max_retries=3)
def enqueue_for_assessment(self, assessment_id: str):  # noqa: D401
    """Schedule check-ins for a newly completed assessment."""
    try:
        result = _run(enqueue_checkins_for_assessment(assessment_id))
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc)
    return result.model_dump()
