"""Schedules check-ins when an assessment qualifies."""

from __future__ import annotations

import logging
from typing import Any, Optional

import db
from app.types.checkin_contract import LEGACY_DAYS, MAX_DAY, MIN_DAY, EnqueueResult
from app.utils.timez import local_due_at, now_utc
from config import settings

_LOGGER = logging.getLogger(__name__)


def sms_eligible(assessment) -> bool:
    return bool(assessment.phone_number) and bool(assessment.sms_opt_in) and not assessment.sms_opted_out


def plan_queue_rows(assessment, daily: bool, send_tz: str) -> tuple[list[dict[str, Any]], Optional[str]]:
    """Queue rows for an assessment, or ([], reason) when nothing can be scheduled."""
    created_at = assessment.created_at or now_utc()

    if daily and sms_eligible(assessment):
        return [
            {
                "assessment_id": assessment.id,
                "day": day,
                "due_at": local_due_at(created_at, day, send_tz),
                "template_key": f"sms.day{day}",
                "channel": "sms",
            }
            for day in range(MIN_DAY, MAX_DAY + 1)
        ], None

    if assessment.email:
        channel = "email"
    elif sms_eligible(assessment):
        channel = "sms"
    else:
        return [], "no_contact"

    return [
        {
            "assessment_id": assessment.id,
            "day": day,
            "due_at": local_due_at(created_at, day, send_tz),
            "template_key": f"day{day}.initial",
            "channel": channel,
        }
        for day in LEGACY_DAYS
    ], None


async def enqueue_checkins_for_assessment(
    assessment_id: str,
    store: Any = db,
) -> EnqueueResult:
    if not settings.CHECKINS_ENABLED:
        return EnqueueResult(skipped_reason="disabled")

    assessment = await store.get_assessment(assessment_id)
    if assessment is None:
        _LOGGER.error("enqueue_assessment_not_found assessment=%s", assessment_id)
        return EnqueueResult(skipped_reason="assessment_not_found")

    # urgent_symptoms users were sent to in-person care; no follow-ups.
    if (assessment.guide_type or "").strip().lower() == "urgent_symptoms":
        _LOGGER.info("enqueue_skip assessment=%s reason=urgent_symptoms", assessment_id)
        return EnqueueResult(skipped_reason="urgent_symptoms")

    if (assessment.payment_tier or "free") != "free":
        _LOGGER.info("enqueue_skip assessment=%s reason=purchased", assessment_id)
        return EnqueueResult(skipped_reason="purchased")

    rows, reason = plan_queue_rows(assessment, settings.CHECKINS_DAILY, settings.CHECKINS_SEND_TZ)
    if reason:
        _LOGGER.error("enqueue_skip assessment=%s reason=%s", assessment_id, reason)
        return EnqueueResult(skipped_reason=reason)

    created = await store.upsert_queue_items(rows)
    _LOGGER.info("enqueue_done assessment=%s count=%s", assessment_id, created)
    return EnqueueResult(created=created)
