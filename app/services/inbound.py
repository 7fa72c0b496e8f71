"""Inbound SMS replies (Twilio webhook).

Flow for one callback:

1. Authenticate the Twilio signature against the exact public URL. Nothing
   else runs on an unauthenticated request.
2. Opt-out keyword → opt-out collaborator + confirmation.
3. Otherwise the body must be a 0–10 pain score, or the sender gets a retry
   prompt and nothing is written.
4. Resolve which check-in day the score answers, upsert the response and
   recompute the SMS streak.

Every path, including timeouts and internal errors, returns TwiML with a
200 status.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union
from urllib.parse import parse_qsl

from twilio.request_validator import RequestValidator
from twilio.twiml.messaging_response import MessagingResponse

import db
from app.types.checkin_contract import MAX_DAY, MIN_DAY
from app.utils.phone import mask
from app.utils.timez import as_utc, now_utc

_LOGGER = logging.getLogger(__name__)

STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
OPT_OUT_ORIGIN = "sms_stop_incoming"

REPLY_REJECTED = "Unable to process your message."
REPLY_MISSING_SENDER = "Unable to process your message. Please try again."
REPLY_OPTED_OUT = "You have been unsubscribed from PainOptix SMS messages. Reply START to resubscribe."
REPLY_RETRY = "Please reply with a number from 0 to 10. Reply STOP to opt out."
REPLY_NO_TRACKER = (
    "We could not find an active tracker for this number. "
    "Please complete a new PainOptix assessment to begin."
)
REPLY_TEMPORARY_ISSUE = "We hit a temporary issue processing your message. Please try again shortly."

_SCORE_RE = re.compile(r"^\d{1,2}$")

OptOutHandler = Callable[[str, str], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────────────────────────────

def build_twiml(message: Optional[str]) -> str:
    resp = MessagingResponse()
    if message:
        resp.message(message)
    return str(resp)


def normalize_keyword(body: str) -> str:
    return re.sub(r"[^A-Z]", "", (body or "").upper())


def is_opt_out(body: str) -> bool:
    return normalize_keyword(body) in STOP_KEYWORDS


def parse_pain_score(body: str) -> Optional[int]:
    trimmed = (body or "").strip()
    if not _SCORE_RE.match(trimmed):
        return None
    score = int(trimmed)
    if score < 0 or score > 10:
        return None
    return score


def compute_legacy_value(pain_score: int, initial_pain_score: Optional[int]) -> str:
    """better/same/worse against the baseline; any difference counts."""
    if initial_pain_score is None:
        return "same"
    if pain_score < initial_pain_score:
        return "better"
    if pain_score > initial_pain_score:
        return "worse"
    return "same"


def clamp_day(day: int) -> int:
    return max(MIN_DAY, min(MAX_DAY, day))


def derive_day_from_created_at(created_at: Optional[datetime], now: datetime) -> int:
    if created_at is None:
        return MIN_DAY
    elapsed = as_utc(now) - as_utc(created_at)
    return clamp_day(int(elapsed.total_seconds() // 86400) + 1)


def candidate_days(queue_days: Iterable[int]) -> list[int]:
    days = sorted({int(d) for d in queue_days if MIN_DAY <= int(d) <= MAX_DAY})
    return days or list(range(MIN_DAY, MAX_DAY + 1))


def resolve_target_day(
    queue_days: Iterable[int],
    responded_days: Iterable[int],
    created_at: Optional[datetime],
    now: datetime,
) -> int:
    """First scheduled day without a response, else the elapsed-time day."""
    answered = set(responded_days)
    for day in candidate_days(queue_days):
        if day not in answered:
            return day
    return derive_day_from_created_at(created_at, now)


def compute_streak(scored_days: Iterable[int], queue_days: Iterable[int] = ()) -> int:
    """Consecutive scheduled days, from the first, that have an SMS score.

    Anchored at the first scheduled day; day 1 when nothing is scheduled.
    """
    have = set(scored_days)
    streak = 0
    for day in candidate_days(queue_days):
        if day not in have:
            break
        streak += 1
    return streak


def parse_form(raw_body: Union[bytes, str]) -> dict[str, str]:
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    return dict(parse_qsl(raw_body, keep_blank_values=True))


# ──────────────────────────────────────────────────────────────────────
# Processor
# ──────────────────────────────────────────────────────────────────────

class InboundMessageProcessor:
    def __init__(
        self,
        auth_token: Optional[str],
        store: Any = db,
        opt_out: Optional[OptOutHandler] = None,
        timeout_seconds: float = 8.0,
    ):
        self.auth_token = auth_token
        self.store = store
        self.opt_out = opt_out or store.record_sms_opt_out
        self.timeout_seconds = timeout_seconds

    def is_authentic(self, params: dict[str, str], signature: Optional[str], urls: Sequence[str]) -> bool:
        if not self.auth_token or not signature:
            return False
        validator = RequestValidator(self.auth_token)
        return any(validator.validate(url, params, signature) for url in urls if url)

    async def handle_inbound(
        self,
        raw_body: Union[bytes, str],
        signature: Optional[str],
        request_url: Union[str, Sequence[str]],
        now: Optional[datetime] = None,
    ) -> str:
        """Return TwiML for one Twilio callback. Never raises."""
        urls = [request_url] if isinstance(request_url, str) else list(request_url)
        try:
            return await asyncio.wait_for(
                self._handle(raw_body, signature, urls, now or now_utc()),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            _LOGGER.error("sms_inbound_timeout after=%ss", self.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("sms_inbound_error err=%s", exc)
        return build_twiml(REPLY_TEMPORARY_ISSUE)

    async def _handle(self, raw_body, signature, urls: list[str], now: datetime) -> str:
        params = parse_form(raw_body)
        if not self.is_authentic(params, signature, urls):
            _LOGGER.warning("sms_inbound_rejected reason=signature")
            return build_twiml(REPLY_REJECTED)

        sender = (params.get("From") or "").strip()
        body = (params.get("Body") or "").strip()
        if not sender:
            return build_twiml(REPLY_MISSING_SENDER)

        if is_opt_out(body):
            await self.opt_out(sender, OPT_OUT_ORIGIN)
            _LOGGER.info("sms_opt_out from=%s", mask(sender))
            return build_twiml(REPLY_OPTED_OUT)

        score = parse_pain_score(body)
        if score is None:
            return build_twiml(REPLY_RETRY)

        assessment = await self.store.find_assessment_by_phone(sender)
        if assessment is None:
            _LOGGER.info("sms_inbound_no_assessment from=%s", mask(sender))
            return build_twiml(REPLY_NO_TRACKER)

        await self.record_score(assessment, score, now)
        return build_twiml(
            f"Got it! Pain level: {score}/10. We will check in again tomorrow. Reply STOP to opt out."
        )

    async def record_score(self, assessment, score: int, now: datetime) -> tuple[int, int]:
        """Upsert the score for the resolved day; return (day, streak)."""
        queue_days = await self.store.list_queue_days(assessment.id, "sms")
        responded = await self.store.list_response_days(assessment.id)
        day = resolve_target_day(queue_days, responded, assessment.created_at, now)
        value = compute_legacy_value(score, assessment.initial_pain_score)

        await self.store.upsert_response(
            assessment.id, day, value, "sms_reply", pain_score=score, created_at=now
        )
        _LOGGER.info("sms_reply assessment=%s day=%s pain_score=%s value=%s",
                     assessment.id, day, score, value)

        streak = compute_streak(await self.store.list_scored_sms_days(assessment.id), queue_days)
        _LOGGER.info("streak_count assessment=%s streak=%s day=%s", assessment.id, streak, day)
        return day, streak
