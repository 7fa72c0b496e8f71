"""Turns due `check_in_queue` rows into sent messages, exactly once.

Item lifecycle::

    queued --claim--> sent --transport error--> failed
    queued --suppressed--> sent (suppression_reason set, nothing transmitted)

The claim is a conditional update (``WHERE status = 'queued'``) taken
*before* the transport call, so overlapping runs can both select an item but
only the run that wins the claim transmits it. Failed items stay failed until
an operator re-queues them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import db
from app.services.content import (
    ContentResolver,
    parse_template_key,
    render_email_html,
    render_sms_text,
    resolve_diagnosis_code,
)
from app.services.tokens import TokenCodec
from app.types.checkin_contract import CHECKIN_VALUES, DispatchResult, TokenPayload
from app.utils import email as email_util
from app.utils import sms as sms_util
from app.utils.errors import TransportError
from app.utils.phone import mask
from app.utils.timez import is_before_start, is_within_send_window, now_utc

_LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
FREE_TIER = "free"


@dataclass
class OutboundMessage:
    channel: str
    to: Optional[str]
    subject: str
    body: str


def _send_email_message(msg: OutboundMessage) -> None:
    email_util.send_email(msg.to, msg.subject, msg.body)


def _send_sms_message(msg: OutboundMessage) -> None:
    sms_util.send_sms(msg.to, msg.body)


DEFAULT_TRANSPORTS: dict[str, Callable[[OutboundMessage], Any]] = {
    "email": _send_email_message,
    "sms": _send_sms_message,
}


def normalize_limit(raw: Any, default: int = DEFAULT_LIMIT, cap: int = MAX_LIMIT) -> int:
    """Floor numeric input, ignore non-positive or non-numeric values, cap at ``cap``."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return default
    try:
        value = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return default
    if value <= 0:
        return default
    return min(value, cap)


class DispatchEngine:
    def __init__(
        self,
        codec: TokenCodec,
        resolver: ContentResolver,
        app_url: str,
        transports: Optional[dict[str, Callable[[OutboundMessage], Any]]] = None,
        store: Any = db,
        send_tz: str = "America/New_York",
        send_window: str = "",
        start_at: str = "",
        sandbox: bool = False,
    ):
        self.codec = codec
        self.resolver = resolver
        self.app_url = app_url.rstrip("/")
        self.transports = transports if transports is not None else dict(DEFAULT_TRANSPORTS)
        self.store = store
        self.send_tz = send_tz
        self.send_window = send_window
        self.start_at = start_at
        self.sandbox = sandbox

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    async def dispatch_due(
        self,
        limit: int = DEFAULT_LIMIT,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        now = now or now_utc()
        dry_run = dry_run or self.sandbox
        result = DispatchResult(dry_run=dry_run)

        items = await self.store.fetch_due_queue_items(now, min(max(limit, 1), MAX_LIMIT))
        result.total = len(items)
        if not items:
            _LOGGER.info("dispatch_no_due_messages")
            return result

        if is_before_start(now, self.start_at):
            _LOGGER.info("dispatch_skip_before_start count=%s start_at=%s", len(items), self.start_at)
            result.deferred = len(items)
            return result
        window = is_within_send_window(now, self.send_tz, self.send_window)
        if not window.allowed:
            _LOGGER.info("dispatch_skip_window count=%s reason=%s", len(items), window.reason)
            result.deferred = len(items)
            return result

        _LOGGER.info("dispatch_start count=%s dry_run=%s", len(items), dry_run)
        for item in items:
            try:
                await self._process_item(item, now, dry_run, result)
            except Exception as exc:  # noqa: BLE001
                result.errors += 1
                result.error_details.append(f"{item.id}: processing error")
                _LOGGER.exception("dispatch_message_error item=%s err=%s", item.id, exc)

        _LOGGER.info(
            "dispatch_complete total=%s processed=%s sent=%s suppressed=%s errors=%s",
            result.total, result.processed, result.sent, result.suppressed, result.errors,
        )
        return result

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------
    async def _process_item(self, item, now: datetime, dry_run: bool, result: DispatchResult) -> None:
        assessment = await self.store.get_assessment(item.assessment_id)
        reason = await self.suppression_reason(item, assessment)
        if reason:
            if dry_run:
                _LOGGER.info("[DRY RUN] would suppress item=%s reason=%s", item.id, reason)
            elif not await self.store.suppress_queue_item(item.id, reason, now):
                _LOGGER.info("dispatch_claim_lost item=%s", item.id)
                return
            else:
                _LOGGER.info("dispatch_suppressed assessment=%s day=%s reason=%s",
                             item.assessment_id, item.day, reason)
            result.suppressed += 1
            result.processed += 1
            return

        message = await self.compose(item, assessment)

        if dry_run:
            _LOGGER.info("[DRY RUN] would send item=%s channel=%s to=%s day=%s subject=%r",
                         item.id, message.channel, mask(message.to), item.day, message.subject)
            result.processed += 1
            return

        if not await self.store.claim_queue_item(item.id, now):
            _LOGGER.info("dispatch_claim_lost item=%s", item.id)
            return

        try:
            if not message.to:
                raise TransportError(f"no_{'phone' if item.channel == 'sms' else 'email'}")
            transport = self.transports.get(item.channel)
            if transport is None:
                raise TransportError(f"unsupported_channel:{item.channel}")
            await asyncio.to_thread(transport, message)
        except Exception as exc:  # noqa: BLE001
            await self.store.mark_queue_item_failed(item.id, str(exc) or exc.__class__.__name__)
            result.errors += 1
            result.error_details.append(f"{item.id}: {exc}")
            _LOGGER.error("dispatch_send_error item=%s channel=%s err=%s", item.id, item.channel, exc)
            return

        result.sent += 1
        result.processed += 1
        _LOGGER.info("dispatch_sent assessment=%s day=%s channel=%s",
                     item.assessment_id[:8], item.day, item.channel)

    async def suppression_reason(self, item, assessment) -> Optional[str]:
        """Current clinical/tier/consent state that makes this message moot."""
        if assessment is None:
            return "assessment_missing"
        if (assessment.guide_type or "").strip().lower() == "urgent_symptoms":
            return "urgent_symptoms"
        if await self.store.has_red_flag_alert(assessment.id):
            return "red_flag"
        if (assessment.payment_tier or FREE_TIER) != FREE_TIER:
            return "tier_upgraded"
        if item.channel == "email" and assessment.email_opted_out:
            return "opted_out"
        if item.channel == "sms":
            if assessment.sms_opted_out or not assessment.sms_opt_in:
                return "opted_out"
            if assessment.phone_number and await self.store.is_phone_opted_out(assessment.phone_number):
                return "opted_out"
        return None

    def build_links(self, assessment_id: str, day: int) -> dict[str, str]:
        links = {}
        for value in CHECKIN_VALUES:
            token = self.codec.sign(TokenPayload(assessment_id=assessment_id, day=day, value=value))
            links[value] = f"{self.app_url}/c/i?token={token}&source=checkin_d{day}"
        return links

    async def compose(self, item, assessment) -> OutboundMessage:
        _, branch = parse_template_key(item.template_key)
        template = await self.resolver.resolve_template(item.template_key, item.day, item.channel)
        insert = await self.resolver.resolve_insert_text(
            resolve_diagnosis_code(assessment.guide_type), item.day, branch
        )
        links = self.build_links(item.assessment_id, item.day)

        if item.channel == "sms":
            body = render_sms_text(template, item.day, insert, links)
            return OutboundMessage("sms", assessment.phone_number, template.subject, body)

        encouragement = await self.resolver.resolve_encouragement_text()
        body = render_email_html(template, item.day, insert, encouragement, links)
        return OutboundMessage(item.channel, assessment.email, template.subject, body)
