"""Red-flag detection for free-text check-in notes."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

import db

_LOGGER = logging.getLogger(__name__)

RED_FLAG_TERMS: tuple[str, ...] = (
    "bladder",
    "bowel",
    "saddle",
    "numbness",
    "fever",
    "trauma",
    "progressive weakness",
    "loss of control",
    "incontinence",
    "weight loss",
)
NOTE_EXCERPT_LENGTH = 100
WEBHOOK_TIMEOUT_SECONDS = 2

AlertWriter = Callable[[str, dict], Awaitable[str]]


def scan_note(text: Optional[str], terms: tuple[str, ...] = RED_FLAG_TERMS) -> list[str]:
    """Every vocabulary term found in ``text`` (case-insensitive substring)."""
    if not text or not isinstance(text, str):
        return []
    lowered = text.lower()
    return [term for term in terms if term in lowered]


class AlertDetector:
    def __init__(self, write_alert: Optional[AlertWriter] = None, terms: tuple[str, ...] = RED_FLAG_TERMS):
        self._write_alert = write_alert or db.insert_alert
        self.terms = terms

    def scan(self, text: Optional[str]) -> list[str]:
        return scan_note(text, self.terms)

    async def raise_alert(self, assessment_id: str, day: int, note: str, matched: list[str]) -> str:
        """Always a new row: each submission is reviewed on its own."""
        payload = {
            "day": day,
            "matched": list(matched),
            "note_excerpt": note[:NOTE_EXCERPT_LENGTH],
        }
        alert_id = await self._write_alert(assessment_id, payload)
        _LOGGER.warning("red_flag_alert assessment=%s day=%s matched=%s", assessment_id, day, matched)
        return alert_id


@retry(
    wait=wait_random_exponential(multiplier=0.5, max=4),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    reraise=True,
)
def _post_webhook(url: str, body: dict) -> None:
    resp = requests.post(url, json=body, timeout=WEBHOOK_TIMEOUT_SECONDS)
    resp.raise_for_status()


def notify_alert_webhook(url: Optional[str], assessment_id: str, matched: list[str]) -> bool:
    """Best-effort page to the on-call channel; the alert row is the record."""
    if not url:
        return False
    body = {
        "assessment_id": assessment_id,
        "matched_terms": matched,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        _post_webhook(url, body)
    except requests.RequestException as exc:
        _LOGGER.warning("red_flag_webhook_failed assessment=%s err=%s", assessment_id, exc)
        return False
    _LOGGER.info("red_flag_webhook_posted assessment=%s", assessment_id)
    return True
