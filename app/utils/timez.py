"""Timezone and quiet-hours helpers for the dispatcher."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_LOGGER = logging.getLogger(__name__)

_WINDOW_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


class WindowCheck(NamedTuple):
    allowed: bool
    local_time: str = ""
    reason: Optional[str] = None


def is_within_send_window(now: datetime, tz_name: str, window: str) -> WindowCheck:
    """Check ``now`` against an ``HH:MM-HH:MM`` window in ``tz_name``.

    Windows may cross midnight. A blank or malformed window, or an unknown
    timezone, allows the send.
    """
    if not window or not window.strip():
        return WindowCheck(True)
    m = _WINDOW_RE.match(window.strip())
    if not m:
        _LOGGER.warning("send_window_invalid window=%r", window)
        return WindowCheck(True, reason="invalid window format")
    try:
        local = now.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError) as exc:
        _LOGGER.warning("send_window_bad_tz tz=%r err=%s", tz_name, exc)
        return WindowCheck(True, reason="unknown timezone")

    start_h, start_m, end_h, end_m = (int(g) for g in m.groups())
    start = start_h * 60 + start_m
    end = end_h * 60 + end_m
    current = local.hour * 60 + local.minute
    local_time = local.strftime("%H:%M")

    if start <= end:
        inside = start <= current < end
    else:
        inside = current >= start or current < end

    if inside:
        return WindowCheck(True, local_time)
    return WindowCheck(False, local_time, f"{local_time} outside {window.strip()}")


def is_before_start(now: datetime, start_at: Optional[str]) -> bool:
    if not start_at:
        return False
    try:
        start = datetime.fromisoformat(start_at.replace("Z", "+00:00"))
    except ValueError:
        _LOGGER.warning("start_at_invalid value=%r", start_at)
        return False
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return now < start


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def local_due_at(created_at: datetime, day: int, tz_name: str, hour: int = 10) -> datetime:
    """``hour``:00 local time, ``day`` calendar days after ``created_at``, in UTC."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    local_date = as_utc(created_at).astimezone(tz).date() + timedelta(days=day)
    return datetime(local_date.year, local_date.month, local_date.day, hour, tzinfo=tz).astimezone(timezone.utc)
