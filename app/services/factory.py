"""Builds services from `config.settings` for the API, workers and scripts."""

from __future__ import annotations

import db
from app.services.alerts import AlertDetector
from app.services.content import ContentResolver
from app.services.dispatch import DispatchEngine
from app.services.inbound import InboundMessageProcessor
from app.services.tokens import TokenCodec
from config import settings


def build_token_codec() -> TokenCodec:
    return TokenCodec(settings.CHECKINS_TOKEN_SECRET, settings.CHECKINS_TOKEN_TTL_SECONDS)


def build_content_resolver() -> ContentResolver:
    return ContentResolver(
        lookup_insert=db.get_diagnosis_insert,
        list_encouragements=db.list_encouragements,
        lookup_template=db.get_template,
    )


def build_dispatch_engine() -> DispatchEngine:
    return DispatchEngine(
        codec=build_token_codec(),
        resolver=build_content_resolver(),
        app_url=settings.APP_URL,
        send_tz=settings.CHECKINS_SEND_TZ,
        send_window=settings.CHECKINS_SEND_WINDOW,
        start_at=settings.CHECKINS_START_AT,
        sandbox=settings.CHECKINS_SANDBOX,
    )


def build_inbound_processor() -> InboundMessageProcessor:
    return InboundMessageProcessor(
        auth_token=settings.TWILIO_AUTH_TOKEN,
        timeout_seconds=settings.INBOUND_TIMEOUT_SECONDS,
    )


def build_alert_detector() -> AlertDetector:
    return AlertDetector(write_alert=db.insert_alert)
