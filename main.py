import hmac
import logging

from fastapi import BackgroundTasks, FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

import db
from app.services.alerts import notify_alert_webhook
from app.services.dispatch import normalize_limit
from app.services.enqueue import enqueue_checkins_for_assessment
from app.services.factory import (
    build_alert_detector,
    build_dispatch_engine,
    build_inbound_processor,
    build_token_codec,
)
from app.services.inbound import REPLY_TEMPORARY_ISSUE, build_twiml
from app.services.pages import (
    NOTE_LIMIT,
    render_confirmation,
    render_invalid_link,
    render_note_result,
    render_temporary_issue,
)
from app.types.checkin_contract import EnqueueRequest, TokenPayload
from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
_LOGGER = logging.getLogger("painoptix.api")

app = FastAPI()


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


# --------------------------------------------
# Helpers
# --------------------------------------------

def _provided_dispatch_token(request: Request) -> str:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return (request.headers.get("x-dispatch-token") or "").strip()


def _dispatch_authorized(request: Request) -> bool:
    expected = (settings.CHECKINS_DISPATCH_TOKEN or "").strip()
    provided = _provided_dispatch_token(request)
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def _public_url(request: Request) -> str:
    """URL Twilio signed, rebuilt from proxy headers."""
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme or "https"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    if not host:
        return str(request.url)
    url = f"{proto.split(',')[0].strip()}://{host.split(',')[0].strip()}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def _requested_limit(request: Request):
    raw = request.query_params.get("limit")
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("limit") is not None:
            raw = body["limit"]
    return raw


# --------------------------------------------
# Dispatch
# --------------------------------------------

@app.api_route("/v1/checkins/dispatch", methods=["GET", "POST"])
async def dispatch_checkins(request: Request):
    if not _dispatch_authorized(request):
        _LOGGER.warning("dispatch_unauthorized")
        return {"ok": True, "skipped": True, "reason": "missing-or-invalid-token"}

    dry_run = (request.query_params.get("dryRun") or "").strip().lower() in {"1", "true", "yes"}
    limit = normalize_limit(await _requested_limit(request), default=settings.CHECKINS_DISPATCH_LIMIT)

    try:
        result = await build_dispatch_engine().dispatch_due(limit=limit, dry_run=dry_run)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("dispatch_failed err=%s", exc)
        return JSONResponse({"ok": False, "reason": "dispatch-failed"}, status_code=500)

    return {"ok": True, "skipped": False, "result": result.model_dump()}


@app.post("/v1/checkins/enqueue")
async def enqueue_checkins(request: Request, body: EnqueueRequest):
    if not _dispatch_authorized(request):
        return JSONResponse({"ok": False, "error": "unauthorized"}, status_code=401)
    result = await enqueue_checkins_for_assessment(body.assessment_id)
    return {"ok": True, **result.model_dump()}


# --------------------------------------------
# Email links
# --------------------------------------------

@app.get("/c/i", response_class=HTMLResponse)
async def checkin_landing(token: str = ""):
    try:
        codec = build_token_codec()
    except ValueError:
        _LOGGER.error("checkin_landing_misconfigured reason=no_token_secret")
        return HTMLResponse(render_temporary_issue(), status_code=500)

    payload = codec.verify(token, scope="reply")
    if payload is None:
        _LOGGER.info("checkin_landing_invalid_token")
        return HTMLResponse(render_invalid_link(), status_code=400)

    try:
        await db.upsert_response(payload.assessment_id, payload.day, payload.value, "email_link")
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("checkin_landing_store_failed assessment=%s err=%s", payload.assessment_id, exc)
        return HTMLResponse(render_temporary_issue(), status_code=500)

    _LOGGER.info("checkin_response assessment=%s day=%s value=%s",
                 payload.assessment_id, payload.day, payload.value)
    note_token = codec.sign(
        TokenPayload(
            assessment_id=payload.assessment_id,
            day=payload.day,
            value=payload.value,
            scope="note",
        )
    )
    return HTMLResponse(render_confirmation(payload.value, payload.day, note_token))


@app.post("/c/note", response_class=HTMLResponse)
async def checkin_note(
    background: BackgroundTasks,
    token: str = Form(""),
    note: str = Form(""),
):
    try:
        codec = build_token_codec()
    except ValueError:
        _LOGGER.error("checkin_note_misconfigured reason=no_token_secret")
        return HTMLResponse(render_temporary_issue(), status_code=500)

    payload = codec.verify(token, scope="note")
    if payload is None:
        return HTMLResponse(render_invalid_link(), status_code=400)

    text = (note or "").strip()[:NOTE_LIMIT]
    if not text:
        return HTMLResponse(render_note_result(False, empty=True))

    detector = build_alert_detector()
    matched = detector.scan(text)

    saved = True
    try:
        stored = await db.save_note(payload.assessment_id, payload.day, payload.value, text)
        if not stored:
            _LOGGER.info("checkin_note_kept_existing assessment=%s day=%s",
                         payload.assessment_id, payload.day)
    except Exception as exc:  # noqa: BLE001
        saved = False
        _LOGGER.exception("checkin_note_store_failed assessment=%s err=%s", payload.assessment_id, exc)

    if not matched:
        if not saved:
            return HTMLResponse(render_temporary_issue(), status_code=500)
        return HTMLResponse(render_note_result(False))

    # The alert row is written whether or not the note itself was stored.
    try:
        await detector.raise_alert(payload.assessment_id, payload.day, text, matched)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception("red_flag_alert_store_failed assessment=%s err=%s", payload.assessment_id, exc)

    background.add_task(notify_alert_webhook, settings.ALERT_WEBHOOK, payload.assessment_id, matched)
    return HTMLResponse(render_note_result(True))


# --------------------------------------------
# Inbound SMS
# --------------------------------------------

@app.post("/v1/sms/incoming")
async def sms_incoming(request: Request):
    try:
        raw_body = await request.body()
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("sms_inbound_read_failed err=%s", exc)
        return Response(content=build_twiml(REPLY_TEMPORARY_ISSUE), media_type="text/xml")

    twiml = await build_inbound_processor().handle_inbound(
        raw_body,
        request.headers.get("x-twilio-signature"),
        [_public_url(request), str(request.url)],
    )
    return Response(content=twiml, media_type="text/xml")


@app.get("/health")
async def health():
    return {"status": "ok"}
