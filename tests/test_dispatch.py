import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import db
import db.db as db_module
from app.services.dispatch import OutboundMessage, normalize_limit
from app.utils.errors import TransportError
from db.models import DiagnosisInsert

NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)
DUE = NOW - timedelta(hours=1)


@pytest.mark.asyncio
async def test_due_email_item_is_sent_once(make_assessment, add_queue_item, queue_item_lookup,
                                            dispatch_engine, outbox):
    a = await make_assessment()
    await add_queue_item(a.id, 3, DUE)
    await add_queue_item(a.id, 7, NOW + timedelta(days=4))

    result = await dispatch_engine().dispatch_due(now=NOW)

    assert (result.total, result.sent, result.processed, result.errors) == (1, 1, 1, 0)
    assert len(outbox) == 1
    message = outbox[0]
    assert isinstance(message, OutboundMessage)
    assert message.channel == "email"
    assert message.to == "pat@example.com"
    assert message.body.count("https://app.test/c/i?token=") == 3
    assert "source=checkin_d3" in message.body

    sent = await queue_item_lookup(a.id, 3)
    assert sent.status == "sent"
    assert sent.sent_at is not None
    assert sent.suppression_reason is None
    assert (await queue_item_lookup(a.id, 7)).status == "queued"

    again = await dispatch_engine().dispatch_due(now=NOW)
    assert again.total == 0
    assert len(outbox) == 1


@pytest.mark.asyncio
async def test_sms_item_uses_phone_and_stop_footer(make_assessment, add_queue_item, dispatch_engine, outbox):
    a = await make_assessment(email=None, phone_number="+15555550100", sms_opt_in=True)
    await add_queue_item(a.id, 2, DUE, channel="sms", template_key="sms.day2")

    result = await dispatch_engine().dispatch_due(now=NOW)

    assert result.sent == 1
    assert outbox[0].to == "+15555550100"
    assert outbox[0].body.endswith("Reply STOP to opt out.")


@pytest.mark.asyncio
async def test_insert_text_comes_from_the_store(make_assessment, add_queue_item, dispatch_engine, outbox):
    async for s in db_module.get_session():
        s.add(DiagnosisInsert(diagnosis_code="generic", day=3, branch="initial",
                              insert_text="Short walks keep the back moving."))
        await s.commit()

    a = await make_assessment(guide_type="unlisted_guide")
    await add_queue_item(a.id, 3, DUE)
    await dispatch_engine().dispatch_due(now=NOW)

    assert "Short walks keep the back moving." in outbox[0].body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fields, channel, reason",
    [
        ({"payment_tier": "comprehensive"}, "email", "tier_upgraded"),
        ({"guide_type": "urgent_symptoms"}, "email", "urgent_symptoms"),
        ({"email_opted_out": True}, "email", "opted_out"),
        ({"email": None, "phone_number": "+15555550100", "sms_opt_in": False}, "sms", "opted_out"),
    ],
)
async def test_suppressed_items_are_marked_without_sending(
    make_assessment, add_queue_item, queue_item_lookup, dispatch_engine, outbox, fields, channel, reason
):
    a = await make_assessment(**fields)
    await add_queue_item(a.id, 3, DUE, channel=channel)

    result = await dispatch_engine().dispatch_due(now=NOW)

    assert (result.suppressed, result.sent) == (1, 0)
    assert outbox == []
    item = await queue_item_lookup(a.id, 3)
    assert item.status == "sent"
    assert item.suppression_reason == reason


@pytest.mark.asyncio
async def test_red_flag_alert_suppresses_later_checkins(make_assessment, add_queue_item, queue_item_lookup,
                                                       dispatch_engine, outbox):
    a = await make_assessment()
    await db.insert_alert(a.id, {"day": 3, "matched": ["numbness"], "note_excerpt": "numbness"})
    await add_queue_item(a.id, 7, DUE)

    await dispatch_engine().dispatch_due(now=NOW)

    assert outbox == []
    assert (await queue_item_lookup(a.id, 7)).suppression_reason == "red_flag"


@pytest.mark.asyncio
async def test_sms_opt_out_row_suppresses(make_assessment, add_queue_item, queue_item_lookup,
                                         dispatch_engine, outbox):
    a = await make_assessment(email=None, phone_number="+15555550100", sms_opt_in=True)
    await add_queue_item(a.id, 4, DUE, channel="sms")
    await db.record_sms_opt_out("(555) 555-0100", "sms_stop_incoming")

    await dispatch_engine().dispatch_due(now=NOW)

    assert outbox == []
    assert (await queue_item_lookup(a.id, 4)).suppression_reason == "opted_out"


@pytest.mark.asyncio
async def test_missing_assessment_is_suppressed(add_queue_item, queue_item_lookup, dispatch_engine, outbox):
    await add_queue_item("ghost", 3, DUE)

    result = await dispatch_engine().dispatch_due(now=NOW)

    assert result.suppressed == 1
    assert (await queue_item_lookup("ghost", 3)).suppression_reason == "assessment_missing"


@pytest.mark.asyncio
async def test_transport_failure_is_isolated(make_assessment, add_queue_item, queue_item_lookup,
                                            dispatch_engine, outbox):
    bad = await make_assessment(email="bounce@example.com")
    good = await make_assessment(email="ok@example.com")
    await add_queue_item(bad.id, 3, DUE - timedelta(minutes=5))
    await add_queue_item(good.id, 3, DUE)

    def flaky_email(message):
        if message.to == "bounce@example.com":
            raise TransportError("sendgrid: 550 mailbox unavailable")
        outbox.append(message)

    result = await dispatch_engine(transports={"email": flaky_email}).dispatch_due(now=NOW)

    assert (result.sent, result.errors) == (1, 1)
    assert [m.to for m in outbox] == ["ok@example.com"]
    failed = await queue_item_lookup(bad.id, 3)
    assert failed.status == "failed"
    assert "550" in failed.last_error
    assert failed.sent_at is None
    assert (await queue_item_lookup(good.id, 3)).status == "sent"

    # failed items wait for a manual retry
    rerun = await dispatch_engine(transports={"email": flaky_email}).dispatch_due(now=NOW)
    assert rerun.total == 0


@pytest.mark.asyncio
async def test_missing_contact_is_a_transport_failure(make_assessment, add_queue_item, queue_item_lookup,
                                                     dispatch_engine, outbox):
    a = await make_assessment(email=None)
    await add_queue_item(a.id, 3, DUE, channel="email")

    result = await dispatch_engine().dispatch_due(now=NOW)

    assert result.errors == 1
    item = await queue_item_lookup(a.id, 3)
    assert item.status == "failed"
    assert item.last_error == "no_email"


@pytest.mark.asyncio
@pytest.mark.parametrize("use_sandbox", [False, True])
async def test_dry_run_persists_nothing(make_assessment, add_queue_item, queue_item_lookup,
                                        dispatch_engine, outbox, use_sandbox):
    a = await make_assessment()
    upgraded = await make_assessment(payment_tier="enhanced")
    await add_queue_item(a.id, 3, DUE)
    await add_queue_item(upgraded.id, 3, DUE)

    engine = dispatch_engine(sandbox=use_sandbox)
    result = await engine.dispatch_due(now=NOW, dry_run=not use_sandbox)

    assert result.dry_run is True
    assert (result.total, result.processed, result.suppressed, result.sent) == (2, 2, 1, 0)
    assert outbox == []
    for assessment_id in (a.id, upgraded.id):
        item = await queue_item_lookup(assessment_id, 3)
        assert item.status == "queued"
        assert item.suppression_reason is None


@pytest.mark.asyncio
async def test_concurrent_runs_send_each_item_once(make_assessment, add_queue_item, queue_item_lookup,
                                                  dispatch_engine, outbox):
    ids = []
    for n in range(5):
        a = await make_assessment(email=f"user{n}@example.com")
        await add_queue_item(a.id, 3, DUE)
        ids.append(a.id)

    first, second = await asyncio.gather(
        dispatch_engine().dispatch_due(now=NOW),
        dispatch_engine().dispatch_due(now=NOW),
    )

    assert first.sent + second.sent == 5
    assert sorted(m.to for m in outbox) == sorted(f"user{n}@example.com" for n in range(5))
    for assessment_id in ids:
        assert (await queue_item_lookup(assessment_id, 3)).status == "sent"


@pytest.mark.asyncio
async def test_outside_send_window_defers_the_batch(make_assessment, add_queue_item, queue_item_lookup,
                                                   dispatch_engine, outbox):
    a = await make_assessment()
    await add_queue_item(a.id, 3, DUE)

    # 15:00 UTC is 11:00 in New York (EDT)
    engine = dispatch_engine(send_tz="America/New_York", send_window="13:00-20:00")
    result = await engine.dispatch_due(now=NOW)

    assert (result.total, result.deferred, result.sent) == (1, 1, 0)
    assert outbox == []
    assert (await queue_item_lookup(a.id, 3)).status == "queued"

    open_engine = dispatch_engine(send_tz="America/New_York", send_window="08:00-20:00")
    assert (await open_engine.dispatch_due(now=NOW)).sent == 1


@pytest.mark.asyncio
async def test_before_start_date_defers_the_batch(make_assessment, add_queue_item, dispatch_engine, outbox):
    a = await make_assessment()
    await add_queue_item(a.id, 3, DUE)

    result = await dispatch_engine(start_at="2025-04-01T00:00:00Z").dispatch_due(now=NOW)

    assert result.deferred == 1
    assert outbox == []


@pytest.mark.asyncio
async def test_limit_bounds_the_batch(make_assessment, add_queue_item, dispatch_engine, outbox):
    for n in range(3):
        a = await make_assessment(email=f"user{n}@example.com")
        await add_queue_item(a.id, 3, DUE - timedelta(minutes=n))

    result = await dispatch_engine().dispatch_due(limit=2, now=NOW)

    assert result.total == 2
    # oldest due first
    assert [m.to for m in outbox] == ["user2@example.com", "user1@example.com"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, 100),
        ("25", 25),
        (7.9, 7),
        (0, 100),
        (-4, 100),
        ("many", 100),
        (True, 100),
        (5000, 1000),
    ],
)
def test_normalize_limit(raw, expected):
    assert normalize_limit(raw) == expected
