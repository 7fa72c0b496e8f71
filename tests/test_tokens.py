import json

import pytest

from app.services.tokens import TokenCodec, _b64encode
from app.types.checkin_contract import TokenPayload

SECRET = "unit-test-secret"
NOW = 1_700_000_000


def _payload(**overrides):
    values = {"assessment_id": "a-123", "day": 7, "value": "better"}
    values.update(overrides)
    return TokenPayload(**values)


def test_round_trip_returns_signed_fields():
    codec = TokenCodec(SECRET, ttl_seconds=3600)
    token = codec.sign(_payload(), now=NOW)
    decoded = codec.verify(token, now=NOW + 10)
    assert decoded is not None
    assert (decoded.assessment_id, decoded.day, decoded.value) == ("a-123", 7, "better")
    assert decoded.exp == NOW + 3600
    assert decoded.scope == "reply"


def test_token_is_url_safe_and_unpadded():
    token = TokenCodec(SECRET).sign(_payload(), now=NOW)
    encoded, signature = token.split(".")
    assert "=" not in token
    assert "+" not in token and "/" not in token
    assert encoded and signature


def test_any_single_character_change_is_rejected():
    codec = TokenCodec(SECRET)
    token = codec.sign(_payload(), now=NOW)
    for i, ch in enumerate(token):
        replacement = "A" if ch != "A" else "B"
        tampered = token[:i] + replacement + token[i + 1:]
        assert codec.verify(tampered, now=NOW) is None, f"position {i} accepted"


def test_truncated_or_extended_tokens_are_rejected():
    codec = TokenCodec(SECRET)
    token = codec.sign(_payload(), now=NOW)
    assert codec.verify(token[:-1], now=NOW) is None
    assert codec.verify(token + "A", now=NOW) is None
    assert codec.verify(token + ".extra", now=NOW) is None


def test_expiry_boundary():
    codec = TokenCodec(SECRET, ttl_seconds=60)
    token = codec.sign(_payload(), now=NOW)
    assert codec.verify(token, now=NOW + 59) is not None
    assert codec.verify(token, now=NOW + 60) is not None
    assert codec.verify(token, now=NOW + 61) is None


def test_other_secret_cannot_verify():
    token = TokenCodec(SECRET).sign(_payload(), now=NOW)
    assert TokenCodec("another-secret").verify(token, now=NOW) is None


def test_each_value_gets_its_own_token():
    codec = TokenCodec(SECRET)
    tokens = {v: codec.sign(_payload(value=v), now=NOW) for v in ("better", "same", "worse")}
    assert len(set(tokens.values())) == 3
    for value, token in tokens.items():
        assert codec.verify(token, now=NOW).value == value


def test_note_scope_is_not_a_reply_token():
    codec = TokenCodec(SECRET)
    note_token = codec.sign(_payload(scope="note"), now=NOW)
    reply_token = codec.sign(_payload(), now=NOW)
    assert codec.verify(note_token, scope="reply", now=NOW) is None
    assert codec.verify(note_token, scope="note", now=NOW) is not None
    assert codec.verify(reply_token, scope="note", now=NOW) is None


@pytest.mark.parametrize("token", [None, "", "abc", "a.b.c", ".", "not-base64!.sig"])
def test_malformed_tokens_fail_closed(token):
    assert TokenCodec(SECRET).verify(token, now=NOW) is None


def _forge(codec: TokenCodec, body: dict) -> str:
    encoded = _b64encode(json.dumps(body).encode())
    return f"{encoded}.{codec._mac(encoded)}"


@pytest.mark.parametrize(
    "body",
    [
        {"assessment_id": "a", "day": 15, "value": "better", "exp": NOW + 60},
        {"assessment_id": "a", "day": 0, "value": "better", "exp": NOW + 60},
        {"assessment_id": "a", "day": "3", "value": "better", "exp": NOW + 60},
        {"assessment_id": "", "day": 3, "value": "better", "exp": NOW + 60},
        {"assessment_id": "a", "day": 3, "value": "great", "exp": NOW + 60},
        {"assessment_id": "a", "day": 3, "value": "better"},
    ],
)
def test_correctly_signed_but_invalid_payloads_are_rejected(body):
    codec = TokenCodec(SECRET)
    assert codec.verify(_forge(codec, body), now=NOW) is None


def test_empty_secret_is_a_configuration_error():
    with pytest.raises(ValueError):
        TokenCodec("")


def test_payload_rejects_out_of_range_day():
    with pytest.raises(ValueError):
        _payload(day=15)
