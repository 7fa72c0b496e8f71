"""Signed, expiring tokens for clickless check-in replies.

Format: ``base64url(json(payload)) + "." + base64url(hmac_sha256(secret, encoded_payload))``
with padding stripped. The reply value lives inside the signed payload, so
each of the three links in a message is an independent credential.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Optional

from pydantic import ValidationError

from app.types.checkin_contract import TokenPayload

_LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


class TokenCodec:
    """HMAC-SHA256 signer/verifier for `TokenPayload`.

    The secret is injected so tests can use fixed keys and rotation stays a
    construction concern.
    """

    def __init__(self, secret: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        if not secret:
            raise ValueError("token secret must not be empty")
        self._key = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _mac(self, encoded_payload: str) -> str:
        digest = hmac.new(self._key, encoded_payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def sign(
        self,
        payload: TokenPayload,
        ttl_seconds: Optional[int] = None,
        now: Optional[float] = None,
    ) -> str:
        issued = int(now if now is not None else time.time())
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        body = payload.model_dump(exclude={"exp"})
        body["exp"] = issued + ttl
        encoded = _b64encode(json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return f"{encoded}.{self._mac(encoded)}"

    def verify(
        self,
        token: Optional[str],
        scope: str = "reply",
        now: Optional[float] = None,
    ) -> Optional[TokenPayload]:
        """Return the payload, or None for anything that is not a valid, live token."""
        if not token or not isinstance(token, str):
            return None
        try:
            encoded, signature = token.split(".")
            expected = self._mac(encoded)
            if not hmac.compare_digest(signature.encode("ascii"), expected.encode("ascii")):
                _LOGGER.debug("token_rejected reason=signature")
                return None
            # Non-canonical base64 (e.g. trailing-bit variants) must not alias a valid token.
            raw = _b64decode(encoded)
            if _b64encode(raw) != encoded:
                return None
            payload = TokenPayload.model_validate(json.loads(raw))
        except (ValueError, UnicodeError, binascii.Error, ValidationError, TypeError):
            _LOGGER.debug("token_rejected reason=malformed")
            return None

        current = now if now is not None else time.time()
        if payload.exp is None or payload.exp < current:
            _LOGGER.debug("token_rejected reason=expired")
            return None
        if payload.scope != scope:
            _LOGGER.debug("token_rejected reason=scope")
            return None
        return payload
