import hashlib
import re


def normalize_phone_number(phone_number: str) -> str:
    """Best-effort E.164 normalisation (North American default)."""
    raw = phone_number.strip()
    digits = re.sub(r"\D", "", raw)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if raw.startswith("+"):
        return f"+{digits}"
    return raw


def mask(value: str | None) -> str:
    """Short stable fingerprint for logs; never log contact details verbatim."""
    if not value:
        return "-"
    return "***" + hashlib.sha256(value.encode()).hexdigest()[:8]
