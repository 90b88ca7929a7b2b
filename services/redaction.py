from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
# Stripe-style object ids: acct_, ch_, pi_, tr_, py_, cus_ ...
_OBJECT_ID_RE = re.compile(r"\b([a-z]{2,5}_)([A-Za-z0-9]{8,})\b")

_SENSITIVE_KEY_MARKERS = (
    "secret",
    "signature",
    "authorization",
    "api_key",
    "password",
    "email",
)


def _mask_email(match: re.Match) -> str:
    return f"{match.group(1)}***{match.group(3)}"


def mask_reference(value: str | None) -> str | None:
    """acct_1NvXYZabcd1234 -> acct_***1234"""
    if not value:
        return value
    m = _OBJECT_ID_RE.fullmatch(value.strip())
    if not m:
        return value if len(value) <= 8 else f"***{value[-4:]}"
    return f"{m.group(1)}***{m.group(2)[-4:]}"


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    if "sk_live_" in masked or "sk_test_" in masked or "whsec_" in masked:
        return "[REDACTED]"
    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        elif k in ("destination", "payout_destination") and isinstance(v, str):
            out[k] = mask_reference(v)
        else:
            out[k] = redact_value(v)
    return out
