from __future__ import annotations

from typing import Any

# Masked entirely wherever they appear in a gateway payload or audit detail.
SECRET_KEYS = frozenset({
    "checksum", "signature", "secret", "authorization",
    "api_key", "token", "payment_source_id",
})

# Personal data: kept recognisable for support, never logged in full.
PERSONAL_KEYS = frozenset({
    "email", "customer_email", "full_name", "phone_number", "legal_id",
})

REDACTED = "**********"


def mask_personal(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"{value[:2]}***" if len(value) > 4 else "***"


def redact_payload(value: Any) -> Any:
    """Copy of `value` safe to log: secrets replaced, personal data masked."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            key = k.lower() if isinstance(k, str) else k
            if key in SECRET_KEYS:
                out[k] = REDACTED
            elif key in PERSONAL_KEYS:
                out[k] = mask_personal(v)
            else:
                out[k] = redact_payload(v)
        return out
    if isinstance(value, list):
        return [redact_payload(v) for v in value]
    return value
