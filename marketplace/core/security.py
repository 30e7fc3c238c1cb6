import hashlib
import hmac
from typing import Any


def _render(value: Any) -> str:
    # Mirror how the gateway stringifies values before hashing.
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def resolve_path(data: dict[str, Any], path: str) -> Any:
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
        if value is None:
            return None
    return value


def compute_event_checksum(
    *,
    data: dict[str, Any],
    properties: list[str],
    timestamp: Any,
    secret: str,
) -> str:
    """
    SHA-256 over the declared properties (resolved against `data`, in the
    declared order), then the event timestamp, then the events secret.
    """
    chain = "".join(_render(resolve_path(data, p)) for p in properties)
    chain += _render(timestamp)
    chain += secret
    return hashlib.sha256(chain.encode("utf-8")).hexdigest()


def checksums_match(expected: str, received: str) -> bool:
    # Hex digits compare case-insensitively; compare_digest keeps it constant time.
    return hmac.compare_digest(expected.upper().encode("utf-8"), received.strip().upper().encode("utf-8"))


def integrity_signature(*, reference: str, amount_in_cents: int, currency: str, secret: str) -> str:
    chain = f"{reference}{amount_in_cents}{currency}{secret}"
    return hashlib.sha256(chain.encode("utf-8")).hexdigest()
