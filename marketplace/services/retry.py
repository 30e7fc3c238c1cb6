import logging
import random
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError

from marketplace.core.errors import TransientStoreError


log = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_seconds(attempt: int, base: int = 10, cap: int = 900) -> int:
    # exponential backoff with jitter
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.randint(0, min(30, exp // 3))
    return exp + jitter


def _is_transient(exc: DBAPIError) -> bool:
    return not isinstance(exc, IntegrityError)


async def read_with_retry(op: Callable[[], Awaitable[T]], *, what: str) -> T:
    """
    Idempotent reads get exactly one immediate retry (no backoff).
    A second failure surfaces as TransientStoreError.
    """
    try:
        return await op()
    except DBAPIError as e:
        if not _is_transient(e):
            raise
        log.warning("store read failed, retrying once: %s (%s)", what, type(e).__name__)

    try:
        return await op()
    except DBAPIError as e:
        if not _is_transient(e):
            raise
        raise TransientStoreError(f"Store unavailable while reading {what}") from e


async def write_once(op: Callable[[], Awaitable[T]], *, what: str) -> T:
    """
    Mutating writes are never retried here; the caller (or the gateway's own
    webhook retry) decides. IntegrityError is left to the caller.
    """
    try:
        return await op()
    except DBAPIError as e:
        if not _is_transient(e):
            raise
        log.error("store write failed: %s (%s)", what, type(e).__name__)
        raise TransientStoreError(f"Store unavailable while writing {what}") from e
