from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

import redis.asyncio as redis


log = logging.getLogger(__name__)

CHANNEL_PREFIX = "listing-changes:"


def channel_for(listing_id: str) -> str:
    return f"{CHANNEL_PREFIX}{listing_id}"


@dataclass(frozen=True)
class ListingChange:
    listing_id: str
    status: str


class ChangePublisher(Protocol):
    async def publish(self, change: ListingChange) -> None: ...


class RedisChangePublisher:
    def __init__(self, redis_url: str):
        self.r = redis.from_url(redis_url, decode_responses=True)

    async def publish(self, change: ListingChange) -> None:
        payload = json.dumps({"listing_id": change.listing_id, "status": change.status})
        await self.r.publish(channel_for(change.listing_id), payload)

    async def aclose(self) -> None:
        await self.r.aclose()


@dataclass
class ChangeFeed:
    """
    Transitions are recorded while the transaction is open and only published
    by `flush()` once the caller has committed. `discard()` after a rollback.
    """

    publisher: ChangePublisher
    pending: list[ListingChange] = field(default_factory=list)

    def record(self, listing_id: str, status: str) -> None:
        self.pending.append(ListingChange(listing_id=listing_id, status=status))

    def discard(self) -> None:
        self.pending.clear()

    async def flush(self) -> None:
        changes, self.pending = self.pending, []
        for change in changes:
            try:
                await self.publisher.publish(change)
            except Exception:
                # pollers still pick the change up from the store
                log.exception("change feed publish failed listing=%s status=%s", change.listing_id, change.status)
