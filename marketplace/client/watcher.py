from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

import httpx
import redis.asyncio as redis

from marketplace.services.change_feed import channel_for
from marketplace.services.listing_state import CONFIRMED_STATUSES


log = logging.getLogger(__name__)

StatusFetcher = Callable[[str], Awaitable[str | None]]
StatusSubscription = Callable[[str], AsyncIterator[str]]


@dataclass(frozen=True)
class PollSchedule:
    """
    Dense early, sparse later: (elapsed-until, interval) phases in seconds,
    then `tail_interval` until `ceiling`, after which polling stops.
    """

    phases: tuple[tuple[float, float], ...] = ((120.0, 3.0), (300.0, 10.0))
    tail_interval: float = 30.0
    ceiling: float = 900.0

    def interval_at(self, elapsed: float) -> float:
        for until, interval in self.phases:
            if elapsed < until:
                return interval
        return self.tail_interval


@dataclass(frozen=True)
class WatchResult:
    confirmed: bool
    status: str | None
    source: str | None = None  # "push" | "poll"
    timed_out: bool = False
    cancelled: bool = False


class ConfirmationWatcher:
    """
    Waits for a paid listing to be confirmed by the back end.

    A push subscription and a progressive poll run side by side; whichever
    sees `in-review`/`active` first wins and the other is cancelled. The
    watcher never writes anything. `cancel()` tears both strategies down.
    """

    def __init__(
        self,
        listing_id: str,
        *,
        fetch_status: StatusFetcher,
        subscribe: StatusSubscription | None = None,
        schedule: PollSchedule = PollSchedule(),
        confirmed_statuses: frozenset[str] = CONFIRMED_STATUSES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.listing_id = listing_id
        self._fetch_status = fetch_status
        self._subscribe = subscribe
        self.schedule = schedule
        self.confirmed_statuses = confirmed_statuses
        self._clock = clock
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self._last_status: str | None = None

    def cancel(self) -> None:
        for task in self._tasks:
            task.cancel()

    async def wait(self) -> WatchResult:
        tasks = {asyncio.create_task(self._poll(), name=f"poll:{self.listing_id}")}
        if self._subscribe is not None:
            tasks.add(asyncio.create_task(self._push(), name=f"push:{self.listing_id}"))
        self._tasks = tasks

        result: WatchResult | None = None
        try:
            pending = set(tasks)
            while pending and result is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    outcome = task.result()
                    if outcome is not None:
                        result = outcome
                        break
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._tasks = set()

        if result is None:
            return WatchResult(confirmed=False, status=self._last_status, cancelled=True)
        return result

    async def _poll(self) -> WatchResult:
        start = self._clock()
        while True:
            # first check is immediate: the webhook may already have landed
            try:
                status = await self._fetch_status(self.listing_id)
            except Exception:
                log.warning("status poll failed for listing %s", self.listing_id, exc_info=True)
                status = None

            if status:
                self._last_status = status
            if status in self.confirmed_statuses:
                return WatchResult(confirmed=True, status=status, source="poll")

            elapsed = self._clock() - start
            if elapsed >= self.schedule.ceiling:
                log.info("listing %s not confirmed after %.0fs; polling stopped", self.listing_id, elapsed)
                return WatchResult(confirmed=False, status=self._last_status, timed_out=True)

            await self._sleep(min(self.schedule.interval_at(elapsed), self.schedule.ceiling - elapsed))

    async def _push(self) -> WatchResult | None:
        try:
            async for status in self._subscribe(self.listing_id):
                self._last_status = status
                if status in self.confirmed_statuses:
                    return WatchResult(confirmed=True, status=status, source="push")
        except Exception:
            log.warning("change subscription failed for listing %s; polling continues", self.listing_id, exc_info=True)
        # stream ended without a confirmation: the poll decides
        return None


class HttpStatusFetcher:
    """Reads `GET /v1/listings/{id}/status` as the listing owner."""

    def __init__(self, client: httpx.AsyncClient, *, actor_id: str):
        self.client = client
        self.actor_id = actor_id

    async def __call__(self, listing_id: str) -> str | None:
        r = await self.client.get(f"/v1/listings/{listing_id}/status", headers={"X-Actor-Id": self.actor_id})
        r.raise_for_status()
        return r.json().get("status")


class RedisChangeSubscription:
    def __init__(self, redis_url: str):
        self.redis_url = redis_url

    async def __call__(self, listing_id: str) -> AsyncIterator[str]:
        client = redis.from_url(self.redis_url, decode_responses=True)
        pubsub = client.pubsub()
        channel = channel_for(listing_id)
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                except ValueError:
                    continue
                if payload.get("listing_id") == listing_id and payload.get("status"):
                    yield payload["status"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            await client.aclose()
