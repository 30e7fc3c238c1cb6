from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListingSummary:
    listing_id: str
    title: str | None
    city: str | None
    reference: str
    expires_at: str | None


class Notifier(Protocol):
    async def send(self, recipient_email: str, recipient_name: str | None, listing_summary: ListingSummary) -> None: ...


class CeleryNotifier:
    """
    Hands the confirmation email to the worker. Delivery (and its retries)
    happens in `worker.tasks.send_payment_confirmation`.
    """

    task_name = "worker.tasks.send_payment_confirmation"

    async def send(self, recipient_email: str, recipient_name: str | None, listing_summary: ListingSummary) -> None:
        from worker.celery_app import celery

        kwargs = {
            "recipient_email": recipient_email,
            "recipient_name": recipient_name,
            "listing_id": listing_summary.listing_id,
            "title": listing_summary.title,
            "city": listing_summary.city,
            "reference": listing_summary.reference,
            "expires_at": listing_summary.expires_at,
        }
        # send_task talks to the broker synchronously
        await asyncio.to_thread(celery.send_task, self.task_name, kwargs=kwargs)
        log.info("queued payment confirmation listing=%s", listing_summary.listing_id)


