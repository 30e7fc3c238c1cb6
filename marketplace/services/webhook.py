from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from urllib.parse import parse_qs, urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import DuplicateReferenceError
from marketplace.core.security import checksums_match, compute_event_checksum
from marketplace.core.telemetry import get_tracer
from marketplace.models.listing import Listing
from marketplace.services.change_feed import ChangeFeed
from marketplace.services.lifecycle import LifecycleOrchestrator, TransitionResult
from marketplace.services.listing_state import PaymentStatus
from marketplace.services.listing_store import ListingStore
from marketplace.services.notifications import ListingSummary, Notifier
from marketplace.services.payment_store import PaymentStore
from marketplace.services.redaction import redact_payload


log = logging.getLogger(__name__)
tracer = get_tracer(__name__)

HANDLED_EVENT = "transaction.updated"
APPROVED = "APPROVED"
REDIRECT_LISTING_PARAMS = ("listing_id", "id")


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict[str, Any]


@dataclass(frozen=True)
class ReconcileResult:
    resolved: bool
    reference: str
    listing_id: str | None = None
    resolved_by: str | None = None
    duplicate: bool = False
    redirect_url: str | None = None
    transition: TransitionResult | None = None
    recipient_email: str | None = None
    recipient_name: str | None = None
    summary: ListingSummary | None = field(default=None, compare=False)

    def as_body(self) -> dict[str, Any]:
        if not self.resolved:
            return {
                "success": False,
                "message": "No listing could be resolved for this reference",
                "reference": self.reference,
                "redirect_url": self.redirect_url,
            }
        body: dict[str, Any] = {
            "success": True,
            "reference": self.reference,
            "listing_id": self.listing_id,
            "resolved_by": self.resolved_by,
            "duplicate": self.duplicate,
        }
        if self.transition is not None:
            body["status"] = self.transition.status
            body["changed"] = self.transition.changed
        return body


def reference_pattern(prefix: str) -> re.Pattern[str]:
    # v1 reference shape: PREFIX-<first 8 hex chars of the listing id>-<epoch ms>
    return re.compile(rf"^{re.escape(prefix)}-([0-9a-fA-F]{{8}})-(\d+)$")


def listing_id_from_redirect(redirect_url: str | None) -> str | None:
    if not redirect_url:
        return None
    query = parse_qs(urlparse(redirect_url).query)
    for key in REDIRECT_LISTING_PARAMS:
        values = [v.strip() for v in query.get(key, []) if v.strip()]
        if values:
            return values[0]
    return None


def _amount_from_cents(cents: Any) -> Decimal | None:
    if cents is None:
        return None
    try:
        return Decimal(str(cents)) / 100
    except ArithmeticError:
        return None


class WebhookReconciler:
    """
    Payment gateway notifications.

    Three fail-closed gates run before anything in the payload is trusted:
    configured secret (500), checksum present (401), checksum valid (401).
    Past the gates every outcome is a 200 so the gateway does not retry
    events that retrying cannot fix; idempotent writes make its retries safe.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        events_secret: str | None,
        listings: ListingStore,
        payments: PaymentStore,
        lifecycle: LifecycleOrchestrator,
        feed: ChangeFeed,
        notifier: Notifier,
        reference_prefix: str,
        prefix_fallback_enabled: bool = True,
        notification_timeout_seconds: float = 5.0,
    ):
        self.db = db
        self.events_secret = events_secret
        self.listings = listings
        self.payments = payments
        self.lifecycle = lifecycle
        self.feed = feed
        self.notifier = notifier
        self.reference_re = reference_pattern(reference_prefix)
        self.prefix_fallback_enabled = prefix_fallback_enabled
        self.notification_timeout_seconds = notification_timeout_seconds

    def verify(self, raw_body: bytes) -> tuple[WebhookOutcome | None, dict[str, Any]]:
        """Returns (rejection, payload). `rejection` is None once all gates pass."""
        if not self.events_secret:
            log.error("payments webhook secret is not configured; refusing event")
            return WebhookOutcome(500, {"error": "webhook_not_configured"}), {}

        try:
            payload = json.loads(raw_body or b"")
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return WebhookOutcome(401, {"error": "missing_signature"}), {}

        signature = payload.get("signature")
        checksum = signature.get("checksum") if isinstance(signature, dict) else None
        if not isinstance(checksum, str) or not checksum.strip():
            log.warning("webhook rejected: no checksum")
            return WebhookOutcome(401, {"error": "missing_signature"}), {}

        properties = signature.get("properties")
        if not isinstance(properties, list) or not all(isinstance(p, str) for p in properties):
            properties = []
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

        expected = compute_event_checksum(
            data=data,
            properties=properties,
            timestamp=payload.get("timestamp"),
            secret=self.events_secret,
        )
        if not checksums_match(expected, checksum):
            log.warning("webhook rejected: checksum mismatch")
            return WebhookOutcome(401, {"error": "invalid_signature"}), {}

        return None, payload

    async def handle(self, raw_body: bytes) -> WebhookOutcome:
        rejection, payload = self.verify(raw_body)
        if rejection is not None:
            return rejection

        try:
            event = payload.get("event")
            transaction = (payload.get("data") or {}).get("transaction")
            if not isinstance(transaction, dict):
                transaction = {}
            status = transaction.get("status")

            if event != HANDLED_EVENT or status != APPROVED:
                log.info("webhook acknowledged without action event=%s status=%s", event, status)
                return WebhookOutcome(200, {"success": True, "ignored": True, "event": event, "status": status})

            log.info("webhook approved transaction payload=%s", redact_payload(transaction))
            result = await self.reconcile(transaction, event=payload)
            await self.db.commit()
            await self.after_commit(result)
            return WebhookOutcome(200, result.as_body())
        except Exception:
            log.exception("webhook processing failed")
            await self.db.rollback()
            self.feed.discard()
            return WebhookOutcome(200, {"success": False, "message": "Event could not be processed"})

    async def reconcile(self, transaction: dict[str, Any], *, event: dict[str, Any] | None = None) -> ReconcileResult:
        """
        Apply an APPROVED transaction. The caller commits. Safe to repeat for
        the same reference: the second run changes nothing.

        `event` is the verified webhook envelope (signature, timestamp,
        environment) and is stored as the gateway payload. Gateway lookups
        have no envelope, so the transaction itself is stored.
        """
        gateway_payload = event if event is not None else transaction
        reference = str(transaction.get("reference") or "").strip()
        redirect_url = transaction.get("redirect_url")
        customer_email = transaction.get("customer_email")
        customer_data = transaction.get("customer_data") if isinstance(transaction.get("customer_data"), dict) else {}
        customer_name = customer_data.get("full_name")
        gateway_id = transaction.get("id")
        gateway_id = str(gateway_id) if gateway_id is not None else None
        amount = _amount_from_cents(transaction.get("amount_in_cents"))

        with tracer.start_as_current_span("payments.reconcile") as span:
            span.set_attribute("payment.reference", reference)

            if not reference:
                return ReconcileResult(resolved=False, reference=reference, redirect_url=redirect_url)

            payment = await self.payments.get_by_reference(reference)
            if payment is not None:
                resolved_by = "reference"
                rows = await self.payments.mark_approved(
                    payment.id,
                    gateway_transaction_id=gateway_id,
                    gateway_payload=gateway_payload,
                    payment_method=transaction.get("payment_method_type"),
                    customer_email=customer_email,
                )
                duplicate = rows == 0
                if amount is not None and payment.amount is not None and Decimal(payment.amount) != amount:
                    log.warning("payment %s amount mismatch stored=%s gateway=%s", reference, payment.amount, amount)
                listing_id, payment_id = payment.listing_id, payment.id
            else:
                listing, resolved_by = await self._resolve_fallback(reference, redirect_url)
                if listing is None:
                    log.warning("webhook reference %s could not be resolved redirect_url=%s", reference, redirect_url)
                    return ReconcileResult(resolved=False, reference=reference, redirect_url=redirect_url)

                listing_id = listing.id
                try:
                    payment = await self.payments.insert(
                        reference=reference,
                        listing_id=listing_id,
                        owner_id=listing.owner_id,
                        amount=amount if amount is not None else Decimal("0"),
                        currency=str(transaction.get("currency") or "COP"),
                        status=PaymentStatus.APPROVED.value,
                        actor="webhook",
                        gateway_transaction_id=gateway_id,
                        gateway_payload=gateway_payload,
                        customer_email=customer_email,
                        payment_method=transaction.get("payment_method_type"),
                    )
                except DuplicateReferenceError:
                    # a concurrent delivery inserted it first
                    await self.db.rollback()
                    self.feed.discard()
                    log.info("payment %s already reconciled by another delivery", reference)
                    return ReconcileResult(
                        resolved=True,
                        reference=reference,
                        listing_id=listing_id,
                        resolved_by=resolved_by,
                        duplicate=True,
                    )
                duplicate = False
                payment_id = payment.id

            span.set_attribute("listing.id", listing_id)
            span.set_attribute("payment.resolved_by", resolved_by)
            transition = await self.lifecycle.confirm_payment(listing_id, payment_id=payment_id, actor="webhook")

            listing = await self.listings.get(listing_id)
            summary = None
            if listing is not None and transition.changed:
                summary = ListingSummary(
                    listing_id=listing.id,
                    title=listing.title,
                    city=listing.city,
                    reference=reference,
                    expires_at=transition.expires_at.isoformat() if transition.expires_at else None,
                )
            return ReconcileResult(
                resolved=True,
                reference=reference,
                listing_id=listing_id,
                resolved_by=resolved_by,
                duplicate=duplicate,
                transition=transition,
                recipient_email=customer_email or (listing.owner_email if listing else None),
                recipient_name=customer_name or (listing.owner_name if listing else None),
                summary=summary,
            )

    async def _resolve_fallback(self, reference: str, redirect_url: str | None) -> tuple[Listing | None, str | None]:
        candidate = listing_id_from_redirect(redirect_url)
        if candidate:
            listing = await self.listings.get(candidate)
            if listing is not None:
                return listing, "redirect_url"

        if self.prefix_fallback_enabled:
            match = self.reference_re.match(reference)
            if match:
                found = await self.listings.find_by_id_prefix(match.group(1).lower(), limit=2)
                if len(found) == 1:
                    return found[0], "reference_prefix"
                if len(found) > 1:
                    log.warning("reference %s matches several listings; not resolving", reference)

        return None, None

    async def after_commit(self, result: ReconcileResult) -> None:
        await self.feed.flush()

        if result.summary is None or not result.recipient_email:
            return
        try:
            await asyncio.wait_for(
                self.notifier.send(result.recipient_email, result.recipient_name, result.summary),
                timeout=self.notification_timeout_seconds,
            )
        except Exception:
            # the payment and listing are already committed
            log.warning("payment confirmation notification failed listing=%s", result.listing_id, exc_info=True)
