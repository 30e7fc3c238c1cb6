from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import AuthorizationError, NotFoundError, StateConflictError
from marketplace.core.security import integrity_signature
from marketplace.services.listing_state import ListingStatus, PaymentStatus
from marketplace.services.listing_store import ListingStore
from marketplace.services.payment_gateway import TransactionLookup
from marketplace.services.payment_store import PaymentStore
from marketplace.services.webhook import APPROVED, ReconcileResult, WebhookReconciler


log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_reference(prefix: str, listing_id: str, now: datetime) -> str:
    return f"{prefix}-{listing_id[:8]}-{int(now.timestamp() * 1000)}"


@dataclass(frozen=True)
class CheckoutSession:
    listing_id: str
    payment_id: str
    reference: str
    amount_in_cents: int
    currency: str
    integrity_signature: str
    redirect_url: str
    checkout_url: str


@dataclass(frozen=True)
class PaymentCheck:
    reference: str
    listing_id: str
    payment_status: str
    gateway_status: str | None = None
    reconciled: ReconcileResult | None = None


class CheckoutService:
    def __init__(
        self,
        db: AsyncSession,
        *,
        listings: ListingStore,
        payments: PaymentStore,
        reconciler: WebhookReconciler,
        gateway: TransactionLookup,
        public_key: str,
        integrity_secret: str,
        checkout_url: str,
        redirect_url: str,
        amount_in_cents: int,
        currency: str,
        reference_prefix: str,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.listings = listings
        self.payments = payments
        self.reconciler = reconciler
        self.gateway = gateway
        self.public_key = public_key
        self.integrity_secret = integrity_secret
        self.checkout_url = checkout_url
        self.redirect_url = redirect_url
        self.amount_in_cents = amount_in_cents
        self.currency = currency
        self.reference_prefix = reference_prefix
        self.clock = clock

    async def start_checkout(self, listing_id: str, *, actor_id: str, actor_email: str | None = None) -> CheckoutSession:
        listing = await self.listings.get(listing_id)
        if not listing:
            raise NotFoundError(f"Listing {listing_id} not found")
        if listing.owner_id != actor_id:
            raise AuthorizationError("Listing belongs to another owner")
        if listing.status != ListingStatus.PAYMENT_READY.value:
            raise StateConflictError(f"Listing {listing_id} is {listing.status}; checkout needs payment-ready")

        reference = build_reference(self.reference_prefix, listing.id, self.clock())
        signature = integrity_signature(
            reference=reference,
            amount_in_cents=self.amount_in_cents,
            currency=self.currency,
            secret=self.integrity_secret,
        )
        # listing_id on the redirect lets reconciliation find the listing
        # even when the gateway returns a reference we never stored
        redirect = str(httpx.URL(self.redirect_url).copy_merge_params({"listing_id": listing.id}))
        params = {
            "public-key": self.public_key,
            "currency": self.currency,
            "amount-in-cents": str(self.amount_in_cents),
            "reference": reference,
            "signature:integrity": signature,
            "redirect-url": redirect,
        }
        url = f"{self.checkout_url}?{urlencode(params)}"

        payment = await self.payments.insert(
            reference=reference,
            listing_id=listing.id,
            owner_id=listing.owner_id,
            amount=Decimal(self.amount_in_cents) / 100,
            currency=self.currency,
            status=PaymentStatus.INITIATED.value,
            actor=actor_id,
            customer_email=actor_email or listing.owner_email,
            checkout_url=url,
        )
        log.info("checkout started listing=%s reference=%s", listing.id, reference)
        return CheckoutSession(
            listing_id=listing.id,
            payment_id=payment.id,
            reference=reference,
            amount_in_cents=self.amount_in_cents,
            currency=self.currency,
            integrity_signature=signature,
            redirect_url=redirect,
            checkout_url=url,
        )

    async def verify_by_reference(self, reference: str, *, actor_id: str | None = None) -> PaymentCheck:
        """
        Redirect-return check. An initiated payment is looked up at the
        gateway; an APPROVED transaction is applied through the same path as
        the webhook, so whichever arrives second is a no-op. The caller
        commits and then runs `reconciler.after_commit`.
        """
        payment = await self.payments.get_by_reference(reference)
        if not payment:
            raise NotFoundError(f"Payment {reference} not found")
        if actor_id is not None and payment.owner_id != actor_id:
            raise AuthorizationError("Payment belongs to another owner")

        if payment.status == PaymentStatus.APPROVED.value:
            return PaymentCheck(reference=reference, listing_id=payment.listing_id, payment_status=payment.status)

        transaction = await self.gateway.find_by_reference(reference)
        gateway_status = transaction.get("status") if transaction else None
        if transaction and gateway_status == APPROVED:
            result = await self.reconciler.reconcile(transaction)
            return PaymentCheck(
                reference=reference,
                listing_id=payment.listing_id,
                payment_status=PaymentStatus.APPROVED.value,
                gateway_status=gateway_status,
                reconciled=result,
            )

        return PaymentCheck(
            reference=reference,
            listing_id=payment.listing_id,
            payment_status=payment.status,
            gateway_status=gateway_status,
        )
