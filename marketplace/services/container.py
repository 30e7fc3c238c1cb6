from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import Settings, settings
from marketplace.services.change_feed import ChangeFeed, ChangePublisher
from marketplace.services.checkout import CheckoutService
from marketplace.services.document_store import DocumentStore
from marketplace.services.lifecycle import LifecycleOrchestrator
from marketplace.services.listing_store import ListingStore
from marketplace.services.notifications import Notifier
from marketplace.services.payment_gateway import TransactionLookup
from marketplace.services.payment_store import PaymentStore
from marketplace.services.storage import ObjectStore
from marketplace.services.verification import VerificationWorkflow
from marketplace.services.webhook import WebhookReconciler


@dataclass
class Services:
    db: AsyncSession
    feed: ChangeFeed
    listings: ListingStore
    payments: PaymentStore
    lifecycle: LifecycleOrchestrator
    verification: VerificationWorkflow
    webhook: WebhookReconciler
    checkout: CheckoutService

    async def commit(self) -> None:
        # change events go out only once the transaction is durable
        await self.db.commit()
        await self.feed.flush()


def build_services(
    db: AsyncSession,
    *,
    publisher: ChangePublisher,
    notifier: Notifier,
    object_store: ObjectStore,
    gateway: TransactionLookup,
    cfg: Settings = settings,
) -> Services:
    """Wire the components around one session. Only this function reads settings."""
    listings = ListingStore(db)
    documents = DocumentStore(db)
    payments = PaymentStore(db)
    feed = ChangeFeed(publisher=publisher)

    lifecycle = LifecycleOrchestrator(
        db,
        listings=listings,
        documents=documents,
        payments=payments,
        feed=feed,
        publication_days=cfg.publication_days,
        verification_deadline_hours=cfg.verification_deadline_hours,
    )
    verification = VerificationWorkflow(
        db,
        documents=documents,
        listings=listings,
        lifecycle=lifecycle,
        object_store=object_store,
    )
    secret = cfg.payments_events_secret
    webhook = WebhookReconciler(
        db,
        events_secret=secret.get_secret_value() if secret else None,
        listings=listings,
        payments=payments,
        lifecycle=lifecycle,
        feed=feed,
        notifier=notifier,
        reference_prefix=cfg.reference_prefix,
        prefix_fallback_enabled=cfg.reference_prefix_fallback_enabled,
        notification_timeout_seconds=cfg.notification_timeout_seconds,
    )
    checkout = CheckoutService(
        db,
        listings=listings,
        payments=payments,
        reconciler=webhook,
        gateway=gateway,
        public_key=cfg.payments_public_key,
        integrity_secret=cfg.payments_integrity_secret.get_secret_value(),
        checkout_url=cfg.payments_checkout_url,
        redirect_url=cfg.payments_redirect_url,
        amount_in_cents=cfg.listing_fee_in_cents,
        currency=cfg.listing_currency,
        reference_prefix=cfg.reference_prefix,
    )
    return Services(
        db=db,
        feed=feed,
        listings=listings,
        payments=payments,
        lifecycle=lifecycle,
        verification=verification,
        webhook=webhook,
        checkout=checkout,
    )
