import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from worker.celery_app import celery
from marketplace.core.config import settings
import marketplace.models  # noqa: F401  # ensures Models are registered
from marketplace.services.change_feed import RedisChangePublisher
from marketplace.services.container import Services, build_services
from marketplace.services.http_client import HttpResult, ServiceHttpClient
from marketplace.services.listing_state import sources_for
from marketplace.services.notifications import CeleryNotifier
from marketplace.services.payment_gateway import PaymentGatewayClient
from marketplace.services.retry import compute_backoff_seconds
from marketplace.services.storage import LocalObjectStore
from marketplace.services.webhook import APPROVED


log = logging.getLogger(__name__)

STALE_AFTER_MINUTES = 15
RECONCILE_BATCH_SIZE = 50
EXPIRY_BATCH_SIZE = 100


def render_confirmation(*, recipient_name: str | None, title: str | None, city: str | None, reference: str, expires_at: str | None) -> dict:
    greeting = f"Hi {recipient_name}," if recipient_name else "Hi,"
    where = f" in {city}" if city else ""
    lines = [
        f"<p>{greeting}</p>",
        f"<p>We received the payment for <strong>{title or 'your listing'}</strong>{where}.</p>",
        "<p>Your listing is now being reviewed and will go live once your documents are verified.</p>",
        f"<p>Payment reference: {reference}</p>",
    ]
    if expires_at:
        lines.append(f"<p>Publication period ends: {expires_at[:10]}</p>")
    return {"subject": "Payment confirmed for your listing", "html": "\n".join(lines)}


async def _send_payment_confirmation(**kw) -> HttpResult:
    message = render_confirmation(
        recipient_name=kw["recipient_name"],
        title=kw["title"],
        city=kw["city"],
        reference=kw["reference"],
        expires_at=kw["expires_at"],
    )
    headers = {"Authorization": f"Bearer {settings.notifications_api_key.get_secret_value()}"}
    async with ServiceHttpClient(timeout_seconds=settings.notification_timeout_seconds) as http:
        return await http.post_json(
            url=settings.notifications_api_url,
            headers=headers,
            json_body={"from": settings.notifications_from, "to": [kw["recipient_email"]], **message},
        )


@celery.task(name="worker.tasks.send_payment_confirmation", bind=True, max_retries=5)
def send_payment_confirmation(
    self,
    recipient_email: str,
    recipient_name: str | None,
    listing_id: str,
    title: str | None,
    city: str | None,
    reference: str,
    expires_at: str | None,
) -> None:
    result = asyncio.run(_send_payment_confirmation(
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        title=title,
        city=city,
        reference=reference,
        expires_at=expires_at,
    ))
    if result.ok:
        log.info("payment confirmation sent listing=%s", listing_id)
        return
    if result.retryable and self.request.retries < self.max_retries:
        countdown = compute_backoff_seconds(self.request.retries + 1)
        log.warning("payment confirmation failed listing=%s error=%s; retry in %ss", listing_id, result.error_code, countdown)
        raise self.retry(countdown=countdown)
    log.error("payment confirmation dropped listing=%s error=%s", listing_id, result.error_code)


async def _reconcile_pending_payments() -> int:
    """
    Safety net for lost webhooks: ask the gateway about initiated payments
    that have been waiting too long and apply the approved ones.
    """
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    publisher = RedisChangePublisher(settings.redis_url)
    gateway = PaymentGatewayClient(ServiceHttpClient(timeout_seconds=10.0), api_url=settings.payments_api_url)
    applied = 0

    try:
        async with Session() as db:
            services = build_services(
                db,
                publisher=publisher,
                notifier=CeleryNotifier(),
                object_store=LocalObjectStore(settings.storage_dir),
                gateway=gateway,
            )
            cutoff = datetime.now(timezone.utc) - timedelta(minutes=STALE_AFTER_MINUTES)
            stale = await services.payments.list_stale_initiated(older_than=cutoff, limit=RECONCILE_BATCH_SIZE)
            log.info("reconcile: %d stale initiated payments", len(stale))

            for payment in stale:
                reference = payment.order_reference
                transaction = await gateway.find_by_reference(reference)
                if not transaction or transaction.get("status") != APPROVED:
                    continue
                try:
                    result = await services.webhook.reconcile(transaction)
                    await db.commit()
                except Exception:
                    log.exception("reconcile: payment %s failed", reference)
                    await db.rollback()
                    services.feed.discard()
                    continue
                await services.webhook.after_commit(result)
                applied += 1
    finally:
        await gateway.aclose()
        await publisher.aclose()
        await engine.dispose()

    log.info("reconcile: applied %d payments", applied)
    return applied


@celery.task(name="worker.tasks.reconcile_pending_payments")
def reconcile_pending_payments() -> int:
    return asyncio.run(_reconcile_pending_payments())


async def expire_overdue_verifications(services: Services, *, limit: int = EXPIRY_BATCH_SIZE) -> int:
    """Reject paid listings whose identity upload window has closed. Commits per listing."""
    overdue = await services.listings.list_verification_overdue(
        statuses=sources_for("reject"), now=services.lifecycle.clock(), limit=limit
    )
    # ids up front: a rollback expires the loaded rows
    listing_ids = [listing.id for listing in overdue]
    log.info("verification deadline: %d overdue listings", len(listing_ids))
    rejected = 0
    for listing_id in listing_ids:
        try:
            result = await services.lifecycle.expire_verification(listing_id)
            await services.commit()
        except Exception:
            log.exception("verification deadline: listing %s failed", listing_id)
            await services.db.rollback()
            services.feed.discard()
            continue
        if result.changed:
            rejected += 1
    log.info("verification deadline: rejected %d listings", rejected)
    return rejected


async def _expire_overdue_verifications() -> int:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    publisher = RedisChangePublisher(settings.redis_url)
    gateway = PaymentGatewayClient(ServiceHttpClient(timeout_seconds=10.0), api_url=settings.payments_api_url)

    try:
        async with Session() as db:
            services = build_services(
                db,
                publisher=publisher,
                notifier=CeleryNotifier(),
                object_store=LocalObjectStore(settings.storage_dir),
                gateway=gateway,
            )
            return await expire_overdue_verifications(services)
    finally:
        await gateway.aclose()
        await publisher.aclose()
        await engine.dispose()


@celery.task(name="worker.tasks.expire_overdue_verifications")
def expire_overdue_verifications_task() -> int:
    return asyncio.run(_expire_overdue_verifications())
