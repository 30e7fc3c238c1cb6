import json

import pytest
from sqlalchemy import func, select

from marketplace.models.audit_log import AuditLog
from marketplace.models.payment import PaymentRecord
from marketplace.services.change_feed import ListingChange
from marketplace.services.webhook import WebhookReconciler, listing_id_from_redirect
from tests.fixtures_seed import add_document, add_payment, make_listing, signed_event, transaction

SHORT_ID = "ab12cd34"
LISTING_ID = f"{SHORT_ID}-5e6f-4a7b-8c9d-0e1f2a3b4c5d"
FALLBACK_REFERENCE = f"NIDO-{SHORT_ID}-169900"


async def deliver(services, event) -> tuple[int, dict]:
    raw = event if isinstance(event, bytes) else json.dumps(event).encode()
    outcome = await services.webhook.handle(raw)
    return outcome.status_code, outcome.body


async def approved_count(db, reference) -> int:
    stmt = select(func.count()).select_from(PaymentRecord).where(
        PaymentRecord.order_reference == reference, PaymentRecord.status == "approved"
    )
    return (await db.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_unconfigured_secret_refuses_everything(services, db_session, notifier, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-gate-1")
    await db_session.commit()
    reconciler = WebhookReconciler(
        db_session,
        events_secret=None,
        listings=services.listings,
        payments=services.payments,
        lifecycle=services.lifecycle,
        feed=services.feed,
        notifier=notifier,
        reference_prefix="NIDO",
    )

    outcome = await reconciler.handle(json.dumps(signed_event(transaction("NIDO-gate-1"))).encode())

    assert outcome.status_code == 500
    assert (await services.payments.get_by_reference("NIDO-gate-1")).status == "initiated"


@pytest.mark.asyncio
async def test_missing_or_unreadable_signature_is_unauthorized(services):
    event = signed_event(transaction("NIDO-sig-1"))
    del event["signature"]["checksum"]

    assert (await deliver(services, event))[0] == 401
    assert (await deliver(services, b"{not json"))[0] == 401


@pytest.mark.asyncio
async def test_tampered_event_is_rejected_before_any_business_logic(services, db_session, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-tamper-1")
    await db_session.commit()
    event = signed_event(transaction("NIDO-tamper-1", status="DECLINED"))
    event["data"]["transaction"]["status"] = "APPROVED"

    status, body = await deliver(services, event)

    assert status == 401
    assert body == {"error": "invalid_signature"}
    assert (await services.payments.get_by_reference("NIDO-tamper-1")).status == "initiated"


@pytest.mark.asyncio
async def test_checksum_in_uppercase_is_accepted(services, db_session, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-upper-1")
    await db_session.commit()
    event = signed_event(transaction("NIDO-upper-1"))
    event["signature"]["checksum"] = event["signature"]["checksum"].upper()

    status, body = await deliver(services, event)

    assert status == 200
    assert body["success"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("event_type, tx_status", [("transaction.updated", "DECLINED"), ("nequi_token.updated", "APPROVED")])
async def test_other_events_are_acknowledged_without_changes(services, db_session, ready_listing, event_type, tx_status):
    await add_payment(db_session, ready_listing, reference="NIDO-other-1")
    await db_session.commit()

    status, body = await deliver(services, signed_event(transaction("NIDO-other-1", status=tx_status), event=event_type))

    assert status == 200
    assert body["ignored"] is True
    assert (await services.payments.get_by_reference("NIDO-other-1")).status == "initiated"
    assert (await services.listings.get(ready_listing.id)).status == "payment-ready"


@pytest.mark.asyncio
async def test_approved_event_confirms_payment_and_listing(services, db_session, publisher, notifier, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-primary-1")
    await db_session.commit()

    status, body = await deliver(services, signed_event(transaction("NIDO-primary-1", tx_id="tx-77")))

    assert status == 200
    assert body["success"] is True
    assert body["resolved_by"] == "reference"
    assert body["status"] == "in-review"

    payment = await services.payments.get_by_reference("NIDO-primary-1")
    assert payment.status == "approved"
    assert payment.gateway_transaction_id == "tx-77"
    # the whole verified envelope is kept, not only the transaction
    assert payment.gateway_payload["event"] == "transaction.updated"
    assert payment.gateway_payload["data"]["transaction"]["reference"] == "NIDO-primary-1"
    assert payment.gateway_payload["signature"]["checksum"]
    assert "timestamp" in payment.gateway_payload

    listing = await services.listings.get(ready_listing.id)
    assert listing.status == "in-review"
    assert listing.payment_id == payment.id

    assert publisher.changes == [ListingChange(listing_id=ready_listing.id, status="in-review")]
    assert len(notifier.sent) == 1
    email, name, summary = notifier.sent[0]
    assert (email, name) == ("payer@example.com", "Payer Person")
    assert summary.reference == "NIDO-primary-1"


@pytest.mark.asyncio
async def test_replayed_event_is_applied_once(services, db_session, notifier, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-replay-1")
    await db_session.commit()
    event = signed_event(transaction("NIDO-replay-1"))

    first = await deliver(services, event)
    second = await deliver(services, event)

    assert first[0] == second[0] == 200
    assert first[1]["duplicate"] is False
    assert second[1]["duplicate"] is True
    assert second[1]["changed"] is False
    assert await approved_count(db_session, "NIDO-replay-1") == 1

    transitions = (
        await db_session.execute(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "listing.confirm_payment")
        )
    ).scalar_one()
    assert transitions == 1
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_fallback_resolves_listing_from_reference_prefix(services, db_session):
    listing = await make_listing(db_session, listing_id=LISTING_ID, status="payment-ready")
    await add_document(db_session, listing)
    await db_session.commit()

    status, body = await deliver(services, signed_event(transaction(FALLBACK_REFERENCE)))

    assert status == 200
    assert body["success"] is True
    assert body["listing_id"] == LISTING_ID
    assert body["resolved_by"] == "reference_prefix"
    assert (await services.listings.get(LISTING_ID)).status == "in-review"
    payment = await services.payments.get_by_reference(FALLBACK_REFERENCE)
    assert payment.status == "approved"
    assert payment.listing_id == LISTING_ID

    # gateway retry of the same event
    status, body = await deliver(services, signed_event(transaction(FALLBACK_REFERENCE)))
    assert body["duplicate"] is True
    assert await approved_count(db_session, FALLBACK_REFERENCE) == 1


@pytest.mark.asyncio
async def test_fallback_prefers_listing_id_in_redirect_url(services, db_session, ready_listing):
    redirect = f"https://nido.example/publicar/confirmacion?listing_id={ready_listing.id}"

    status, body = await deliver(services, signed_event(transaction("checkout-test-opaque", redirect_url=redirect)))

    assert body["success"] is True
    assert body["resolved_by"] == "redirect_url"
    assert (await services.listings.get(ready_listing.id)).status == "in-review"


def test_listing_id_from_redirect_accepts_id_param():
    assert listing_id_from_redirect("https://x.test/r?id=abc&other=1") == "abc"
    assert listing_id_from_redirect("https://x.test/r?listing_id=%20") is None
    assert listing_id_from_redirect(None) is None


@pytest.mark.asyncio
async def test_unresolvable_reference_is_a_business_failure(services, db_session):
    await make_listing(db_session, listing_id=LISTING_ID, status="payment-ready")
    await db_session.commit()
    redirect = "https://nido.example/publicar/confirmacion"

    status, body = await deliver(services, signed_event(transaction("NIDO-ffffffff-1", redirect_url=redirect)))

    assert status == 200
    assert body["success"] is False
    assert body["reference"] == "NIDO-ffffffff-1"
    assert body["redirect_url"] == redirect
    assert (await services.listings.get(LISTING_ID)).status == "payment-ready"


@pytest.mark.asyncio
async def test_prefix_fallback_can_be_switched_off(services, db_session):
    await make_listing(db_session, listing_id=LISTING_ID, status="payment-ready")
    await db_session.commit()
    services.webhook.prefix_fallback_enabled = False

    status, body = await deliver(services, signed_event(transaction(FALLBACK_REFERENCE)))

    assert body["success"] is False


@pytest.mark.asyncio
async def test_ambiguous_prefix_does_not_resolve(services, db_session):
    await make_listing(db_session, listing_id=LISTING_ID, status="payment-ready")
    await make_listing(db_session, listing_id=f"{SHORT_ID}-0000-4000-8000-000000000000", status="payment-ready")
    await db_session.commit()

    status, body = await deliver(services, signed_event(transaction(FALLBACK_REFERENCE)))

    assert body["success"] is False


@pytest.mark.asyncio
async def test_concurrent_fallback_insert_is_treated_as_already_reconciled(services, db_session, monkeypatch):
    listing = await make_listing(db_session, listing_id=LISTING_ID, status="in-review")
    await add_payment(db_session, listing, reference=FALLBACK_REFERENCE, status="approved")
    await db_session.commit()

    # this delivery looked the reference up before the other one committed
    async def not_yet_visible(reference):
        return None

    monkeypatch.setattr(services.payments, "get_by_reference", not_yet_visible)

    status, body = await deliver(services, signed_event(transaction(FALLBACK_REFERENCE)))

    assert status == 200
    assert body["success"] is True
    assert body["duplicate"] is True
    assert await approved_count(db_session, FALLBACK_REFERENCE) == 1
    assert (await services.listings.get(LISTING_ID)).status == "in-review"


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_confirmation(services, db_session, ready_listing):
    class BrokenNotifier:
        async def send(self, *args):
            raise ConnectionError("smtp down")

    services.webhook.notifier = BrokenNotifier()
    await add_payment(db_session, ready_listing, reference="NIDO-notify-1")
    await db_session.commit()

    status, body = await deliver(services, signed_event(transaction("NIDO-notify-1")))

    assert status == 200
    assert body["success"] is True
    assert (await services.listings.get(ready_listing.id)).status == "in-review"


@pytest.mark.asyncio
async def test_unexpected_failure_rolls_back_and_hides_detail(services, db_session, publisher, ready_listing, monkeypatch):
    await add_payment(db_session, ready_listing, reference="NIDO-boom-1")
    await db_session.commit()

    async def explode(*args, **kwargs):
        raise RuntimeError("connection reset by peer at 10.0.0.5")

    monkeypatch.setattr(services.lifecycle, "confirm_payment", explode)

    status, body = await deliver(services, signed_event(transaction("NIDO-boom-1")))

    assert status == 200
    assert body["success"] is False
    assert "10.0.0.5" not in json.dumps(body)
    assert (await services.payments.get_by_reference("NIDO-boom-1")).status == "initiated"
    assert publisher.changes == []
