from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from marketplace.core.errors import AuthorizationError, NotFoundError, StateConflictError
from marketplace.core.security import integrity_signature
from marketplace.services.checkout import build_reference
from tests.fixtures_seed import OWNER_ID, add_payment, transaction


def test_reference_embeds_listing_prefix_and_millis():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    reference = build_reference("NIDO", "ab12cd34-5e6f-4a7b-8c9d-0e1f2a3b4c5d", now)

    assert reference == "NIDO-ab12cd34-1704067200000"


@pytest.mark.asyncio
async def test_start_checkout_records_initiated_payment(services, ready_listing):
    session = await services.checkout.start_checkout(ready_listing.id, actor_id=OWNER_ID)
    await services.commit()

    assert session.reference.startswith(f"NIDO-{ready_listing.id[:8]}-")
    assert session.integrity_signature == integrity_signature(
        reference=session.reference,
        amount_in_cents=1_000_000,
        currency="COP",
        secret="test_integrity_secret",
    )

    params = {k: v[0] for k, v in parse_qs(urlparse(session.checkout_url).query).items()}
    assert params["public-key"] == "pub_test_key"
    assert params["reference"] == session.reference
    assert params["amount-in-cents"] == "1000000"
    assert params["signature:integrity"] == session.integrity_signature
    redirect_query = parse_qs(urlparse(params["redirect-url"]).query)
    assert redirect_query["listing_id"] == [ready_listing.id]

    payment = await services.payments.get_by_reference(session.reference)
    assert payment.status == "initiated"
    assert payment.listing_id == ready_listing.id
    assert payment.customer_email == "owner@example.com"


@pytest.mark.asyncio
async def test_checkout_requires_payment_ready_owner_listing(services, draft_listing, ready_listing):
    with pytest.raises(StateConflictError):
        await services.checkout.start_checkout(draft_listing.id, actor_id=OWNER_ID)
    with pytest.raises(AuthorizationError):
        await services.checkout.start_checkout(ready_listing.id, actor_id="usr_other")
    with pytest.raises(NotFoundError):
        await services.checkout.start_checkout("no-such-listing", actor_id=OWNER_ID)


@pytest.mark.asyncio
async def test_verify_by_reference_applies_approved_gateway_transaction(services, db_session, gateway, notifier, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-return-1")
    await db_session.commit()
    gateway.transactions["NIDO-return-1"] = transaction("NIDO-return-1")

    check = await services.checkout.verify_by_reference("NIDO-return-1", actor_id=OWNER_ID)
    await services.db.commit()
    await services.webhook.after_commit(check.reconciled)

    assert check.payment_status == "approved"
    assert check.gateway_status == "APPROVED"
    assert (await services.listings.get(ready_listing.id)).status == "in-review"
    assert len(notifier.sent) == 1

    # the webhook arriving afterwards changes nothing
    again = await services.webhook.reconcile(transaction("NIDO-return-1"))
    assert again.duplicate is True
    assert again.transition.changed is False


@pytest.mark.asyncio
async def test_verify_by_reference_leaves_pending_payment_alone(services, db_session, gateway, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-pending-1")
    await db_session.commit()
    gateway.transactions["NIDO-pending-1"] = transaction("NIDO-pending-1", status="PENDING")

    check = await services.checkout.verify_by_reference("NIDO-pending-1")

    assert check.reconciled is None
    assert check.payment_status == "initiated"
    assert check.gateway_status == "PENDING"
    assert (await services.listings.get(ready_listing.id)).status == "payment-ready"


@pytest.mark.asyncio
async def test_verify_by_reference_checks_owner(services, db_session, ready_listing):
    await add_payment(db_session, ready_listing, reference="NIDO-owner-1")
    await db_session.commit()

    with pytest.raises(AuthorizationError):
        await services.checkout.verify_by_reference("NIDO-owner-1", actor_id="usr_other")
    with pytest.raises(NotFoundError):
        await services.checkout.verify_by_reference("NIDO-missing-1")
