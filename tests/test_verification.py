import pytest
from sqlalchemy import func, select

from marketplace.core.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from marketplace.models.audit_log import AuditLog
from marketplace.models.verification_document import VerificationDocument
from marketplace.services.verification import VerificationAggregate, aggregate_from_statuses
from tests.fixtures_seed import OWNER_ID, add_document, make_listing


class FailingStore:
    async def put(self, path, data, content_type=None):
        raise OSError("bucket unavailable")

    async def remove(self, path):
        raise OSError("bucket unavailable")


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], VerificationAggregate.NONE),
        (["rejected"], VerificationAggregate.NONE),
        (["submitted", "rejected"], VerificationAggregate.PENDING),
        (["submitted", "under-review"], VerificationAggregate.UNDER_REVIEW),
        (["under-review", "approved", "submitted"], VerificationAggregate.APPROVED),
    ],
)
def test_aggregate_precedence(statuses, expected):
    assert aggregate_from_statuses(statuses) == expected


@pytest.mark.asyncio
async def test_submit_document_stores_file_then_records_it(services, db_session, object_store):
    listing = await make_listing(db_session)
    await db_session.commit()

    outcome = await services.verification.submit_document(
        owner_id=OWNER_ID, listing_id=listing.id, kind="identity", data=b"%PDF-1.4", content_type="application/pdf"
    )

    assert outcome.document_status == "submitted"
    assert outcome.aggregate_status == VerificationAggregate.PENDING
    doc = await services.verification.documents.get(outcome.document_id)
    assert doc.storage_path.startswith(f"{OWNER_ID}/{listing.id}/identity_")
    assert doc.storage_path.endswith(".pdf")
    assert object_store.resolve_path(doc.storage_path).read_bytes() == b"%PDF-1.4"


@pytest.mark.asyncio
async def test_account_level_document(services, object_store):
    outcome = await services.verification.submit_document(
        owner_id=OWNER_ID, listing_id=None, kind="identity", data=b"jpeg-bytes", content_type="image/jpeg"
    )

    doc = await services.verification.documents.get(outcome.document_id)
    assert doc.listing_id is None
    assert doc.storage_path.startswith(f"{OWNER_ID}/account/identity_")


@pytest.mark.asyncio
async def test_submit_document_validates_input(services, db_session):
    listing = await make_listing(db_session)
    await db_session.commit()
    submit = services.verification.submit_document

    with pytest.raises(ValidationError):
        await submit(owner_id=OWNER_ID, listing_id=listing.id, kind="identity", data=b"")
    with pytest.raises(ValidationError):
        await submit(owner_id=OWNER_ID, listing_id=listing.id, kind="passport", data=b"x")
    with pytest.raises(ValidationError):
        await submit(owner_id=OWNER_ID, listing_id="  ", kind="identity", data=b"x")
    with pytest.raises(ValidationError):
        await submit(owner_id="", listing_id=listing.id, kind="identity", data=b"x")
    with pytest.raises(NotFoundError):
        await submit(owner_id=OWNER_ID, listing_id="missing-listing", kind="identity", data=b"x")
    with pytest.raises(AuthorizationError):
        await submit(owner_id="usr_other", listing_id=listing.id, kind="identity", data=b"x")


@pytest.mark.asyncio
async def test_failed_upload_creates_no_record(services, db_session):
    listing = await make_listing(db_session)
    await db_session.commit()
    services.verification.object_store = FailingStore()

    with pytest.raises(ValidationError) as exc:
        await services.verification.submit_document(
            owner_id=OWNER_ID, listing_id=listing.id, kind="identity", data=b"x"
        )

    assert exc.value.code == "upload_failed"
    count = (await db_session.execute(select(func.count()).select_from(VerificationDocument))).scalar_one()
    assert count == 0


@pytest.mark.asyncio
async def test_new_document_on_rejected_listing_resubmits_it(services, db_session):
    listing = await make_listing(db_session, status="rejected", rejection_reason="Foto borrosa")
    await db_session.commit()

    outcome = await services.verification.submit_document(
        owner_id=OWNER_ID, listing_id=listing.id, kind="identity", data=b"x", content_type="image/png"
    )

    assert outcome.listing.status == "draft"
    stored = await services.listings.get(listing.id)
    assert stored.rejection_reason is None


@pytest.mark.asyncio
async def test_approving_last_identity_document_activates_listing(services, paid_listing):
    outcome = await services.verification.approve(paid_listing["document"].id)

    assert outcome.document_status == "approved"
    assert outcome.listing.status == "active"
    assert outcome.aggregate_status == VerificationAggregate.APPROVED


@pytest.mark.asyncio
async def test_unresolved_sibling_keeps_listing_in_review(services, db_session, paid_listing):
    listing = paid_listing["listing"]
    await add_document(db_session, listing, status="submitted")
    await db_session.commit()

    outcome = await services.verification.approve(paid_listing["document"].id)

    assert outcome.listing is None
    assert (await services.listings.get(listing.id)).status == "in-review"
    assert await services.verification.listing_verification_complete(listing.id) is False


@pytest.mark.asyncio
async def test_approve_is_idempotent_but_refuses_rejected_documents(services, db_session, paid_listing):
    listing = paid_listing["listing"]
    doc = paid_listing["document"]

    await services.verification.approve(doc.id)
    again = await services.verification.approve(doc.id)
    assert again.document_status == "approved"
    assert (await services.listings.get(listing.id)).status == "active"

    rejected = await add_document(db_session, listing, status="rejected")
    await db_session.commit()
    with pytest.raises(StateConflictError):
        await services.verification.approve(rejected.id)


@pytest.mark.asyncio
async def test_reject_document_rejects_listing_with_reason(services, paid_listing):
    with pytest.raises(ValidationError):
        await services.verification.reject(paid_listing["document"].id, reason="")

    outcome = await services.verification.reject(paid_listing["document"].id, reason="La cédula está vencida")

    assert outcome.document_status == "rejected"
    assert outcome.listing.status == "rejected"
    stored = await services.listings.get(paid_listing["listing"].id)
    assert stored.rejection_reason == "La cédula está vencida"
    doc = await services.verification.documents.get(paid_listing["document"].id)
    assert doc.reviewer_note == "La cédula está vencida"


@pytest.mark.asyncio
async def test_rejecting_identity_document_of_a_draft_keeps_the_draft(services, draft_listing):
    doc = (await services.verification.listing_documents(draft_listing.id, requesting_owner_id=OWNER_ID))[0]

    outcome = await services.verification.reject(doc.id, reason="Documento ilegible")
    await services.commit()

    assert outcome.document_status == "rejected"
    assert outcome.listing is None
    stored = await services.listings.get(draft_listing.id)
    assert stored.status == "draft"
    assert stored.rejection_reason is None


@pytest.mark.asyncio
async def test_rejecting_authorization_document_keeps_a_published_listing_live(services, db_session, publisher):
    listing = await make_listing(db_session, status="active")
    await add_document(db_session, listing, status="approved")
    authorization = await add_document(db_session, listing, kind="authorization", status="submitted")
    await db_session.commit()

    outcome = await services.verification.reject(authorization.id, reason="Poder sin firma")
    await services.commit()

    assert outcome.document_status == "rejected"
    assert outcome.listing is None
    assert (await services.listings.get(listing.id)).status == "active"
    assert publisher.changes == []


@pytest.mark.asyncio
async def test_approval_that_loses_to_a_rejection_reports_the_rejection(services, db_session, paid_listing, monkeypatch):
    listing = paid_listing["listing"]
    doc = paid_listing["document"]
    store = services.verification.documents
    original = store.set_status

    async def rejected_meanwhile(document_id, **kw):
        if kw["to_status"] == "approved":
            # the rejection commits between approve's read and its write
            await original(document_id, from_statuses=["under-review"], to_status="rejected", reviewer_note="Vencida")
        return await original(document_id, **kw)

    monkeypatch.setattr(store, "set_status", rejected_meanwhile)

    with pytest.raises(StateConflictError):
        await services.verification.approve(doc.id)

    assert (await store.get(doc.id)).status == "rejected"
    assert (await services.listings.get(listing.id)).status == "in-review"
    approvals = (
        await db_session.execute(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "document.approve")
        )
    ).scalar_one()
    assert approvals == 0


@pytest.mark.asyncio
async def test_delete_submitted_document_returns_recomputed_aggregate(services, db_session):
    listing = await make_listing(db_session)
    keep = await add_document(db_session, listing, status="approved")
    drop = await add_document(db_session, listing, status="submitted")
    await db_session.commit()

    # the stored file does not exist: removal fails, the record still goes
    outcome = await services.verification.delete(drop.id, requesting_owner_id=OWNER_ID)

    assert outcome.aggregate_status == VerificationAggregate.APPROVED
    assert await services.verification.documents.get(drop.id) is None
    assert await services.verification.documents.get(keep.id) is not None


@pytest.mark.asyncio
async def test_delete_last_document_returns_none(services, db_session):
    listing = await make_listing(db_session)
    doc = await add_document(db_session, listing, status="rejected")
    await db_session.commit()

    outcome = await services.verification.delete(doc.id, requesting_owner_id=OWNER_ID)

    assert outcome.aggregate_status == VerificationAggregate.NONE


@pytest.mark.asyncio
async def test_delete_guards(services, db_session):
    listing = await make_listing(db_session)
    approved = await add_document(db_session, listing, status="approved")
    reviewing = await add_document(db_session, listing, status="under-review")
    submitted = await add_document(db_session, listing, status="submitted")
    await db_session.commit()

    with pytest.raises(StateConflictError):
        await services.verification.delete(approved.id, requesting_owner_id=OWNER_ID)
    with pytest.raises(StateConflictError):
        await services.verification.delete(reviewing.id, requesting_owner_id=OWNER_ID)
    with pytest.raises(AuthorizationError):
        await services.verification.delete(submitted.id, requesting_owner_id="usr_other")


@pytest.mark.asyncio
async def test_pending_queue_and_review_pickup(services, db_session):
    listing = await make_listing(db_session)
    first = await add_document(db_session, listing, status="submitted")
    await add_document(db_session, listing, status="approved")
    await db_session.commit()

    pending = await services.verification.pending_documents()
    assert [d.id for d in pending] == [first.id]

    outcome = await services.verification.mark_under_review(first.id)
    assert outcome.document_status == "under-review"
    assert outcome.aggregate_status == VerificationAggregate.APPROVED


@pytest.mark.parametrize("key", ["/etc/passwd", "usr/../../secrets", "file:///tmp/x", ""])
def test_object_store_rejects_keys_outside_its_root(object_store, key):
    with pytest.raises(ValueError):
        object_store.resolve_path(key)
