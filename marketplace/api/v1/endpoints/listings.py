from fastapi import APIRouter, Depends, Query, Request

from marketplace.api.deps import Services, get_services
from marketplace.core.errors import AuthorizationError, NotFoundError
from marketplace.models.listing import Listing
from marketplace.schemas.listing import (
    CompletenessOut,
    ListingCreate,
    ListingOut,
    ListingStatusOut,
    TransitionOut,
)
from marketplace.schemas.payment import CheckoutOut
from marketplace.models.verification_document import VerificationDocument
from marketplace.schemas.verification import DocumentOut, DocumentOutcomeOut
from marketplace.services.auth import Actor, get_actor
from marketplace.services.lifecycle import TransitionResult
from marketplace.services.listing_state import is_publicly_visible
from marketplace.services.verification import DocumentOutcome

router = APIRouter()


def listing_out(listing: Listing) -> ListingOut:
    return ListingOut(
        id=listing.id,
        owner_id=listing.owner_id,
        status=listing.status,
        title=listing.title,
        description=listing.description,
        price=listing.price,
        deal_type=listing.deal_type,
        property_type=listing.property_type,
        city=listing.city,
        neighborhood=listing.neighborhood,
        address=listing.address,
        payment_id=listing.payment_id,
        published_at=listing.published_at,
        expires_at=listing.expires_at,
        verification_deadline_at=listing.verification_deadline_at,
        rejection_reason=listing.rejection_reason,
    )


def transition_out(result: TransitionResult) -> TransitionOut:
    return TransitionOut(
        listing_id=result.listing_id,
        status=result.status,
        changed=result.changed,
        previous_status=result.previous_status,
        published_at=result.published_at,
        expires_at=result.expires_at,
    )


def outcome_out(outcome: DocumentOutcome) -> DocumentOutcomeOut:
    return DocumentOutcomeOut(
        document_id=outcome.document_id,
        document_status=outcome.document_status,
        aggregate_status=outcome.aggregate_status.value,
        listing=transition_out(outcome.listing) if outcome.listing else None,
    )


def document_out(d: VerificationDocument) -> DocumentOut:
    return DocumentOut(
        id=d.id,
        owner_id=d.owner_id,
        listing_id=d.listing_id,
        kind=d.kind,
        status=d.status,
        content_type=d.content_type,
        reviewer_note=d.reviewer_note,
        created_at=d.created_at,
        reviewed_at=d.reviewed_at,
    )


async def _owned_listing(services: Services, listing_id: str, actor: Actor) -> Listing:
    listing = await services.listings.get(listing_id)
    if not listing:
        raise NotFoundError(f"Listing {listing_id} not found")
    if listing.owner_id != actor.user_id:
        raise AuthorizationError("Listing belongs to another owner")
    return listing


@router.post("/listings", response_model=ListingOut, status_code=201)
async def create_listing(
    payload: ListingCreate,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ListingOut:
    listing = await services.listings.create(
        owner_id=actor.user_id,
        fields={**payload.model_dump(), "owner_email": actor.email, "owner_name": actor.name},
    )
    await services.commit()
    return listing_out(listing)


@router.get("/listings/{listing_id}", response_model=ListingOut)
async def get_listing(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ListingOut:
    listing = await services.listings.get(listing_id)
    if not listing or (listing.owner_id != actor.user_id and not is_publicly_visible(listing.status)):
        raise NotFoundError(f"Listing {listing_id} not found")
    return listing_out(listing)


@router.get("/listings/{listing_id}/status", response_model=ListingStatusOut)
async def get_listing_status(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ListingStatusOut:
    listing = await _owned_listing(services, listing_id, actor)
    return ListingStatusOut(
        id=listing.id,
        status=listing.status,
        published_at=listing.published_at,
        expires_at=listing.expires_at,
        verification_deadline_at=listing.verification_deadline_at,
    )


@router.get("/listings/{listing_id}/completeness", response_model=CompletenessOut)
async def get_completeness(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> CompletenessOut:
    await _owned_listing(services, listing_id, actor)
    report = await services.lifecycle.check_completeness(listing_id)
    return CompletenessOut(
        listing_id=report.listing_id,
        status=report.status,
        complete=report.complete,
        missing_fields=report.missing_fields,
    )


@router.post("/listings/{listing_id}/ready", response_model=TransitionOut)
async def mark_ready(listing_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)) -> TransitionOut:
    result = await services.lifecycle.mark_ready(listing_id, actor_id=actor.user_id)
    await services.commit()
    return transition_out(result)


@router.post("/listings/{listing_id}/pause", response_model=TransitionOut)
async def pause(listing_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)) -> TransitionOut:
    result = await services.lifecycle.pause(listing_id, actor_id=actor.user_id)
    await services.commit()
    return transition_out(result)


@router.post("/listings/{listing_id}/resume", response_model=TransitionOut)
async def resume(listing_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)) -> TransitionOut:
    result = await services.lifecycle.resume(listing_id, actor_id=actor.user_id)
    await services.commit()
    return transition_out(result)


@router.post("/listings/{listing_id}/sold", response_model=TransitionOut)
async def mark_sold(listing_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)) -> TransitionOut:
    result = await services.lifecycle.mark_sold(listing_id, actor_id=actor.user_id)
    await services.commit()
    return transition_out(result)


@router.post("/listings/{listing_id}/checkout", response_model=CheckoutOut, status_code=201)
async def start_checkout(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> CheckoutOut:
    session = await services.checkout.start_checkout(listing_id, actor_id=actor.user_id, actor_email=actor.email)
    await services.commit()
    return CheckoutOut(
        listing_id=session.listing_id,
        payment_id=session.payment_id,
        reference=session.reference,
        amount_in_cents=session.amount_in_cents,
        currency=session.currency,
        integrity_signature=session.integrity_signature,
        redirect_url=session.redirect_url,
        checkout_url=session.checkout_url,
    )


@router.post("/listings/{listing_id}/documents", response_model=DocumentOutcomeOut, status_code=201)
async def upload_listing_document(
    listing_id: str,
    request: Request,
    kind: str = Query(...),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentOutcomeOut:
    outcome = await services.verification.submit_document(
        owner_id=actor.user_id,
        listing_id=listing_id,
        kind=kind,
        data=await request.body(),
        content_type=request.headers.get("content-type"),
    )
    await services.commit()
    return outcome_out(outcome)


@router.get("/listings/{listing_id}/documents", response_model=list[DocumentOut])
async def list_listing_documents(
    listing_id: str,
    kind: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> list[DocumentOut]:
    rows = await services.verification.listing_documents(listing_id, requesting_owner_id=actor.user_id, kind=kind)
    return [document_out(d) for d in rows]
