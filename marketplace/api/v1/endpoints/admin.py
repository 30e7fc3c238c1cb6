from fastapi import APIRouter, Depends

from marketplace.api.deps import Services, get_services
from marketplace.api.v1.endpoints.listings import document_out, outcome_out, transition_out
from marketplace.schemas.listing import RejectIn, TransitionOut
from marketplace.schemas.verification import DocumentOut, DocumentOutcomeOut
from marketplace.services.auth import require_internal_admin

router = APIRouter(prefix="/admin", dependencies=[Depends(require_internal_admin)])


@router.get("/documents/pending", response_model=list[DocumentOut])
async def pending_documents(services: Services = Depends(get_services)) -> list[DocumentOut]:
    rows = await services.verification.pending_documents()
    return [document_out(d) for d in rows]


@router.post("/documents/{document_id}/review", response_model=DocumentOutcomeOut)
async def review_document(document_id: str, services: Services = Depends(get_services)) -> DocumentOutcomeOut:
    outcome = await services.verification.mark_under_review(document_id)
    await services.commit()
    return outcome_out(outcome)


@router.post("/documents/{document_id}/approve", response_model=DocumentOutcomeOut)
async def approve_document(document_id: str, services: Services = Depends(get_services)) -> DocumentOutcomeOut:
    outcome = await services.verification.approve(document_id)
    await services.commit()
    return outcome_out(outcome)


@router.post("/documents/{document_id}/reject", response_model=DocumentOutcomeOut)
async def reject_document(document_id: str, payload: RejectIn, services: Services = Depends(get_services)) -> DocumentOutcomeOut:
    outcome = await services.verification.reject(document_id, reason=payload.reason)
    await services.commit()
    return outcome_out(outcome)


@router.post("/listings/{listing_id}/reject", response_model=TransitionOut)
async def reject_listing(listing_id: str, payload: RejectIn, services: Services = Depends(get_services)) -> TransitionOut:
    result = await services.lifecycle.reject(listing_id, reason=payload.reason)
    await services.commit()
    return transition_out(result)
