from fastapi import APIRouter, Depends, Query, Request

from marketplace.api.deps import Services, get_services
from marketplace.api.v1.endpoints.listings import outcome_out
from marketplace.schemas.verification import DocumentOutcomeOut, VerificationStatusOut
from marketplace.services.auth import Actor, get_actor

router = APIRouter()


@router.get("/me/verification", response_model=VerificationStatusOut)
async def my_verification(actor: Actor = Depends(get_actor), services: Services = Depends(get_services)) -> VerificationStatusOut:
    aggregate = await services.verification.aggregate_status(actor.user_id)
    return VerificationStatusOut(owner_id=actor.user_id, aggregate_status=aggregate.value)


@router.post("/me/documents", response_model=DocumentOutcomeOut, status_code=201)
async def upload_account_document(
    request: Request,
    kind: str = Query(...),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentOutcomeOut:
    outcome = await services.verification.submit_document(
        owner_id=actor.user_id,
        listing_id=None,
        kind=kind,
        data=await request.body(),
        content_type=request.headers.get("content-type"),
    )
    await services.commit()
    return outcome_out(outcome)


@router.delete("/me/documents/{document_id}", response_model=DocumentOutcomeOut)
async def delete_document(
    document_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentOutcomeOut:
    outcome = await services.verification.delete(document_id, requesting_owner_id=actor.user_id)
    await services.commit()
    return outcome_out(outcome)
