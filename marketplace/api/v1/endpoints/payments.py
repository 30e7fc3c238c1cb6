from fastapi import APIRouter, Depends

from marketplace.api.deps import Services, get_services
from marketplace.schemas.payment import PaymentCheckOut
from marketplace.services.auth import Actor, get_actor

router = APIRouter()


@router.post("/payments/{reference}/verify", response_model=PaymentCheckOut)
async def verify_payment(
    reference: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> PaymentCheckOut:
    check = await services.checkout.verify_by_reference(reference, actor_id=actor.user_id)
    if check.reconciled is not None:
        await services.db.commit()
        await services.webhook.after_commit(check.reconciled)

    listing = await services.listings.get(check.listing_id)
    return PaymentCheckOut(
        reference=check.reference,
        listing_id=check.listing_id,
        payment_status=check.payment_status,
        gateway_status=check.gateway_status,
        listing_status=listing.status if listing else None,
    )
