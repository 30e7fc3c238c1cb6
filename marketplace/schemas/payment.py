from pydantic import BaseModel


class CheckoutOut(BaseModel):
    listing_id: str
    payment_id: str
    reference: str
    amount_in_cents: int
    currency: str
    integrity_signature: str
    redirect_url: str
    checkout_url: str


class PaymentCheckOut(BaseModel):
    reference: str
    listing_id: str
    payment_status: str
    gateway_status: str | None = None
    listing_status: str | None = None


class WebhookHealthOut(BaseModel):
    service: str
    status: str
    version: str
