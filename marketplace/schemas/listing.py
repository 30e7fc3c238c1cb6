from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class ListingCreate(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    deal_type: str | None = Field(default=None, max_length=30)
    property_type: str | None = Field(default=None, max_length=50)
    city: str | None = Field(default=None, max_length=120)
    neighborhood: str | None = Field(default=None, max_length=120)
    address: str | None = Field(default=None, max_length=300)


class ListingOut(BaseModel):
    id: str
    owner_id: str
    status: str
    title: str | None
    description: str | None
    price: Decimal | None
    deal_type: str | None
    property_type: str | None
    city: str | None
    neighborhood: str | None
    address: str | None
    payment_id: str | None
    published_at: datetime | None
    expires_at: datetime | None
    verification_deadline_at: datetime | None
    rejection_reason: str | None


class ListingStatusOut(BaseModel):
    id: str
    status: str
    published_at: datetime | None = None
    expires_at: datetime | None = None
    verification_deadline_at: datetime | None = None


class TransitionOut(BaseModel):
    listing_id: str
    status: str
    changed: bool
    previous_status: str | None = None
    published_at: datetime | None = None
    expires_at: datetime | None = None


class CompletenessOut(BaseModel):
    listing_id: str
    status: str
    complete: bool
    missing_fields: list[str]


class RejectIn(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
