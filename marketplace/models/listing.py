from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from marketplace.core.ids import gen_listing_id

from marketplace.models.base import Base, AuditMixin


class Listing(AuditMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_owner_status", "owner_id", "status"),
        Index("ix_listings_status_verification_deadline", "status", "verification_deadline_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_listing_id)

    owner_id: Mapped[str] = mapped_column(String(120), nullable=False)
    # contact details used for the payment confirmation email
    owner_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # see services.listing_state.ListingStatus
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")

    # required before the listing can be paid for
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    deal_type: Mapped[str | None] = mapped_column(String(30), nullable=True)       # e.g. "sale", "rent"
    property_type: Mapped[str | None] = mapped_column(String(50), nullable=True)   # e.g. "apartment"
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    neighborhood: Mapped[str | None] = mapped_column(String(120), nullable=True)
    address: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # payments.listing_id carries the foreign key; this is the back-reference
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # paid listings without an identity document are rejected once this passes
    verification_deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
