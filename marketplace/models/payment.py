from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.core.ids import gen_id

from marketplace.models.base import AuditMixin, Base, JSONType


class PaymentRecord(AuditMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        # concurrency control for duplicate webhook deliveries
        UniqueConstraint("order_reference", name="uq_payments_order_reference"),
        Index("ix_payments_listing_status", "listing_id", "status"),
        Index("ix_payments_status_created_at", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("pay"))

    order_reference: Mapped[str] = mapped_column(String(120), nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="COP")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="initiated")  # initiated/approved

    listing_id: Mapped[str] = mapped_column(String(36), ForeignKey("listings.id"), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(120), nullable=False)

    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # raw gateway event, kept for audit
    gateway_payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
