from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from marketplace.core.ids import gen_id

from marketplace.models.base import Base


class VerificationDocument(Base):
    __tablename__ = "verification_documents"
    __table_args__ = (
        Index("ix_verification_documents_listing_kind", "listing_id", "kind"),
        Index("ix_verification_documents_owner", "owner_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("doc"))

    owner_id: Mapped[str] = mapped_column(String(120), nullable=False)
    # None for account-level verification
    listing_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("listings.id"), nullable=True)

    kind: Mapped[str] = mapped_column(String(30), nullable=False)          # "identity" | "authorization"
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # submitted/under-review/approved/rejected
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="submitted")
    reviewer_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
