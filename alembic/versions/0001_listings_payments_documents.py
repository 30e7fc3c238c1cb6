from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_listings_payments_documents"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=120), nullable=False),
        sa.Column("owner_email", sa.String(length=320), nullable=True),
        sa.Column("owner_name", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="draft"),
        sa.Column("title", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=True),
        sa.Column("deal_type", sa.String(length=30), nullable=True),
        sa.Column("property_type", sa.String(length=50), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("neighborhood", sa.String(length=120), nullable=True),
        sa.Column("address", sa.String(length=300), nullable=True),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_listings_owner_status", "listings", ["owner_id", "status"])
    op.create_index(
        "ix_listings_status_verification_deadline", "listings", ["status", "verification_deadline_at"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("order_reference", sa.String(length=120), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=120), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="COP"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="initiated"),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("owner_id", sa.String(length=120), nullable=False),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("checkout_url", sa.Text(), nullable=True),
        sa.Column(
            "gateway_payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_audit_columns(),
        sa.UniqueConstraint("order_reference", name="uq_payments_order_reference"),
    )
    op.create_index("ix_payments_listing_status", "payments", ["listing_id", "status"])
    op.create_index("ix_payments_status_created_at", "payments", ["status", "created_at"])

    op.create_table(
        "verification_documents",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=120), nullable=False),
        sa.Column("listing_id", sa.String(length=36), sa.ForeignKey("listings.id"), nullable=True),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("content_type", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="submitted"),
        sa.Column("reviewer_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_verification_documents_listing_kind", "verification_documents", ["listing_id", "kind"])
    op.create_index("ix_verification_documents_owner", "verification_documents", ["owner_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("actor", sa.String(length=120), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("target_type", sa.String(length=120), nullable=True),
        sa.Column("target_id", sa.String(length=200), nullable=True),
        sa.Column(
            "detail",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_target", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_verification_documents_owner", table_name="verification_documents")
    op.drop_index("ix_verification_documents_listing_kind", table_name="verification_documents")
    op.drop_table("verification_documents")
    op.drop_index("ix_payments_status_created_at", table_name="payments")
    op.drop_index("ix_payments_listing_status", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_listings_status_verification_deadline", table_name="listings")
    op.drop_index("ix_listings_owner_status", table_name="listings")
    op.drop_table("listings")
