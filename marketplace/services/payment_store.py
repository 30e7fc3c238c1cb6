from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import DuplicateReferenceError
from marketplace.models.payment import PaymentRecord
from marketplace.services.retry import read_with_retry, write_once


class PaymentStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_reference(self, reference: str) -> PaymentRecord | None:
        async def _op() -> PaymentRecord | None:
            stmt = (
                select(PaymentRecord)
                .where(PaymentRecord.order_reference == reference)
                .execution_options(populate_existing=True)
            )
            return (await self.db.execute(stmt)).scalar_one_or_none()

        return await read_with_retry(_op, what=f"payment {reference}")

    async def get_approved_for_listing(self, listing_id: str) -> PaymentRecord | None:
        async def _op() -> PaymentRecord | None:
            stmt = (
                select(PaymentRecord)
                .where(PaymentRecord.listing_id == listing_id, PaymentRecord.status == "approved")
                .order_by(PaymentRecord.created_at.asc())
                .limit(1)
            )
            return (await self.db.execute(stmt)).scalar_one_or_none()

        return await read_with_retry(_op, what=f"approved payment of listing {listing_id}")

    async def list_stale_initiated(self, *, older_than: Any, limit: int = 100) -> list[PaymentRecord]:
        async def _op() -> list[PaymentRecord]:
            stmt = (
                select(PaymentRecord)
                .where(PaymentRecord.status == "initiated", PaymentRecord.created_at < older_than)
                .order_by(PaymentRecord.created_at.asc())
                .limit(limit)
            )
            return list((await self.db.execute(stmt)).scalars().all())

        return await read_with_retry(_op, what="stale initiated payments")

    async def insert(
        self,
        *,
        reference: str,
        listing_id: str,
        owner_id: str,
        amount: Decimal,
        currency: str,
        status: str,
        actor: str,
        gateway_transaction_id: str | None = None,
        gateway_payload: dict | None = None,
        customer_email: str | None = None,
        payment_method: str | None = None,
        checkout_url: str | None = None,
    ) -> PaymentRecord:
        """
        Insert keyed by the unique order reference. A unique violation raises
        DuplicateReferenceError; the session must then be rolled back by the caller.
        """
        row = PaymentRecord(
            order_reference=reference,
            listing_id=listing_id,
            owner_id=owner_id,
            amount=amount,
            currency=currency,
            status=status,
            gateway_transaction_id=gateway_transaction_id,
            gateway_payload=gateway_payload or {},
            customer_email=customer_email,
            payment_method=payment_method,
            checkout_url=checkout_url,
            created_by=actor,
            updated_by=actor,
        )
        self.db.add(row)
        try:
            await write_once(self.db.flush, what=f"payment {reference}")
        except IntegrityError as e:
            raise DuplicateReferenceError(f"Order reference {reference} already recorded") from e
        return row

    async def mark_approved(
        self,
        payment_id: str,
        *,
        gateway_transaction_id: str | None,
        gateway_payload: dict,
        payment_method: str | None,
        customer_email: str | None,
    ) -> int:
        """initiated -> approved, conditional. 0 rows means it was already approved."""
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == payment_id, PaymentRecord.status == "initiated")
            .values(
                status="approved",
                gateway_transaction_id=gateway_transaction_id,
                gateway_payload=gateway_payload,
                payment_method=payment_method,
                customer_email=customer_email,
                updated_by="webhook",
            )
            .execution_options(synchronize_session=False)
        )

        async def _op() -> int:
            return int((await self.db.execute(stmt)).rowcount or 0)

        return await write_once(_op, what=f"approve payment {payment_id}")
