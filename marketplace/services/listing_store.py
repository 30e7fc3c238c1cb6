from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.listing import Listing
from marketplace.services.retry import read_with_retry, write_once


class ListingStore:
    """
    Listing accessor. No authorization here: callers guard ownership.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, listing_id: str) -> Listing | None:
        async def _op() -> Listing | None:
            stmt = (
                select(Listing)
                .where(Listing.id == listing_id)
                .execution_options(populate_existing=True)
            )
            return (await self.db.execute(stmt)).scalar_one_or_none()

        return await read_with_retry(_op, what=f"listing {listing_id}")

    async def find_by_id_prefix(self, prefix: str, *, limit: int = 2) -> Sequence[Listing]:
        async def _op() -> Sequence[Listing]:
            stmt = select(Listing).where(Listing.id.like(f"{prefix}%")).order_by(Listing.id).limit(limit)
            return (await self.db.execute(stmt)).scalars().all()

        return await read_with_retry(_op, what=f"listings with prefix {prefix}")

    async def create(self, *, owner_id: str, fields: dict[str, Any]) -> Listing:
        listing = Listing(owner_id=owner_id, status="draft", created_by=owner_id, updated_by=owner_id, **fields)
        self.db.add(listing)
        await write_once(self.db.flush, what="new listing")
        return listing

    async def transition(
        self,
        listing_id: str,
        *,
        from_statuses: Sequence[str],
        to_status: str,
        actor: str,
        **values: Any,
    ) -> int:
        """
        Conditional update: only writes while the stored status is still one of
        `from_statuses`.
        Returns affected rows; 0 means another writer got there first.
        """
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id, Listing.status.in_(list(from_statuses)))
            .values(status=to_status, updated_by=actor, **values)
            .execution_options(synchronize_session=False)
        )

        async def _op() -> int:
            result = await self.db.execute(stmt)
            return int(result.rowcount or 0)

        return await write_once(_op, what=f"listing {listing_id} -> {to_status}")

    async def list_verification_overdue(
        self, *, statuses: Sequence[str], now: datetime, limit: int = 100
    ) -> Sequence[Listing]:
        """Paid listings still waiting on verification after their deadline."""

        async def _op() -> Sequence[Listing]:
            stmt = (
                select(Listing)
                .where(
                    Listing.status.in_(list(statuses)),
                    Listing.verification_deadline_at.is_not(None),
                    Listing.verification_deadline_at < now,
                )
                .order_by(Listing.verification_deadline_at.asc())
                .limit(limit)
            )
            return (await self.db.execute(stmt)).scalars().all()

        return await read_with_retry(_op, what="listings past their verification deadline")
