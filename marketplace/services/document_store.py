from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.verification_document import VerificationDocument
from marketplace.services.retry import read_with_retry, write_once


class DocumentStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, document_id: str) -> VerificationDocument | None:
        async def _op() -> VerificationDocument | None:
            stmt = (
                select(VerificationDocument)
                .where(VerificationDocument.id == document_id)
                .execution_options(populate_existing=True)
            )
            return (await self.db.execute(stmt)).scalar_one_or_none()

        return await read_with_retry(_op, what=f"document {document_id}")

    async def list_for_listing(self, listing_id: str, *, kind: str | None = None) -> Sequence[VerificationDocument]:
        async def _op() -> Sequence[VerificationDocument]:
            stmt = select(VerificationDocument).where(VerificationDocument.listing_id == listing_id)
            if kind:
                stmt = stmt.where(VerificationDocument.kind == kind)
            stmt = stmt.order_by(VerificationDocument.created_at.desc()).execution_options(populate_existing=True)
            return (await self.db.execute(stmt)).scalars().all()

        return await read_with_retry(_op, what=f"documents of listing {listing_id}")

    async def list_statuses_for_owner(self, owner_id: str) -> list[str]:
        async def _op() -> list[str]:
            stmt = select(VerificationDocument.status).where(VerificationDocument.owner_id == owner_id)
            return list((await self.db.execute(stmt)).scalars().all())

        return await read_with_retry(_op, what=f"documents of owner {owner_id}")

    async def count_for_listing(self, listing_id: str, *, kind: str, statuses: Sequence[str]) -> int:
        async def _op() -> int:
            stmt = select(func.count()).select_from(VerificationDocument).where(
                VerificationDocument.listing_id == listing_id,
                VerificationDocument.kind == kind,
                VerificationDocument.status.in_(list(statuses)),
            )
            return int((await self.db.execute(stmt)).scalar_one())

        return await read_with_retry(_op, what=f"document count of listing {listing_id}")

    async def list_pending(self, *, statuses: Sequence[str], limit: int = 200) -> Sequence[VerificationDocument]:
        async def _op() -> Sequence[VerificationDocument]:
            stmt = (
                select(VerificationDocument)
                .where(VerificationDocument.status.in_(list(statuses)))
                .order_by(VerificationDocument.created_at.asc())
                .limit(limit)
            )
            return (await self.db.execute(stmt)).scalars().all()

        return await read_with_retry(_op, what="pending documents")

    async def create(
        self,
        *,
        owner_id: str,
        listing_id: str | None,
        kind: str,
        storage_path: str,
        content_type: str | None,
    ) -> VerificationDocument:
        doc = VerificationDocument(
            owner_id=owner_id,
            listing_id=listing_id,
            kind=kind,
            storage_path=storage_path,
            content_type=content_type,
            status="submitted",
        )
        self.db.add(doc)
        await write_once(self.db.flush, what="new document")
        return doc

    async def set_status(
        self,
        document_id: str,
        *,
        from_statuses: Sequence[str],
        to_status: str,
        reviewer_note: str | None = None,
    ) -> int:
        values: dict = {"status": to_status, "reviewed_at": datetime.now(timezone.utc)}
        if reviewer_note is not None:
            values["reviewer_note"] = reviewer_note
        stmt = (
            update(VerificationDocument)
            .where(VerificationDocument.id == document_id, VerificationDocument.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async def _op() -> int:
            return int((await self.db.execute(stmt)).rowcount or 0)

        return await write_once(_op, what=f"document {document_id} -> {to_status}")

    async def set_status_for_listing(self, listing_id: str, *, kind: str, from_status: str, to_status: str) -> int:
        stmt = (
            update(VerificationDocument)
            .where(
                VerificationDocument.listing_id == listing_id,
                VerificationDocument.kind == kind,
                VerificationDocument.status == from_status,
            )
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )

        async def _op() -> int:
            return int((await self.db.execute(stmt)).rowcount or 0)

        return await write_once(_op, what=f"documents of listing {listing_id} -> {to_status}")

    async def delete(self, document_id: str) -> int:
        stmt = delete(VerificationDocument).where(VerificationDocument.id == document_id).execution_options(
            synchronize_session=False
        )

        async def _op() -> int:
            return int((await self.db.execute(stmt)).rowcount or 0)

        return await write_once(_op, what=f"delete document {document_id}")
