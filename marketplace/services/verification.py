from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from marketplace.models.verification_document import VerificationDocument
from marketplace.services.audit import audit
from marketplace.services.document_store import DocumentStore
from marketplace.services.lifecycle import LifecycleOrchestrator, TransitionResult
from marketplace.services.listing_state import (
    TERMINAL_STATUSES,
    UNDELETABLE_DOCUMENT_STATUSES,
    UNRESOLVED_DOCUMENT_STATUSES,
    DocumentKind,
    DocumentStatus,
    ListingStatus,
    sources_for,
)
from marketplace.services.listing_store import ListingStore
from marketplace.services.storage import ObjectStore


log = logging.getLogger(__name__)


class VerificationAggregate(str, Enum):
    NONE = "none"
    PENDING = "pending"
    UNDER_REVIEW = "under-review"
    APPROVED = "approved"


# highest first; rejected documents never count
_PRECEDENCE = (
    (DocumentStatus.APPROVED.value, VerificationAggregate.APPROVED),
    (DocumentStatus.UNDER_REVIEW.value, VerificationAggregate.UNDER_REVIEW),
    (DocumentStatus.SUBMITTED.value, VerificationAggregate.PENDING),
)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
    "application/pdf": "pdf",
}

# paid listings send new identity documents straight to the review queue
_PAID_STATUSES = (ListingStatus.PENDING_VERIFICATION.value, ListingStatus.IN_REVIEW.value)


def aggregate_from_statuses(statuses: Sequence[str]) -> VerificationAggregate:
    present = set(statuses)
    for status, aggregate in _PRECEDENCE:
        if status in present:
            return aggregate
    return VerificationAggregate.NONE


def storage_path_for(*, owner_id: str, listing_id: str | None, kind: str, content_type: str | None, now: datetime) -> str:
    ext = _EXTENSIONS.get((content_type or "").lower(), "bin")
    stamp = int(now.timestamp() * 1000)
    return f"{owner_id}/{listing_id or 'account'}/{kind}_{stamp}.{ext}"


@dataclass(frozen=True)
class DocumentOutcome:
    document_id: str
    document_status: str | None
    aggregate_status: VerificationAggregate
    listing: TransitionResult | None = None


class VerificationWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        *,
        documents: DocumentStore,
        listings: ListingStore,
        lifecycle: LifecycleOrchestrator,
        object_store: ObjectStore,
    ):
        self.db = db
        self.documents = documents
        self.listings = listings
        self.lifecycle = lifecycle
        self.object_store = object_store

    async def _load(self, document_id: str) -> VerificationDocument:
        doc = await self.documents.get(document_id)
        if not doc:
            raise NotFoundError(f"Document {document_id} not found")
        return doc

    async def aggregate_status(self, owner_id: str) -> VerificationAggregate:
        return aggregate_from_statuses(await self.documents.list_statuses_for_owner(owner_id))

    async def listing_verification_complete(self, listing_id: str) -> bool:
        kind = DocumentKind.IDENTITY.value
        unresolved = await self.documents.count_for_listing(listing_id, kind=kind, statuses=UNRESOLVED_DOCUMENT_STATUSES)
        approved = await self.documents.count_for_listing(
            listing_id, kind=kind, statuses=(DocumentStatus.APPROVED.value,)
        )
        return unresolved == 0 and approved > 0

    async def pending_documents(self, *, limit: int = 200) -> Sequence[VerificationDocument]:
        return await self.documents.list_pending(statuses=UNRESOLVED_DOCUMENT_STATUSES, limit=limit)

    async def listing_documents(
        self, listing_id: str, *, requesting_owner_id: str, kind: str | None = None
    ) -> Sequence[VerificationDocument]:
        """Owner-only. Newest first; reviewer notes included."""
        listing = await self.listings.get(listing_id)
        if not listing:
            raise NotFoundError(f"Listing {listing_id} not found")
        if listing.owner_id != requesting_owner_id:
            raise AuthorizationError("Listing belongs to another owner")
        if kind is not None and kind not in {k.value for k in DocumentKind}:
            raise ValidationError(f"Unknown document kind: {kind}", code="invalid_kind")
        return await self.documents.list_for_listing(listing_id, kind=kind)

    async def submit_document(
        self,
        *,
        owner_id: str,
        listing_id: str | None,
        kind: str,
        data: bytes,
        content_type: str | None = None,
    ) -> DocumentOutcome:
        """
        Store the file first, then record it. A document row never exists
        without a confirmed storage write. `listing_id=None` is an
        account-level document.
        """
        if not owner_id or not owner_id.strip():
            raise ValidationError("Owner id is required")
        if listing_id is not None and not listing_id.strip():
            raise ValidationError("Listing id is required")
        if kind not in {k.value for k in DocumentKind}:
            raise ValidationError(f"Unknown document kind: {kind}", code="invalid_kind")
        if not data:
            raise ValidationError("Document is empty", code="empty_document")

        listing = None
        if listing_id is not None:
            listing = await self.listings.get(listing_id)
            if not listing:
                raise NotFoundError(f"Listing {listing_id} not found")
            if listing.owner_id != owner_id:
                raise AuthorizationError("Listing belongs to another owner")
            if listing.status in {s.value for s in TERMINAL_STATUSES}:
                raise StateConflictError(f"Listing {listing_id} is {listing.status}")

        path = storage_path_for(
            owner_id=owner_id,
            listing_id=listing_id,
            kind=kind,
            content_type=content_type,
            now=datetime.now(timezone.utc),
        )
        try:
            stored_path = await self.object_store.put(path, data, content_type)
        except Exception as e:
            log.exception("document upload failed owner=%s listing=%s", owner_id, listing_id)
            raise ValidationError("Document upload failed", code="upload_failed") from e

        doc = await self.documents.create(
            owner_id=owner_id,
            listing_id=listing_id,
            kind=kind,
            storage_path=stored_path,
            content_type=content_type,
        )
        await audit(
            self.db,
            actor=owner_id,
            action="document.submit",
            target=doc,
            detail={"listing_id": listing_id, "kind": kind},
        )

        listing_result = None
        if listing is not None:
            if listing.status == ListingStatus.REJECTED.value:
                listing_result = await self.lifecycle.resubmit(listing.id, actor=owner_id)
            if kind == DocumentKind.IDENTITY.value:
                current = listing_result.status if listing_result else listing.status
                if current in _PAID_STATUSES:
                    await self.documents.set_status(
                        doc.id,
                        from_statuses=(DocumentStatus.SUBMITTED.value,),
                        to_status=DocumentStatus.UNDER_REVIEW.value,
                    )

        refreshed = await self._load(doc.id)
        return DocumentOutcome(
            document_id=doc.id,
            document_status=refreshed.status,
            aggregate_status=await self.aggregate_status(owner_id),
            listing=listing_result,
        )

    async def mark_under_review(self, document_id: str, *, actor: str = "admin") -> DocumentOutcome:
        doc = await self._load(document_id)
        if doc.status in (DocumentStatus.APPROVED.value, DocumentStatus.REJECTED.value):
            raise StateConflictError(f"Document {document_id} is already {doc.status}")

        rows = await self.documents.set_status(
            doc.id, from_statuses=(DocumentStatus.SUBMITTED.value,), to_status=DocumentStatus.UNDER_REVIEW.value
        )
        if rows:
            await audit(self.db, actor=actor, action="document.review", target=doc)
        return DocumentOutcome(
            document_id=doc.id,
            document_status=DocumentStatus.UNDER_REVIEW.value,
            aggregate_status=await self.aggregate_status(doc.owner_id),
        )

    async def approve(self, document_id: str, *, actor: str = "admin") -> DocumentOutcome:
        doc = await self._load(document_id)
        if doc.status == DocumentStatus.REJECTED.value:
            raise StateConflictError(f"Document {document_id} was rejected; a new upload is required")

        rows = await self.documents.set_status(
            doc.id,
            from_statuses=UNRESOLVED_DOCUMENT_STATUSES,
            to_status=DocumentStatus.APPROVED.value,
        )
        if rows:
            await audit(self.db, actor=actor, action="document.approve", target=doc)
            stored_status = DocumentStatus.APPROVED.value
        else:
            # already approved, or a concurrent rejection got there first
            stored_status = (await self._load(doc.id)).status
            if stored_status == DocumentStatus.REJECTED.value:
                log.info("document %s: approval lost to a concurrent rejection", doc.id)
                raise StateConflictError(f"Document {document_id} was rejected; a new upload is required")

        # Re-evaluated on every approval, including repeats, so a lost
        # activation can be recovered by approving again.
        listing_result = None
        if doc.kind == DocumentKind.IDENTITY.value and doc.listing_id:
            listing = await self.listings.get(doc.listing_id)
            if (
                listing
                and listing.status in sources_for("activate")
                and await self.listing_verification_complete(doc.listing_id)
            ):
                listing_result = await self.lifecycle.activate(doc.listing_id, actor=actor)

        return DocumentOutcome(
            document_id=doc.id,
            document_status=stored_status,
            aggregate_status=await self.aggregate_status(doc.owner_id),
            listing=listing_result,
        )

    async def reject(self, document_id: str, *, reason: str, actor: str = "admin") -> DocumentOutcome:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", code="reason_required")
        reason = reason.strip()

        doc = await self._load(document_id)
        await self.documents.set_status(
            doc.id,
            from_statuses=[s.value for s in DocumentStatus],
            to_status=DocumentStatus.REJECTED.value,
            reviewer_note=reason,
        )
        await audit(
            self.db,
            actor=actor,
            action="document.reject",
            target=doc,
            detail={"reason": reason},
        )

        listing_result = None
        if doc.listing_id:
            listing = await self.listings.get(doc.listing_id)
            if listing and listing.status in sources_for("reject"):
                listing_result = await self.lifecycle.reject(doc.listing_id, reason=reason, actor=actor)

        return DocumentOutcome(
            document_id=doc.id,
            document_status=DocumentStatus.REJECTED.value,
            aggregate_status=await self.aggregate_status(doc.owner_id),
            listing=listing_result,
        )

    async def delete(self, document_id: str, *, requesting_owner_id: str) -> DocumentOutcome:
        doc = await self._load(document_id)
        if doc.owner_id != requesting_owner_id:
            raise AuthorizationError("Document belongs to another owner")
        if doc.status in UNDELETABLE_DOCUMENT_STATUSES:
            raise StateConflictError(f"Document {document_id} is {doc.status} and cannot be deleted")

        try:
            await self.object_store.remove(doc.storage_path)
        except Exception:
            log.warning("storage removal failed for document %s path=%s", doc.id, doc.storage_path, exc_info=True)

        await self.documents.delete(doc.id)
        await audit(
            self.db,
            actor=requesting_owner_id,
            action="document.delete",
            target=doc,
            detail={"listing_id": doc.listing_id, "kind": doc.kind},
        )
        return DocumentOutcome(
            document_id=doc.id,
            document_status=None,
            aggregate_status=await self.aggregate_status(requesting_owner_id),
        )
