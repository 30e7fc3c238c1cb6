from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import (
    AuthorizationError,
    IncompleteListingError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from marketplace.models.listing import Listing
from marketplace.services.audit import audit
from marketplace.services.change_feed import ChangeFeed
from marketplace.services.document_store import DocumentStore
from marketplace.services.listing_state import (
    IDENTITY_DOCUMENT_FLAG,
    UNRESOLVED_DOCUMENT_STATUSES,
    DocumentKind,
    DocumentStatus,
    ListingStatus,
    missing_required_fields,
    sources_for,
)
from marketplace.services.listing_store import ListingStore
from marketplace.services.payment_store import PaymentStore


log = logging.getLogger(__name__)

NON_REJECTED_DOCUMENT_STATUSES = (
    DocumentStatus.SUBMITTED.value,
    DocumentStatus.UNDER_REVIEW.value,
    DocumentStatus.APPROVED.value,
)

VERIFICATION_EXPIRED_REASON = "Identity verification was not completed within {hours} hours of payment"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransitionResult:
    listing_id: str
    status: str
    changed: bool
    previous_status: str | None = None
    published_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class CompletenessReport:
    listing_id: str
    status: str
    missing_fields: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing_fields


class LifecycleOrchestrator:
    """
    Single entry point for listing status changes.

    Every state-advancing write is a conditional update on the current status.
    A writer that loses the race sees zero affected rows and reports a no-op.
    Rejection is the exception: it also overwrites a concurrent activation.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        listings: ListingStore,
        documents: DocumentStore,
        payments: PaymentStore,
        feed: ChangeFeed,
        publication_days: int = 30,
        verification_deadline_hours: int = 72,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.listings = listings
        self.documents = documents
        self.payments = payments
        self.feed = feed
        self.publication_days = publication_days
        self.verification_deadline_hours = verification_deadline_hours
        self.clock = clock

    async def _load(self, listing_id: str) -> Listing:
        listing = await self.listings.get(listing_id)
        if not listing:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    @staticmethod
    def _require_owner(listing: Listing, actor_id: str) -> None:
        if listing.owner_id != actor_id:
            raise AuthorizationError("Listing belongs to another owner")

    async def _identity_documents(self, listing_id: str, statuses) -> int:
        return await self.documents.count_for_listing(
            listing_id, kind=DocumentKind.IDENTITY.value, statuses=statuses
        )

    async def _apply(
        self,
        listing: Listing,
        *,
        transition: str,
        to_status: ListingStatus,
        actor: str,
        from_statuses: list[str],
        detail: dict | None = None,
        **values,
    ) -> bool:
        previous = listing.status
        rows = await self.listings.transition(
            listing.id,
            from_statuses=from_statuses,
            to_status=to_status.value,
            actor=actor,
            **values,
        )
        if rows == 0:
            log.info("listing %s: %s lost the race (no rows)", listing.id, transition)
            return False

        await audit(
            self.db,
            actor=actor,
            action=f"listing.{transition}",
            target=listing,
            detail={"from": previous, "to": to_status.value, **(detail or {})},
        )
        self.feed.record(listing.id, to_status.value)
        log.info("listing %s: %s -> %s (%s)", listing.id, previous, to_status.value, transition)
        return True

    async def _unchanged(self, listing_id: str) -> TransitionResult:
        current = await self._load(listing_id)
        return TransitionResult(listing_id=current.id, status=current.status, changed=False)

    async def check_completeness(self, listing_id: str) -> CompletenessReport:
        """Read-only: never mutates the listing."""
        listing = await self._load(listing_id)
        missing = missing_required_fields(listing)
        if await self._identity_documents(listing.id, NON_REJECTED_DOCUMENT_STATUSES) == 0:
            missing.append(IDENTITY_DOCUMENT_FLAG)
        return CompletenessReport(listing_id=listing.id, status=listing.status, missing_fields=missing)

    async def mark_ready(self, listing_id: str, *, actor_id: str) -> TransitionResult:
        listing = await self._load(listing_id)
        self._require_owner(listing, actor_id)

        if listing.status != ListingStatus.DRAFT.value:
            # already past draft: never downgrade
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)

        report = await self.check_completeness(listing.id)
        if not report.complete:
            raise IncompleteListingError(listing.id, report.missing_fields)

        applied = await self._apply(
            listing,
            transition="mark_ready",
            to_status=ListingStatus.PAYMENT_READY,
            actor=actor_id,
            from_statuses=sources_for("mark_ready"),
        )
        if not applied:
            return await self._unchanged(listing.id)

        # A payment reconciled while the listing was still a draft is applied now.
        payment = await self.payments.get_approved_for_listing(listing.id)
        if payment:
            confirmed = await self.confirm_payment(listing.id, payment_id=payment.id, actor="system")
            return TransitionResult(
                listing_id=listing.id,
                status=confirmed.status,
                changed=True,
                previous_status=ListingStatus.DRAFT.value,
                published_at=confirmed.published_at,
                expires_at=confirmed.expires_at,
            )

        return TransitionResult(
            listing_id=listing.id,
            status=ListingStatus.PAYMENT_READY.value,
            changed=True,
            previous_status=ListingStatus.DRAFT.value,
        )

    async def confirm_payment(self, listing_id: str, *, payment_id: str, actor: str = "webhook") -> TransitionResult:
        """
        payment-ready -> in-review on a confirmed payment. Without a usable
        identity document the listing waits in pending-verification instead.
        Any other current status is a no-op (duplicate delivery or early payment).
        """
        listing = await self._load(listing_id)
        if listing.status not in sources_for("confirm_payment"):
            log.info("listing %s: payment %s confirmed while %s, nothing to do", listing.id, payment_id, listing.status)
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)

        has_identity = await self._identity_documents(listing.id, NON_REJECTED_DOCUMENT_STATUSES) > 0
        target = ListingStatus.IN_REVIEW if has_identity else ListingStatus.PENDING_VERIFICATION

        published_at = self.clock()
        expires_at = published_at + timedelta(days=self.publication_days)
        verification_deadline_at = published_at + timedelta(hours=self.verification_deadline_hours)
        applied = await self._apply(
            listing,
            transition="confirm_payment",
            to_status=target,
            actor=actor,
            from_statuses=sources_for("confirm_payment"),
            detail={"payment_id": payment_id},
            payment_id=payment_id,
            published_at=published_at,
            expires_at=expires_at,
            verification_deadline_at=verification_deadline_at,
            rejection_reason=None,
        )
        if not applied:
            return await self._unchanged(listing.id)

        # paid listings move their identity documents into the review queue
        await self.documents.set_status_for_listing(
            listing.id,
            kind=DocumentKind.IDENTITY.value,
            from_status=DocumentStatus.SUBMITTED.value,
            to_status=DocumentStatus.UNDER_REVIEW.value,
        )
        return TransitionResult(
            listing_id=listing.id,
            status=target.value,
            changed=True,
            previous_status=ListingStatus.PAYMENT_READY.value,
            published_at=published_at,
            expires_at=expires_at,
        )

    async def activate(self, listing_id: str, *, actor: str = "admin") -> TransitionResult:
        listing = await self._load(listing_id)
        if listing.status not in sources_for("activate"):
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)

        missing = missing_required_fields(listing)
        if missing:
            raise IncompleteListingError(listing.id, missing)

        unresolved = await self._identity_documents(listing.id, UNRESOLVED_DOCUMENT_STATUSES)
        approved = await self._identity_documents(listing.id, (DocumentStatus.APPROVED.value,))
        if unresolved or not approved:
            raise StateConflictError(
                f"Listing {listing.id} has unresolved identity documents",
                code="verification_incomplete",
                details=[{"type": "unresolved_documents", "count": unresolved, "approved": approved}],
            )

        applied = await self._apply(
            listing,
            transition="activate",
            to_status=ListingStatus.ACTIVE,
            actor=actor,
            from_statuses=sources_for("activate"),
        )
        if not applied:
            # a concurrent rejection got there first
            return await self._unchanged(listing.id)
        return TransitionResult(
            listing_id=listing.id, status=ListingStatus.ACTIVE.value, changed=True, previous_status=listing.status
        )

    async def reject(self, listing_id: str, *, reason: str, actor: str = "admin") -> TransitionResult:
        """
        in-review|pending-verification -> rejected. Any other status is a no-op.
        An activation that lands between the read and the write is overwritten.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", code="reason_required")
        reason = reason.strip()

        listing = await self._load(listing_id)
        if listing.status not in sources_for("reject"):
            log.info("listing %s: rejection while %s, nothing to do", listing.id, listing.status)
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)

        applied = await self._apply(
            listing,
            transition="reject",
            to_status=ListingStatus.REJECTED,
            actor=actor,
            from_statuses=[*sources_for("reject"), ListingStatus.ACTIVE.value],
            detail={"reason": reason},
            rejection_reason=reason,
        )
        if not applied:
            return await self._unchanged(listing.id)
        return TransitionResult(
            listing_id=listing.id, status=ListingStatus.REJECTED.value, changed=True, previous_status=listing.status
        )

    async def expire_verification(self, listing_id: str, *, actor: str = "system") -> TransitionResult:
        """
        Reject a paid listing whose verification deadline passed while the
        owner still had no usable identity document on file. Listings waiting
        on the review queue are left alone.
        """
        listing = await self._load(listing_id)
        deadline = listing.verification_deadline_at
        if listing.status not in sources_for("reject") or deadline is None:
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        if deadline > self.clock():
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)
        if await self._identity_documents(listing.id, NON_REJECTED_DOCUMENT_STATUSES):
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)

        log.info("listing %s: verification deadline %s passed", listing.id, deadline.isoformat())
        return await self.reject(
            listing.id,
            reason=VERIFICATION_EXPIRED_REASON.format(hours=self.verification_deadline_hours),
            actor=actor,
        )

    async def resubmit(self, listing_id: str, *, actor: str) -> TransitionResult:
        """rejected -> pending-verification when already paid, otherwise back to draft."""
        listing = await self._load(listing_id)
        if listing.status not in sources_for("resubmit"):
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)

        payment = await self.payments.get_approved_for_listing(listing.id)
        target = ListingStatus.PENDING_VERIFICATION if payment else ListingStatus.DRAFT
        extra = {}
        if payment:
            # a fresh upload window for the paid listing
            extra["verification_deadline_at"] = self.clock() + timedelta(hours=self.verification_deadline_hours)
        applied = await self._apply(
            listing,
            transition="resubmit",
            to_status=target,
            actor=actor,
            from_statuses=sources_for("resubmit"),
            rejection_reason=None,
            **extra,
        )
        if not applied:
            return await self._unchanged(listing.id)
        return TransitionResult(
            listing_id=listing.id, status=target.value, changed=True, previous_status=listing.status
        )

    async def _owner_transition(self, listing_id: str, *, actor_id: str, transition: str, to_status: ListingStatus) -> TransitionResult:
        listing = await self._load(listing_id)
        self._require_owner(listing, actor_id)

        if listing.status == to_status.value:
            return TransitionResult(listing_id=listing.id, status=listing.status, changed=False)
        if listing.status not in sources_for(transition):
            raise StateConflictError(f"Cannot {transition} a listing in status {listing.status}")

        applied = await self._apply(
            listing,
            transition=transition,
            to_status=to_status,
            actor=actor_id,
            from_statuses=sources_for(transition),
        )
        if not applied:
            return await self._unchanged(listing.id)
        return TransitionResult(listing_id=listing.id, status=to_status.value, changed=True, previous_status=listing.status)

    async def pause(self, listing_id: str, *, actor_id: str) -> TransitionResult:
        return await self._owner_transition(listing_id, actor_id=actor_id, transition="pause", to_status=ListingStatus.PAUSED)

    async def resume(self, listing_id: str, *, actor_id: str) -> TransitionResult:
        return await self._owner_transition(listing_id, actor_id=actor_id, transition="resume", to_status=ListingStatus.ACTIVE)

    async def mark_sold(self, listing_id: str, *, actor_id: str) -> TransitionResult:
        return await self._owner_transition(listing_id, actor_id=actor_id, transition="mark_sold", to_status=ListingStatus.SOLD)
