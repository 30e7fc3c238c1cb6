from __future__ import annotations
from enum import Enum
from typing import Any


class ListingStatus(str, Enum):
    DRAFT = "draft"
    PAYMENT_READY = "payment-ready"
    PENDING_VERIFICATION = "pending-verification"
    IN_REVIEW = "in-review"
    ACTIVE = "active"
    REJECTED = "rejected"
    PAUSED = "paused"
    SOLD = "sold"


class DocumentStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under-review"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentKind(str, Enum):
    IDENTITY = "identity"            # mandatory for publication
    AUTHORIZATION = "authorization"  # representation authorization, optional


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    APPROVED = "approved"


REQUIRED_LISTING_FIELDS = (
    "title",
    "description",
    "price",
    "deal_type",
    "property_type",
    "city",
    "neighborhood",
    "address",
)

# reported alongside missing fields when no usable identity document exists
IDENTITY_DOCUMENT_FLAG = "identity_document"

TERMINAL_STATUSES = frozenset({ListingStatus.SOLD})

# Source states per transition.
TRANSITIONS: dict[str, tuple[ListingStatus, ...]] = {
    "mark_ready": (ListingStatus.DRAFT,),
    "confirm_payment": (ListingStatus.PAYMENT_READY,),
    "activate": (ListingStatus.IN_REVIEW, ListingStatus.PENDING_VERIFICATION),
    "reject": (ListingStatus.IN_REVIEW, ListingStatus.PENDING_VERIFICATION),
    "pause": (ListingStatus.ACTIVE,),
    "resume": (ListingStatus.PAUSED,),
    "mark_sold": (ListingStatus.ACTIVE, ListingStatus.PAUSED),
    "resubmit": (ListingStatus.REJECTED,),
}

# statuses the confirmation watcher treats as "payment went through"
CONFIRMED_STATUSES = frozenset({ListingStatus.IN_REVIEW.value, ListingStatus.ACTIVE.value})

UNRESOLVED_DOCUMENT_STATUSES = (DocumentStatus.SUBMITTED.value, DocumentStatus.UNDER_REVIEW.value)
UNDELETABLE_DOCUMENT_STATUSES = (DocumentStatus.APPROVED.value, DocumentStatus.UNDER_REVIEW.value)


def sources_for(transition: str) -> list[str]:
    return [s.value for s in TRANSITIONS[transition]]


def is_publicly_visible(status: str) -> bool:
    return status == ListingStatus.ACTIVE.value


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def missing_required_fields(listing: Any) -> list[str]:
    return [f for f in REQUIRED_LISTING_FIELDS if is_empty(getattr(listing, f, None))]
