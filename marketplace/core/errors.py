from __future__ import annotations

from typing import Any


class HubError(Exception):
    """
    Base for errors that are meant to reach the caller as a typed outcome.
    The API layer renders them as ErrorResponse bodies with `status_code`.
    """

    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, *, code: str | None = None, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or []


class ValidationError(HubError):
    status_code = 422
    code = "invalid_input"


class AuthorizationError(HubError):
    status_code = 403
    code = "forbidden"


class StateConflictError(HubError):
    status_code = 409
    code = "state_conflict"


class IncompleteListingError(StateConflictError):
    code = "incomplete_listing"

    def __init__(self, listing_id: str, missing_fields: list[str]):
        super().__init__(
            f"Listing {listing_id} is missing: {', '.join(missing_fields)}",
            details=[{"type": "missing_field", "field": f} for f in missing_fields],
        )
        self.listing_id = listing_id
        self.missing_fields = list(missing_fields)


class NotFoundError(HubError):
    status_code = 404
    code = "not_found"


class TransientStoreError(HubError):
    status_code = 503
    code = "store_unavailable"


class DuplicateReferenceError(StateConflictError):
    """Raised when an order reference already has a payment record."""

    code = "duplicate_reference"
