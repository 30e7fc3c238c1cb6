from datetime import datetime

from pydantic import BaseModel

from marketplace.schemas.listing import TransitionOut


class DocumentOut(BaseModel):
    id: str
    owner_id: str
    listing_id: str | None
    kind: str
    status: str
    content_type: str | None
    reviewer_note: str | None
    created_at: datetime
    reviewed_at: datetime | None


class DocumentOutcomeOut(BaseModel):
    document_id: str
    document_status: str | None
    aggregate_status: str
    listing: TransitionOut | None = None


class VerificationStatusOut(BaseModel):
    owner_id: str
    aggregate_status: str
