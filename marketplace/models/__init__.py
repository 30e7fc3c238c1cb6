from marketplace.models.base import Base  # noqa: F401

from marketplace.models.listing import Listing  # noqa: F401
from marketplace.models.payment import PaymentRecord  # noqa: F401
from marketplace.models.verification_document import VerificationDocument  # noqa: F401
from marketplace.models.audit_log import AuditLog  # noqa: F401
