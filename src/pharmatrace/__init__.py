"""PharmaTrace: pharmaceutical batch tracking with ledger anchoring and custody history."""

from pharmatrace.common.exceptions import (
    AuthorizationError,
    DuplicateKeyError,
    ExternalAnchorError,
    MalformedIdentifierError,
    NotFoundError,
    PharmaTraceError,
    SignatureVerificationError,
    ValidationError,
)
from pharmatrace.common.security import Actor, Role, StepAction

__all__ = [
    "Actor",
    "Role",
    "StepAction",
    "PharmaTraceError",
    "ValidationError",
    "DuplicateKeyError",
    "NotFoundError",
    "AuthorizationError",
    "ExternalAnchorError",
    "SignatureVerificationError",
    "MalformedIdentifierError",
]
__version__ = "0.1.0"
