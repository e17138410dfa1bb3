"""PharmaTrace exception hierarchy."""


class PharmaTraceError(Exception):
    """Base exception for all PharmaTrace errors."""

    def __init__(self, message: str = "", code: str = "PHARMATRACE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(PharmaTraceError):
    """Raised for malformed or missing input and bad date ordering."""

    def __init__(self, message: str = "Invalid input", errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message, code="VALIDATION_ERROR")


class DuplicateKeyError(PharmaTraceError):
    """Raised when a storage-level uniqueness constraint is violated."""

    def __init__(self, field: str, message: str = ""):
        self.field = field
        super().__init__(message or f"Duplicate value for '{field}'", code="DUPLICATE_KEY")


class NotFoundError(PharmaTraceError):
    """Raised when a lookup misses.

    For failed resolutions ``attempted`` lists the strategies that were tried.
    """

    def __init__(self, message: str = "Not found", attempted: list[str] | None = None):
        self.attempted = attempted or []
        super().__init__(message, code="NOT_FOUND")


class AuthorizationError(PharmaTraceError):
    """Raised when a role or ownership check fails."""

    def __init__(self, message: str = "Not permitted"):
        super().__init__(message, code="FORBIDDEN")


class ExternalAnchorError(PharmaTraceError):
    """Raised by ledger clients when the external ledger call fails."""

    def __init__(self, message: str = "Ledger anchoring failed", timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message, code="ANCHOR_FAILED")


class SignatureVerificationError(PharmaTraceError):
    """Raised on hash mismatch or an expired/revoked certificate or signature."""

    def __init__(self, reason: str = "Signature is not valid"):
        self.reason = reason
        super().__init__(reason, code="SIGNATURE_INVALID")


class MalformedIdentifierError(PharmaTraceError):
    """Raised when scanned input is unusable even after normalization."""

    def __init__(self, message: str = "Scanned code is not a PharmaTrace identifier"):
        super().__init__(message, code="MALFORMED_IDENTIFIER")
