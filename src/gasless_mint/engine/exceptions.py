"""
Exception and Error Definitions Module

Defines the error taxonomy for meta-transaction construction, signing, relay
submission and submission tracking. Every exception carries a stable ``code``
and the HTTP ``status_code`` it maps to at the HTTP boundary.

Exception Hierarchy:
    MintError (root)
    ├── InvalidRequest
    │   └── UnknownSubmission
    ├── LedgerUnavailable
    ├── SigningUnavailable
    ├── RelayRejected
    ├── RelayUnavailable
    ├── InvalidTransition
    └── ConfigurationError
"""

from typing import Optional


class MintError(Exception):
    """
    Root exception class for all project-specific exceptions.

    All custom exceptions inherit from this class so the HTTP boundary can
    translate any pipeline failure into a structured ``{code, message}`` body.

    Attributes:
        code: Taxonomy code exposed to callers
        status_code: HTTP status the code maps to
    """
    code: str = "MintError"
    status_code: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__.strip().splitlines()[0]

    def to_error_info(self):
        """Snapshot this error as an ``ErrorInfo`` for storage on a SubmissionRecord."""
        from ..schemas.bases import ErrorInfo

        return ErrorInfo(code=self.code, message=self.message)


class InvalidRequest(MintError):
    """
    Raised when a mint request is malformed.

    This includes scenarios such as:
    - ``count`` not equal to the number of token URIs
    - Malformed recipient address
    - Idempotency key reused for a different intent

    Client error; never retried.
    """
    code = "InvalidRequest"
    status_code = 400


class UnknownSubmission(InvalidRequest):
    """
    Raised when a status lookup names an idempotency key the ledger has never seen.
    """
    code = "UnknownSubmission"
    status_code = 404


class LedgerUnavailable(MintError):
    """
    Raised when a ledger backing store or lock cannot be used.

    Fatal to the request. Safe to retry the whole request because no nonce
    was consumed by the failing operation.
    """
    code = "LedgerUnavailable"
    status_code = 503


class SigningUnavailable(MintError):
    """
    Raised when signing key material cannot be accessed.

    This includes scenarios such as:
    - Key reference (environment variable) unset
    - Key material malformed
    - Underlying signing library failure
    """
    code = "SigningUnavailable"
    status_code = 500


class RelayRejected(MintError):
    """
    Raised when the relay permanently rejects an envelope.

    This includes scenarios such as:
    - Malformed payload
    - Nonce already consumed by a different signature

    Triggers nonce reconciliation. Never retried with the same envelope.

    Attributes:
        reason: Rejection reason reported by the relay
        on_chain_nonce: Authoritative nonce reported by the relay, if any
    """
    code = "RelayRejected"
    status_code = 422

    def __init__(self, message: str = "", *, reason: Optional[str] = None, on_chain_nonce: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.on_chain_nonce = on_chain_nonce


class RelayUnavailable(MintError):
    """
    Raised when transient relay failures exhaust the retry budget.

    The request may be retried by the caller with the same idempotency key,
    which resumes the stored envelope rather than producing a new one.

    Attributes:
        attempts: Number of attempts made before giving up
    """
    code = "RelayUnavailable"
    status_code = 502

    def __init__(self, message: str = "", *, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class InvalidTransition(MintError):
    """
    Raised when a submission record is asked to make a transition outside its state machine.

    Indicates a programming or ledger-consistency fault. Always fatal and
    logged for investigation.

    Attributes:
        current_state: State the record was in
        requested_state: State the caller asked for
    """
    code = "InvalidTransition"
    status_code = 500

    def __init__(self, message: str = "", *, current_state=None, requested_state=None):
        super().__init__(message)
        self.current_state = current_state
        self.requested_state = requested_state


class ConfigurationError(MintError):
    """
    Raised when configuration is missing or invalid.

    This includes scenarios such as:
    - Missing required environment variables
    - Non-numeric chain id
    - Malformed contract address
    """
    code = "ConfigurationError"
    status_code = 500
