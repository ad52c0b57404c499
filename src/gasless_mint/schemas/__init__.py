from .bases import CanonicalModel, SubmissionStatus, RelayOutcome, ErrorInfo
from .mints import (
    MintRequest,
    MintCallDescriptor,
    DomainContext,
    MetaTransactionPayload,
    EVMECDSASignature,
    SignedEnvelope,
    SubmissionRecord,
    RelayStatusReport,
    TrackingResult,
)
from .https import MintHttpRequest, MintResponse, ErrorResponse

__all__ = [
    "CanonicalModel",
    "SubmissionStatus",
    "RelayOutcome",
    "ErrorInfo",
    "MintRequest",
    "MintCallDescriptor",
    "DomainContext",
    "MetaTransactionPayload",
    "EVMECDSASignature",
    "SignedEnvelope",
    "SubmissionRecord",
    "RelayStatusReport",
    "TrackingResult",
    "MintHttpRequest",
    "MintResponse",
    "ErrorResponse",
]
