"""
Gasless NFT mint core.

Builds ERC-2771 meta-transactions for NFT mints, signs them with a custodial
minter key and hands them to a relay that pays gas, with per-account nonce
sequencing and idempotent submission.
"""

from .config import MintSettings
from .engine.exceptions import (
    MintError,
    InvalidRequest,
    UnknownSubmission,
    LedgerUnavailable,
    SigningUnavailable,
    RelayRejected,
    RelayUnavailable,
    InvalidTransition,
    ConfigurationError,
)
from .engine.orchestrator import MintOrchestrator
from .schemas import MintRequest, MintResponse, SubmissionStatus

__all__ = [
    "MintSettings",
    "MintError",
    "InvalidRequest",
    "UnknownSubmission",
    "LedgerUnavailable",
    "SigningUnavailable",
    "RelayRejected",
    "RelayUnavailable",
    "InvalidTransition",
    "ConfigurationError",
    "MintOrchestrator",
    "MintRequest",
    "MintResponse",
    "SubmissionStatus",
]
