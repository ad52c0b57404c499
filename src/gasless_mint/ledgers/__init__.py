"""
Ledgers owning the mutable state of the mint core: per-account nonces and
idempotency records.
"""

from .nonces import NonceLedger, NonceStore, InMemoryNonceStore, forwarder_nonce_source
from .submissions import SubmissionLedger, SubmissionStore, InMemorySubmissionStore, ALLOWED_TRANSITIONS

__all__ = [
    "NonceLedger",
    "NonceStore",
    "InMemoryNonceStore",
    "forwarder_nonce_source",
    "SubmissionLedger",
    "SubmissionStore",
    "InMemorySubmissionStore",
    "ALLOWED_TRANSITIONS",
]
