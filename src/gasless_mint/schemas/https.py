"""
HTTP Request/Response Schema Models for the Mint Endpoint

This module defines the Pydantic models used at the HTTP boundary. The
front-end parses ``MintHttpRequest``, hands it to the orchestrator and
serializes either ``MintResponse`` (202 Accepted) or ``ErrorResponse``.

All JSON field names are camelCase through aliases; Python attributes stay
snake_case.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .bases import SubmissionStatus
from .mints import MintRequest, SubmissionRecord, TrackingResult


# ============================================================================
# Request
# ============================================================================

class MintHttpRequest(BaseModel):
    """Body of ``POST /mint``.

    Attributes:
        recipient_address: Wallet address that receives the tokens.
        count: Number of tokens to mint.
        token_uris: Precomputed metadata URIs, one per token.
        idempotency_key: Optional deduplication key; derived from content when omitted.
    """
    model_config = ConfigDict(populate_by_name=True)

    recipient_address: str = Field(..., alias="recipientAddress")
    count: int = Field(..., strict=True)
    token_uris: List[str] = Field(..., alias="tokenURIs")
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    def to_mint_request(self) -> MintRequest:
        return MintRequest.create(
            recipient_address=self.recipient_address,
            count=self.count,
            token_uris=self.token_uris,
            idempotency_key=self.idempotency_key,
        )


# ============================================================================
# Responses
# ============================================================================

class MintResponse(BaseModel):
    """Accepted-mint response (also returned by status lookups).

    ``terminal`` is False while the relay has not reported a final outcome;
    callers poll ``GET /mint/{idempotencyKey}`` until it flips.
    """
    model_config = ConfigDict(populate_by_name=True)

    idempotency_key: str = Field(..., alias="idempotencyKey")
    status: SubmissionStatus
    terminal: bool = False
    tracking_handle: Optional[str] = Field(default=None, alias="trackingHandle")
    nonce: Optional[int] = None
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    error: Optional[str] = None

    @classmethod
    def from_record(
        cls,
        record: SubmissionRecord,
        tracking: Optional[TrackingResult] = None,
    ) -> "MintResponse":
        """Combine a ledger record with an optional fresher tracking result."""
        status = tracking.status if tracking else record.status
        return cls(
            idempotency_key=record.idempotency_key,
            status=status,
            terminal=status.is_terminal,
            tracking_handle=record.tracking_handle,
            nonce=record.assigned_nonce,
            transaction_hash=(tracking.transaction_hash if tracking else None) or record.transaction_hash,
            block_number=(tracking.block_number if tracking else None) or record.block_number,
            error=(tracking.reason if tracking else None) or (record.last_error.message if record.last_error else None),
        )


class ErrorResponse(BaseModel):
    """Error body carrying the taxonomy code."""
    code: str
    message: str
