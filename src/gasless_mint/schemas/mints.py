"""
Mint Pipeline Schema Models

Pydantic models that flow through the meta-transaction pipeline. All classes
inherit from ``CanonicalModel`` in ``schemas.bases``.

Request classes:
    - MintRequest: Logical mint intent (recipient, count, token URIs, idempotency key).

Payload / envelope classes:
    - MintCallDescriptor: Opaque encoded contract call (function signature, selector, calldata).
    - DomainContext: EIP-712 domain binding a signature to one chain and contract.
    - MetaTransactionPayload: Canonical, signable meta-transaction.
    - EVMECDSASignature: v/r/s signature over a payload's EIP-712 hash.
    - SignedEnvelope: Payload plus signature, exactly what is sent to the relay.

Ledger / tracking classes:
    - SubmissionRecord: Idempotency ledger entry for one logical request.
    - RelayStatusReport: Parsed relay status response.
    - TrackingResult: Outcome of a (possibly timed-out) status wait.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import ConfigDict, Field
from web3 import Web3

from .bases import CanonicalModel, ErrorInfo, RelayOutcome, SubmissionStatus
from ..engine.exceptions import InvalidRequest


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MintRequest(CanonicalModel):
    """
    Logical mint intent.

    Created once per incoming call and immutable afterwards. ``idempotency_key``
    identifies the intent across retries; use ``MintRequest.create`` to derive
    one from the request content when the caller supplies none.

    Attributes:
        recipient_address: Wallet address that receives the tokens.
        count: Number of tokens to mint.
        token_uris: Metadata URI per token, in mint order.
        idempotency_key: Deduplication key for this intent.

    Example::

        request = MintRequest.create(
            recipient_address="0x07ac68355ff8663c09644bc50bb02b60140842a8",
            count=2,
            token_uris=["ipfs://xxxxx/1", "ipfs://xxxxx/2"],
        )
    """

    model_config = ConfigDict(frozen=True)

    recipient_address: str = Field(..., alias="recipientAddress", description="Recipient wallet address")
    count: int = Field(..., strict=True, description="Number of tokens to mint")
    token_uris: List[str] = Field(..., alias="tokenURIs", description="Metadata URI per token")
    idempotency_key: str = Field(..., alias="idempotencyKey", min_length=1, description="Deduplication key")

    @classmethod
    def create(
        cls,
        recipient_address: str,
        count: int,
        token_uris: List[str],
        idempotency_key: Optional[str] = None,
    ) -> "MintRequest":
        """
        Build a request, deriving the idempotency key when it is absent.

        The derived key is ``"derived:" + sha256`` of the request content, so
        two identical content-only requests collapse onto one mint.
        """
        if not idempotency_key:
            idempotency_key = "derived:" + _content_digest(recipient_address, count, token_uris)
        return cls(
            recipient_address=recipient_address,
            count=count,
            token_uris=list(token_uris),
            idempotency_key=idempotency_key,
        )

    def fingerprint(self) -> str:
        """Digest of the intent content, independent of the idempotency key."""
        return _content_digest(self.recipient_address, self.count, self.token_uris)

    def validate_request(self) -> bool:
        """
        Validate count, token URIs and recipient address.

        Returns:
            True when all checks pass.

        Raises:
            InvalidRequest: Descriptive message on the first failed check.
        """
        if self.count < 1:
            raise InvalidRequest(f"count must be a positive integer, got {self.count!r}")

        if len(self.token_uris) != self.count:
            raise InvalidRequest(
                f"count ({self.count}) does not match number of tokenURIs ({len(self.token_uris)})"
            )

        for index, uri in enumerate(self.token_uris):
            if not uri or not uri.strip():
                raise InvalidRequest(f"tokenURIs[{index}] must be a non-empty string")

        if not self.recipient_address.startswith("0x") or not Web3.is_address(self.recipient_address):
            raise InvalidRequest(f"recipientAddress is not a valid address: {self.recipient_address!r}")

        return True


def _content_digest(recipient_address: str, count: int, token_uris: List[str]) -> str:
    content = {
        "count": count,
        "recipient": recipient_address.lower(),
        "tokenURIs": list(token_uris),
    }
    encoded = json.dumps(content, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class MintCallDescriptor(CanonicalModel):
    """
    Opaque encoded contract call.

    Attributes:
        function_signature: Canonical Solidity signature of the called function.
        selector: 4-byte function selector (0x-prefixed hex).
        data: Full calldata, selector included (0x-prefixed hex).
    """

    model_config = ConfigDict(frozen=True)

    function_signature: str = Field(..., description="Canonical Solidity function signature")
    selector: str = Field(..., description="4-byte selector, 0x-prefixed")
    data: str = Field(..., description="ABI-encoded calldata including selector, 0x-prefixed")


class DomainContext(CanonicalModel):
    """
    EIP-712 domain for meta-transaction signatures.

    Binds a signature to one chain (``chain_id``), one verifying contract and one
    contract version so it cannot be replayed elsewhere.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    chain_id: int = Field(..., ge=1)
    verifying_contract: str


class MetaTransactionPayload(CanonicalModel):
    """
    Canonical, signable meta-transaction.

    Mirrors an ERC-2771 ``ForwardRequest`` (from, to, value, gas, nonce, data)
    plus the domain it is signed under. Frozen: a payload is never mutated once
    built, so a signature over it stays valid for exactly these fields.
    """

    model_config = ConfigDict(frozen=True)

    chain_id: int = Field(..., ge=1, description="EVM network ID")
    contract_address: str = Field(..., description="NFT collection contract (call target)")
    from_address: str = Field(..., description="Signing account")
    call_descriptor: MintCallDescriptor
    nonce: int = Field(..., ge=0, description="Per-account meta-transaction nonce")
    domain_context: DomainContext
    value: int = Field(default=0, ge=0, description="Native value forwarded with the call")
    gas: int = Field(..., ge=0, description="Gas limit the forwarder passes to the call")


class EVMECDSASignature(CanonicalModel):
    """
    EVM ECDSA signature (v, r, s) over an EIP-712 hash.

    Attributes:
        signature_type: Always ``"EIP712"``.
        v: ECDSA recovery ID (27 or 28).
        r: r component as 0x-prefixed 64-char hex.
        s: s component as 0x-prefixed 64-char hex.
    """

    model_config = ConfigDict(frozen=True)

    signature_type: Literal["EIP712"] = Field(default="EIP712", description="Signing standard")
    v: int = Field(..., ge=27, le=28, description="ECDSA recovery ID (27 or 28)")
    r: str = Field(..., description="Signature r component (32 bytes, 64-char hex)")
    s: str = Field(..., description="Signature s component (32 bytes, 64-char hex)")

    def validate_format(self) -> bool:
        """
        Validate v/r/s components.

        Raises:
            ValueError: Descriptive message on the first failed check.
        """
        if self.v not in (27, 28):
            raise ValueError(f"Invalid recovery ID: {self.v}. Must be 27 or 28")

        for name, val in [("r", self.r), ("s", self.s)]:
            hex_str = val.replace("0x", "").replace("0X", "")
            if len(hex_str) != 64:
                raise ValueError(f"Invalid {name}: expected 64 hex chars, got {len(hex_str)}")
            try:
                int(hex_str, 16)
            except ValueError:
                raise ValueError(f"Invalid {name}: not valid hexadecimal")

        return True

    def to_packed_hex(self) -> str:
        """
        Encode v/r/s into a packed 65-byte hex string (``r || s || v``).

        Returns:
            0x-prefixed 132-character hex string.
        """
        self.validate_format()
        r = self.r.replace("0x", "").replace("0X", "").zfill(64)
        s = self.s.replace("0x", "").replace("0X", "").zfill(64)
        return "0x" + r + s + format(self.v, "02x")


class SignedEnvelope(CanonicalModel):
    """
    A payload together with its signature; the unit submitted to the relay.

    Immutable. Every submission attempt for one SubmissionRecord sends the
    byte-identical body produced by ``to_relay_body``.
    """

    model_config = ConfigDict(frozen=True)

    payload: MetaTransactionPayload
    signature: EVMECDSASignature

    def to_relay_body(self) -> Dict[str, Any]:
        """Relay wire format for ``POST /v1/meta-transactions``."""
        payload = self.payload
        domain = payload.domain_context
        return {
            "chainId": payload.chain_id,
            "from": payload.from_address,
            "to": payload.contract_address,
            "value": str(payload.value),
            "gas": str(payload.gas),
            "nonce": str(payload.nonce),
            "data": payload.call_descriptor.data,
            "functionSignature": payload.call_descriptor.function_signature,
            "selector": payload.call_descriptor.selector,
            "domain": {
                "name": domain.name,
                "version": domain.version,
                "chainId": domain.chain_id,
                "verifyingContract": domain.verifying_contract,
            },
            "signature": self.signature.to_packed_hex(),
        }

    def redacted(self) -> Dict[str, Any]:
        """Relay body with the signature masked, safe for logging."""
        body = self.to_relay_body()
        body["signature"] = f"[REDACTED - {len(body['signature'])} chars]"
        body["data"] = f"[{len(body['data'])} chars]"
        return body


class SubmissionRecord(CanonicalModel):
    """
    Idempotency ledger entry for one logical mint request.

    Lifecycle: PENDING → SUBMITTED → MINED | FAILED (PENDING → FAILED allowed).
    MINED and FAILED are terminal. Records are frozen; the Submission Ledger
    replaces them wholesale on every transition.
    """

    model_config = ConfigDict(frozen=True)

    idempotency_key: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    request_fingerprint: str
    account: Optional[str] = None
    tracking_handle: Optional[str] = None
    assigned_nonce: Optional[int] = None
    envelope: Optional[SignedEnvelope] = None
    last_error: Optional[ErrorInfo] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def is_terminal(self) -> bool:
        return self.status.is_terminal


class RelayStatusReport(CanonicalModel):
    """Relay response for ``GET /v1/meta-transactions/{id}``."""
    status: RelayOutcome
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    block_number: Optional[int] = Field(None, alias="blockNumber")
    block_hash: Optional[str] = Field(None, alias="blockHash")
    revert_reason: Optional[str] = Field(None, alias="revertReason")


class TrackingResult(CanonicalModel):
    """
    Result of waiting on a tracking handle.

    ``terminal`` is False when the wait timed out; the mint may still
    complete and the caller should poll again later.
    """
    tracking_handle: str
    status: SubmissionStatus
    terminal: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_record(cls, record: SubmissionRecord) -> "TrackingResult":
        return cls(
            tracking_handle=record.tracking_handle or "",
            status=record.status,
            terminal=record.is_terminal(),
            transaction_hash=record.transaction_hash,
            block_number=record.block_number,
            block_hash=record.block_hash,
            reason=record.last_error.message if record.last_error else None,
        )
