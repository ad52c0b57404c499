"""
Base Schema Models for the Gasless Mint Core

This module defines the fundamental base class and shared enumerations that all
other schema models build on. It provides deterministic serialization for
hashing and consistent status vocabularies across the pipeline.

Core Classes:
    - CanonicalModel: RFC8785-style Pydantic base model used for hashing and fingerprints
    - SubmissionStatus: Lifecycle states of a SubmissionRecord
    - RelayOutcome: States reported by the relay's status endpoint
    - ErrorInfo: Serializable error snapshot stored on records and returned over HTTP

Dependencies:
    - pydantic: For data validation and serialization
"""

import hashlib
import json
from typing import Any, Dict
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CanonicalModel(BaseModel):
    """
    RFC8785-style Pydantic base model with canonical JSON serialization.

    The canonical form is deterministic: keys are sorted, separators carry no
    whitespace and enums/nested models are reduced to plain JSON types. Two
    models with equal field values always produce byte-identical output, which
    is what fingerprints and idempotency-key derivation rely on.

    Example:
        class MyModel(CanonicalModel):
            name: str
            value: int

        MyModel(name="test", value=123).to_canonical_json()
        # '{"name":"test","value":123}'
    """

    model_config = ConfigDict(populate_by_name=True)

    def to_canonical_json(self) -> str:
        """
        Convert model to a canonical JSON string.

        Returns:
            str: JSON with sorted keys and no extra whitespace.
        """
        data = self.model_dump(mode="json")
        return json.dumps(
            data,
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False
        )

    def canonical_digest(self) -> str:
        """Return the sha256 hex digest of the canonical JSON form."""
        return hashlib.sha256(self.to_canonical_json().encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model to dictionary representation.

        Returns:
            Dict[str, Any]: Dictionary with all model fields.
        """
        return self.model_dump()


class SubmissionStatus(str, Enum):
    """
    Lifecycle states of a submission.

    Attributes:
        PENDING: Accepted locally, not yet acknowledged by the relay
        SUBMITTED: Relay accepted the envelope and issued a tracking handle
        MINED: Relay reported the transaction mined (terminal)
        FAILED: Pipeline or on-chain failure (terminal)
    """
    PENDING = "pending"
    SUBMITTED = "submitted"
    MINED = "mined"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionStatus.MINED, SubmissionStatus.FAILED)


class RelayOutcome(str, Enum):
    """
    Submission states as reported by the relay.

    Attributes:
        PENDING: Queued or broadcast, not yet included in a block
        MINED: Included in a block and executed successfully
        REVERTED: Included in a block but the call reverted
        DROPPED: Evicted by the relay or the mempool, never mined
    """
    PENDING = "pending"
    MINED = "mined"
    REVERTED = "reverted"
    DROPPED = "dropped"

    def to_submission_status(self) -> SubmissionStatus:
        if self is RelayOutcome.MINED:
            return SubmissionStatus.MINED
        if self in (RelayOutcome.REVERTED, RelayOutcome.DROPPED):
            return SubmissionStatus.FAILED
        return SubmissionStatus.PENDING


class ErrorInfo(CanonicalModel):
    """Serializable snapshot of a pipeline error (taxonomy code + message)."""
    code: str = Field(..., description="Error taxonomy code, e.g. RelayRejected")
    message: str = Field(..., description="Human-readable error message")
