"""
Submission Ledger

Idempotency ledger mapping an idempotency key to exactly one
``SubmissionRecord``. Check-and-create is atomic, and every status change is
applied through compare-and-set so concurrent writers cannot interleave a
transition.

Lifecycle enforced by ``advance``::

    PENDING ──► SUBMITTED ──► MINED
       │            └───────► FAILED
       ├──► FAILED
       └──► PENDING   (attach nonce / envelope / last error only)

MINED and FAILED are terminal. Once set, ``assigned_nonce``, ``envelope``,
``tracking_handle`` and ``account`` are never replaced.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from ..engine.exceptions import InvalidRequest, InvalidTransition, LedgerUnavailable, UnknownSubmission
from ..schemas.bases import SubmissionStatus
from ..schemas.mints import MintRequest, SubmissionRecord

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[SubmissionStatus, Set[SubmissionStatus]] = {
    SubmissionStatus.PENDING: {SubmissionStatus.PENDING, SubmissionStatus.SUBMITTED, SubmissionStatus.FAILED},
    SubmissionStatus.SUBMITTED: {SubmissionStatus.MINED, SubmissionStatus.FAILED},
    SubmissionStatus.MINED: set(),
    SubmissionStatus.FAILED: set(),
}

WRITE_ONCE_FIELDS = ("assigned_nonce", "envelope", "tracking_handle", "account")

# Attempts before a contended compare-and-set gives up.
_CAS_ATTEMPTS = 8


# ==================== Stores ====================

class SubmissionStore(ABC):
    """Backing storage for submission records."""

    @abstractmethod
    async def get(self, key: str) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    async def find_by_handle(self, tracking_handle: str) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    async def create_if_absent(self, record: SubmissionRecord) -> Tuple[SubmissionRecord, bool]:
        """
        Insert ``record`` unless its key exists.

        Returns:
            ``(stored_record, created)``; ``stored_record`` is the pre-existing
            record when ``created`` is False.
        """

    @abstractmethod
    async def compare_and_set(self, key: str, expected: SubmissionRecord, new: SubmissionRecord) -> bool:
        """Replace the record only if it still equals ``expected``."""


class InMemorySubmissionStore(SubmissionStore):
    def __init__(self) -> None:
        self._records: Dict[str, SubmissionRecord] = {}
        self._handles: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[SubmissionRecord]:
        return self._records.get(key)

    async def find_by_handle(self, tracking_handle: str) -> Optional[SubmissionRecord]:
        key = self._handles.get(tracking_handle)
        return self._records.get(key) if key is not None else None

    async def create_if_absent(self, record: SubmissionRecord) -> Tuple[SubmissionRecord, bool]:
        async with self._lock:
            existing = self._records.get(record.idempotency_key)
            if existing is not None:
                return existing, False
            self._records[record.idempotency_key] = record
            return record, True

    async def compare_and_set(self, key: str, expected: SubmissionRecord, new: SubmissionRecord) -> bool:
        async with self._lock:
            if self._records.get(key) != expected:
                return False
            self._records[key] = new
            if new.tracking_handle:
                self._handles[new.tracking_handle] = key
            return True


# ==================== Ledger ====================

class SubmissionLedger:
    """
    Owns the lifetime of submission records.

    All store failures surface as ``LedgerUnavailable``; illegal state changes
    raise ``InvalidTransition`` and are logged at error level.
    """

    def __init__(self, store: Optional[SubmissionStore] = None):
        self.store = store or InMemorySubmissionStore()

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except Exception as e:
            raise LedgerUnavailable(f"Submission store {operation} failed: {e}") from e

    async def begin_or_get(
        self,
        request: MintRequest,
        account: Optional[str] = None,
    ) -> Tuple[SubmissionRecord, bool]:
        """
        Atomically return the record for ``request.idempotency_key``, creating
        a PENDING one if none exists.

        Returns:
            ``(record, created)``.

        Raises:
            InvalidRequest: If the key is already bound to different request content.
            LedgerUnavailable: If the store fails.
        """
        fingerprint = request.fingerprint()
        candidate = SubmissionRecord(
            idempotency_key=request.idempotency_key,
            request_fingerprint=fingerprint,
            account=account,
        )
        record, created = await self._call("create", self.store.create_if_absent(candidate))

        if not created and record.request_fingerprint != fingerprint:
            raise InvalidRequest(
                f"Idempotency key {request.idempotency_key!r} was already used for a different request"
            )
        if created:
            logger.debug("Opened submission %s", request.idempotency_key)
        return record, created

    async def get(self, key: str) -> Optional[SubmissionRecord]:
        return await self._call("get", self.store.get(key))

    async def require(self, key: str) -> SubmissionRecord:
        record = await self.get(key)
        if record is None:
            raise UnknownSubmission(f"No submission for idempotency key {key!r}")
        return record

    async def get_by_handle(self, tracking_handle: str) -> Optional[SubmissionRecord]:
        return await self._call("lookup", self.store.find_by_handle(tracking_handle))

    def _check_transition(
        self,
        current: SubmissionRecord,
        new_status: SubmissionStatus,
        extra: Dict[str, Any],
    ) -> None:
        unknown = set(extra) - set(SubmissionRecord.model_fields)
        if unknown:
            raise ValueError(f"Unknown submission record fields: {sorted(unknown)}")

        def reject(message: str) -> InvalidTransition:
            error = InvalidTransition(
                message,
                current_state=current.status.value,
                requested_state=new_status.value,
            )
            logger.error("Rejected transition for %s: %s", current.idempotency_key, message)
            return error

        if new_status not in ALLOWED_TRANSITIONS[current.status]:
            raise reject(f"{current.status.value} -> {new_status.value} is not allowed")

        for field_name in WRITE_ONCE_FIELDS:
            if field_name not in extra:
                continue
            existing = getattr(current, field_name)
            if existing is not None and existing != extra[field_name]:
                raise reject(f"{field_name} is already set and cannot be replaced")

        if new_status is SubmissionStatus.SUBMITTED and not (extra.get("tracking_handle") or current.tracking_handle):
            raise reject("a submitted record requires a tracking handle")

    async def advance(self, key: str, new_status: SubmissionStatus, **extra: Any) -> SubmissionRecord:
        """
        Move record ``key`` to ``new_status``, attaching ``extra`` fields.

        Raises:
            UnknownSubmission: If no record exists for ``key``.
            InvalidTransition: If the transition or a field overwrite is illegal.
            LedgerUnavailable: If the store fails or stays contended.
        """
        for _ in range(_CAS_ATTEMPTS):
            current = await self.require(key)
            self._check_transition(current, new_status, extra)

            updated = current.model_copy(
                update={**extra, "status": new_status, "updated_at": datetime.now(timezone.utc)}
            )
            if await self._call("update", self.store.compare_and_set(key, current, updated)):
                if current.status is not new_status:
                    logger.debug("Submission %s: %s -> %s", key, current.status.value, new_status.value)
                return updated

        raise LedgerUnavailable(f"Submission {key!r} is contended; update did not apply")

    async def record_outcome(self, key: str, status: SubmissionStatus, **extra: Any) -> SubmissionRecord:
        """
        Record a terminal outcome; repeating the same outcome is a no-op.

        Raises:
            ValueError: If ``status`` is not terminal.
            InvalidTransition: If a different terminal outcome is already recorded.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        current = await self.require(key)
        if current.status is status:
            return current
        if current.is_terminal():
            logger.error(
                "Conflicting outcome for %s: recorded %s, reported %s",
                key, current.status.value, status.value,
            )
            raise InvalidTransition(
                f"{key!r} already ended as {current.status.value}",
                current_state=current.status.value,
                requested_state=status.value,
            )

        record = await self.advance(key, status, **extra)
        logger.info("Submission %s finished: %s", key, status.value)
        return record
