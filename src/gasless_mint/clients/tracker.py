"""
Status Tracker

Polls the relay for a submission's outcome and records terminal results in the
Submission Ledger.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .relay_client import RelayClient
from ..engine.exceptions import RelayUnavailable, UnknownSubmission
from ..ledgers.submissions import SubmissionLedger
from ..schemas.bases import ErrorInfo, RelayOutcome, SubmissionStatus
from ..schemas.mints import RelayStatusReport, SubmissionRecord, TrackingResult

logger = logging.getLogger(__name__)


class StatusTracker:
    """
    Waits for a tracking handle to reach a terminal state.

    Polling stops at the deadline with a non-terminal ``TrackingResult``
    instead of raising; the submission keeps its SUBMITTED status and can be
    tracked again later.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        submission_ledger: SubmissionLedger,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.relay_client = relay_client
        self.submission_ledger = submission_ledger
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def await_terminal(self, tracking_handle: str, timeout: float) -> TrackingResult:
        """
        Poll until the relay reports a terminal state or ``timeout`` elapses.

        Args:
            tracking_handle: Handle returned by ``RelayClient.submit``.
            timeout: Seconds to keep polling; 0 performs a single poll.

        Returns:
            TrackingResult; ``terminal`` is False on timeout.

        Raises:
            UnknownSubmission: If no record carries ``tracking_handle``.
        """
        record = await self.submission_ledger.get_by_handle(tracking_handle)
        if record is None:
            raise UnknownSubmission(f"No submission with tracking handle {tracking_handle!r}")
        if record.is_terminal():
            return TrackingResult.from_record(record)

        deadline = time.monotonic() + timeout
        last_reason: Optional[str] = None

        while True:
            try:
                report = await self.relay_client.get_status(tracking_handle)
            except RelayUnavailable as e:
                last_reason = e.message
                logger.warning("Status poll for %s failed: %s", tracking_handle, e.message)
            else:
                if report.status is not RelayOutcome.PENDING:
                    return await self._finish(record, report)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info("Tracking %s timed out; still %s", tracking_handle, record.status.value)
                return TrackingResult(
                    tracking_handle=tracking_handle,
                    status=record.status,
                    terminal=False,
                    reason=last_reason,
                )
            await self._sleep(min(self.poll_interval, remaining))

    async def _finish(self, record: SubmissionRecord, report: RelayStatusReport) -> TrackingResult:
        status = report.status.to_submission_status()

        if status is SubmissionStatus.MINED:
            extra = {
                "transaction_hash": report.transaction_hash,
                "block_number": report.block_number,
                "block_hash": report.block_hash,
            }
        else:
            reason = report.revert_reason or report.status.value
            extra = {
                "transaction_hash": report.transaction_hash,
                "last_error": ErrorInfo(code=f"Relay{report.status.value.capitalize()}", message=reason),
            }

        updated = await self.submission_ledger.record_outcome(record.idempotency_key, status, **extra)
        logger.info(
            "Submission %s %s (tx=%s block=%s)",
            record.idempotency_key, status.value, report.transaction_hash, report.block_number,
        )
        return TrackingResult.from_record(updated)
