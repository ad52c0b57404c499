"""
Built-in event handlers for the gasless mint workflow.

Implements the core flow: validate → ledger check → build → sign → submit → track.
Handlers never raise taxonomy errors; they record the failure on the
submission and return a ``MintFailedEvent`` for the orchestrator to surface.

Preparation (nonce reservation, signing, storing the envelope) is local work
and runs shielded from cancellation, so a cancelled request always leaves
its record either without a nonce or with a stored envelope. Only relay
calls are interrupted by cancellation.
"""

import asyncio
import logging
from typing import Optional

from .events import (
    EventBus,
    Dependencies,
    MintReceivedEvent,
    SubmissionOpenedEvent,
    ExistingSubmissionEvent,
    ResumeSubmissionEvent,
    EnvelopeSubmittedEvent,
    MintResultEvent,
    MintFailedEvent,
)
from .exceptions import InvalidRequest, MintError, RelayRejected, RelayUnavailable, SigningUnavailable
from ..schemas.bases import SubmissionStatus
from ..schemas.mints import MintRequest, SignedEnvelope, SubmissionRecord

logger = logging.getLogger(__name__)


# ==================== Helpers ====================

async def _fail(deps: Dependencies, key: str, error: MintError) -> MintFailedEvent:
    """Mark the record FAILED with ``error`` and hand the error back."""
    try:
        await deps.submission_ledger.advance(key, SubmissionStatus.FAILED, last_error=error.to_error_info())
    except MintError as ledger_error:
        logger.error("Could not record failure of %s (%s): %s", key, error.code, ledger_error)
    logger.info("Submission %s failed: %s", key, error.code)
    return MintFailedEvent(idempotency_key=key, error=error)


async def _hold(deps: Dependencies, key: str, error: MintError) -> MintFailedEvent:
    """Keep the record PENDING with ``error`` noted so a retry resumes it."""
    try:
        await deps.submission_ledger.advance(key, SubmissionStatus.PENDING, last_error=error.to_error_info())
    except MintError as ledger_error:
        logger.error("Could not record %s on %s: %s", error.code, key, ledger_error)
    logger.info("Submission %s left pending: %s", key, error.code)
    return MintFailedEvent(idempotency_key=key, error=error)


async def _release_nonce(deps: Dependencies, account: str, nonce: int) -> bool:
    """Hand an unsigned nonce back to the ledger; False when it stays consumed."""
    try:
        return await deps.nonce_ledger.release(account, nonce)
    except MintError as e:
        logger.error("Could not release nonce %s for %s: %s", nonce, account, e)
        return False


async def _prepare(
    deps: Dependencies,
    request: MintRequest,
    record: SubmissionRecord,
    account: str,
) -> SubmissionRecord | MintFailedEvent:
    """
    Reserve a nonce (or reuse the record's), sign, and store the envelope.

    Must run under ``sequenced(account)``. A nonce that cannot be handed back
    stays on the PENDING record for the next attempt instead of being lost.
    """
    key = record.idempotency_key
    reserved: Optional[int] = record.assigned_nonce

    if reserved is not None and record.account is not None and record.account.lower() != account.lower():
        return await _hold(deps, key, SigningUnavailable(
            f"Nonce {reserved} of {key!r} is reserved for {record.account}, not the current signing account"
        ))

    try:
        payload = await deps.builder.build(request, account, nonce=reserved)
    except MintError as e:
        if reserved is None:
            return await _fail(deps, key, e)
        return await _hold(deps, key, e)

    try:
        if reserved is None:
            await deps.submission_ledger.advance(
                key, SubmissionStatus.PENDING, account=account, assigned_nonce=payload.nonce
            )
        signature = await deps.signer.sign(payload)
        envelope = SignedEnvelope(payload=payload, signature=signature)
        prepared = await deps.submission_ledger.advance(key, SubmissionStatus.PENDING, envelope=envelope)
    except MintError as e:
        if await _release_nonce(deps, account, payload.nonce):
            return await _fail(deps, key, e)
        return await _hold(deps, key, e)

    logger.debug("Signed %s with nonce %s", key, payload.nonce)
    return prepared


async def _submit(deps: Dependencies, record: SubmissionRecord) -> EnvelopeSubmittedEvent | MintFailedEvent:
    """Send the stored envelope and move the record to SUBMITTED."""
    key = record.idempotency_key
    try:
        handle = await deps.relay_client.submit(record.envelope)
    except RelayRejected as e:
        return await _fail(deps, key, e)
    except RelayUnavailable as e:
        # Outcome unknown: stay PENDING with the envelope so a retry resends it.
        return await _hold(deps, key, e)

    try:
        submitted = await deps.submission_ledger.advance(
            key,
            SubmissionStatus.SUBMITTED,
            tracking_handle=handle,
            last_error=None,
        )
    except MintError as e:
        logger.error("Relay accepted %s as %s but the ledger update failed: %s", key, handle, e)
        return MintFailedEvent(idempotency_key=key, error=e)
    return EnvelopeSubmittedEvent(record=submitted)


async def _drive(
    deps: Dependencies,
    request: MintRequest,
    record: SubmissionRecord,
) -> EnvelopeSubmittedEvent | MintResultEvent | MintFailedEvent:
    """Prepare (when needed) and submit ``record`` while holding the account sequence lock."""
    key = record.idempotency_key

    if record.envelope is not None:
        account = record.envelope.payload.from_address
    else:
        try:
            account = deps.signer.address
        except MintError as e:
            if record.assigned_nonce is None:
                return await _fail(deps, key, e)
            return await _hold(deps, key, e)

    async with deps.nonce_ledger.sequenced(account):
        try:
            record = await deps.submission_ledger.require(key)
        except MintError as e:
            return MintFailedEvent(idempotency_key=key, error=e)

        if record.is_terminal():
            return MintResultEvent(record=record)
        if record.status is SubmissionStatus.SUBMITTED:
            return EnvelopeSubmittedEvent(record=record)

        if record.envelope is None:
            preparation = asyncio.ensure_future(_prepare(deps, request, record, account))
            try:
                prepared = await asyncio.shield(preparation)
            except asyncio.CancelledError:
                # Settle the record and the nonce counter before giving up the lock.
                await asyncio.wait({preparation})
                raise
            if isinstance(prepared, MintFailedEvent):
                return prepared
            record = prepared
        else:
            logger.info("Resubmitting stored envelope for %s (nonce %s)", key, record.assigned_nonce)

        return await _submit(deps, record)


# ==================== Event Handlers ====================

async def handle_mint_received(
    event: MintReceivedEvent,
    deps: Dependencies
) -> SubmissionOpenedEvent | ExistingSubmissionEvent | MintFailedEvent:
    """Validate, then check-and-create the idempotency record."""
    request = event.request
    try:
        request.validate_request()
    except InvalidRequest as e:
        logger.info("Rejected mint %s: %s", request.idempotency_key, e.message)
        return MintFailedEvent(idempotency_key=request.idempotency_key, error=e)

    try:
        record, created = await deps.submission_ledger.begin_or_get(request)
    except MintError as e:
        return MintFailedEvent(idempotency_key=request.idempotency_key, error=e)

    if created:
        return SubmissionOpenedEvent(request=request, record=record)
    return ExistingSubmissionEvent(request=request, record=record)


async def handle_submission_opened(
    event: SubmissionOpenedEvent,
    deps: Dependencies
) -> EnvelopeSubmittedEvent | MintResultEvent | MintFailedEvent:
    """Build, sign and submit a new request."""
    return await _drive(deps, event.request, event.record)


async def handle_existing_submission(
    event: ExistingSubmissionEvent,
    deps: Dependencies
) -> MintResultEvent | EnvelopeSubmittedEvent | ResumeSubmissionEvent:
    """Route a duplicate request by the stored record's state."""
    record = event.record
    if record.is_terminal():
        return MintResultEvent(record=record)
    if record.status is SubmissionStatus.SUBMITTED:
        return EnvelopeSubmittedEvent(record=record)
    return ResumeSubmissionEvent(request=event.request, record=record)


async def handle_resume_submission(
    event: ResumeSubmissionEvent,
    deps: Dependencies
) -> EnvelopeSubmittedEvent | MintResultEvent | MintFailedEvent:
    """Continue a PENDING record: reuse its nonce and envelope when it has them."""
    return await _drive(deps, event.request, event.record)


async def handle_envelope_submitted(
    event: EnvelopeSubmittedEvent,
    deps: Dependencies
) -> MintResultEvent | MintFailedEvent:
    """Track the submission until terminal or the tracking timeout."""
    key = event.record.idempotency_key
    try:
        tracking = await deps.tracker.await_terminal(event.record.tracking_handle, deps.settings.track_timeout)
        record = await deps.submission_ledger.require(key)
    except MintError as e:
        return MintFailedEvent(idempotency_key=key, error=e)
    return MintResultEvent(record=record, tracking=tracking)


# ==================== Event Bus Setup ====================

def setup_event_bus() -> EventBus:
    """Initialize event bus with built-in handlers."""
    event_bus = EventBus()

    event_bus.subscribe(MintReceivedEvent, handle_mint_received)
    event_bus.subscribe(SubmissionOpenedEvent, handle_submission_opened)
    event_bus.subscribe(ExistingSubmissionEvent, handle_existing_submission)
    event_bus.subscribe(ResumeSubmissionEvent, handle_resume_submission)
    event_bus.subscribe(EnvelopeSubmittedEvent, handle_envelope_submitted)

    return event_bus
