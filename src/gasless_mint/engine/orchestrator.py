"""
Mint Orchestrator

Entry point of the mint core. Runs one ``MintRequest`` through the event
chain and turns the final event into a ``MintResponse`` or a raised
taxonomy error.

Concurrent calls carrying the same idempotency key inside one process share
a single pipeline task; across processes the Submission Ledger's atomic
check-and-create provides the same guarantee.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Dict, Optional, Tuple

from .events import (
    BaseEvent,
    Dependencies,
    EventBus,
    MintReceivedEvent,
    MintResultEvent,
    MintFailedEvent,
)
from .exceptions import InvalidRequest
from .executors import EventChain
from .flows import setup_event_bus
from ..adapters.evm.builders import MetaTransactionBuilder
from ..adapters.evm.signatures import EVMSigner
from ..clients.relay_client import RelayClient
from ..clients.tracker import StatusTracker
from ..config import MintSettings
from ..ledgers.nonces import NonceLedger
from ..ledgers.submissions import SubmissionLedger
from ..schemas.bases import SubmissionStatus
from ..schemas.https import MintResponse
from ..schemas.mints import MintRequest

logger = logging.getLogger(__name__)


class MintOrchestrator:
    """
    Drives build → sign → submit → track for each request.

    Example::

        orchestrator = MintOrchestrator.from_settings(settings, signer)
        response = await orchestrator.mint(MintRequest.create(recipient, 1, ["ipfs://a"], "k1"))
        response.status           # SubmissionStatus.MINED, or PENDING/SUBMITTED on timeout
    """

    def __init__(self, deps: Dependencies, event_bus: Optional[EventBus] = None):
        self.deps = deps
        self.event_bus = event_bus or setup_event_bus()
        self._inflight: Dict[str, Tuple[str, asyncio.Task]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: MintSettings,
        signer: Optional[EVMSigner] = None,
        *,
        nonce_ledger: Optional[NonceLedger] = None,
        submission_ledger: Optional[SubmissionLedger] = None,
        relay_client: Optional[RelayClient] = None,
        event_bus: Optional[EventBus] = None,
    ) -> "MintOrchestrator":
        """Wire default components from settings; any component may be injected."""
        signer = signer or EVMSigner.from_env(settings.signing_key_env)
        nonce_ledger = nonce_ledger or NonceLedger()
        submission_ledger = submission_ledger or SubmissionLedger()
        relay_client = relay_client or RelayClient.from_settings(
            settings, nonce_reconciler=nonce_ledger.reconcile_rejected
        )

        deps = Dependencies(
            settings=settings,
            signer=signer,
            builder=MetaTransactionBuilder(settings, nonce_ledger),
            nonce_ledger=nonce_ledger,
            submission_ledger=submission_ledger,
            relay_client=relay_client,
            tracker=StatusTracker(relay_client, submission_ledger, poll_interval=settings.poll_interval),
        )
        return cls(deps, event_bus=event_bus)

    async def mint(self, request: MintRequest) -> MintResponse:
        """
        Run ``request`` through the pipeline.

        Returns:
            MintResponse with the current status; ``terminal`` is False when
            tracking timed out before a final outcome.

        Raises:
            MintError: Any taxonomy error (InvalidRequest, LedgerUnavailable,
                SigningUnavailable, RelayRejected, RelayUnavailable, InvalidTransition).
        """
        key = request.idempotency_key
        fingerprint = request.fingerprint()

        inflight = self._inflight.get(key)
        if inflight is not None:
            owner_fingerprint, task = inflight
            if owner_fingerprint != fingerprint:
                raise InvalidRequest(f"Idempotency key {key!r} was already used for a different request")
            logger.debug("Joining in-flight pipeline for %s", key)
            await asyncio.wait({task})
            if not task.cancelled():
                return task.result()
            # The owner was cancelled; resume from whatever the ledger holds.
            return await self._run(MintReceivedEvent(request=request))

        task = asyncio.ensure_future(self._run(MintReceivedEvent(request=request)))
        self._inflight[key] = (fingerprint, task)
        try:
            return await task
        finally:
            if self._inflight.get(key, (None, None))[1] is task:
                del self._inflight[key]

    async def status(self, idempotency_key: str, timeout: float = 0.0) -> MintResponse:
        """
        Look up a submission without entering the pipeline.

        A SUBMITTED record is polled for up to ``timeout`` seconds.

        Raises:
            UnknownSubmission: If the key has no record.
        """
        record = await self.deps.submission_ledger.require(idempotency_key)
        if record.status is not SubmissionStatus.SUBMITTED:
            return MintResponse.from_record(record)

        tracking = await self.deps.tracker.await_terminal(record.tracking_handle, timeout)
        record = await self.deps.submission_ledger.require(idempotency_key)
        return MintResponse.from_record(record, tracking)

    async def _run(self, initial_event: BaseEvent) -> MintResponse:
        chain = EventChain(self.event_bus, self.deps)
        result: Optional[MintResponse] = None
        # Drain the chain so hooks on the result event finish before returning.
        async with aclosing(chain.execute(initial_event)) as events:
            async for event in events:
                logger.debug("Mint pipeline: %r", event)
                if isinstance(event, MintFailedEvent):
                    raise event.error
                if isinstance(event, MintResultEvent):
                    result = event.to_response()

        if result is None:
            raise RuntimeError(f"Mint pipeline for {initial_event!r} ended without a result")
        return result
