"""
End-to-end tests for MintOrchestrator over a fake relay: idempotency, nonce
sequencing, failure handling and resubmission of stored envelopes.
"""
import asyncio
import json

import httpx
import pytest

from gasless_mint.adapters.evm.signatures import EVMSigner
from gasless_mint.engine.exceptions import (
    InvalidRequest,
    RelayRejected,
    RelayUnavailable,
    SigningUnavailable,
    UnknownSubmission,
)
from gasless_mint.ledgers.nonces import NonceLedger
from gasless_mint.ledgers.submissions import SubmissionLedger
from gasless_mint.schemas.bases import SubmissionStatus

from mint_mocks import (
    MOCK_MINTER_ADDRESS,
    MOCK_MINTER_PRIVATE_KEY,
    MOCK_OTHER_ADDRESS,
    MOCK_TX_HASH,
    FakeRelay,
    build_orchestrator,
    make_request,
)


class BrokenSigner(EVMSigner):
    """Key loads fine, but every signing attempt fails."""

    async def sign(self, payload):
        raise SigningUnavailable("HSM unreachable")


class SlowSigner(EVMSigner):
    """Signs only after ``release`` is set; ``entered`` marks the call."""

    def __init__(self, key_loader) -> None:
        super().__init__(key_loader)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def sign(self, payload):
        self.entered.set()
        await self.release.wait()
        return await super().sign(payload)


class BlockingRelay(FakeRelay):
    """Holds POST requests until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.arrived = asyncio.Event()
        self.release = asyncio.Event()

    @property
    def transport(self) -> httpx.MockTransport:
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST" and not self.release.is_set():
                self.arrived.set()
                await self.release.wait()
            return self.handler(request)

        return httpx.MockTransport(handler)


async def ledger_at(nonce: int) -> NonceLedger:
    ledger = NonceLedger()
    await ledger.reconcile(MOCK_MINTER_ADDRESS, nonce)
    return ledger


class TestWorkedExamples:
    @pytest.mark.asyncio
    async def test_duplicate_before_mined_returns_same_handle(self):
        relay = FakeRelay()
        nonce_ledger = await ledger_at(5)
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger)
        request = make_request(idempotency_key="k1", count=2, token_uris=["ipfs://a", "ipfs://b"])

        first = await orchestrator.mint(request)

        assert first.nonce == 5
        assert first.tracking_handle == "t1"
        assert first.status is SubmissionStatus.SUBMITTED
        assert first.terminal is False

        second = await orchestrator.mint(request)

        assert second.tracking_handle == "t1"
        assert second.nonce == 5
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 6
        assert len(relay.submissions) == 1

        relay.mine("t1")
        mined = await orchestrator.mint(request)

        assert mined.status is SubmissionStatus.MINED
        assert mined.terminal is True
        assert mined.transaction_hash == MOCK_TX_HASH
        assert mined.block_number is not None

        polls = relay.status_polls
        cached = await orchestrator.mint(request)
        assert cached.status is SubmissionStatus.MINED
        assert relay.status_polls == polls
        assert len(relay.submissions) == 1

    @pytest.mark.asyncio
    async def test_length_mismatch_consumes_no_nonce(self):
        relay = FakeRelay()
        nonce_ledger = await ledger_at(5)
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger)

        with pytest.raises(InvalidRequest):
            await orchestrator.mint(make_request(idempotency_key="bad", count=2, token_uris=["ipfs://a"]))

        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 5
        assert relay.submissions == []
        assert await submission_ledger.get("bad") is None

        # The key is not burned: the corrected request goes through.
        corrected = await orchestrator.mint(make_request(idempotency_key="bad", count=1, token_uris=["ipfs://a"]))
        assert corrected.nonce == 5
        assert corrected.tracking_handle == "t1"


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_concurrent_duplicates_share_one_submission(self):
        relay = FakeRelay()
        nonce_ledger = NonceLedger()
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger)
        request = make_request(idempotency_key="dup")

        responses = await asyncio.gather(*(orchestrator.mint(request) for _ in range(10)))

        assert {r.tracking_handle for r in responses} == {"t1"}
        assert len(relay.submissions) == 1
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 1

    @pytest.mark.asyncio
    async def test_derived_keys_deduplicate_identical_content(self):
        relay = FakeRelay()
        orchestrator = build_orchestrator(relay)

        first = await orchestrator.mint(make_request(idempotency_key=None))
        second = await orchestrator.mint(make_request(idempotency_key=None))

        assert first.idempotency_key == second.idempotency_key
        assert len(relay.submissions) == 1

    @pytest.mark.asyncio
    async def test_key_reuse_with_other_content_is_rejected(self):
        relay = FakeRelay()
        orchestrator = build_orchestrator(relay)
        await orchestrator.mint(make_request(idempotency_key="k1", token_uris=["ipfs://a", "ipfs://b"]))

        with pytest.raises(InvalidRequest):
            await orchestrator.mint(make_request(idempotency_key="k1", token_uris=["ipfs://c", "ipfs://d"]))
        assert len(relay.submissions) == 1

    @pytest.mark.asyncio
    async def test_abandoned_pending_record_is_resumed(self):
        relay = FakeRelay()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(relay, submission_ledger=submission_ledger)
        request = make_request(idempotency_key="opened")
        # An earlier attempt opened the record and stopped before reserving a nonce.
        await submission_ledger.begin_or_get(request)

        response = await orchestrator.mint(request)

        assert response.status is SubmissionStatus.SUBMITTED
        assert response.nonce == 0
        assert len(relay.submissions) == 1


class TestNonceSequencing:
    @pytest.mark.asyncio
    async def test_concurrent_requests_get_gap_free_nonces_in_order(self):
        relay = FakeRelay()
        nonce_ledger = NonceLedger()
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger)

        responses = await asyncio.gather(*(
            orchestrator.mint(make_request(idempotency_key=f"req-{i}")) for i in range(20)
        ))

        assert sorted(r.nonce for r in responses) == list(range(20))
        submitted_nonces = [int(body["nonce"]) for body in relay.submissions]
        assert submitted_nonces == list(range(20))
        assert len({r.tracking_handle for r in responses}) == 20


class TestFailures:
    @pytest.mark.asyncio
    async def test_relay_unavailable_keeps_envelope_for_identical_resubmission(self):
        relay = FakeRelay()
        relay.post_script = [httpx.Response(503) for _ in range(2)]
        nonce_ledger = NonceLedger()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(
            relay, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger, max_attempts=2
        )
        request = make_request(idempotency_key="flaky")

        with pytest.raises(RelayUnavailable):
            await orchestrator.mint(request)

        record = await submission_ledger.get("flaky")
        assert record.status is SubmissionStatus.PENDING
        assert record.envelope is not None
        assert record.last_error.code == "RelayUnavailable"

        response = await orchestrator.mint(request)

        assert response.tracking_handle == "t1"
        assert response.nonce == 0
        assert len(relay.submissions) == 3
        assert all(body == relay.submissions[0] for body in relay.submissions)
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 1

    @pytest.mark.asyncio
    async def test_relay_rejection_fails_record_and_rewinds_nonce(self):
        relay = FakeRelay()
        relay.post_script = [httpx.Response(400, json={"reason": "simulation reverted"})]
        nonce_ledger = NonceLedger()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger)

        with pytest.raises(RelayRejected, match="simulation reverted"):
            await orchestrator.mint(make_request(idempotency_key="rejected"))

        record = await submission_ledger.get("rejected")
        assert record.status is SubmissionStatus.FAILED
        assert record.last_error.code == "RelayRejected"
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 0

        # The failed record is returned as-is; nothing is resubmitted.
        cached = await orchestrator.mint(make_request(idempotency_key="rejected"))
        assert cached.status is SubmissionStatus.FAILED
        assert len(relay.submissions) == 1

        follow_up = await orchestrator.mint(make_request(idempotency_key="next"))
        assert follow_up.nonce == 0

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_allocation(self, monkeypatch):
        monkeypatch.delenv("UNSET_MINTER_KEY", raising=False)
        relay = FakeRelay()
        nonce_ledger = NonceLedger()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(
            relay,
            signer=EVMSigner.from_env("UNSET_MINTER_KEY"),
            nonce_ledger=nonce_ledger,
            submission_ledger=submission_ledger,
        )

        with pytest.raises(SigningUnavailable):
            await orchestrator.mint(make_request(idempotency_key="nokey"))

        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 0
        assert (await submission_ledger.get("nokey")).status is SubmissionStatus.FAILED
        assert relay.submissions == []

    @pytest.mark.asyncio
    async def test_signing_failure_releases_allocated_nonce(self):
        relay = FakeRelay()
        nonce_ledger = await ledger_at(3)
        orchestrator = build_orchestrator(
            relay,
            signer=BrokenSigner.from_private_key(MOCK_MINTER_PRIVATE_KEY),
            nonce_ledger=nonce_ledger,
        )

        with pytest.raises(SigningUnavailable, match="HSM"):
            await orchestrator.mint(make_request(idempotency_key="hsm"))

        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 3
        assert relay.submissions == []

    @pytest.mark.asyncio
    async def test_cancelled_submission_resumes_with_same_envelope(self):
        relay = BlockingRelay()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(relay, submission_ledger=submission_ledger)
        request = make_request(idempotency_key="cancel-me")

        task = asyncio.create_task(orchestrator.mint(request))
        await asyncio.wait_for(relay.arrived.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        record = await submission_ledger.get("cancel-me")
        assert record.status is SubmissionStatus.PENDING
        assert record.envelope is not None

        relay.release.set()
        response = await orchestrator.mint(request)

        assert response.tracking_handle == "t1"
        assert relay.submissions[-1] == record.envelope.to_relay_body()

    @pytest.mark.asyncio
    async def test_cancel_during_signing_keeps_reserved_nonce(self):
        relay = FakeRelay()
        nonce_ledger = NonceLedger()
        submission_ledger = SubmissionLedger()
        signer = SlowSigner.from_private_key(MOCK_MINTER_PRIVATE_KEY)
        orchestrator = build_orchestrator(
            relay, signer=signer, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger
        )
        request = make_request(idempotency_key="k1")

        task = asyncio.create_task(orchestrator.mint(request))
        await asyncio.wait_for(signer.entered.wait(), timeout=5)
        task.cancel()
        signer.release.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        record = await submission_ledger.get("k1")
        assert record.status is SubmissionStatus.PENDING
        assert record.assigned_nonce == 0
        assert record.envelope is not None
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 1
        assert relay.submissions == []

        retried = await orchestrator.mint(request)
        assert retried.tracking_handle == "t1"
        assert retried.nonce == 0

        follow_up = await orchestrator.mint(make_request(idempotency_key="k2"))
        assert follow_up.nonce == 1
        assert [body["nonce"] for body in relay.submissions] == ["0", "1"]

    @pytest.mark.asyncio
    async def test_pending_record_reuses_its_assigned_nonce(self):
        relay = FakeRelay()
        nonce_ledger = await ledger_at(1)
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger)
        request = make_request(idempotency_key="k1")
        # An earlier attempt reserved nonce 0 and stopped before signing.
        await submission_ledger.begin_or_get(request)
        await submission_ledger.advance(
            "k1", SubmissionStatus.PENDING, account=MOCK_MINTER_ADDRESS, assigned_nonce=0
        )

        response = await orchestrator.mint(request)

        assert response.nonce == 0
        assert response.tracking_handle == "t1"
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 1
        assert [body["nonce"] for body in relay.submissions] == ["0"]

    @pytest.mark.asyncio
    async def test_nonce_reserved_for_other_account_is_held(self):
        relay = FakeRelay()
        nonce_ledger = NonceLedger()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(relay, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger)
        request = make_request(idempotency_key="k1")
        await submission_ledger.begin_or_get(request)
        await submission_ledger.advance(
            "k1", SubmissionStatus.PENDING, account=MOCK_OTHER_ADDRESS, assigned_nonce=4
        )

        with pytest.raises(SigningUnavailable, match="reserved"):
            await orchestrator.mint(request)

        record = await submission_ledger.get("k1")
        assert record.status is SubmissionStatus.PENDING
        assert record.assigned_nonce == 4
        assert record.last_error.code == "SigningUnavailable"
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 0
        assert relay.submissions == []

    @pytest.mark.asyncio
    async def test_late_rejection_of_older_nonce_does_not_rewind(self):
        relay = FakeRelay()
        relay.post_script = [httpx.Response(503) for _ in range(2)]
        nonce_ledger = NonceLedger()
        submission_ledger = SubmissionLedger()
        orchestrator = build_orchestrator(
            relay, nonce_ledger=nonce_ledger, submission_ledger=submission_ledger, max_attempts=2
        )
        first = make_request(idempotency_key="k1")

        with pytest.raises(RelayUnavailable):
            await orchestrator.mint(first)
        second = await orchestrator.mint(make_request(idempotency_key="k2"))
        assert second.nonce == 1

        # The resubmitted k1 is rejected without an authoritative chain nonce.
        relay.post_script = [httpx.Response(400, json={"reason": "expired"})]
        with pytest.raises(RelayRejected, match="expired"):
            await orchestrator.mint(first)

        assert (await submission_ledger.get("k1")).status is SubmissionStatus.FAILED
        assert await nonce_ledger.peek(MOCK_MINTER_ADDRESS) == 2

        third = await orchestrator.mint(make_request(idempotency_key="k3"))
        fourth = await orchestrator.mint(make_request(idempotency_key="k4"))
        assert (third.nonce, fourth.nonce) == (2, 3)

        bodies_by_nonce = {}
        for body in relay.submissions:
            bodies_by_nonce.setdefault(body["nonce"], set()).add(json.dumps(body, sort_keys=True))
        assert all(len(bodies) == 1 for bodies in bodies_by_nonce.values())
        assert sorted(bodies_by_nonce) == ["0", "1", "2", "3"]


class TestStatusLookup:
    @pytest.mark.asyncio
    async def test_unknown_key(self):
        with pytest.raises(UnknownSubmission):
            await build_orchestrator().status("missing")

    @pytest.mark.asyncio
    async def test_status_tracks_submitted_record(self):
        relay = FakeRelay()
        orchestrator = build_orchestrator(relay)
        await orchestrator.mint(make_request(idempotency_key="k1"))

        pending = await orchestrator.status("k1")
        assert pending.status is SubmissionStatus.SUBMITTED

        relay.mine("t1")
        mined = await orchestrator.status("k1")
        assert mined.status is SubmissionStatus.MINED
        assert mined.transaction_hash == MOCK_TX_HASH
