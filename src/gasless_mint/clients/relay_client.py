"""
Relay Client

Extended ``httpx.AsyncClient`` that submits signed meta-transaction envelopes
to the relay and reads back their status.

Transient failures (transport errors, timeouts, HTTP 5xx and 429) are retried
with exponential backoff and full jitter, bounded by both an attempt count and
an elapsed-time budget. Every retry sends the same envelope body.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from ..config import MintSettings
from ..engine.exceptions import LedgerUnavailable, RelayRejected, RelayUnavailable
from ..schemas.bases import RelayOutcome
from ..schemas.mints import RelayStatusReport, SignedEnvelope

logger = logging.getLogger(__name__)

META_TRANSACTIONS_PATH = "/v1/meta-transactions"
CLIENT_ID_HEADER = "X-Client-Id"

NonceReconciler = Callable[[str, int, Optional[int]], Awaitable[None]]


class RelayClient(httpx.AsyncClient):
    """
    Relay API client with bounded retries.

    Fully compatible with ``httpx.AsyncClient``; pass ``transport=`` to route
    requests through a mock in tests.

    Usage:
        ```python
        async with RelayClient.from_settings(settings, nonce_reconciler=ledger.reconcile_rejected) as relay:
            handle = await relay.submit(envelope)
            report = await relay.get_status(handle)
        ```
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        *,
        max_attempts: int = 5,
        max_elapsed: float = 30.0,
        backoff_base: float = 0.5,
        backoff_cap: float = 8.0,
        nonce_reconciler: Optional[NonceReconciler] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs
    ):
        """
        Initialize relay client.

        Args:
            base_url: Relay base URL
            client_id: Relay client identifier, sent as ``X-Client-Id``
            max_attempts: Attempts per call before ``RelayUnavailable``
            max_elapsed: Seconds a single call may spend retrying
            backoff_base: First backoff window in seconds
            backoff_cap: Largest backoff window in seconds
            nonce_reconciler: Async ``(account, rejected_nonce, on_chain_nonce)`` callback
                run once per rejection
            sleep: Awaitable used between retries
            **kwargs: All standard httpx.AsyncClient arguments (timeout, transport, etc.)
        """
        headers = {**kwargs.pop("headers", {}), CLIENT_ID_HEADER: client_id}
        super().__init__(base_url=base_url, headers=headers, **kwargs)
        self.max_attempts = max_attempts
        self.max_elapsed = max_elapsed
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._nonce_reconciler = nonce_reconciler
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: MintSettings,
        nonce_reconciler: Optional[NonceReconciler] = None,
        **kwargs
    ) -> "RelayClient":
        kwargs.setdefault("timeout", settings.relay_request_timeout)
        return cls(
            base_url=settings.relay_url,
            client_id=settings.relay_client_id,
            max_attempts=settings.relay_max_attempts,
            max_elapsed=settings.relay_max_elapsed,
            backoff_base=settings.relay_backoff_base,
            backoff_cap=settings.relay_backoff_cap,
            nonce_reconciler=nonce_reconciler,
            **kwargs
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(self, envelope: SignedEnvelope) -> str:
        """
        Submit ``envelope`` and return the relay's tracking handle.

        A 409 carrying an ``id`` means the relay already holds this exact
        envelope and is treated as success.

        Raises:
            RelayRejected: On any other 4xx; the nonce is reconciled once first.
            RelayUnavailable: When transient failures exhaust the retry budget.
        """
        body = envelope.to_relay_body()
        logger.debug("Submitting envelope %s", envelope.redacted())

        response = await self._send_with_retry("POST", META_TRANSACTIONS_PATH, json=body)
        status = response.status_code
        data = _json_or_empty(response)

        if 200 <= status < 300:
            handle = _extract_handle(data)
            if not handle:
                raise RelayUnavailable("Relay accepted the envelope but returned no id")
            logger.info("Relay accepted nonce=%s handle=%s", envelope.payload.nonce, handle)
            return handle

        if status == 409:
            handle = _extract_handle(data)
            if handle:
                logger.info("Relay already holds nonce=%s handle=%s", envelope.payload.nonce, handle)
                return handle

        if 400 <= status < 500:
            await self._reject(envelope, response, data)

        raise RelayUnavailable(f"Unexpected relay response: HTTP {status}")

    async def get_status(self, tracking_handle: str) -> RelayStatusReport:
        """
        Read the relay's view of a submission; unknown handles report pending.

        Raises:
            RelayUnavailable: On exhausted retries or an unusable response.
        """
        response = await self._send_with_retry("GET", f"{META_TRANSACTIONS_PATH}/{tracking_handle}")

        if response.status_code == 404:
            return RelayStatusReport(status=RelayOutcome.PENDING)
        if not 200 <= response.status_code < 300:
            raise RelayUnavailable(f"Status lookup for {tracking_handle} failed: HTTP {response.status_code}")

        try:
            return RelayStatusReport.model_validate(_json_or_empty(response))
        except ValidationError as e:
            raise RelayUnavailable(f"Malformed status response for {tracking_handle}: {e}") from e

    # =========================================================================
    # Retry Logic
    # =========================================================================

    def _backoff(self, retry_index: int) -> float:
        """Full-jitter delay: uniform in ``[0, min(cap, base * 2**retry_index)]``."""
        window = min(self.backoff_cap, self.backoff_base * (2 ** retry_index))
        return random.uniform(0, window)

    async def _send_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self.request(method, url, **kwargs)
            except httpx.TransportError as e:
                failure = f"{type(e).__name__}: {e}"
            else:
                if response.status_code != 429 and response.status_code < 500:
                    return response
                failure = f"HTTP {response.status_code}"

            delay = self._backoff(attempt - 1)
            elapsed = time.monotonic() - started
            if attempt >= self.max_attempts or elapsed + delay > self.max_elapsed:
                logger.warning("Relay %s %s gave up after %d attempts: %s", method, url, attempt, failure)
                raise RelayUnavailable(
                    f"Relay unavailable after {attempt} attempts: {failure}",
                    attempts=attempt,
                )

            logger.warning(
                "Relay %s %s failed (%s); retry %d/%d in %.2fs",
                method, url, failure, attempt, self.max_attempts - 1, delay,
            )
            await self._sleep(delay)

    async def _reject(self, envelope: SignedEnvelope, response: httpx.Response, data: Dict[str, Any]) -> None:
        reason = data.get("reason") or response.text or f"HTTP {response.status_code}"
        on_chain_nonce = _optional_int(data.get("onChainNonce"))
        rejection = RelayRejected(
            f"Relay rejected meta-transaction: {reason}",
            reason=reason,
            on_chain_nonce=on_chain_nonce,
        )
        logger.error(
            "Relay rejected nonce=%s (HTTP %s, code=%s): %s",
            envelope.payload.nonce, response.status_code, data.get("code"), reason,
        )

        if self._nonce_reconciler is not None:
            try:
                await self._nonce_reconciler(envelope.payload.from_address, envelope.payload.nonce, on_chain_nonce)
            except LedgerUnavailable as e:
                logger.error("Nonce reconciliation after rejection failed: %s", e)
                raise rejection from e

        raise rejection


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _extract_handle(data: Dict[str, Any]) -> Optional[str]:
    handle = data.get("id")
    return str(handle) if handle not in (None, "") else None


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
