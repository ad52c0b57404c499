"""
Nonce Ledger

Per-account, strictly sequential meta-transaction nonces. Allocation for one
account is serialized by an ``asyncio.Lock``; different accounts never block
each other. The counter only moves backward through explicit reconciliation:
``reconcile`` to an authoritative value, or ``release`` of the latest allocation.

Storage is pluggable through ``NonceStore``; ``InMemoryNonceStore`` is the
default. An optional async ``nonce_source`` seeds an account the first time it
is seen, e.g. from the forwarder's on-chain ``getNonce``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional

from web3 import AsyncWeb3

from ..adapters.evm.ERC721_ABI import get_forwarder_nonce_abi
from ..engine.exceptions import LedgerUnavailable

logger = logging.getLogger(__name__)

NonceSource = Callable[[str], Awaitable[int]]


class NonceStore(ABC):
    """Backing storage for next-unused nonces, keyed by normalized account."""

    @abstractmethod
    async def get(self, account: str) -> Optional[int]:
        """Return the next unused nonce, or None when the account is unknown."""

    @abstractmethod
    async def set(self, account: str, next_nonce: int) -> None:
        """Persist the next unused nonce."""


class InMemoryNonceStore(NonceStore):
    def __init__(self) -> None:
        self._values: Dict[str, int] = {}

    async def get(self, account: str) -> Optional[int]:
        return self._values.get(account)

    async def set(self, account: str, next_nonce: int) -> None:
        self._values[account] = next_nonce


def forwarder_nonce_source(w3: AsyncWeb3, forwarder_address: str) -> NonceSource:
    """
    Build a ``nonce_source`` reading ``getNonce(from)`` from an ERC-2771 forwarder.

    Example::

        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        ledger = NonceLedger(nonce_source=forwarder_nonce_source(w3, settings.verifying_contract))
    """
    contract = w3.eth.contract(
        address=AsyncWeb3.to_checksum_address(forwarder_address),
        abi=get_forwarder_nonce_abi(),
    )

    async def read_nonce(account: str) -> int:
        return await contract.functions.getNonce(AsyncWeb3.to_checksum_address(account)).call()

    return read_nonce


class NonceLedger:
    """
    Authoritative local nonce counter per signing account.

    Example::

        ledger = NonceLedger()
        nonce = await ledger.allocate(minter)      # 0
        nonce = await ledger.allocate(minter)      # 1
        await ledger.release(minter, 1)            # True: 1 is handed out next
        await ledger.reconcile(minter, 7)          # relay reported the chain at 7
    """

    def __init__(
        self,
        store: Optional[NonceStore] = None,
        nonce_source: Optional[NonceSource] = None,
    ):
        self.store = store or InMemoryNonceStore()
        self.nonce_source = nonce_source
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sequence_locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def _normalize(account: str) -> str:
        return account.lower()

    def _lock_for(self, account: str) -> asyncio.Lock:
        return self._locks.setdefault(self._normalize(account), asyncio.Lock())

    def sequenced(self, account: str) -> asyncio.Lock:
        """
        Lock held by callers across allocate → sign → submit.

        Holding it keeps relay submission order equal to allocation order for
        the account. It is distinct from the allocation lock, so ``allocate``
        and ``reconcile`` may be called while it is held.
        """
        return self._sequence_locks.setdefault(self._normalize(account), asyncio.Lock())

    async def _current(self, key: str, account: str) -> int:
        current = await self.store.get(key)
        if current is not None:
            return current
        if self.nonce_source is None:
            return 0
        seeded = await self.nonce_source(account)
        logger.info("Seeded nonce for %s at %s", account, seeded)
        return seeded

    async def allocate(self, account: str) -> int:
        """
        Return the next unused nonce for ``account`` and advance the counter.

        Raises:
            LedgerUnavailable: If the store or the nonce source fails.
        """
        key = self._normalize(account)
        async with self._lock_for(account):
            try:
                nonce = await self._current(key, account)
                await self.store.set(key, nonce + 1)
            except Exception as e:
                raise LedgerUnavailable(f"Nonce allocation failed for {account}: {e}") from e
        logger.debug("Allocated nonce %s for %s", nonce, account)
        return nonce

    async def reconcile(self, account: str, on_chain_nonce: int) -> None:
        """
        Reset the counter so the next allocation returns ``on_chain_nonce``.

        Together with ``release`` this is the only way the counter moves backward.

        Raises:
            LedgerUnavailable: If the store fails.
        """
        if on_chain_nonce < 0:
            raise ValueError(f"on_chain_nonce must be non-negative, got {on_chain_nonce}")
        key = self._normalize(account)
        async with self._lock_for(account):
            try:
                previous = await self.store.get(key)
                await self.store.set(key, on_chain_nonce)
            except Exception as e:
                raise LedgerUnavailable(f"Nonce reconciliation failed for {account}: {e}") from e
        logger.warning("Reconciled nonce for %s: %s -> %s", account, previous, on_chain_nonce)

    async def peek(self, account: str) -> int:
        """Next nonce ``allocate`` would return, without allocating it."""
        key = self._normalize(account)
        async with self._lock_for(account):
            try:
                return await self._current(key, account)
            except Exception as e:
                raise LedgerUnavailable(f"Nonce lookup failed for {account}: {e}") from e

    async def release(self, account: str, nonce: int) -> bool:
        """
        Hand ``nonce`` back if it is still the latest allocation for ``account``.

        Nonces allocated after it may already be signed or submitted, so an
        older nonce is never handed back.

        Returns:
            True when the next allocation will return ``nonce`` again.

        Raises:
            LedgerUnavailable: If the store fails.
        """
        key = self._normalize(account)
        async with self._lock_for(account):
            try:
                current = await self.store.get(key)
                released = current == nonce + 1
                if released:
                    await self.store.set(key, nonce)
            except Exception as e:
                raise LedgerUnavailable(f"Nonce release failed for {account}: {e}") from e

        if released:
            logger.info("Released nonce %s for %s", nonce, account)
        else:
            logger.warning("Kept nonce counter for %s at %s; %s is not the latest allocation", account, current, nonce)
        return released

    async def reconcile_rejected(
        self,
        account: str,
        rejected_nonce: int,
        on_chain_nonce: Optional[int] = None,
    ) -> None:
        """
        Resynchronize after the relay permanently rejected ``rejected_nonce``.

        A nonce reported by the relay is authoritative and applied through
        ``reconcile``. Without one only the rejected nonce itself is handed
        back, and only while it is the latest allocation.

        Raises:
            LedgerUnavailable: If the store fails.
        """
        if on_chain_nonce is not None:
            await self.reconcile(account, on_chain_nonce)
        else:
            await self.release(account, rejected_nonce)
