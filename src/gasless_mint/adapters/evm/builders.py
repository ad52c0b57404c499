"""
Meta-Transaction Builder

Turns a validated ``MintRequest`` into an unsigned ``MetaTransactionPayload``:
encodes the mint call, obtains the sender nonce and stamps the EIP-712 domain
from process settings.
"""

import logging
from typing import TYPE_CHECKING, Optional

from .ERC721_ABI import encode_mint_call
from ...config import MintSettings
from ...schemas.mints import DomainContext, MetaTransactionPayload, MintRequest

if TYPE_CHECKING:
    from ...ledgers.nonces import NonceLedger

logger = logging.getLogger(__name__)


class MetaTransactionBuilder:
    """
    Builds signable payloads for the configured collection.

    Validation runs before nonce allocation, so rejected input never consumes
    a nonce. When ``nonce`` is passed (a resumed request already holding an
    assigned nonce) the ledger is not touched at all.
    """

    def __init__(self, settings: MintSettings, nonce_ledger: "NonceLedger"):
        self.settings = settings
        self.nonce_ledger = nonce_ledger

    def domain_context(self) -> DomainContext:
        return DomainContext(
            name=self.settings.domain_name,
            version=self.settings.contract_version,
            chain_id=self.settings.chain_id,
            verifying_contract=self.settings.verifying_contract,
        )

    async def build(
        self,
        request: MintRequest,
        account: str,
        *,
        nonce: Optional[int] = None,
    ) -> MetaTransactionPayload:
        """
        Build the payload for ``request`` sent from ``account``.

        Args:
            request: Mint intent.
            account: Signing account (meta-transaction sender).
            nonce: Already-assigned nonce; allocated from the ledger when omitted.

        Returns:
            Unsigned, immutable ``MetaTransactionPayload``.

        Raises:
            InvalidRequest: If the request fails validation.
            LedgerUnavailable: If a nonce is needed and the ledger cannot allocate one.
        """
        request.validate_request()
        call_descriptor = encode_mint_call(request.recipient_address, request.count, request.token_uris)

        if nonce is None:
            nonce = await self.nonce_ledger.allocate(account)

        payload = MetaTransactionPayload(
            chain_id=self.settings.chain_id,
            contract_address=self.settings.contract_address,
            from_address=account,
            call_descriptor=call_descriptor,
            nonce=nonce,
            domain_context=self.domain_context(),
            value=0,
            gas=self.settings.gas_limit,
        )
        logger.debug("Built payload key=%s nonce=%s", request.idempotency_key, nonce)
        return payload
