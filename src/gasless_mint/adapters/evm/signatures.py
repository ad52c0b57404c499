"""
EVM Off-Chain Signing

Local EIP-712 signing of meta-transaction payloads as ERC-2771
``ForwardRequest`` structs. All cryptographic operations are performed
in-process using ``eth_account``; no RPC calls are made.

Exported helpers
----------------
EVMSigner
    Single-owner signing capability. Holds the minter key, serializes signing
    behind an ``asyncio.Lock`` and never exposes or logs key material.

build_forward_request_typed_data
    Low-level helper returning the EIP-712 dict for a payload without signing.
    Useful when signing is handled externally (e.g. an MPC or KMS service).
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from .standards import ForwardRequestTypedData
from ...config import DEFAULT_SIGNING_KEY_ENV
from ...engine.exceptions import SigningUnavailable
from ...schemas.mints import EVMECDSASignature, MetaTransactionPayload

logger = logging.getLogger(__name__)


def build_forward_request_typed_data(payload: MetaTransactionPayload) -> Dict[str, Any]:
    """
    Build the EIP-712 typed-data dict for ``payload`` without signing.

    Returns:
        Dict compatible with ``eth_account.Account.sign_typed_data(full_message=...)``
        and ``eth_signTypedData_v4``.
    """
    return ForwardRequestTypedData.from_payload(payload).to_dict()


class EVMSigner:
    """
    Custodial meta-transaction signer.

    The key is resolved lazily through ``key_loader`` on first use so that a
    missing or malformed key surfaces as ``SigningUnavailable`` at request
    time rather than crashing the process. Once loaded, the account object is
    held privately; no method returns or logs raw key bytes.

    Signing is deterministic (RFC 6979): the same payload always yields the
    same v/r/s, which keeps resubmissions byte-identical.

    Example::

        signer = EVMSigner.from_env("MINTER_PRIVATE_KEY")
        signature = await signer.sign(payload)
        envelope = SignedEnvelope(payload=payload, signature=signature)
    """

    def __init__(self, key_loader: Callable[[], Optional[str]]):
        self._key_loader = key_loader
        self._account: Optional[LocalAccount] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_private_key(cls, private_key: str) -> "EVMSigner":
        return cls(lambda: private_key)

    @classmethod
    def from_env(cls, env_var: str = DEFAULT_SIGNING_KEY_ENV) -> "EVMSigner":
        return cls(lambda: os.getenv(env_var))

    def __repr__(self) -> str:
        loaded = self._account.address if self._account else "unloaded"
        return f"EVMSigner(account={loaded}, key=***)"

    def _load_account(self) -> LocalAccount:
        if self._account is not None:
            return self._account

        try:
            key = self._key_loader()
        except Exception as e:
            raise SigningUnavailable(f"Signing key could not be loaded: {type(e).__name__}") from e
        if not key:
            raise SigningUnavailable("Signing key is not configured")

        try:
            self._account = Account.from_key(key)
        except Exception as e:
            # The library message can echo key material; keep only the type.
            raise SigningUnavailable(f"Signing key material is malformed ({type(e).__name__})") from None

        logger.info("Signer loaded for account %s", self._account.address)
        return self._account

    @property
    def address(self) -> str:
        """Checksummed address of the signing account.

        Raises:
            SigningUnavailable: If key material cannot be accessed.
        """
        return self._load_account().address

    async def sign(self, payload: MetaTransactionPayload) -> EVMECDSASignature:
        """
        Sign ``payload`` as an EIP-712 ``ForwardRequest``.

        Args:
            payload: Built meta-transaction; ``from_address`` must be this signer.

        Returns:
            ``EVMECDSASignature`` with 32-byte zero-padded r and s.

        Raises:
            SigningUnavailable: If key material cannot be accessed or signing fails.
            ValueError: If the payload names a different sender.
        """
        account = self._load_account()
        if payload.from_address.lower() != account.address.lower():
            raise ValueError(
                f"Payload sender {payload.from_address} does not match signer {account.address}"
            )

        async with self._lock:
            typed_data = build_forward_request_typed_data(payload)
            try:
                signed = account.sign_typed_data(full_message=typed_data)
            except Exception as e:
                raise SigningUnavailable(f"EIP-712 signing failed: {e}") from e

        logger.debug("Signed meta-transaction nonce=%s chain=%s", payload.nonce, payload.chain_id)
        return EVMECDSASignature(
            v=signed.v,
            r="0x" + signed.r.to_bytes(32, "big").hex(),
            s="0x" + signed.s.to_bytes(32, "big").hex(),
        )

    @staticmethod
    def recover(payload: MetaTransactionPayload, signature: EVMECDSASignature) -> str:
        """
        Recover the address that produced ``signature`` over ``payload``.

        Returns:
            Checksummed signer address.
        """
        signable = encode_typed_data(full_message=build_forward_request_typed_data(payload))
        packed = bytes.fromhex(signature.to_packed_hex()[2:])
        return Account.recover_message(signable, signature=packed)
