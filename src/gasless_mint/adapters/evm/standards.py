from dataclasses import dataclass, field
from typing import Dict, Any, List

from ...schemas.mints import MetaTransactionPayload


# -----------------------------
# EIP-712 Domain
# -----------------------------

@dataclass
class EIP712Domain:
    """
    EIP-712 domain separator.
    Used to prevent signature replay across chains and contracts.
    """
    name: str
    version: str
    chainId: int
    verifyingContract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chainId,
            "verifyingContract": self.verifyingContract,
        }


# -----------------------------
# ERC-2771: Forward Request
# -----------------------------


@dataclass
class ForwardRequestMessage:
    """
    Message payload of an ERC-2771 ``ForwardRequest``.

    The EIP defines the field name `from` which is a Python reserved word;
    this class uses `sender` as the attribute name and maps it to `from` in
    `to_dict()`.

    Attributes:
        sender: Signing account (maps to `from`).
        to: Contract the forwarder calls.
        value: Native value forwarded with the call (uint256).
        gas: Gas limit for the inner call (uint256).
        nonce: Forwarder nonce of the sender (uint256).
        data: ABI-encoded calldata (0x-prefixed hex).
    """
    sender: str
    to: str
    value: int
    gas: int
    nonce: int
    data: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.to,
            "value": self.value,
            "gas": self.gas,
            "nonce": self.nonce,
            "data": self.data,
        }


@dataclass
class ForwardRequestTypedData:
    """
    Container for ERC-2771 typed data usable with EIP-712 signing routines.

    ``to_dict()`` produces the ``{types, primaryType, domain, message}``
    layout consumed by ``eth_account.Account.sign_typed_data`` and
    ``eth_signTypedData_v4``. The EIP-712 struct hash over this structure is
    the canonical encoding that gets signed: it covers chain, verifying
    contract, sender, target, nonce, gas and calldata.
    """
    domain: EIP712Domain
    message: ForwardRequestMessage

    primary_type: str = "ForwardRequest"

    types: Dict[str, List[Dict[str, str]]] = field(
        default_factory=lambda: {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "ForwardRequest": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "gas", "type": "uint256"},
                {"name": "nonce", "type": "uint256"},
                {"name": "data", "type": "bytes"},
            ],
        }
    )

    @classmethod
    def from_payload(cls, payload: MetaTransactionPayload) -> "ForwardRequestTypedData":
        ctx = payload.domain_context
        return cls(
            domain=EIP712Domain(
                name=ctx.name,
                version=ctx.version,
                chainId=ctx.chain_id,
                verifyingContract=ctx.verifying_contract,
            ),
            message=ForwardRequestMessage(
                sender=payload.from_address,
                to=payload.contract_address,
                value=payload.value,
                gas=payload.gas,
                nonce=payload.nonce,
                data=payload.call_descriptor.data,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": self.types,
            "primaryType": self.primary_type,
            "domain": self.domain.to_dict(),
            "message": self.message.to_dict(),
        }
