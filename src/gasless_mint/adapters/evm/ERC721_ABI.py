
"""
ERC-721 Collection + ERC-2771 Forwarder ABI Module

This module provides simplified ABI definitions for the NFT collection mint
call and the trusted forwarder's nonce query, plus the encoder that turns a
mint intent into the opaque call descriptor carried by a meta-transaction.

Usage:
    from .ERC721_ABI import (
        get_mint_abi,
        get_forwarder_nonce_abi,
        encode_mint_call,
    )

    # Encode calldata for mintWithTokenURIsByOwner
    descriptor = encode_mint_call(to, 2, ["ipfs://a", "ipfs://b"])

    # Read the forwarder nonce of the minter
    nonce_abi = get_forwarder_nonce_abi()
"""

from typing import Dict, Any, List

from eth_abi import encode as abi_encode
from web3 import Web3

from ...schemas.mints import MintCallDescriptor


def get_mint_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ``mintWithTokenURIsByOwner(address,uint256,string[])``.

    Returns:
        List[Dict[str, Any]]: ABI for the owner-only batch mint function.
    """
    return [
        {
            "name": "mintWithTokenURIsByOwner",
            "type": "function",
            "stateMutability": "nonpayable",
            "inputs": [
                {"name": "to", "type": "address"},
                {"name": "count", "type": "uint256"},
                {"name": "tokenURIs", "type": "string[]"},
            ],
            "outputs": [],
        }
    ]


def get_forwarder_nonce_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for the ERC-2771 forwarder ``getNonce(address)``.

    Returns:
        List[Dict[str, Any]]: ABI for the forwarder nonce query.

    Example:
        contract = w3.eth.contract(address=forwarder, abi=get_forwarder_nonce_abi())
        nonce = await contract.functions.getNonce(minter).call()
    """
    return [
        {
            "name": "getNonce",
            "type": "function",
            "stateMutability": "view",
            "inputs": [{"name": "from", "type": "address"}],
            "outputs": [{"name": "", "type": "uint256"}],
        }
    ]


def encode_mint_call(recipient: str, count: int, token_uris: List[str]) -> MintCallDescriptor:
    """
    Encode a mint intent into calldata.

    Args:
        recipient: Address receiving the tokens.
        count: Number of tokens.
        token_uris: Metadata URI per token.

    Returns:
        MintCallDescriptor with signature, selector and full calldata.
    """
    entry = get_mint_abi()[0]
    arg_types = [arg["type"] for arg in entry["inputs"]]
    function_signature = f"{entry['name']}({','.join(arg_types)})"

    selector = Web3.keccak(text=function_signature)[:4]
    encoded_args = abi_encode(arg_types, [Web3.to_checksum_address(recipient), count, list(token_uris)])

    return MintCallDescriptor(
        function_signature=function_signature,
        selector="0x" + selector.hex().removeprefix("0x"),
        data="0x" + (selector + encoded_args).hex().removeprefix("0x"),
    )
