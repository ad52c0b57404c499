from .standards import EIP712Domain, ForwardRequestMessage, ForwardRequestTypedData
from .ERC721_ABI import get_mint_abi, get_forwarder_nonce_abi, encode_mint_call
from .signatures import EVMSigner, build_forward_request_typed_data
from .builders import MetaTransactionBuilder

__all__ = [
    "EIP712Domain",
    "ForwardRequestMessage",
    "ForwardRequestTypedData",
    "get_mint_abi",
    "get_forwarder_nonce_abi",
    "encode_mint_call",
    "EVMSigner",
    "build_forward_request_typed_data",
    "MetaTransactionBuilder",
]
