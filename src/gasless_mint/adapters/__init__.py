from .evm import (
    EVMSigner,
    MetaTransactionBuilder,
    ForwardRequestTypedData,
    encode_mint_call,
)

__all__ = [
    "EVMSigner",
    "MetaTransactionBuilder",
    "ForwardRequestTypedData",
    "encode_mint_call",
]
