"""
Process Configuration

Loads the immutable settings the mint core needs at process start: chain id,
contract addresses, relay endpoint and client identifier, the signing key
*reference* (name of the environment variable holding the key) and the relay
retry / tracking knobs.

Values are read from the environment; a ``.env`` file in the working
directory is loaded first via ``python-dotenv``.

Environment Variables:
    - MINT_CHAIN_ID: EVM chain id of the NFT collection (required)
    - NFT_COLLECTION_ADDRESS: NFT collection contract address (required)
    - FLAIR_CLIENT_ID: Relay client identifier (required)
    - MINTER_PRIVATE_KEY: Minter private key (required; read by the signer, never stored here)
    - RELAY_URL: Relay base URL (default https://api.flair.dev)
    - FORWARDER_ADDRESS: ERC-2771 forwarder verifying signatures (default: collection address)
    - FORWARDER_DOMAIN_NAME / CONTRACT_VERSION: EIP-712 domain name / version
    - META_TX_GAS_LIMIT: Gas limit forwarded with each call
    - RELAY_MAX_ATTEMPTS / RELAY_MAX_ELAPSED / RELAY_REQUEST_TIMEOUT
    - RELAY_BACKOFF_BASE / RELAY_BACKOFF_CAP
    - MINT_TRACK_TIMEOUT / MINT_POLL_INTERVAL
"""

import os
from typing import Callable, Optional, TypeVar

import dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from .engine.exceptions import ConfigurationError

T = TypeVar("T")

DEFAULT_RELAY_URL = "https://api.flair.dev"
DEFAULT_SIGNING_KEY_ENV = "MINTER_PRIVATE_KEY"


class MintSettings(BaseModel):
    """
    Immutable process settings.

    Attributes:
        chain_id: EVM network ID of the collection.
        contract_address: Checksummed NFT collection address (call target).
        relay_url: Base URL of the relay service.
        relay_client_id: Client identifier sent with every relay request.
        signing_key_env: Name of the environment variable holding the minter key.
        forwarder_address: EIP-712 verifying contract; defaults to ``contract_address``.
        domain_name: EIP-712 domain name of the forwarder.
        contract_version: EIP-712 domain version.
        gas_limit: Gas forwarded with the meta-transaction call.
        relay_max_attempts: Submission attempts before ``RelayUnavailable``.
        relay_max_elapsed: Upper bound (seconds) on time spent retrying one call.
        relay_request_timeout: Per-request HTTP timeout (seconds).
        relay_backoff_base: First backoff window (seconds).
        relay_backoff_cap: Largest backoff window (seconds).
        track_timeout: How long a mint call waits for a terminal outcome.
        poll_interval: Delay between relay status polls.
    """

    model_config = ConfigDict(frozen=True)

    chain_id: int = Field(..., ge=1)
    contract_address: str
    relay_url: str = DEFAULT_RELAY_URL
    relay_client_id: str = Field(..., min_length=1)
    signing_key_env: str = DEFAULT_SIGNING_KEY_ENV
    forwarder_address: Optional[str] = None
    domain_name: str = "MinimalForwarder"
    contract_version: str = "0.0.1"
    gas_limit: int = Field(default=500_000, ge=21_000)
    relay_max_attempts: int = Field(default=5, ge=1)
    relay_max_elapsed: float = Field(default=30.0, gt=0)
    relay_request_timeout: float = Field(default=10.0, gt=0)
    relay_backoff_base: float = Field(default=0.5, ge=0)
    relay_backoff_cap: float = Field(default=8.0, ge=0)
    track_timeout: float = Field(default=20.0, ge=0)
    poll_interval: float = Field(default=2.0, gt=0)

    @field_validator("contract_address", "forwarder_address")
    @classmethod
    def _checksum_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not Web3.is_address(value):
            raise ValueError(f"not a valid address: {value!r}")
        return Web3.to_checksum_address(value)

    @property
    def verifying_contract(self) -> str:
        return self.forwarder_address or self.contract_address

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "MintSettings":
        """
        Load settings from the environment (after loading ``.env``).

        Raises:
            ConfigurationError: If a required variable is missing or a value is malformed.
        """
        dotenv.load_dotenv(env_file)

        kwargs = {
            "chain_id": _env("MINT_CHAIN_ID", int, required=True),
            "contract_address": _env("NFT_COLLECTION_ADDRESS", str, required=True),
            "relay_client_id": _env("FLAIR_CLIENT_ID", str, required=True),
            "relay_url": _env("RELAY_URL", str),
            "signing_key_env": _env("MINT_SIGNING_KEY_ENV", str),
            "forwarder_address": _env("FORWARDER_ADDRESS", str),
            "domain_name": _env("FORWARDER_DOMAIN_NAME", str),
            "contract_version": _env("CONTRACT_VERSION", str),
            "gas_limit": _env("META_TX_GAS_LIMIT", int),
            "relay_max_attempts": _env("RELAY_MAX_ATTEMPTS", int),
            "relay_max_elapsed": _env("RELAY_MAX_ELAPSED", float),
            "relay_request_timeout": _env("RELAY_REQUEST_TIMEOUT", float),
            "relay_backoff_base": _env("RELAY_BACKOFF_BASE", float),
            "relay_backoff_cap": _env("RELAY_BACKOFF_CAP", float),
            "track_timeout": _env("MINT_TRACK_TIMEOUT", float),
            "poll_interval": _env("MINT_POLL_INTERVAL", float),
        }
        try:
            return cls(**{k: v for k, v in kwargs.items() if v is not None})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid mint settings: {e}") from e


def _env(name: str, cast: Callable[[str], T], required: bool = False) -> Optional[T]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        if required:
            raise ConfigurationError(f"Missing required environment variable: {name}")
        return None
    try:
        return cast(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"Environment variable {name} is malformed: {raw!r}") from e
