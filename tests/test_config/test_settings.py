import pytest

from gasless_mint.config import DEFAULT_RELAY_URL, MintSettings
from gasless_mint.engine.exceptions import ConfigurationError

from mint_mocks import MOCK_CLIENT_ID, MOCK_COLLECTION, MOCK_FORWARDER, make_settings


ENV_VARS = [
    "MINT_CHAIN_ID",
    "NFT_COLLECTION_ADDRESS",
    "FLAIR_CLIENT_ID",
    "RELAY_URL",
    "MINT_SIGNING_KEY_ENV",
    "FORWARDER_ADDRESS",
    "FORWARDER_DOMAIN_NAME",
    "CONTRACT_VERSION",
    "META_TX_GAS_LIMIT",
    "RELAY_MAX_ATTEMPTS",
    "RELAY_MAX_ELAPSED",
    "RELAY_REQUEST_TIMEOUT",
    "RELAY_BACKOFF_BASE",
    "RELAY_BACKOFF_CAP",
    "MINT_TRACK_TIMEOUT",
    "MINT_POLL_INTERVAL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of these tests.
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def set_required(env):
    env.setenv("MINT_CHAIN_ID", "11155111")
    env.setenv("NFT_COLLECTION_ADDRESS", MOCK_COLLECTION.lower())
    env.setenv("FLAIR_CLIENT_ID", MOCK_CLIENT_ID)


def test_from_env_defaults(clean_env):
    set_required(clean_env)
    settings = MintSettings.from_env(env_file="missing.env")

    assert settings.chain_id == 11155111
    assert settings.contract_address == MOCK_COLLECTION
    assert settings.relay_url == DEFAULT_RELAY_URL
    assert settings.signing_key_env == "MINTER_PRIVATE_KEY"
    assert settings.verifying_contract == MOCK_COLLECTION
    assert settings.gas_limit == 500_000


def test_from_env_overrides(clean_env):
    set_required(clean_env)
    clean_env.setenv("FORWARDER_ADDRESS", MOCK_FORWARDER)
    clean_env.setenv("RELAY_MAX_ATTEMPTS", "3")
    clean_env.setenv("MINT_POLL_INTERVAL", "0.5")

    settings = MintSettings.from_env(env_file="missing.env")

    assert settings.verifying_contract == MOCK_FORWARDER
    assert settings.relay_max_attempts == 3
    assert settings.poll_interval == 0.5


def test_from_env_reads_dotenv_file(clean_env, tmp_path):
    env_file = tmp_path / "mint.env"
    env_file.write_text(
        f"MINT_CHAIN_ID=1\nNFT_COLLECTION_ADDRESS={MOCK_COLLECTION}\nFLAIR_CLIENT_ID=from-file\n"
    )
    for name in ("MINT_CHAIN_ID", "NFT_COLLECTION_ADDRESS", "FLAIR_CLIENT_ID"):
        # Register with monkeypatch so values loaded from the file are removed afterwards.
        clean_env.setenv(name, "")
        clean_env.delenv(name)

    settings = MintSettings.from_env(env_file=str(env_file))

    assert settings.chain_id == 1
    assert settings.relay_client_id == "from-file"


@pytest.mark.parametrize("missing", ["MINT_CHAIN_ID", "NFT_COLLECTION_ADDRESS", "FLAIR_CLIENT_ID"])
def test_missing_required_variable(clean_env, missing):
    set_required(clean_env)
    clean_env.delenv(missing)
    with pytest.raises(ConfigurationError, match=missing):
        MintSettings.from_env(env_file="missing.env")


def test_malformed_number(clean_env):
    set_required(clean_env)
    clean_env.setenv("MINT_CHAIN_ID", "sepolia")
    with pytest.raises(ConfigurationError, match="MINT_CHAIN_ID"):
        MintSettings.from_env(env_file="missing.env")


def test_invalid_address(clean_env):
    set_required(clean_env)
    clean_env.setenv("NFT_COLLECTION_ADDRESS", "0x1234")
    with pytest.raises(ConfigurationError):
        MintSettings.from_env(env_file="missing.env")


def test_settings_are_frozen():
    settings = make_settings()
    with pytest.raises(Exception):
        settings.chain_id = 1
