import pytest

from mnee_indexer.config import (
    DEFAULT_FALLBACK_ADDRESS,
    IndexerSettings,
)
from mnee_indexer.exceptions import ConfigurationError


def test_defaults_from_empty_environment():
    settings = IndexerSettings.from_env({})

    assert settings.rpc_url == "http://127.0.0.1:8545"
    assert settings.chain_id == 31337
    assert settings.poll_interval == 2.0
    assert settings.reset_threshold == 50
    assert settings.fallback_address == DEFAULT_FALLBACK_ADDRESS
    assert settings.metrics_port is None
    assert settings.deployment_file.endswith("contract-addresses.json")


def test_environment_values_are_parsed():
    settings = IndexerSettings.from_env(
        {
            "MNEE_RPC_URL": "http://node:8545",
            "MNEE_CHAIN_ID": "1",
            "MNEE_POLL_INTERVAL": "0.5",
            "MNEE_RESET_THRESHOLD": "10",
            "MNEE_METRICS_PORT": "9105",
            "MNEE_LOG_LEVEL": "debug",
            "MNEE_FALLBACK_ADDRESS": "none",
        }
    )

    assert settings.rpc_url == "http://node:8545"
    assert settings.chain_id == 1
    assert settings.poll_interval == 0.5
    assert settings.reset_threshold == 10
    assert settings.metrics_port == 9105
    assert settings.log_level == "DEBUG"
    assert settings.fallback_address is None


@pytest.mark.parametrize(
    "env",
    [
        {"MNEE_CHAIN_ID": "mainnet"},
        {"MNEE_CHAIN_ID": "0"},
        {"MNEE_POLL_INTERVAL": "-1"},
        {"MNEE_MAX_BLOCK_RANGE": "0"},
        {"MNEE_RPC_URL": "127.0.0.1:8545"},
        {"MNEE_LOG_LEVEL": "CHATTY"},
        {"MNEE_DB_POOL_MIN": "10", "MNEE_DB_POOL_MAX": "2"},
    ],
)
def test_invalid_environment_raises_configuration_error(env):
    with pytest.raises(ConfigurationError):
        IndexerSettings.from_env(env)


def test_with_overrides_ignores_none():
    settings = IndexerSettings.from_env({})

    assert settings.with_overrides(rpc_url=None) is settings
    updated = settings.with_overrides(chain_id=5, rpc_url=None)
    assert updated.chain_id == 5
    assert updated.rpc_url == settings.rpc_url


def test_to_dict_masks_database_password():
    settings = IndexerSettings.from_env({"DATABASE_URL": "postgresql://app:s3cret@db:5432/mnee"})

    data = settings.to_dict()

    assert data["database_url"] == "postgresql://app:***@db:5432/mnee"
    assert "s3cret" not in str(data)
