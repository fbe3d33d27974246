"""
Tests for SettlementConfig and network selection.

Test plan:
- Defaults: devnet source, base-sepolia target, public RPC fallback
- from_env: every variable mapped, empty values ignored, bad numbers
  and unknown networks → ConfigError
- Validation: non-positive timeouts, pool size, log level, URL scheme
- Networks: explorer links, unknown names refused
"""

import logging

import pytest

from crosspay.config import SettlementConfig, configure_logging
from crosspay.errors import ConfigError
from crosspay.networks import source_network, target_network


class TestDefaults:
    def test_defaults(self) -> None:
        config = SettlementConfig()
        assert config.source.name == "solana-devnet"
        assert config.target.name == "base-sepolia"
        assert config.target.chain_id == 84532
        assert config.target.token_decimals == 6
        assert config.rpc_url == "https://sepolia.base.org"
        assert config.intent_ttl_s == 600.0

    def test_rpc_override(self) -> None:
        config = SettlementConfig(target_rpc_url="https://rpc.example")
        assert config.rpc_url == "https://rpc.example"


class TestFromEnv:
    def test_empty_env_gives_defaults(self) -> None:
        assert SettlementConfig.from_env({}) == SettlementConfig()

    def test_all_variables(self) -> None:
        config = SettlementConfig.from_env(
            {
                "FACILITATOR_URL": "https://fac.example",
                "SOLANA_NETWORK": "solana-mainnet-beta",
                "BASE_NETWORK": "base",
                "BASE_RPC_URL": "https://rpc.example",
                "CROSSPAY_DB_PATH": "/tmp/crosspay.db",
                "INTENT_TTL_SECONDS": "60",
                "VERIFY_TIMEOUT_SECONDS": "5",
                "RPC_TIMEOUT_SECONDS": "7",
                "CONFIRMATION_TIMEOUT_SECONDS": "90",
                "CONFIRMATION_POLL_SECONDS": "0.5",
                "MAX_CONCURRENT_SETTLEMENTS": "8",
                "STALE_SETTLING_SECONDS": "300",
                "LOG_LEVEL": "debug",
            }
        )
        assert config.facilitator_url == "https://fac.example"
        assert config.source_network == "solana-mainnet-beta"
        assert config.target_network == "base"
        assert config.rpc_url == "https://rpc.example"
        assert config.db_path == "/tmp/crosspay.db"
        assert config.intent_ttl_s == 60.0
        assert config.verify_timeout_s == 5.0
        assert config.rpc_timeout_s == 7.0
        assert config.confirmation_timeout_s == 90.0
        assert config.confirmation_poll_interval_s == 0.5
        assert config.max_concurrent_settlements == 8
        assert config.stale_settling_after_s == 300.0
        assert config.log_level == "DEBUG"

    def test_empty_value_ignored(self) -> None:
        assert SettlementConfig.from_env({"BASE_RPC_URL": ""}).target_rpc_url is None

    def test_bad_number(self) -> None:
        with pytest.raises(ConfigError, match="INTENT_TTL_SECONDS"):
            SettlementConfig.from_env({"INTENT_TTL_SECONDS": "ten"})

    def test_unknown_network(self) -> None:
        with pytest.raises(ConfigError, match="unknown target network"):
            SettlementConfig.from_env({"BASE_NETWORK": "optimism"})


class TestValidation:
    @pytest.mark.parametrize(
        "field_name",
        [
            "intent_ttl_s",
            "verify_timeout_s",
            "rpc_timeout_s",
            "confirmation_timeout_s",
            "stale_settling_after_s",
        ],
    )
    def test_non_positive(self, field_name: str) -> None:
        with pytest.raises(ConfigError, match=field_name):
            SettlementConfig(**{field_name: 0})  # type: ignore[arg-type]

    def test_negative_poll_interval(self) -> None:
        with pytest.raises(ConfigError):
            SettlementConfig(confirmation_poll_interval_s=-1)

    def test_pool_size(self) -> None:
        with pytest.raises(ConfigError):
            SettlementConfig(max_concurrent_settlements=0)

    def test_log_level(self) -> None:
        with pytest.raises(ConfigError):
            SettlementConfig(log_level="LOUD")

    def test_facilitator_scheme(self) -> None:
        with pytest.raises(ConfigError):
            SettlementConfig(facilitator_url="ftp://fac.example")

    def test_config_error_is_value_error(self) -> None:
        assert issubclass(ConfigError, ValueError)


class TestNetworks:
    def test_source_explorer(self) -> None:
        assert (
            source_network("solana-devnet").explorer_url("sig")
            == "https://solscan.io/tx/sig?cluster=devnet"
        )
        assert (
            source_network("solana-mainnet-beta").explorer_url("sig")
            == "https://solscan.io/tx/sig"
        )

    def test_target_explorer(self) -> None:
        assert (
            target_network("base-sepolia").explorer_url("0xabc")
            == "https://sepolia.basescan.org/tx/0xabc"
        )
        assert target_network("base").explorer_url("0xabc") == "https://basescan.org/tx/0xabc"

    def test_unknown_source(self) -> None:
        with pytest.raises(ConfigError):
            source_network("solana-testnet")


class TestLogging:
    def test_configure_logging_uppercases_level(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls: list[dict[str, object]] = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kw: calls.append(kw))
        configure_logging("debug")
        assert calls[0]["level"] == "DEBUG"
