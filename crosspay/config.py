"""
Settlement configuration.

One frozen dataclass, validated on construction and passed explicitly
to component constructors. Nothing in crosspay reads process-wide
state except ``SettlementConfig.from_env``.

Environment variables (all optional):

    FACILITATOR_URL               x402 facilitator base URL
    SOLANA_NETWORK                solana-devnet | solana-mainnet-beta
    BASE_NETWORK                  base-sepolia | base
    BASE_RPC_URL                  JSON-RPC endpoint for the target chain
    CROSSPAY_DB_PATH              SQLite path (":memory:" by default)
    INTENT_TTL_SECONDS            how long a PENDING intent stays open
    VERIFY_TIMEOUT_SECONDS        facilitator request timeout
    RPC_TIMEOUT_SECONDS           target-chain request timeout
    CONFIRMATION_TIMEOUT_SECONDS  bounded wait for one confirmation
    CONFIRMATION_POLL_SECONDS     receipt polling interval
    MAX_CONCURRENT_SETTLEMENTS    background dispatch pool size
    STALE_SETTLING_SECONDS        age after which an unresolved
                                  TARGET_SETTLING intent is rolled back
                                  (unsigned) or rebroadcast (signed)
    LOG_LEVEL                     DEBUG | INFO | WARNING | ERROR
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from crosspay.errors import ConfigError
from crosspay.networks import (
    SourceNetwork,
    TargetNetwork,
    source_network,
    target_network,
)

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
DEFAULT_INTENT_TTL_S = 600.0

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class SettlementConfig:
    """External-service and policy settings for one deployment."""

    facilitator_url: str = DEFAULT_FACILITATOR_URL
    source_network: str = "solana-devnet"
    target_network: str = "base-sepolia"
    target_rpc_url: str | None = None
    db_path: str = ":memory:"
    intent_ttl_s: float = DEFAULT_INTENT_TTL_S
    verify_timeout_s: float = 30.0
    rpc_timeout_s: float = 30.0
    confirmation_timeout_s: float = 120.0
    confirmation_poll_interval_s: float = 2.0
    max_concurrent_settlements: int = 4
    stale_settling_after_s: float = 900.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.facilitator_url.startswith(("http://", "https://")):
            raise ConfigError(
                f"facilitator_url must be an http(s) URL, got: {self.facilitator_url!r}"
            )
        # Resolve eagerly so a typo fails at startup.
        source_network(self.source_network)
        target_network(self.target_network)

        for name in (
            "intent_ttl_s",
            "verify_timeout_s",
            "rpc_timeout_s",
            "confirmation_timeout_s",
            "stale_settling_after_s",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0, got: {getattr(self, name)}")
        if self.confirmation_poll_interval_s < 0:
            raise ConfigError("confirmation_poll_interval_s must be >= 0")
        if self.max_concurrent_settlements < 1:
            raise ConfigError("max_concurrent_settlements must be >= 1")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigError(
                f"log_level must be one of {_LOG_LEVELS}, got: {self.log_level!r}"
            )

    @property
    def source(self) -> SourceNetwork:
        return source_network(self.source_network)

    @property
    def target(self) -> TargetNetwork:
        return target_network(self.target_network)

    @property
    def rpc_url(self) -> str:
        """Configured target RPC endpoint, or the network's public default."""
        return self.target_rpc_url or self.target.default_rpc_url

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SettlementConfig:
        """Build a config from environment variables (see module docstring)."""
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}

        def take(var: str, field_name: str, convert: Callable[[str], Any] = str) -> None:
            raw = env.get(var)
            if raw is None or raw == "":
                return
            try:
                kwargs[field_name] = convert(raw)
            except ValueError as exc:
                raise ConfigError(f"{var}: invalid value {raw!r}") from exc

        take("FACILITATOR_URL", "facilitator_url")
        take("SOLANA_NETWORK", "source_network")
        take("BASE_NETWORK", "target_network")
        take("BASE_RPC_URL", "target_rpc_url")
        take("CROSSPAY_DB_PATH", "db_path")
        take("INTENT_TTL_SECONDS", "intent_ttl_s", float)
        take("VERIFY_TIMEOUT_SECONDS", "verify_timeout_s", float)
        take("RPC_TIMEOUT_SECONDS", "rpc_timeout_s", float)
        take("CONFIRMATION_TIMEOUT_SECONDS", "confirmation_timeout_s", float)
        take("CONFIRMATION_POLL_SECONDS", "confirmation_poll_interval_s", float)
        take("MAX_CONCURRENT_SETTLEMENTS", "max_concurrent_settlements", int)
        take("STALE_SETTLING_SECONDS", "stale_settling_after_s", float)
        take("LOG_LEVEL", "log_level", str.upper)
        return cls(**kwargs)


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler for command-line and service use."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
