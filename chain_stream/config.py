"""
Chain Stream - Configuration.

============================================================
CONFIGURABLE POLLING
============================================================

All tunables are configurable:
- Poll cadence and backoff bounds
- Ledger capacity and statistics windows
- Error / staleness thresholds
- Node API endpoints and API keys per network

Configuration can be loaded from:
- Default values
- Environment variables
- YAML config file

============================================================
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from .exceptions import ConfigurationError
from .models import Network


logger = logging.getLogger(__name__)


# =============================================================
# NODE API ENDPOINTS
# =============================================================


DEFAULT_RPC_URLS: Dict[Network, str] = {
    Network.MAINNET: "https://api.mainnet.aptoslabs.com/v1",
    Network.TESTNET: "https://api.testnet.aptoslabs.com/v1",
}

# Tried in this order, unset variables skipped
RPC_URL_ENV_PREFIXES = ("APTOS_FULLNODE", "APTOS_QUICKNODE", "APTOS_LABS")


@dataclass
class NetworkEndpoints:
    """
    Base URLs and API key for one network.

    The fetcher walks `urls` in order and falls through to the next one on
    rate limits or failures.
    """
    network: Network
    urls: List[str] = field(default_factory=list)
    api_key: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.urls:
            self.urls = [DEFAULT_RPC_URLS[self.network]]
        self.urls = [u.rstrip("/") for u in self.urls]

    @classmethod
    def from_env(cls, network: Network) -> "NetworkEndpoints":
        """
        Load endpoints from environment variables.

        Environment variables (NET = MAINNET or TESTNET):
        - APTOS_FULLNODE_<NET>
        - APTOS_QUICKNODE_<NET>
        - APTOS_LABS_<NET>
        - APTOS_API_KEY_<NET>
        """
        suffix = network.value.upper()
        urls = [
            os.getenv(f"{prefix}_{suffix}")
            for prefix in RPC_URL_ENV_PREFIXES
        ]
        return cls(
            network=network,
            urls=[u for u in urls if u],
            api_key=os.getenv(f"APTOS_API_KEY_{suffix}") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (API key masked)."""
        return {
            "network": self.network.value,
            "urls": list(self.urls),
            "api_key": "***" if self.api_key else None,
        }


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class StreamConfig:
    """
    Main configuration for the block stream.

    Times are milliseconds unless the field name says otherwise.
    """
    network: Network = Network.MAINNET

    # Poll cadence
    poll_interval_ms: float = 300
    initial_delay_ms: float = 500

    # Ledger
    ledger_capacity: int = 50
    stats_window: int = 20
    recent_blocks_limit: int = 30
    recent_proposers_capacity: int = 20
    snapshot_proposers_limit: int = 10

    # Catch-up
    backfill_batch_size: int = 5
    max_delta_per_cycle: int = 15

    # Error handling and backoff
    error_threshold: int = 3
    backoff_multiplier: float = 1.5
    max_interval_ms: float = 10_000
    rate_limit_floor_ms: float = 2_000
    recent_data_window_ms: float = 10_000
    default_retry_after_seconds: int = 30

    # Staleness watchdog
    stale_threshold_ms: float = 15_000
    stale_check_interval_ms: float = 5_000

    # Validator set
    validator_refresh_interval_ms: float = 60_000

    # Nominal values used when nothing was observed
    default_block_time_ms: float = 94
    default_validator_count: int = 138

    # Transport
    request_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        """Validate values."""
        self.network = Network.parse(self.network)
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be > 0")
        if self.ledger_capacity < 1:
            raise ValueError("ledger_capacity must be >= 1")
        if self.backfill_batch_size < 1:
            raise ValueError("backfill_batch_size must be >= 1")
        if self.max_delta_per_cycle < 1:
            raise ValueError("max_delta_per_cycle must be >= 1")
        if self.error_threshold < 1:
            raise ValueError("error_threshold must be >= 1")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.max_interval_ms < self.poll_interval_ms:
            raise ValueError("max_interval_ms must be >= poll_interval_ms")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - CHAIN_STREAM_NETWORK
        - CHAIN_STREAM_POLL_MS
        - CHAIN_STREAM_LEDGER_CAPACITY
        - CHAIN_STREAM_BACKFILL
        - CHAIN_STREAM_MAX_DELTA
        - CHAIN_STREAM_ERROR_THRESHOLD
        - CHAIN_STREAM_STALE_MS
        - CHAIN_STREAM_TIMEOUT
        """
        env_fields = {
            "CHAIN_STREAM_POLL_MS": ("poll_interval_ms", float),
            "CHAIN_STREAM_LEDGER_CAPACITY": ("ledger_capacity", int),
            "CHAIN_STREAM_BACKFILL": ("backfill_batch_size", int),
            "CHAIN_STREAM_MAX_DELTA": ("max_delta_per_cycle", int),
            "CHAIN_STREAM_ERROR_THRESHOLD": ("error_threshold", int),
            "CHAIN_STREAM_STALE_MS": ("stale_threshold_ms", float),
            "CHAIN_STREAM_TIMEOUT": ("request_timeout_seconds", float),
        }

        values: Dict[str, Any] = {}
        if os.getenv("CHAIN_STREAM_NETWORK"):
            values["network"] = Network.parse(os.getenv("CHAIN_STREAM_NETWORK"))

        for env_var, (name, cast) in env_fields.items():
            raw = os.getenv(env_var)
            if not raw:
                continue
            try:
                values[name] = cast(raw)
            except ValueError as e:
                raise ConfigurationError(
                    message=f"Invalid value for {env_var}: {raw!r}",
                    config_key=env_var,
                    original_error=e,
                )

        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path) -> "StreamConfig":
        """Load configuration from YAML file, unknown keys are ignored."""
        try:
            import yaml
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}

            known = {f.name for f in fields(cls)}
            unknown = sorted(set(data) - known)
            if unknown:
                logger.warning(f"Ignoring unknown config keys in {path}: {unknown}")

            return cls(**{k: v for k, v in data.items() if k in known})

        except Exception as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

    def endpoints(self, network: Optional[Network] = None) -> NetworkEndpoints:
        """Resolve node API endpoints for a network (default: configured one)."""
        return NetworkEndpoints.from_env(network or self.network)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["network"] = self.network.value
        return data


# =============================================================
# GLOBAL CONFIG SINGLETON
# =============================================================


_default_config: Optional[StreamConfig] = None


def get_config() -> StreamConfig:
    """Get the global stream configuration."""
    global _default_config
    if _default_config is None:
        _default_config = StreamConfig.from_env()
    return _default_config


def set_config(config: StreamConfig) -> None:
    """Set the global stream configuration."""
    global _default_config
    _default_config = config
