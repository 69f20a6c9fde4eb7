"""
Shared fixtures for chain_stream tests.

FakeFetcher stands in for AptosFetcher: an in-memory chain where block
`h` has timestamp BASE_TS_US + h * BLOCK_INTERVAL_US (100ms apart) and
three transactions (one block metadata, two user transactions).
"""

import asyncio
from typing import Any, Optional

import pytest

from chain_stream.clock import MockClock
from chain_stream.config import StreamConfig
from chain_stream.models import LedgerInfo, Network


BASE_TS_US = 1_700_000_000_000_000
BLOCK_INTERVAL_US = 100_000
VALIDATOR_ADDRESSES = ["0xval0", "0xval1", "0xval2", "0xval3"]


def make_block(
    height: int,
    timestamp_us: Optional[int] = None,
    proposer: Optional[str] = None,
    epoch: str = "10",
    bitvec: str = "0x0f",
    gas_prices: tuple[str, ...] = ("100", "150"),
) -> dict[str, Any]:
    """Raw block payload in node API shape."""
    if timestamp_us is None:
        timestamp_us = BASE_TS_US + height * BLOCK_INTERVAL_US
    transactions: list[dict[str, Any]] = [{
        "type": "block_metadata_transaction",
        "proposer": proposer or VALIDATOR_ADDRESSES[height % 4],
        "round": str(height),
        "epoch": epoch,
        "previous_block_votes_bitvec": bitvec,
        "failed_proposer_indices": [],
    }]
    for price in gas_prices:
        transactions.append({
            "type": "user_transaction",
            "gas_unit_price": price,
            "gas_used": "10",
        })
    return {
        "block_height": str(height),
        "block_timestamp": str(timestamp_us),
        "transactions": transactions,
    }


def make_validator_set(addresses: list[str] = VALIDATOR_ADDRESSES) -> dict[str, Any]:
    return {
        "type": "0x1::stake::ValidatorSet",
        "data": {
            "active_validators": [
                {
                    "addr": addr,
                    "voting_power": str(100 * (i + 1)),
                    "config": {"validator_index": str(i)},
                }
                for i, addr in enumerate(addresses)
            ],
        },
    }


class FakeFetcher:
    """In-memory node API with injectable failures."""

    def __init__(self, height: int = 1000) -> None:
        self.height = height
        self.ledger_error: Optional[Exception] = None
        self.block_errors: dict[int, Exception] = {}
        self.block_payloads: dict[int, Any] = {}
        self.validator_payload: Any = make_validator_set()
        self.validator_error: Optional[Exception] = None
        self.calls: list[tuple[str, Network, Optional[int]]] = []

    def block_calls(self) -> list[int]:
        return [h for kind, _, h in self.calls if kind == "block"]

    async def fetch_ledger_info(self, network: Network) -> LedgerInfo:
        self.calls.append(("ledger", network, None))
        if self.ledger_error is not None:
            raise self.ledger_error
        return LedgerInfo(
            chain_id=1,
            epoch=10,
            block_height=self.height,
            ledger_version=self.height * 10,
            ledger_timestamp_us=BASE_TS_US + self.height * BLOCK_INTERVAL_US,
        )

    async def fetch_block(self, network: Network, height: int) -> dict[str, Any]:
        self.calls.append(("block", network, height))
        if height in self.block_errors:
            raise self.block_errors[height]
        if height in self.block_payloads:
            return self.block_payloads[height]
        return make_block(height)

    async def fetch_validator_set(self, network: Network) -> Any:
        self.calls.append(("validators", network, None))
        if self.validator_error is not None:
            raise self.validator_error
        return self.validator_payload

    async def close(self) -> None:
        pass


class GatedFetcher(FakeFetcher):
    """Block fetches wait until `gate` is set."""

    def __init__(self, height: int = 1000) -> None:
        super().__init__(height)
        self.gate = asyncio.Event()
        self.block_requested = asyncio.Event()

    async def fetch_block(self, network: Network, height: int) -> dict[str, Any]:
        self.block_requested.set()
        await self.gate.wait()
        return await super().fetch_block(network, height)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def config():
    """Default configuration."""
    return StreamConfig()


@pytest.fixture
def clock():
    """Deterministic clock starting at t=1,000,000ms."""
    return MockClock(initial_ms=1_000_000)


@pytest.fixture
def fetcher():
    """In-memory fetcher at height 1000."""
    return FakeFetcher(height=1000)
