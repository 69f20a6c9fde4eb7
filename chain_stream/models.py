"""
Chain Stream Data Models - Blocks, validators and the read-only snapshots
handed to presentation.

Snapshots (StreamStats, ConsensusSnapshot, StreamStatus) are frozen and
hold copies. Observers never receive a live handle to ledger state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Network(Enum):
    """Selectable networks."""
    MAINNET = "mainnet"
    TESTNET = "testnet"

    @classmethod
    def parse(cls, value: "str | Network") -> "Network":
        """Parse a network name, unknown names fall back to mainnet."""
        if isinstance(value, Network):
            return value
        return cls.TESTNET if str(value).strip().lower() == "testnet" else cls.MAINNET


class PollPhase(Enum):
    """Polling engine state machine phases."""
    IDLE = "idle"
    POLLING = "polling"
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    ERRORED = "errored"


# ─────────────────────────────────────────────────────────────
# API payloads
# ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LedgerInfo:
    """Current ledger head as reported by the node API."""
    chain_id: int
    epoch: int
    block_height: int
    ledger_version: int
    ledger_timestamp_us: int

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "LedgerInfo":
        """Build from the raw `GET /` payload (numbers arrive as strings)."""
        return cls(
            chain_id=int(data.get("chain_id", 0)),
            epoch=int(data.get("epoch", 0)),
            block_height=int(data["block_height"]),
            ledger_version=int(data.get("ledger_version", 0)),
            ledger_timestamp_us=int(data.get("ledger_timestamp", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "epoch": self.epoch,
            "block_height": self.block_height,
            "ledger_version": self.ledger_version,
            "ledger_timestamp_us": self.ledger_timestamp_us,
        }


@dataclass(frozen=True)
class GasEstimate:
    """Gas unit price estimates (deprioritized / regular / prioritized)."""
    low: Optional[int]
    medium: Optional[int]
    high: Optional[int]

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GasEstimate":
        def _opt(key: str) -> Optional[int]:
            value = data.get(key)
            return int(value) if value is not None else None

        return cls(
            low=_opt("deprioritized_gas_estimate"),
            medium=_opt("gas_estimate"),
            high=_opt("prioritized_gas_estimate"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"low": self.low, "medium": self.medium, "high": self.high}


# ─────────────────────────────────────────────────────────────
# Blocks
# ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GasPriceStats:
    """Gas unit price statistics over a block's user transactions."""
    min: int
    max: int
    median: int
    count: int

    def to_dict(self) -> dict[str, int]:
        return {
            "min": self.min,
            "max": self.max,
            "median": self.median,
            "count": self.count,
        }


@dataclass(frozen=True)
class BlockMetadata:
    """
    Fields extracted from a block's transaction list.

    proposer/round/epoch stay None when the block carries no metadata
    transaction. None means unknown, not zero.
    """
    proposer: Optional[str] = None
    round: Optional[int] = None
    epoch: Optional[int] = None
    votes_bitvec_hex: Optional[str] = None
    failed_proposer_indices: tuple[int, ...] = ()
    gas_stats: Optional[GasPriceStats] = None
    gas_used: int = 0


@dataclass(frozen=True)
class BlockRecord:
    """One observed block. `height` is the ledger key."""
    height: int
    tx_count: int
    timestamp_ms: float
    block_time_ms: float
    gas_used: int = 0
    proposer: Optional[str] = None
    round: Optional[int] = None
    epoch: Optional[int] = None
    votes_bitvec_hex: Optional[str] = None
    failed_proposer_indices: tuple[int, ...] = ()
    gas_stats: Optional[GasPriceStats] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "height": self.height,
            "tx_count": self.tx_count,
            "timestamp_ms": self.timestamp_ms,
            "block_time_ms": self.block_time_ms,
            "gas_used": self.gas_used,
            "proposer": self.proposer,
            "round": self.round,
            "epoch": self.epoch,
            "votes_bitvec_hex": self.votes_bitvec_hex,
            "failed_proposer_indices": list(self.failed_proposer_indices),
            "gas_stats": self.gas_stats.to_dict() if self.gas_stats else None,
        }


# ─────────────────────────────────────────────────────────────
# Validators & consensus
# ─────────────────────────────────────────────────────────────


@dataclass
class ValidatorInfo:
    """One validator from the active validator set."""
    address: str
    voting_power: int = 0
    is_active: bool = True
    validator_index: Optional[int] = None
    last_proposed_block_height: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "voting_power": self.voting_power,
            "is_active": self.is_active,
            "validator_index": self.validator_index,
            "last_proposed_block_height": self.last_proposed_block_height,
        }


@dataclass(frozen=True)
class VoteRecord:
    """A validator's participation in the latest block's quorum certificate."""
    index: int
    voted: bool
    address: Optional[str] = None
    voting_power: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "voted": self.voted,
            "address": self.address,
            "voting_power": self.voting_power,
        }


@dataclass(frozen=True)
class VoteDecodeResult:
    """Output of the vote bitvector decoder."""
    participation_percent: int
    votes: list[VoteRecord]


@dataclass(frozen=True)
class ConsensusSnapshot:
    """Consensus view derived from the latest block and the validator set."""
    epoch: int
    round: Optional[int]
    total_validators: int
    active_validators: int
    total_voting_power: int
    current_proposer: str
    validators: tuple[ValidatorInfo, ...]
    recent_proposers: tuple[str, ...]
    vote_participation_percent: int
    validator_votes: tuple[VoteRecord, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "round": self.round,
            "total_validators": self.total_validators,
            "active_validators": self.active_validators,
            "total_voting_power": self.total_voting_power,
            "current_proposer": self.current_proposer,
            "validators": [v.to_dict() for v in self.validators],
            "recent_proposers": list(self.recent_proposers),
            "vote_participation_percent": self.vote_participation_percent,
            "validator_votes": [v.to_dict() for v in self.validator_votes],
        }


# ─────────────────────────────────────────────────────────────
# Outbound snapshots
# ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StreamStats:
    """Snapshot consumed by presentation."""
    block_height: int = 0
    tps: int = 0
    avg_block_time_ms: int = 94
    recent_blocks: tuple[BlockRecord, ...] = ()
    consensus: Optional[ConsensusSnapshot] = None
    network: str = Network.MAINNET.value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "network": self.network,
            "block_height": self.block_height,
            "tps": self.tps,
            "avg_block_time_ms": self.avg_block_time_ms,
            "recent_blocks": [b.to_dict() for b in self.recent_blocks],
            "consensus": self.consensus.to_dict() if self.consensus else None,
        }


@dataclass(frozen=True)
class StreamStatus:
    """Connection indicator and short human-readable message."""
    connected: bool = False
    error: Optional[str] = None
    phase: PollPhase = PollPhase.IDLE
    rate_limited_until_ms: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "error": self.error,
            "phase": self.phase.value,
            "rate_limited_until_ms": self.rate_limited_until_ms,
        }


# ─────────────────────────────────────────────────────────────
# Engine state
# ─────────────────────────────────────────────────────────────


@dataclass
class PollState:
    """
    Mutable timing state of the polling engine.

    Lives for one network selection. `generation` survives resets and is
    only ever incremented.
    """
    base_interval_ms: float
    generation: int = 0
    rate_limited_until_ms: float = 0
    consecutive_error_count: int = 0
    last_success_ms: float = 0
    last_seen_height: int = 0
    is_polling: bool = False
    phase: PollPhase = PollPhase.IDLE

    def reset(self, base_interval_ms: float, now_ms: float) -> None:
        """Restore defaults for a fresh network selection."""
        self.base_interval_ms = base_interval_ms
        self.rate_limited_until_ms = 0
        self.consecutive_error_count = 0
        self.last_success_ms = now_ms
        self.last_seen_height = 0
        self.is_polling = False
        self.phase = PollPhase.IDLE

    def is_rate_limited(self, now_ms: float) -> bool:
        """True while inside a rate-limit cooldown."""
        return now_ms < self.rate_limited_until_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "base_interval_ms": self.base_interval_ms,
            "rate_limited_until_ms": self.rate_limited_until_ms,
            "consecutive_error_count": self.consecutive_error_count,
            "last_success_ms": self.last_success_ms,
            "last_seen_height": self.last_seen_height,
            "is_polling": self.is_polling,
            "phase": self.phase.value,
        }
