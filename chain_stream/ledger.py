"""
Block Ledger - Deduplicated, height-ordered, bounded window of recent blocks.

Invariants:
- heights are unique
- records are kept in strictly descending height order
- size never exceeds capacity, the lowest heights are evicted first
"""

import dataclasses
import logging
import math
from typing import Iterator, Mapping, Optional

from chain_stream.bitvec import decode_vote_bitvec
from chain_stream.config import StreamConfig
from chain_stream.models import BlockRecord, ConsensusSnapshot, StreamStats
from chain_stream.validators import ValidatorCache


logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 going up."""
    return int(math.floor(value + 0.5))


class BlockLedger:
    """
    In-memory block window plus the derived statistics.

    Owned by the polling engine. Presentation only ever sees the frozen
    StreamStats returned by compute_snapshot().
    """

    def __init__(
        self,
        validators: ValidatorCache,
        config: Optional[StreamConfig] = None,
    ) -> None:
        self._config = config or StreamConfig()
        self._validators = validators
        self._blocks: list[BlockRecord] = []
        self._heights: set[int] = set()
        self._recent_proposers: list[str] = []

    # ─────────────────────────────────────────────────────────────
    # Container protocol
    # ─────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[BlockRecord]:
        return iter(list(self._blocks))

    def __contains__(self, height: object) -> bool:
        return height in self._heights

    @property
    def capacity(self) -> int:
        return self._config.ledger_capacity

    @property
    def latest(self) -> Optional[BlockRecord]:
        return self._blocks[0] if self._blocks else None

    @property
    def recent_proposers(self) -> list[str]:
        return list(self._recent_proposers)

    def heights(self) -> list[int]:
        return [b.height for b in self._blocks]

    def get(self, height: int) -> Optional[BlockRecord]:
        if height not in self._heights:
            return None
        return next(b for b in self._blocks if b.height == height)

    # ─────────────────────────────────────────────────────────────
    # Mutation
    # ─────────────────────────────────────────────────────────────

    def add_block(self, record: BlockRecord) -> bool:
        """
        Insert a block once.

        Returns False (and changes nothing) if the height is already present.
        """
        if record.height in self._heights:
            return False

        blocks = sorted([record, *self._blocks], key=lambda b: b.height, reverse=True)
        evicted = blocks[self.capacity:]
        self._blocks = blocks[:self.capacity]
        self._heights = {b.height for b in self._blocks}

        if evicted:
            logger.debug(f"Evicted {len(evicted)} block(s), lowest kept {self._blocks[-1].height}")

        if record.proposer:
            self._recent_proposers = [
                record.proposer,
                *(p for p in self._recent_proposers if p != record.proposer),
            ][:self._config.recent_proposers_capacity]

            validator = self._validators.find(record.proposer)
            if validator is not None:
                validator.last_proposed_block_height = record.height

        return True

    def clear(self) -> None:
        """Drop every block and the proposer history."""
        self._blocks = []
        self._heights = set()
        self._recent_proposers = []

    def block_time_for(
        self,
        height: int,
        timestamp_ms: float,
        batch: Optional[Mapping[int, float]] = None,
    ) -> float:
        """
        Milliseconds since the block at height - 1.

        The previous block is looked up in the current fetch batch
        (height -> timestamp_ms) first, then in the ledger. Without it the
        nominal block time is used. Never below 1.
        """
        prev_ts: Optional[float] = None
        if batch and (height - 1) in batch:
            prev_ts = batch[height - 1]
        else:
            prev = self.get(height - 1)
            if prev is not None:
                prev_ts = prev.timestamp_ms

        if prev_ts is None:
            return self._config.default_block_time_ms
        return max(1, timestamp_ms - prev_ts)

    # ─────────────────────────────────────────────────────────────
    # Derived statistics
    # ─────────────────────────────────────────────────────────────

    def tps(self) -> int:
        """Transactions per second over the statistics window."""
        window = self._blocks[:self._config.stats_window]
        if len(window) < 2:
            return 0
        span_ms = window[0].timestamp_ms - window[-1].timestamp_ms
        if span_ms <= 0:
            return 0
        total_tx = sum(b.tx_count for b in window)
        return round_half_up(total_tx / span_ms * 1000)

    def avg_block_time_ms(self) -> int:
        """Mean block time over the statistics window."""
        window = self._blocks[:self._config.stats_window]
        if not window:
            return round_half_up(self._config.default_block_time_ms)
        return round_half_up(sum(b.block_time_ms for b in window) / len(window))

    def consensus_snapshot(self) -> Optional[ConsensusSnapshot]:
        """Consensus view for the latest block, None while its epoch is unknown."""
        latest = self.latest
        if latest is None or latest.epoch is None:
            return None

        validators = self._validators.validators
        decoded = decode_vote_bitvec(
            latest.votes_bitvec_hex or "",
            validators,
            self._config.default_validator_count,
        )

        return ConsensusSnapshot(
            epoch=latest.epoch,
            round=latest.round,
            total_validators=len(validators) or self._config.default_validator_count,
            active_validators=sum(1 for v in validators if v.is_active),
            total_voting_power=sum(v.voting_power for v in validators),
            current_proposer=latest.proposer or "",
            validators=tuple(dataclasses.replace(v) for v in validators),
            recent_proposers=tuple(self._recent_proposers[:self._config.snapshot_proposers_limit]),
            vote_participation_percent=decoded.participation_percent,
            validator_votes=tuple(decoded.votes),
        )

    def compute_snapshot(self, network: str = "mainnet") -> StreamStats:
        """Read-only snapshot of the ledger and validator state."""
        return StreamStats(
            block_height=self._blocks[0].height if self._blocks else 0,
            tps=self.tps(),
            avg_block_time_ms=self.avg_block_time_ms(),
            recent_blocks=tuple(self._blocks[:self._config.recent_blocks_limit]),
            consensus=self.consensus_snapshot(),
            network=network,
        )
