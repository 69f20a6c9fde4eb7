"""
Chain Stream Package - Live block and validator feed for dashboards.

Keeps a deduplicated, height-ordered window of recent blocks and the active
validator set, pulled from a rate-limited node REST API.

Features:
- Adaptive poll interval with exponential backoff
- Rate-limit cooldown driven by Retry-After
- Advisory staleness watchdog
- Generation-based cancellation on network switch
- Read-only snapshots pushed to observers

Quick Start:
    from chain_stream import Network, PollingEngine

    async def watch():
        async with PollingEngine(network=Network.MAINNET) as engine:
            engine.on_update(
                lambda stats, status: print(stats.block_height, stats.tps, status.error)
            )
            await engine.start()
            await asyncio.sleep(30)

Snapshot fields:
- block_height: newest height in the ledger
- tps: transactions per second over the last 20 blocks
- avg_block_time_ms: mean block time over the last 20 blocks
- recent_blocks: newest 30 BlockRecords
- consensus: epoch/round/proposer/vote participation (None until known)
"""

from chain_stream.bitvec import decode_vote_bitvec
from chain_stream.clock import ClockProtocol, MockClock, SystemClock
from chain_stream.config import NetworkEndpoints, StreamConfig, get_config, set_config
from chain_stream.engine import PollingEngine
from chain_stream.exceptions import (
    ChainStreamError,
    ConfigurationError,
    DecodeError,
    FetchError,
    RateLimitError,
)
from chain_stream.extractor import build_block_record, compute_gas_stats, extract_block_metadata
from chain_stream.fetchers import AptosFetcher
from chain_stream.ledger import BlockLedger
from chain_stream.models import (
    BlockMetadata,
    BlockRecord,
    ConsensusSnapshot,
    GasEstimate,
    GasPriceStats,
    LedgerInfo,
    Network,
    PollPhase,
    PollState,
    StreamStats,
    StreamStatus,
    ValidatorInfo,
    VoteDecodeResult,
    VoteRecord,
)
from chain_stream.validators import ValidatorCache, parse_validator_set


__version__ = "1.0.0"

__all__ = [
    # Engine
    "PollingEngine",
    "BlockLedger",
    "ValidatorCache",
    "AptosFetcher",

    # Decoding
    "decode_vote_bitvec",
    "extract_block_metadata",
    "build_block_record",
    "compute_gas_stats",
    "parse_validator_set",

    # Models
    "Network",
    "PollPhase",
    "PollState",
    "LedgerInfo",
    "GasEstimate",
    "GasPriceStats",
    "BlockMetadata",
    "BlockRecord",
    "ValidatorInfo",
    "VoteRecord",
    "VoteDecodeResult",
    "ConsensusSnapshot",
    "StreamStats",
    "StreamStatus",

    # Config
    "StreamConfig",
    "NetworkEndpoints",
    "get_config",
    "set_config",

    # Clock
    "ClockProtocol",
    "SystemClock",
    "MockClock",

    # Exceptions
    "ChainStreamError",
    "FetchError",
    "RateLimitError",
    "DecodeError",
    "ConfigurationError",
]
