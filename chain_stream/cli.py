"""
Chain Stream - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line entry point for watching a network's block stream.

- Loads configuration from .env, environment and optional YAML
- Prints one JSON line per snapshot update
- One-shot modes for a single poll cycle or a gas estimate

============================================================
USAGE
============================================================
python -m chain_stream.cli --network mainnet
python -m chain_stream.cli --network testnet --duration 60 --poll-ms 500
python -m chain_stream.cli --once
python -m chain_stream.cli --gas

============================================================
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import StreamConfig, set_config
from .engine import PollingEngine
from .exceptions import ChainStreamError
from .fetchers import AptosFetcher
from .models import Network, StreamStats, StreamStatus


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="chain-stream",
        description="Live block, TPS and consensus feed from a node REST API",
    )

    parser.add_argument(
        "--network", "-n",
        type=str,
        choices=[n.value for n in Network],
        default=None,
        help="Network to watch (default: CHAIN_STREAM_NETWORK or mainnet)",
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        metavar="PATH",
        help="YAML config file (overrides environment)",
    )
    parser.add_argument(
        "--poll-ms",
        type=float,
        default=None,
        help="Base poll interval in milliseconds",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Stop after this many seconds (default: run until interrupted)",
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle, print the snapshot and exit",
    )
    mode_group.add_argument(
        "--gas",
        action="store_true",
        help="Print the current gas estimate and exit",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    return parser


def load_config(args: argparse.Namespace) -> StreamConfig:
    """Build configuration from environment, YAML file and CLI flags."""
    config = StreamConfig.from_yaml(Path(args.config)) if args.config else StreamConfig.from_env()

    overrides = {}
    if args.network:
        overrides["network"] = Network.parse(args.network)
    if args.poll_ms is not None:
        overrides["poll_interval_ms"] = args.poll_ms
    if overrides:
        config = dataclasses.replace(config, **overrides)

    set_config(config)
    return config


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s | %(levelname)-5s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def print_update(stats: StreamStats, status: StreamStatus) -> None:
    """Print one compact JSON line for a snapshot."""
    consensus = stats.consensus
    line = {
        "network": stats.network,
        "block_height": stats.block_height,
        "tps": stats.tps,
        "avg_block_time_ms": stats.avg_block_time_ms,
        "blocks": len(stats.recent_blocks),
        "epoch": consensus.epoch if consensus else None,
        "round": consensus.round if consensus else None,
        "proposer": consensus.current_proposer if consensus else None,
        "vote_participation": consensus.vote_participation_percent if consensus else None,
        "connected": status.connected,
        "error": status.error,
    }
    print(json.dumps(line), flush=True)


# ============================================================
# COMMANDS
# ============================================================

async def run_gas(config: StreamConfig) -> int:
    async with AptosFetcher(config) as fetcher:
        try:
            estimate = await fetcher.fetch_gas_estimate(config.network)
        except ChainStreamError as e:
            logger.error(f"Gas estimate failed: {e}")
            return 1
    print(json.dumps(estimate.to_dict()))
    return 0


async def run_once(config: StreamConfig) -> int:
    async with PollingEngine(config=config) as engine:
        await engine.poll_once()
        print(json.dumps({
            "stats": engine.stats.to_dict(),
            "status": engine.status.to_dict(),
        }, indent=2))
        return 0 if engine.status.connected else 1


async def run_stream(config: StreamConfig, duration: Optional[float]) -> int:
    async with PollingEngine(config=config) as engine:
        engine.on_update(print_update)
        await engine.start()
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    config = load_config(args)

    try:
        if args.gas:
            return asyncio.run(run_gas(config))
        if args.once:
            return asyncio.run(run_once(config))
        return asyncio.run(run_stream(config, args.duration))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
