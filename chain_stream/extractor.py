"""
Block Metadata Extractor - Raw block payload to typed block fields.

A block's transaction list is scanned once:
- the block metadata transaction names proposer, round, epoch, the
  previous block's vote bitvector and the failed proposers
- user transactions contribute gas unit price samples
- every transaction contributes its gas_used
"""

import logging
from typing import Any, Iterable, Optional

from chain_stream.exceptions import DecodeError
from chain_stream.models import BlockMetadata, BlockRecord, GasPriceStats


logger = logging.getLogger(__name__)


BLOCK_METADATA_TX = "block_metadata_transaction"
USER_TX = "user_transaction"


def _parse_int(value: Any, field_name: str) -> Optional[int]:
    """Parse an API integer (usually a decimal string). None when absent or invalid."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Dropping unparsable {field_name}: {value!r}")
        return None


def _transactions(block: dict[str, Any]) -> list[Any]:
    transactions = block.get("transactions") or []
    if not isinstance(transactions, list):
        raise DecodeError(
            message="Transaction list is not a list",
            field_name="transactions",
            raw_data=transactions,
        )
    return transactions


def compute_gas_stats(prices: Iterable[int]) -> Optional[GasPriceStats]:
    """
    Min / max / median / count of gas unit prices.

    The median is the element at n // 2 of the sorted samples, so an even
    sample count yields the upper-middle value rather than an average.
    """
    ordered = sorted(prices)
    if not ordered:
        return None
    return GasPriceStats(
        min=ordered[0],
        max=ordered[-1],
        median=ordered[len(ordered) // 2],
        count=len(ordered),
    )


def extract_block_metadata(block: dict[str, Any]) -> BlockMetadata:
    """
    Extract consensus metadata and gas statistics from a block payload.

    Raises:
        DecodeError: If the transaction list is not a list
    """
    transactions = _transactions(block)

    metadata_tx: Optional[dict[str, Any]] = None
    gas_prices: list[int] = []
    gas_used = 0

    for tx in transactions:
        if not isinstance(tx, dict):
            continue
        tx_type = tx.get("type")

        if tx_type == BLOCK_METADATA_TX and metadata_tx is None:
            metadata_tx = tx
        elif tx_type == USER_TX:
            price = _parse_int(tx.get("gas_unit_price"), "gas_unit_price")
            if price is not None:
                gas_prices.append(price)

        gas_used += _parse_int(tx.get("gas_used"), "gas_used") or 0

    if metadata_tx is None:
        return BlockMetadata(gas_stats=compute_gas_stats(gas_prices), gas_used=gas_used)

    raw_failed = metadata_tx.get("failed_proposer_indices") or []
    if not isinstance(raw_failed, list):
        logger.warning(f"Dropping unparsable failed_proposer_indices: {raw_failed!r}")
        raw_failed = []

    failed = tuple(
        index
        for index in (_parse_int(i, "failed_proposer_indices") for i in raw_failed)
        if index is not None
    )

    return BlockMetadata(
        proposer=metadata_tx.get("proposer"),
        round=_parse_int(metadata_tx.get("round"), "round"),
        epoch=_parse_int(metadata_tx.get("epoch"), "epoch"),
        votes_bitvec_hex=metadata_tx.get("previous_block_votes_bitvec"),
        failed_proposer_indices=failed,
        gas_stats=compute_gas_stats(gas_prices),
        gas_used=gas_used,
    )


def block_timestamp_ms(block: dict[str, Any]) -> float:
    """
    Block timestamp in milliseconds (the API reports microseconds).

    Raises:
        DecodeError: If the payload has no usable block_timestamp
    """
    raw = block.get("block_timestamp")
    try:
        return int(raw) / 1000
    except (TypeError, ValueError, OverflowError) as e:
        raise DecodeError(
            message="Missing or invalid block_timestamp",
            field_name="block_timestamp",
            raw_data=raw,
            original_error=e,
        )


def build_block_record(
    block: dict[str, Any],
    height: int,
    block_time_ms: float,
) -> BlockRecord:
    """
    Combine a raw block payload with its derived block time.

    Raises:
        DecodeError: If the payload cannot be turned into a record
    """
    try:
        metadata = extract_block_metadata(block)
    except (AttributeError, TypeError, ValueError, OverflowError) as e:
        raise DecodeError(
            message=f"Malformed block {height}: {e}",
            raw_data=block,
            original_error=e,
        )

    return BlockRecord(
        height=height,
        tx_count=len(_transactions(block)),
        timestamp_ms=block_timestamp_ms(block),
        block_time_ms=block_time_ms,
        gas_used=metadata.gas_used,
        proposer=metadata.proposer,
        round=metadata.round,
        epoch=metadata.epoch,
        votes_bitvec_hex=metadata.votes_bitvec_hex,
        failed_proposer_indices=metadata.failed_proposer_indices,
        gas_stats=metadata.gas_stats,
    )
