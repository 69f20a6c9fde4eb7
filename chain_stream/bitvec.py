"""
Vote Bitvector Decoder.

Turns the hex-encoded `previous_block_votes_bitvec` of a block metadata
transaction into per-validator participation.

Bit i lives in byte i // 8 at bit position i % 8, least significant bit
first. Missing or unreadable data counts as "voted": the participation
display prefers an optimistic 100% over an empty chart.
"""

import logging
from typing import Any, Optional, Sequence

from chain_stream.models import ValidatorInfo, VoteDecodeResult, VoteRecord


logger = logging.getLogger(__name__)


DEFAULT_VALIDATOR_COUNT = 138


def _vote(index: int, voted: bool, validators: Sequence[ValidatorInfo]) -> VoteRecord:
    validator = validators[index] if index < len(validators) else None
    return VoteRecord(
        index=index,
        voted=voted,
        address=validator.address if validator else None,
        voting_power=validator.voting_power if validator else None,
    )


def _all_voted(total: int, validators: Sequence[ValidatorInfo]) -> VoteDecodeResult:
    return VoteDecodeResult(
        participation_percent=100,
        votes=[_vote(i, True, validators) for i in range(total)],
    )


def participation_percent(voted: int, total: int) -> int:
    """voted / total as a percentage, rounded half up."""
    if total <= 0:
        return 100
    return (voted * 200 + total) // (2 * total)


def decode_vote_bitvec(
    bitvec: Any,
    validators: Optional[Sequence[ValidatorInfo]],
    default_count: int = DEFAULT_VALIDATOR_COUNT,
) -> VoteDecodeResult:
    """
    Decode a vote bitvector against the validator set (index = bit position).

    Never raises. Empty or non-string input, an unknown validator set, or a
    malformed hex string all yield 100% participation with every vote set.
    """
    validators = list(validators or [])
    total = len(validators) or default_count

    if not bitvec or not isinstance(bitvec, str) or not validators:
        return _all_voted(total, validators)

    try:
        hex_str = bitvec[2:] if bitvec.startswith("0x") else bitvec
        votes: list[VoteRecord] = []
        voted_count = 0

        for i in range(total):
            byte_start = (i // 8) * 2
            if byte_start + 2 > len(hex_str):
                # Truncated bitvector
                voted = True
            else:
                byte_val = int(hex_str[byte_start:byte_start + 2], 16)
                voted = (byte_val >> (i % 8)) & 1 == 1

            if voted:
                voted_count += 1
            votes.append(_vote(i, voted, validators))

        return VoteDecodeResult(
            participation_percent=participation_percent(voted_count, total),
            votes=votes,
        )

    except Exception as e:
        logger.warning(f"Vote bitvec decode failed, assuming full participation: {e}")
        return _all_voted(total, validators)
