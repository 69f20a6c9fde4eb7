"""
Vote Bitvector Decoder Tests.

============================================================
PURPOSE
============================================================
Bit ordering (LSB first within each byte), participation rounding and the
optimistic "assume voted" fallbacks.

============================================================
"""

from chain_stream.bitvec import decode_vote_bitvec, participation_percent
from chain_stream.models import ValidatorInfo


def make_validators(count):
    return [
        ValidatorInfo(address=f"0x{i:02x}", voting_power=10 + i)
        for i in range(count)
    ]


def encode(indices, count):
    """Hand-built bitvector: bit i in byte i // 8, LSB first."""
    data = bytearray((count + 7) // 8)
    for i in indices:
        data[i // 8] |= 1 << (i % 8)
    return "0x" + data.hex()


class TestDecodeKnownSubset:
    """Tests decoding hand-crafted bitvectors."""

    def test_known_subset(self):
        """Test voted=True exactly for the indices in the subset."""
        validators = make_validators(20)
        voters = {0, 3, 8, 9, 15, 19}

        result = decode_vote_bitvec("0x098308", validators)

        assert [v.index for v in result.votes if v.voted] == sorted(voters)
        assert result.participation_percent == 30
        assert len(result.votes) == 20

    def test_encoder_matches_layout(self):
        assert encode({0, 3, 8, 9, 15, 19}, 20) == "0x098308"

    def test_lsb_first_within_byte(self):
        """Test 0x01 sets index 0 and 0x80 sets index 7."""
        validators = make_validators(8)

        low = decode_vote_bitvec("0x01", validators)
        high = decode_vote_bitvec("0x80", validators)

        assert [v.voted for v in low.votes] == [True] + [False] * 7
        assert [v.voted for v in high.votes] == [False] * 7 + [True]

    def test_without_prefix(self):
        validators = make_validators(8)

        result = decode_vote_bitvec("0f", validators)

        assert sum(v.voted for v in result.votes) == 4
        assert result.participation_percent == 50

    def test_votes_carry_validator_identity(self):
        validators = make_validators(3)

        result = decode_vote_bitvec("0x05", validators)

        assert result.votes[1].address == "0x01"
        assert result.votes[1].voting_power == 11
        assert result.votes[1].voted is False
        assert result.votes[2].voted is True

    def test_no_voters(self):
        validators = make_validators(16)

        result = decode_vote_bitvec("0x0000", validators)

        assert result.participation_percent == 0
        assert not any(v.voted for v in result.votes)

    def test_rounds_half_up(self):
        """Test 1 of 8 (12.5%) rounds to 13."""
        result = decode_vote_bitvec("0x01", make_validators(8))

        assert result.participation_percent == 13


class TestDecodeFallbacks:
    """Tests the optimistic fallbacks."""

    def test_empty_string_all_voted(self):
        result = decode_vote_bitvec("", make_validators(5))

        assert result.participation_percent == 100
        assert len(result.votes) == 5
        assert all(v.voted for v in result.votes)

    def test_non_string_all_voted(self):
        result = decode_vote_bitvec(12345, make_validators(5))

        assert result.participation_percent == 100
        assert all(v.voted for v in result.votes)

    def test_none_all_voted(self):
        result = decode_vote_bitvec(None, make_validators(5))

        assert result.participation_percent == 100
        assert all(v.voted for v in result.votes)

    def test_empty_validator_list_uses_default_count(self):
        result = decode_vote_bitvec("0x00", [])

        assert result.participation_percent == 100
        assert len(result.votes) == 138
        assert all(v.voted for v in result.votes)
        assert result.votes[0].address is None

    def test_unknown_validator_list_uses_default_count(self):
        result = decode_vote_bitvec("0x00", None)

        assert len(result.votes) == 138
        assert result.participation_percent == 100

    def test_truncated_bitvector_counts_missing_as_voted(self):
        """Test validators past the end of the hex string count as voted."""
        result = decode_vote_bitvec("0x00", make_validators(12))

        assert [v.voted for v in result.votes] == [False] * 8 + [True] * 4
        assert result.participation_percent == 33

    def test_malformed_hex_all_voted(self):
        result = decode_vote_bitvec("0xzz", make_validators(6))

        assert result.participation_percent == 100
        assert len(result.votes) == 6
        assert all(v.voted for v in result.votes)


class TestParticipationPercent:
    """Tests for participation_percent."""

    def test_values(self):
        assert participation_percent(6, 20) == 30
        assert participation_percent(1, 3) == 33
        assert participation_percent(2, 3) == 67
        assert participation_percent(1, 200) == 1
        assert participation_percent(0, 10) == 0
