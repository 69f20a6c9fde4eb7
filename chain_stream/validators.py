"""
Validator Cache - Throttled refresh of the active validator set.

Refreshes run at most once per throttle window and never during a
rate-limit cooldown. A failed refresh keeps the previous set: validator
staleness never affects the stream's connection status.
"""

import logging
from typing import Any, Optional

from chain_stream.exceptions import ChainStreamError, RateLimitError
from chain_stream.fetchers import AptosFetcher
from chain_stream.models import Network, PollState, ValidatorInfo


logger = logging.getLogger(__name__)


def parse_validator_set(payload: Any) -> Optional[list[ValidatorInfo]]:
    """
    Parse the `0x1::stake::ValidatorSet` resource.

    Returns None when the payload has no active_validators list.
    """
    if not isinstance(payload, dict):
        return None
    active = (payload.get("data") or {}).get("active_validators")
    if not isinstance(active, list):
        return None

    validators: list[ValidatorInfo] = []
    for entry in active:
        if not isinstance(entry, dict) or not entry.get("addr"):
            continue
        config = entry.get("config") or {}
        try:
            voting_power = int(entry.get("voting_power") or 0)
        except (TypeError, ValueError):
            voting_power = 0
        try:
            index = int(config["validator_index"]) if "validator_index" in config else None
        except (TypeError, ValueError):
            index = None

        validators.append(ValidatorInfo(
            address=entry["addr"],
            voting_power=max(0, voting_power),
            is_active=True,
            validator_index=index,
        ))

    return validators


class ValidatorCache:
    """
    Holds the active validator set, in bitvector index order.

    The list is wholesale-replaced on refresh. The only in-place mutation is
    `last_proposed_block_height`, patched by the block ledger.
    """

    def __init__(
        self,
        fetcher: AptosFetcher,
        refresh_interval_ms: float = 60_000,
    ) -> None:
        self._fetcher = fetcher
        self._refresh_interval_ms = refresh_interval_ms
        self._validators: list[ValidatorInfo] = []
        self._by_address: dict[str, ValidatorInfo] = {}
        self._last_refresh_ms: Optional[float] = None

    @property
    def validators(self) -> list[ValidatorInfo]:
        return self._validators

    @property
    def last_refresh_ms(self) -> Optional[float]:
        return self._last_refresh_ms

    def __len__(self) -> int:
        return len(self._validators)

    def find(self, address: str) -> Optional[ValidatorInfo]:
        """Look up a validator by account address."""
        return self._by_address.get(address)

    def replace(self, validators: list[ValidatorInfo], now_ms: float) -> None:
        """Swap in a new validator set."""
        self._validators = list(validators)
        self._by_address = {v.address: v for v in self._validators}
        self._last_refresh_ms = now_ms

    def clear(self) -> None:
        """Forget the validator set and the throttle timestamp."""
        self._validators = []
        self._by_address = {}
        self._last_refresh_ms = None

    def should_refresh(self, now_ms: float, rate_limited_until_ms: float = 0) -> bool:
        """True when the throttle window elapsed and no cooldown is active."""
        if now_ms < rate_limited_until_ms:
            return False
        if self._last_refresh_ms is None:
            return True
        return now_ms - self._last_refresh_ms >= self._refresh_interval_ms

    async def refresh(
        self,
        network: Network,
        state: PollState,
        now_ms: float,
        generation: int,
    ) -> bool:
        """
        Refresh the validator set if due.

        Returns True when the set was replaced. Never raises for fetch
        failures; a rate limit is recorded on `state` as a cooldown.
        """
        if not self.should_refresh(now_ms, state.rate_limited_until_ms):
            return False

        try:
            payload = await self._fetcher.fetch_validator_set(network)
        except RateLimitError as e:
            if state.generation == generation:
                state.rate_limited_until_ms = now_ms + e.retry_after_seconds * 1000
            logger.warning(f"[{network.value}] Validator set rate limited ({e.retry_after_seconds}s)")
            return False
        except ChainStreamError as e:
            logger.debug(f"[{network.value}] Validator set refresh failed: {e}")
            return False

        if state.generation != generation:
            return False

        validators = parse_validator_set(payload)
        if validators is None:
            logger.debug(f"[{network.value}] Validator set response without active_validators")
            return False

        self.replace(validators, now_ms)
        logger.info(f"[{network.value}] Validator set refreshed: {len(validators)} active")
        return True
