"""
Polling Engine - Block stream state machine.

============================================================
STATE MACHINE
============================================================

    IDLE ──(timer, not in cooldown, generation live)──► POLLING
                                                          │
              ┌───────────────┬───────────────────────────┤
              ▼               ▼                           ▼
           SUCCESS      RATE_LIMITED                   ERRORED
              │               │                           │
              └───────────────┴──────► IDLE (rescheduled) ◄┘

- SUCCESS resets backoff and error count, marks connected
- RATE_LIMITED starts a cooldown, disconnects only if data is stale
- ERRORED backs off exponentially, disconnects after N in a row

============================================================
CANCELLATION
============================================================
Every poll loop captures the generation it was started under. Changing
the network bumps the generation: old loops exit on their next check and
results of in-flight requests from an old generation are discarded
before they touch the ledger.

============================================================
"""

import asyncio
import dataclasses
import logging
import math
from typing import Any, Callable, Optional

from chain_stream.clock import ClockProtocol, SystemClock
from chain_stream.config import StreamConfig, get_config
from chain_stream.exceptions import DecodeError, RateLimitError
from chain_stream.extractor import block_timestamp_ms, build_block_record
from chain_stream.fetchers import AptosFetcher
from chain_stream.ledger import BlockLedger, round_half_up
from chain_stream.models import (
    Network,
    PollPhase,
    PollState,
    StreamStats,
    StreamStatus,
)
from chain_stream.validators import ValidatorCache


logger = logging.getLogger(__name__)


UpdateCallback = Callable[[StreamStats, StreamStatus], None]

CONNECTION_ISSUES_MESSAGE = "Connection issues. Retrying..."
STALE_MESSAGE = "Data may be stale. Reconnecting..."


class PollingEngine:
    """
    Pulls the ledger head, back-fills missing blocks and publishes snapshots.

    Usage:
        engine = PollingEngine(network=Network.MAINNET)
        engine.on_update(lambda stats, status: print(stats.block_height))

        await engine.start()
        ...
        engine.set_network(Network.TESTNET)   # full reset, old loop self-terminates
        ...
        await engine.stop()
        await engine.close()

    All mutable state (ledger, validator cache, timing counters) is owned
    here and only touched from the event loop.
    """

    def __init__(
        self,
        fetcher: Optional[AptosFetcher] = None,
        config: Optional[StreamConfig] = None,
        clock: Optional[ClockProtocol] = None,
        network: Optional[Network] = None,
    ) -> None:
        self._config = config or get_config()
        self._fetcher = fetcher or AptosFetcher(self._config)
        self._owns_fetcher = fetcher is None
        self._clock = clock or SystemClock()
        self._network = Network.parse(network or self._config.network)

        self._validators = ValidatorCache(
            self._fetcher,
            refresh_interval_ms=self._config.validator_refresh_interval_ms,
        )
        self._ledger = BlockLedger(self._validators, self._config)
        self._state = PollState(
            base_interval_ms=self._config.poll_interval_ms,
            last_success_ms=self._clock.now_ms(),
        )

        self._stats = self._empty_stats()
        self._status = StreamStatus()

        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._retired_tasks: set[asyncio.Task] = set()

        self._on_update_callbacks: list[UpdateCallback] = []

    # ─────────────────────────────────────────────────────────────
    # Read accessors
    # ─────────────────────────────────────────────────────────────

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def state(self) -> PollState:
        """Copy of the timing state."""
        return dataclasses.replace(self._state)

    @property
    def generation(self) -> int:
        return self._state.generation

    @property
    def network(self) -> Network:
        return self._network

    @property
    def ledger(self) -> BlockLedger:
        return self._ledger

    @property
    def validators(self) -> ValidatorCache:
        return self._validators

    @property
    def is_running(self) -> bool:
        return self._running

    # ─────────────────────────────────────────────────────────────
    # Observers
    # ─────────────────────────────────────────────────────────────

    def on_update(self, callback: UpdateCallback) -> None:
        """Register callback(stats, status), called on every ledger or status change."""
        self._on_update_callbacks.append(callback)

    def remove_callback(self, callback: UpdateCallback) -> None:
        if callback in self._on_update_callbacks:
            self._on_update_callbacks.remove(callback)

    def _notify(self) -> None:
        for callback in list(self._on_update_callbacks):
            try:
                callback(self._stats, self._status)
            except Exception as e:
                logger.error(f"Update callback failed: {e}")

    def _publish(self) -> None:
        """Recompute the snapshot from the ledger and push it to observers."""
        self._stats = self._ledger.compute_snapshot(self._network.value)
        self._notify()

    def _set_status(self, **changes: Any) -> None:
        status = dataclasses.replace(
            self._status,
            phase=self._state.phase,
            rate_limited_until_ms=self._state.rate_limited_until_ms,
            **changes,
        )
        if status != self._status:
            self._status = status
            self._notify()

    def _empty_stats(self) -> StreamStats:
        return StreamStats(
            avg_block_time_ms=round_half_up(self._config.default_block_time_ms),
            network=self._network.value,
        )

    def _is_live(self, generation: int) -> bool:
        return generation == self._state.generation

    # ─────────────────────────────────────────────────────────────
    # Poll cycle
    # ─────────────────────────────────────────────────────────────

    async def poll_once(self, generation: Optional[int] = None) -> PollPhase:
        """
        Run one poll cycle under `generation` (default: current).

        Skipped when a cycle is already running, the generation is stale or
        a rate-limit cooldown is active. Never raises for fetch or decode
        failures: they become state transitions.

        Returns:
            The engine phase after the cycle
        """
        if generation is None:
            generation = self._state.generation
        if not self._is_live(generation) or self._state.is_polling:
            return self._state.phase

        now = self._clock.now_ms()
        if self._state.is_rate_limited(now):
            wait_s = math.ceil((self._state.rate_limited_until_ms - now) / 1000)
            self._set_status(error=f"Rate limited. Retrying in {wait_s}s...")
            return self._state.phase

        self._state.is_polling = True
        self._state.phase = PollPhase.POLLING

        try:
            await self._run_cycle(generation)
            if self._is_live(generation):
                await self._on_success(generation)

        except RateLimitError as e:
            if self._is_live(generation):
                self._on_rate_limited(e)

        except Exception as e:
            if self._is_live(generation):
                self._on_error(e)

        finally:
            if self._is_live(generation):
                self._state.is_polling = False

        return self._state.phase

    async def _run_cycle(self, generation: int) -> None:
        """Fetch the ledger head and every block not seen yet (bounded)."""
        ledger_info = await self._fetcher.fetch_ledger_info(self._network)
        if not self._is_live(generation):
            return

        current = ledger_info.block_height
        last_seen = self._state.last_seen_height

        if last_seen == 0:
            count = min(self._config.backfill_batch_size, current)
            if count > 0:
                logger.info(f"[{self._network.value}] Back-filling {count} block(s) up to {current}")
        elif current > last_seen:
            count = min(current - last_seen, self._config.max_delta_per_cycle)
            if current - last_seen > count:
                logger.debug(
                    f"[{self._network.value}] {current - last_seen} new blocks, "
                    f"fetching newest {count}"
                )
        else:
            count = 0

        if count > 0:
            heights = [current - i for i in range(count)]
            await self._fetch_and_insert(heights, generation)
            if not self._is_live(generation):
                return

        self._state.last_seen_height = max(last_seen, current)

    async def _fetch_and_insert(self, heights: list[int], generation: int) -> None:
        """
        Fetch a batch of heights concurrently and insert what arrived.

        Individual failures are skipped. A rate limit on any height is
        re-raised after the successful blocks were inserted.
        """
        results = await asyncio.gather(
            *(self._fetcher.fetch_block(self._network, h) for h in heights),
            return_exceptions=True,
        )
        if not self._is_live(generation):
            logger.debug(f"Discarding {len(heights)} block(s) from stale generation {generation}")
            return

        rate_limit: Optional[RateLimitError] = None
        payloads: dict[int, dict[str, Any]] = {}
        timestamps: dict[int, float] = {}

        for height, result in zip(heights, results):
            if isinstance(result, RateLimitError):
                rate_limit = rate_limit or result
            elif isinstance(result, BaseException):
                logger.warning(f"[{self._network.value}] Block {height} unavailable: {result}")
            elif isinstance(result, dict):
                try:
                    timestamps[height] = block_timestamp_ms(result)
                    payloads[height] = result
                except DecodeError as e:
                    logger.warning(f"[{self._network.value}] Skipping block {height}: {e}")
            else:
                logger.warning(
                    f"[{self._network.value}] Skipping block {height}: "
                    f"unexpected payload type {type(result).__name__}"
                )

        for height in heights:
            if height not in payloads:
                continue
            block_time = self._ledger.block_time_for(height, timestamps[height], timestamps)
            try:
                record = build_block_record(payloads[height], height, block_time)
            except DecodeError as e:
                logger.warning(f"[{self._network.value}] Skipping block {height}: {e}")
                continue
            if self._ledger.add_block(record):
                logger.debug(
                    f"[{self._network.value}] Block {height}: {record.tx_count} tx, "
                    f"{record.block_time_ms:.0f}ms"
                )
                self._publish()

        if rate_limit is not None:
            raise rate_limit

    # ─────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────

    async def _on_success(self, generation: int) -> None:
        now = self._clock.now_ms()
        was_connected = self._status.connected

        self._state.consecutive_error_count = 0
        self._state.last_success_ms = now
        self._state.base_interval_ms = self._config.poll_interval_ms
        self._state.phase = PollPhase.SUCCESS
        self._set_status(connected=True, error=None)

        if not was_connected:
            logger.info(f"[{self._network.value}] Connected at height {self._state.last_seen_height}")

        try:
            refreshed = await self._validators.refresh(self._network, self._state, now, generation)
        except Exception as e:
            logger.debug(f"[{self._network.value}] Validator refresh error ignored: {e}")
            refreshed = False

        if not self._is_live(generation):
            return
        # A rate-limited refresh moves the cooldown
        self._set_status()
        if refreshed:
            self._publish()

    def _on_rate_limited(self, error: RateLimitError) -> None:
        now = self._clock.now_ms()
        self._state.rate_limited_until_ms = now + error.retry_after_seconds * 1000
        self._state.base_interval_ms = max(
            self._state.base_interval_ms,
            self._config.rate_limit_floor_ms,
        )
        self._state.phase = PollPhase.RATE_LIMITED

        has_recent_data = (
            len(self._ledger) > 0
            and now - self._state.last_success_ms < self._config.recent_data_window_ms
        )

        logger.warning(
            f"[{self._network.value}] Rate limited for {error.retry_after_seconds}s "
            f"(recent data: {has_recent_data})"
        )

        if has_recent_data:
            self._set_status()
        else:
            self._set_status(
                connected=False,
                error=f"Rate limited. Waiting {error.retry_after_seconds}s...",
            )

    def _on_error(self, error: Exception) -> None:
        self._state.consecutive_error_count += 1
        self._state.phase = PollPhase.ERRORED
        self._state.base_interval_ms = min(
            self._state.base_interval_ms * self._config.backoff_multiplier,
            self._config.max_interval_ms,
        )

        logger.warning(
            f"[{self._network.value}] Poll error "
            f"{self._state.consecutive_error_count}/{self._config.error_threshold}, "
            f"next in {self._state.base_interval_ms:.0f}ms: {error}"
        )

        if self._state.consecutive_error_count >= self._config.error_threshold:
            if self._status.connected:
                logger.error(
                    f"[{self._network.value}] Disconnected after "
                    f"{self._state.consecutive_error_count} consecutive errors"
                )
            self._set_status(connected=False, error=CONNECTION_ISSUES_MESSAGE)
        else:
            self._set_status()

    def check_staleness(self) -> bool:
        """
        Advisory staleness check.

        Sets the stale message when the last success is older than the
        threshold and no cooldown is active. `connected` is left unchanged.
        """
        now = self._clock.now_ms()
        age_ms = now - self._state.last_success_ms
        if age_ms <= self._config.stale_threshold_ms or self._state.is_rate_limited(now):
            return False

        if self._status.error != STALE_MESSAGE:
            logger.warning(f"[{self._network.value}] No successful poll for {age_ms / 1000:.1f}s")
        self._set_status(error=STALE_MESSAGE)
        return True

    # ─────────────────────────────────────────────────────────────
    # Network selection
    # ─────────────────────────────────────────────────────────────

    def set_network(self, network: Network) -> int:
        """
        Switch network: new generation, cleared state, fresh poll loop.

        Returns:
            The new generation
        """
        self._state.generation += 1
        self._network = Network.parse(network)

        self._ledger.clear()
        self._validators.clear()
        self._state.reset(self._config.poll_interval_ms, self._clock.now_ms())

        self._stats = self._empty_stats()
        self._status = dataclasses.replace(
            self._status,
            error=None,
            phase=PollPhase.IDLE,
            rate_limited_until_ms=0,
        )
        self._notify()

        logger.info(f"Switched to {self._network.value} (generation {self._state.generation})")

        if self._running:
            self._schedule_poll_loop()

        return self._state.generation

    # ─────────────────────────────────────────────────────────────
    # Scheduling
    # ─────────────────────────────────────────────────────────────

    def _schedule_poll_loop(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            # Exits on its own once it sees the new generation
            self._retired_tasks.add(self._poll_task)
            self._poll_task.add_done_callback(self._retired_tasks.discard)
        self._poll_task = asyncio.create_task(self._poll_loop(self._state.generation))

    async def _poll_loop(self, generation: int) -> None:
        await asyncio.sleep(self._config.initial_delay_ms / 1000)
        while self._is_live(generation):
            await self.poll_once(generation)
            if not self._is_live(generation):
                break
            await asyncio.sleep(self._state.base_interval_ms / 1000)
        logger.debug(f"Poll loop for generation {generation} exited")

    async def _watchdog_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.stale_check_interval_ms / 1000)
            self.check_staleness()

    async def start(self) -> None:
        """Start the poll loop and the staleness watchdog."""
        if self._running:
            return
        self._running = True
        self._state.last_success_ms = self._clock.now_ms()
        self._schedule_poll_loop()
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info(
            f"Block stream started on {self._network.value} "
            f"(interval {self._config.poll_interval_ms:.0f}ms)"
        )

    async def stop(self) -> None:
        """Stop polling. The last snapshot stays readable."""
        if not self._running:
            return
        self._running = False
        self._state.generation += 1

        tasks = [t for t in (self._poll_task, self._watchdog_task, *self._retired_tasks) if t]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._poll_task = None
        self._watchdog_task = None
        self._retired_tasks.clear()
        self._state.is_polling = False
        logger.info("Block stream stopped")

    async def close(self) -> None:
        """Stop and release the fetcher if this engine created it."""
        await self.stop()
        if self._owns_fetcher:
            await self._fetcher.close()

    async def __aenter__(self) -> "PollingEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__}(network={self._network.value}, "
            f"generation={self._state.generation}, phase={self._state.phase.value})>"
        )
