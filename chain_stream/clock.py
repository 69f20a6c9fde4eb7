"""
Chain Stream - Clock.

============================================================
RESPONSIBILITY
============================================================
Single source of "now" for the polling engine, the ledger and the
validator cache.

- All timing decisions (cooldowns, staleness, throttling) read this clock
- Millisecond resolution, matching the node API's block timestamps
- Mockable so state machine tests are deterministic

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the stream clock."""

    @abstractmethod
    def now_ms(self) -> float:
        """Get current Unix time in milliseconds."""
        pass

    def now(self) -> datetime:
        """Get current UTC datetime."""
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=timezone.utc)


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now_ms(self) -> float:
        return time.time() * 1000


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Time only moves when the test calls advance() or set_time().
    """

    def __init__(self, initial_ms: Optional[float] = None):
        """
        Initialize mock clock.

        Args:
            initial_ms: Starting time in milliseconds (defaults to current time)
        """
        self._ms = initial_ms if initial_ms is not None else time.time() * 1000

    def now_ms(self) -> float:
        return self._ms

    def set_time(self, ms: float) -> None:
        """Set the current time."""
        self._ms = ms

    def advance(self, ms: float = 0, seconds: float = 0) -> None:
        """
        Advance time by the specified amount.

        Args:
            ms: Milliseconds to advance
            seconds: Seconds to advance (added to ms)
        """
        self._ms += ms + seconds * 1000
