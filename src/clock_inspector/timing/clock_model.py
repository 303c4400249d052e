"""
Clock Model - modulo-wrapping hardware clock with a wallclock anchor

================================================================================
WRAPAROUND
================================================================================
Both MPEG clock domains are modulo counters (SCR wraps at 2^33 × 300 ticks,
PTS/DTS at 2^33). A naive subtraction across the wrap point yields a giant
negative jump. Every distance measured by the inspector therefore goes
through clock_diff(), which folds the raw difference into the half-open
window around zero:

    d = b - a  (reduced modulo M, sign preserved)
    d >  M/2  →  d - M
    d < -M/2  →  d + M

so that diff(M-1, 1) == +2 and diff(a, b) == -diff(b, a) always hold.

================================================================================
DRIFT
================================================================================
Once anchored, a clock's drift is the elapsed clock time minus the elapsed
reference (wall) time since the anchor:

    drift = (ticks - anchor_ticks) / hz - (now - anchor_wall)

Positive: the clock runs ahead of wall time. Negative: it falls behind.
"""

import logging
import time
from typing import Optional

from .clock_constants import (
    MAX_PTS_VALUE,
    MAX_SCR_VALUE,
    PTS_CLOCK_HZ,
    SCR_CLOCK_HZ,
)

logger = logging.getLogger(__name__)


def clock_diff(a: int, b: int, modulus: int) -> int:
    """
    Signed wraparound-safe difference b - a.

    Args:
        a: Earlier tick value
        b: Later tick value
        modulus: Wrap bound of the clock

    Returns:
        Small forward (positive) or backward (negative) step,
        |result| <= modulus / 2
    """
    raw = b - a
    reduced = abs(raw) % modulus
    d = reduced if raw >= 0 else -reduced
    if 2 * d > modulus:
        d -= modulus
    elif 2 * d < -modulus:
        d += modulus
    return d


def forward_diff(a: int, b: int, modulus: int) -> int:
    """Unsigned forward distance from a to b, assuming b is never behind a."""
    return (b - a) % modulus


def pts_diff(a: int, b: int) -> int:
    """clock_diff() in the 90 kHz domain."""
    return clock_diff(a, b, MAX_PTS_VALUE)


def scr_diff(a: int, b: int) -> int:
    """clock_diff() in the 27 MHz domain."""
    return clock_diff(a, b, MAX_SCR_VALUE)


def default_modulus(timebase_hz: int) -> int:
    """Wrap bound for a known MPEG timebase."""
    if timebase_hz == SCR_CLOCK_HZ:
        return MAX_SCR_VALUE
    if timebase_hz == PTS_CLOCK_HZ:
        return MAX_PTS_VALUE
    raise ValueError(f"No default modulus for timebase {timebase_hz} Hz")


class ClockModel:
    """
    One modulo-wrapping clock domain with an immutable wallclock anchor.

    Lifecycle:
        created (unanchored) → establish_wallclock() → anchored, forever

    Ticks fed through set_ticks() are unwrapped so that `ticks` keeps
    increasing across the modulus boundary.
    """

    def __init__(
        self,
        timebase_hz: int,
        modulus: Optional[int] = None,
        name: str = ""
    ):
        """
        Initialize clock model.

        Args:
            timebase_hz: Ticks per second (27 MHz or 90 kHz)
            modulus: Wraparound bound (default derived from timebase_hz)
            name: Label used in log messages
        """
        if timebase_hz <= 0:
            raise ValueError(f"Timebase must be positive, got {timebase_hz}")

        self.timebase_hz = timebase_hz
        self.modulus = modulus if modulus is not None else default_modulus(timebase_hz)
        self.name = name

        self._anchor_ticks: Optional[int] = None
        self._anchor_wall: Optional[float] = None

        self._raw_ticks: Optional[int] = None
        self._wraps = 0
        self._ticks: Optional[int] = None

    @property
    def is_established(self) -> bool:
        """True once a wallclock anchor has been recorded."""
        return self._anchor_wall is not None

    @property
    def anchor(self) -> Optional[tuple]:
        """(ticks, wall_time) anchor pair, or None."""
        if not self.is_established:
            return None
        return self._anchor_ticks, self._anchor_wall

    @property
    def ticks(self) -> Optional[int]:
        """Latest unwrapped tick value."""
        return self._ticks

    @property
    def raw_ticks(self) -> Optional[int]:
        """Latest tick value as observed on the wire."""
        return self._raw_ticks

    @property
    def wrap_count(self) -> int:
        return self._wraps

    def establish_wallclock(self, ticks: int, wall_time: Optional[float] = None) -> bool:
        """
        Anchor this clock to wall time.

        Only the first call has an effect; re-anchoring would silently
        re-baseline every drift value reported afterwards.

        Args:
            ticks: Clock value at the anchor instant
            wall_time: Unix time of the anchor (default: now)

        Returns:
            True if the anchor was set by this call
        """
        if self.is_established:
            return False

        self._anchor_ticks = ticks
        self._anchor_wall = time.time() if wall_time is None else wall_time
        logger.debug(f"Clock {self.name or self.timebase_hz}: anchored at {ticks} "
                     f"(wall {self._anchor_wall:.6f})")
        return True

    def set_ticks(self, raw: int) -> int:
        """
        Record the latest raw tick value.

        A drop of more than half the modulus is a forward wrap. A jump of
        more than half the modulus after a wrap is a late value from the
        previous lap.

        Args:
            raw: Tick value as carried in the stream

        Returns:
            Unwrapped tick value
        """
        if self._raw_ticks is not None:
            delta = raw - self._raw_ticks
            if 2 * delta < -self.modulus:
                self._wraps += 1
                logger.debug(f"Clock {self.name or self.timebase_hz}: wrapped (lap {self._wraps})")
            elif 2 * delta > self.modulus and self._wraps > 0:
                self._wraps -= 1

        self._raw_ticks = raw
        self._ticks = raw + self._wraps * self.modulus
        return self._ticks

    def diff(self, a: int, b: int) -> int:
        """Signed wraparound-safe b - a in this clock's domain."""
        return clock_diff(a, b, self.modulus)

    def get_drift_us(self, now: Optional[float] = None) -> Optional[float]:
        """
        Clock drift against wall time since the anchor.

        Args:
            now: Reference wall time (default: current time)

        Returns:
            Drift in microseconds, or None when not anchored or no ticks seen
        """
        if not self.is_established or self._ticks is None:
            return None

        if now is None:
            now = time.time()

        elapsed_clock_s = (self._ticks - self._anchor_ticks) / self.timebase_hz
        elapsed_wall_s = now - self._anchor_wall
        return (elapsed_clock_s - elapsed_wall_s) * 1e6

    def get_drift_ms(self, now: Optional[float] = None) -> Optional[float]:
        """Drift in milliseconds, or None when unavailable."""
        drift_us = self.get_drift_us(now)
        if drift_us is None:
            return None
        return drift_us / 1000.0
