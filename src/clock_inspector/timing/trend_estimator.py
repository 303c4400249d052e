"""
Trend Estimator - bounded-window incremental linear regression

Tracks how a clock's offset from wall time evolves over a run. Each sample
is (x = elapsed reference seconds, y = clock seconds). The slope of the fit
is the clock rate relative to wall time (1.0 = perfect), the deviation is
the mean absolute residual.

================================================================================
INCREMENTAL SUMS
================================================================================
The running sums n, Σx, Σy, Σx², Σxy are updated on every insert and every
eviction, so the least-squares coefficients are O(1):

    slope     = (nΣxy − ΣxΣy) / (nΣx² − (Σx)²)
    intercept = (Σy − slope·Σx) / n

Deviation and R² need the residuals and walk the window once. That is done
at report cadence on a snapshot, never on the ingestion path.

Samples are stored relative to the first accepted point so the sums stay
small over long runs with large absolute wall times. To stop rounding error
from accumulating through subtract-on-evict, the sums are rebuilt from the
buffer once per `capacity` evictions.

================================================================================
THREADING
================================================================================
add() and snapshot() share a per-estimator lock. The critical section of
snapshot() is an array copy; fit/R² are computed on the copy.
"""

import copy
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from .clock_constants import (
    DEFAULT_TREND_CAPACITY,
    DEFAULT_TREND_WARMUP,
    MIN_TREND_CAPACITY,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinearFit:
    """Least-squares line over the current window."""
    slope: float
    intercept: float
    deviation: float  # mean absolute residual


class TrendEstimator:
    """
    Ring-buffered linear regression of y against x.

    Lifecycle: created lazily on the first qualifying timestamp for a
    PID/clock, fed for the process lifetime, released with close().
    """

    def __init__(
        self,
        capacity: int = DEFAULT_TREND_CAPACITY,
        name: str = "",
        warmup: int = DEFAULT_TREND_WARMUP
    ):
        """
        Initialize trend estimator.

        Args:
            capacity: Maximum retained samples (clamped to >= 60)
            name: Label for reports and CSV export
            warmup: Number of initial samples discarded before the window
        """
        if capacity < MIN_TREND_CAPACITY:
            logger.warning(f"Trend capacity {capacity} below minimum, using {MIN_TREND_CAPACITY}")
            capacity = MIN_TREND_CAPACITY

        self.capacity = int(capacity)
        self.name = name
        self.warmup = max(0, int(warmup))

        # Ring storage (head = index of the oldest sample)
        self._x = np.zeros(self.capacity, dtype=np.float64)
        self._y = np.zeros(self.capacity, dtype=np.float64)
        self._head = 0
        self._count = 0

        # Running sums over the ring contents
        self._sum_x = 0.0
        self._sum_y = 0.0
        self._sum_xx = 0.0
        self._sum_xy = 0.0

        self._first: Optional[Tuple[float, float]] = None
        self._seen = 0
        self._evictions = 0
        self._closed = False

        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        """Samples currently in the window."""
        return self._count

    @property
    def samples_seen(self) -> int:
        """Every add() call, including warm-up discards and evicted samples."""
        return self._seen

    @property
    def first_point(self) -> Optional[Tuple[float, float]]:
        """Absolute (x, y) that stored samples are relative to."""
        return self._first

    @property
    def sums(self) -> Tuple[int, float, float, float, float]:
        """(n, Σx, Σy, Σx², Σxy)."""
        return self._count, self._sum_x, self._sum_y, self._sum_xx, self._sum_xy

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, x: float, y: float) -> bool:
        """
        Push a sample.

        Args:
            x: Absolute reference time (seconds)
            y: Absolute clock time (seconds)

        Returns:
            True if the sample entered the window (False during warm-up
            or after close())
        """
        with self._lock:
            if self._closed:
                return False

            self._seen += 1
            if self._seen <= self.warmup:
                return False

            if self._first is None:
                self._first = (float(x), float(y))

            rx = float(x) - self._first[0]
            ry = float(y) - self._first[1]

            if self._count == self.capacity:
                pos = self._head
                old_x = self._x[pos]
                old_y = self._y[pos]
                self._sum_x -= old_x
                self._sum_y -= old_y
                self._sum_xx -= old_x * old_x
                self._sum_xy -= old_x * old_y
                self._head = (self._head + 1) % self.capacity
                self._evictions += 1
            else:
                pos = (self._head + self._count) % self.capacity
                self._count += 1

            self._x[pos] = rx
            self._y[pos] = ry
            self._sum_x += rx
            self._sum_y += ry
            self._sum_xx += rx * rx
            self._sum_xy += rx * ry

            if self._evictions >= self.capacity:
                self._resync_sums()

            return True

    def _resync_sums(self):
        """Rebuild the running sums from the buffer contents."""
        x, y = self._window()
        self._sum_x = float(np.sum(x))
        self._sum_y = float(np.sum(y))
        self._sum_xx = float(np.dot(x, x))
        self._sum_xy = float(np.dot(x, y))
        self._evictions = 0

    def _window(self) -> Tuple[np.ndarray, np.ndarray]:
        """Linearized views of the window, oldest first."""
        if self._count < self.capacity:
            return self._x[:self._count], self._y[:self._count]
        return (
            np.concatenate([self._x[self._head:], self._x[:self._head]]),
            np.concatenate([self._y[self._head:], self._y[:self._head]]),
        )

    def samples(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Copy of the window in insertion order.

        Returns:
            (x, y) arrays relative to first_point
        """
        x, y = self._window()
        return x.copy(), y.copy()

    def compute_linear_fit(self) -> Optional[LinearFit]:
        """
        Least-squares fit of the current window.

        Call on a snapshot() while the estimator is live.

        Returns:
            LinearFit, or None with fewer than 2 samples or no spread in x
        """
        n = self._count
        if n < 2:
            return None

        denom = n * self._sum_xx - self._sum_x * self._sum_x
        scale = max(1.0, abs(n * self._sum_xx))
        if not np.isfinite(denom) or denom <= scale * 1e-12:
            return None

        slope = (n * self._sum_xy - self._sum_x * self._sum_y) / denom
        intercept = (self._sum_y - slope * self._sum_x) / n

        x, y = self._window()
        deviation = float(np.mean(np.abs(y - (slope * x + intercept))))

        return LinearFit(slope=float(slope), intercept=float(intercept), deviation=deviation)

    def compute_r_squared(self, fit: Optional[LinearFit]) -> Optional[float]:
        """
        Coefficient of determination for a given fit.

        Must receive the fit computed over this same window.

        Returns:
            R², or None when fit is None or y has no variance
        """
        if fit is None or self._count < 2:
            return None

        x, y = self._window()
        residuals = y - (fit.slope * x + fit.intercept)
        ss_res = float(np.dot(residuals, residuals))
        centered = y - np.mean(y)
        ss_tot = float(np.dot(centered, centered))
        if ss_tot == 0.0:
            return None
        return 1.0 - ss_res / ss_tot

    def snapshot(self) -> "TrendEstimator":
        """
        Independent copy of the current state.

        The lock is held only for the copy; the copy can be fitted while
        the live estimator keeps accepting add() calls.
        """
        with self._lock:
            dup = copy.copy(self)
            dup._x = self._x.copy()
            dup._y = self._y.copy()
        dup._lock = threading.Lock()
        return dup

    def save_csv(self, path: Union[str, Path]) -> Path:
        """
        Write the window as x,y rows.

        Args:
            path: Output file

        Returns:
            Path written
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        x, y = self.samples()
        np.savetxt(
            path,
            np.column_stack([x, y]),
            delimiter=',',
            header='x,y',
            comments='',
            fmt='%.9f'
        )
        logger.debug(f"Trend '{self.name}': saved {len(x)} samples to {path}")
        return path

    def close(self):
        """Release the sample buffers. Further add() calls are ignored."""
        with self._lock:
            self._closed = True
            self._x = np.zeros(0, dtype=np.float64)
            self._y = np.zeros(0, dtype=np.float64)
            self._head = 0
            self._count = 0
            self._sum_x = self._sum_y = self._sum_xx = self._sum_xy = 0.0

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"TrendEstimator(name={self.name!r}, count={self._count}, capacity={self.capacity})"
