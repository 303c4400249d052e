"""
Per-PID clock state.

Each PID seen in the multiplex gets one PidClockState, created on its first
packet. It carries continuity tracking, the PID's own SCR timeline (when it
carries PCR), the PES delivery bookkeeping, and one ClockTrack per
timestamp clock (PTS, DTS).

Per tracked clock the state machine is implicit in field presence:

    Unseen ──first timestamp──▶ Tracking(unanchored) ──anchor──▶ Tracking(anchored)

Clocks never un-anchor.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple

from ..interfaces.records import ClockKind, PesDelivery
from ..timing.clock_constants import (
    CC_MODULUS,
    MAX_PTS_VALUE,
    NULL_PID,
    PTS_CLOCK_HZ,
    SCR_CLOCK_HZ,
)
from ..timing.clock_model import ClockModel
from ..timing.ordered_timestamps import OrderedTimestampReconstructor
from ..timing.trend_estimator import TrendEstimator

logger = logging.getLogger(__name__)


@dataclass
class ClockTrack:
    """PTS or DTS timeline of one PID."""
    kind: ClockKind
    count: int = 0
    last_ticks: Optional[int] = None     # previous raw timestamp
    diff_ticks: int = 0                  # delta to the previous timestamp
    last_scr: Optional[int] = None       # correlated SCR when the previous one arrived
    clock: Optional[ClockModel] = None
    trend: Optional[TrendEstimator] = None
    disabled: bool = False

    @property
    def is_tracking(self) -> bool:
        return self.clock is not None and not self.disabled


@dataclass
class PidClockState:
    """Everything the engine knows about one PID."""
    pid: int

    # Transport
    packet_count: int = 0
    last_continuity_counter: Optional[int] = None
    continuity_error_count: int = 0
    _cc_resync: bool = False

    # SCR carried on this PID
    scr_clock: Optional[ClockModel] = None
    scr: Optional[int] = None            # unwrapped
    scr_raw: Optional[int] = None
    scr_first: Optional[int] = None
    scr_first_wall_time: Optional[float] = None
    scr_update_count: int = 0

    # PES delivery: correlated SCR at unit start and at the last payload packet
    scr_at_pes_unit_start: Optional[int] = None
    scr_at_pes_unit_start_wall: Optional[float] = None
    scr_last_seen: Optional[int] = None
    scr_last_seen_wall: Optional[float] = None

    pts: ClockTrack = field(default_factory=lambda: ClockTrack(ClockKind.PTS))
    dts: ClockTrack = field(default_factory=lambda: ClockTrack(ClockKind.DTS))

    reconstructor: Optional[OrderedTimestampReconstructor] = None
    reorder_disabled: bool = False

    def check_continuity(self, cc: int, has_payload: bool = True) -> Optional[Tuple[int, int]]:
        """
        Count the packet and validate its continuity counter.

        The first packet of a PID and every null-PID packet are exempt.
        The counter only advances on packets with payload. After a gap the
        next packet re-establishes the baseline, so one lost packet gives
        one finding rather than two.

        Args:
            cc: 4-bit continuity counter from the packet header
            has_payload: adaptation_field_control is 1 or 3

        Returns:
            (expected, got) on a discontinuity, else None
        """
        self.packet_count += 1

        if not has_payload or self.pid == NULL_PID:
            return None

        last = self.last_continuity_counter
        self.last_continuity_counter = cc

        if last is None or self._cc_resync:
            self._cc_resync = False
            return None

        expected = (last + 1) % CC_MODULUS
        if cc != expected:
            self.continuity_error_count += 1
            self._cc_resync = True
            return expected, cc

        return None

    def update_scr(self, raw: int, wall_time: float, initial_time: float) -> Tuple[int, float]:
        """
        Fold a new SCR sample into this PID's SCR timeline.

        Args:
            raw: 27 MHz value from the adaptation field
            wall_time: Capture time of the packet
            initial_time: Calendar time the first SCR maps to

        Returns:
            (delta_ticks since the previous SCR, stream_time)
        """
        if self.scr_clock is None:
            self.scr_clock = ClockModel(SCR_CLOCK_HZ, name=f"SCR 0x{self.pid:04x}")
            self.scr_clock.establish_wallclock(raw, wall_time)
            self.scr_first = raw
            self.scr_first_wall_time = initial_time
            delta = 0
        else:
            delta = self.scr_clock.diff(self.scr_raw, raw)

        self.scr = self.scr_clock.set_ticks(raw)
        self.scr_raw = raw
        self.scr_update_count += 1

        return delta, self.stream_time

    @property
    def stream_time(self) -> Optional[float]:
        """Calendar time of the current SCR."""
        if self.scr is None:
            return None
        return self.scr_first_wall_time + (self.scr - self.scr_first) / SCR_CLOCK_HZ

    def note_pes_progress(
        self,
        payload_unit_start: bool,
        correlated_scr: Optional[int],
        wall_time: float
    ) -> Optional[PesDelivery]:
        """
        Track how long PES units take to arrive.

        On a unit start, report the SCR ticks and wall microseconds spent
        between the previous unit start and its last payload packet, then
        re-arm. Other packets just note the SCR they arrived at.
        """
        if not payload_unit_start:
            self.scr_last_seen = correlated_scr
            self.scr_last_seen_wall = wall_time
            return None

        delivery = None
        if self.scr_at_pes_unit_start is not None and self.scr_last_seen is not None:
            ticks = max(0, self.scr_last_seen - self.scr_at_pes_unit_start)
            wall_us = max(0, int(round((self.scr_last_seen_wall - self.scr_at_pes_unit_start_wall) * 1e6)))
            delivery = PesDelivery(scr_ticks=ticks, wall_us=wall_us)

        self.scr_at_pes_unit_start = correlated_scr
        self.scr_at_pes_unit_start_wall = wall_time
        self.scr_last_seen = correlated_scr
        self.scr_last_seen_wall = wall_time
        return delivery

    def track(self, kind: ClockKind) -> ClockTrack:
        if kind == ClockKind.PTS:
            return self.pts
        if kind == ClockKind.DTS:
            return self.dts
        raise ValueError(f"No timestamp track for {kind}")

    def ensure_track(
        self,
        kind: ClockKind,
        capacity: int,
        warmup: int
    ) -> bool:
        """
        Lazily create the clock model and trend for a timestamp track.

        The clock is left unanchored; the engine anchors it once a
        reference time is available.

        Returns:
            False if the track is (or just became) disabled
        """
        track = self.track(kind)
        if track.disabled:
            return False

        try:
            if track.clock is None:
                track.clock = ClockModel(PTS_CLOCK_HZ, MAX_PTS_VALUE, name=f"{kind.value} 0x{self.pid:04x}")
            if track.trend is None:
                track.trend = TrendEstimator(
                    capacity=capacity,
                    name=f"{kind.value} 0x{self.pid:04x} to Wallclock delta",
                    warmup=warmup
                )
        except MemoryError:
            logger.error(f"PID 0x{self.pid:04x}: out of memory allocating {kind.value} trend, "
                         f"disabling {kind.value} tracking")
            track.disabled = True
            track.trend = None
            return False

        return True

    def ensure_reconstructor(self) -> Optional[OrderedTimestampReconstructor]:
        """Lazily create the reorder buffer; None once reordering is disabled."""
        if self.reorder_disabled:
            return None
        if self.reconstructor is None:
            try:
                self.reconstructor = OrderedTimestampReconstructor(MAX_PTS_VALUE)
            except MemoryError:
                self.disable_reorder()
                return None
        return self.reconstructor

    def disable_reorder(self):
        """Drop the reorder buffer and stop reordering this PID."""
        logger.error(f"PID 0x{self.pid:04x}: out of memory in reorder buffer, disabling reordering")
        self.reconstructor = None
        self.reorder_disabled = True

    def trends(self) -> Iterator[Tuple[ClockKind, TrendEstimator]]:
        """Allocated trend estimators of this PID."""
        for track in (self.pts, self.dts):
            if track.trend is not None:
                yield track.kind, track.trend

    def release_trends(self):
        """Free every trend estimator buffer."""
        for _, trend in self.trends():
            trend.close()
