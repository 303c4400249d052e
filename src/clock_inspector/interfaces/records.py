"""
Clock Inspector Data Models

These dataclasses are the contract between the correlation engine and its
collaborators: the parser feeds PacketEvents in, reporting consumes
TimingRecords, Findings, TrendSnapshots and OrderedTimestamps.

Every outward type has a to_dict() producing JSON-safe values.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional
import time

from ..timing.clock_constants import pts_ticks_to_ms, scr_ticks_to_ms
from ..timing.ordered_timestamps import OrderedTimestamp


class ClockKind(str, Enum):
    """Clock carried by an observation."""
    SCR = "SCR"
    PTS = "PTS"
    DTS = "DTS"


class FindingKind(str, Enum):
    """Advisory timing findings. None of them halt processing."""
    CONTINUITY_GAP = "CONTINUITY_GAP"          # CC jump != +1 mod 16
    PTS_BEHIND_PCR = "PTS_BEHIND_PCR"          # PTS*300 - SCR < 0
    EXCESS_CLOCK_DELTA = "EXCESS_CLOCK_DELTA"  # |tick delta| >= max drift
    EXCESS_SCR_DELTA = "EXCESS_SCR_DELTA"      # SCR elapsed between timestamps >= max drift
    TRACKING_DISABLED = "TRACKING_DISABLED"    # allocation failed, clock no longer tracked


class Pacing(str, Enum):
    """How input arrives relative to wall time."""
    REALTIME = "realtime"   # live stream, capture time is meaningful
    FAST = "fast"           # file playback, as fast as possible


@dataclass
class PesTimestamps:
    """Raw 90 kHz values from a PES header."""
    pts: Optional[int] = None
    dts: Optional[int] = None

    @property
    def pts_dts_flags(self) -> int:
        """PTS_DTS_flags as coded in the header (0, 2 or 3)."""
        if self.pts is None:
            return 0
        return 3 if self.dts is not None else 2


@dataclass
class PacketEvent:
    """
    One transport packet, as extracted by the parsing collaborator.
    """
    pid: int
    continuity_counter: int
    wall_time: float                     # capture time (Unix seconds)
    byte_offset: int = 0                 # file position / bytes received
    has_payload: bool = True             # adaptation_field_control 1 or 3
    payload_unit_start: bool = False
    scr_ticks: Optional[int] = None      # 27 MHz
    pes: Optional[PesTimestamps] = None


@dataclass
class PesDelivery:
    """How long the previous PES unit on a PID took to fully arrive."""
    scr_ticks: int
    wall_us: int

    @property
    def ms(self) -> float:
        return scr_ticks_to_ms(self.scr_ticks)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TimingRecord:
    """
    One SCR, PTS or DTS observation, with everything needed to
    reproduce a row of the timing report.
    """
    kind: ClockKind
    pid: int
    sequence: int                        # per-PID count for this clock
    byte_offset: int
    ticks: int                           # raw tick value
    delta_ticks: int                     # since previous value on this PID
    wall_time: float                     # capture time
    stream_time: Optional[float] = None  # calendar time derived from SCR
    drift_ms: Optional[float] = None     # clock vs reference since anchor

    # PTS/DTS only
    scr_delta_ms: Optional[float] = None        # SCR elapsed since previous timestamp
    offset_to_scr_ticks: Optional[int] = None   # ts*300 - correlated SCR
    delivery: Optional[PesDelivery] = None

    @property
    def delta_ms(self) -> float:
        if self.kind == ClockKind.SCR:
            return scr_ticks_to_ms(self.delta_ticks)
        return pts_ticks_to_ms(self.delta_ticks)

    @property
    def offset_to_scr_ms(self) -> Optional[float]:
        if self.offset_to_scr_ticks is None:
            return None
        return scr_ticks_to_ms(self.offset_to_scr_ticks)

    def to_dict(self) -> dict:
        result = asdict(self)
        result['kind'] = self.kind.value
        result['delta_ms'] = self.delta_ms
        if self.offset_to_scr_ticks is not None:
            result['offset_to_scr_ms'] = self.offset_to_scr_ms
        return {k: v for k, v in result.items() if v is not None}


@dataclass
class Finding:
    """Advisory timing anomaly."""
    kind: FindingKind
    pid: int
    message: str
    clock: Optional[ClockKind] = None
    stream_time: Optional[float] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'pid': self.pid,
            'clock': self.clock.value if self.clock else None,
            'message': self.message,
            'stream_time': self.stream_time,
            'data': dict(self.data),
        }


@dataclass
class TrendSnapshot:
    """
    Point-in-time regression result for one PID/clock trend.

    slope/intercept/deviation/r_squared are None until the window holds a
    usable model (at least 2 samples with spread).
    """
    pid: int
    clock: ClockKind
    name: str
    sample_count: int
    slope: Optional[float] = None
    intercept: Optional[float] = None
    deviation: Optional[float] = None
    r_squared: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def has_model(self) -> bool:
        return self.slope is not None

    def to_dict(self) -> dict:
        result = asdict(self)
        result['clock'] = self.clock.value
        result['has_model'] = self.has_model
        return result


@dataclass
class PidSummary:
    """Per-PID transport totals for the end-of-run report."""
    pid: int
    packets: int
    continuity_errors: int
    share_percent: float

    def to_dict(self) -> dict:
        return asdict(self)
