"""
Text report formatting.

One line per record, in the column layout of the classic PCR/PTS analyzer
reports, so output can be diffed and grepped across runs.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..interfaces.records import (
    ClockKind,
    Finding,
    OrderedTimestamp,
    PidSummary,
    TimingRecord,
    TrendSnapshot,
)
from ..timing.clock_constants import scr_to_timecode


def format_stream_time(stream_time: Optional[float]) -> str:
    """UTC calendar time with milliseconds, or dashes when unknown."""
    if stream_time is None:
        return "-" * 23
    dt = datetime.fromtimestamp(stream_time, tz=timezone.utc)
    return dt.strftime('%Y-%m-%d %H:%M:%S.') + f"{dt.microsecond // 1000:03d}"


def _optional_ms(value: Optional[float], width: int = 10) -> str:
    if value is None:
        return '-'.rjust(width)
    return f"{value:{width}.3f}"


def format_record(record: TimingRecord) -> str:
    """
    Single-line rendering of an SCR, PTS or DTS observation.

    SCR:  SCR #n  offset  pid  ticks  timecode  delta  stream-time  drift
    PTS:  PTS #n  offset  pid  ticks  delta  scr-delta  to-scr  stream-time  drift
    """
    head = (f"{record.kind.value}: #{record.sequence:09d} "
            f"-- {record.byte_offset:011d} "
            f"0x{record.pid:04x}")

    if record.kind == ClockKind.SCR:
        return (f"{head} {record.ticks:14d} {scr_to_timecode(record.ticks)} "
                f"{record.delta_ms:10.3f}ms "
                f"{format_stream_time(record.stream_time)} "
                f"drift {_optional_ms(record.drift_ms)}ms")

    line = (f"{head} {record.ticks:11d} "
            f"{record.delta_ms:10.3f}ms "
            f"scr {_optional_ms(record.scr_delta_ms)}ms "
            f"to-scr {_optional_ms(record.offset_to_scr_ms)}ms "
            f"{format_stream_time(record.stream_time)} "
            f"drift {_optional_ms(record.drift_ms)}ms")

    if record.delivery is not None:
        line += (f" delivery {record.delivery.ms:.3f}ms "
                 f"({record.delivery.wall_us}us wall)")
    return line


def format_finding(finding: Finding) -> str:
    return f"!{finding.kind.value}: {format_stream_time(finding.stream_time)} {finding.message}"


def format_trend(snapshot: TrendSnapshot) -> str:
    """
    Trend report line.

    Returns:
        "PID 0x0100 - Trend '<name>', N entries, Slope ..., Deviation ..., r2 ..."
    """
    prefix = f"PID 0x{snapshot.pid:04x} - Trend '{snapshot.name}', {snapshot.sample_count} entries"
    if not snapshot.has_model:
        return f"{prefix}, no model yet"
    r2 = '-' if snapshot.r_squared is None else f"{snapshot.r_squared:.9f}"
    return (f"{prefix}, Slope {snapshot.slope:.15f}, "
            f"Deviation {snapshot.deviation:.2f}, r2 {r2}")


def format_pid_summary(summaries: Iterable[PidSummary]) -> List[str]:
    lines = ["PID     Packets        CCErrors  Share"]
    for s in summaries:
        lines.append(f"0x{s.pid:04x}  {s.packets:13d}  {s.continuity_errors:8d}  {s.share_percent:6.2f}%")
    return lines


def format_ordered(pid: int, items: Iterable[OrderedTimestamp]) -> List[str]:
    """Presentation-ordered PTS dump for one PID."""
    lines = []
    for item in items:
        lines.append(f"PTS 0x{pid:04x} #{item.sequence:09d} -- {item.source_offset:011d} "
                     f"{item.ticks:11d} {item.delta_ms:10.3f}ms")
    return lines
