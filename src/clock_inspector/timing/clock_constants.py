#!/usr/bin/env python3
"""
MPEG-TS Clock Constants - Central Reference for Clock Domain Arithmetic

================================================================================
PURPOSE
================================================================================
Single source of truth for every tick rate, wraparound bound and unit
conversion used by the clock inspector. Scaling between the 27 MHz and
90 kHz domains is done ONLY through the names below, never with inline
numbers, so a change of unit can't silently skew one code path.

================================================================================
CLOCK DOMAINS
================================================================================
SCR / PCR - System/Program Clock Reference
    Rate:    27 MHz (33-bit base at 90 kHz × 300 + 9-bit extension)
    Wraps:   2^33 × 300 ticks  (~26.5 hours)

PTS / DTS - Presentation / Decode Timestamp
    Rate:    90 kHz
    Wraps:   2^33 ticks        (~26.5 hours)

One PTS tick is exactly 300 SCR ticks, so PTS × 300 lands in the SCR domain.

================================================================================
CONVERSIONS
================================================================================
    SCR ticks → ms:   / 27,000
    SCR ticks → µs:   / 27
    PTS ticks → ms:   / 90
"""

from typing import Optional

# =============================================================================
# CLOCK RATES
# =============================================================================

SCR_CLOCK_HZ = 27_000_000   # 27 MHz system clock
PTS_CLOCK_HZ = 90_000       # 90 kHz presentation clock

# =============================================================================
# WRAPAROUND BOUNDS
# =============================================================================

MAX_PTS_VALUE = 1 << 33                   # PTS/DTS modulus
SCR_TICKS_PER_PTS_TICK = 300
MAX_SCR_VALUE = MAX_PTS_VALUE * SCR_TICKS_PER_PTS_TICK  # SCR/PCR modulus

# =============================================================================
# UNIT CONVERSIONS
# =============================================================================

SCR_TICKS_PER_MS = SCR_CLOCK_HZ // 1000       # 27,000
SCR_TICKS_PER_US = SCR_CLOCK_HZ // 1_000_000  # 27
PTS_TICKS_PER_MS = PTS_CLOCK_HZ // 1000       # 90

# A forward PTS step larger than this is really a backward step that
# crossed the wrap point
PTS_BACKWARD_WRAP_TICKS = 10 * PTS_CLOCK_HZ

# =============================================================================
# TRANSPORT STREAM
# =============================================================================

TS_PACKET_SIZE = 188
TS_SYNC_BYTE = 0x47
MAX_PID = 0x1FFF
NULL_PID = 0x1FFF
CC_MODULUS = 16

DEFAULT_SCR_PID = 0x31

# =============================================================================
# TREND DEFAULTS
# =============================================================================

# 1 hour at 60 fps. 108000 is 1hr of 30fps, 5184000 is 24hrs of 60fps
DEFAULT_TREND_CAPACITY = 60 * 60 * 60
MIN_TREND_CAPACITY = 60
DEFAULT_TREND_WARMUP = 16
DEFAULT_TREND_REPORT_PERIOD = 15   # seconds
MIN_TREND_REPORT_PERIOD = 5        # seconds
DEFAULT_MAX_DRIFT_MS = 700


def pts_ticks_to_ms(ticks: float) -> float:
    """Convert 90 kHz ticks to milliseconds."""
    return ticks / PTS_TICKS_PER_MS


def scr_ticks_to_ms(ticks: float) -> float:
    """Convert 27 MHz ticks to milliseconds."""
    return ticks / SCR_TICKS_PER_MS


def scr_ticks_to_us(ticks: float) -> float:
    """Convert 27 MHz ticks to microseconds."""
    return ticks / SCR_TICKS_PER_US


def pts_to_scr_ticks(pts: int) -> int:
    """Scale a 90 kHz value into the 27 MHz domain."""
    return pts * SCR_TICKS_PER_PTS_TICK


def scr_to_timecode(scr: Optional[int]) -> str:
    """
    Render an SCR value as a day-prefixed timecode.

    Examples:
        0                          -> "0.00:00:00.000"
        27_000_000 * 3723          -> "0.01:02:03.000"

    Args:
        scr: 27 MHz tick value (None renders as dashes)

    Returns:
        "D.HH:MM:SS.mmm"
    """
    if scr is None:
        return "-.--:--:--.---"

    total_ms = scr // SCR_TICKS_PER_MS
    ms = total_ms % 1000
    total_s = total_ms // 1000
    days, rem = divmod(total_s, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{days}.{hours:02d}:{minutes:02d}:{seconds:02d}.{ms:03d}"
