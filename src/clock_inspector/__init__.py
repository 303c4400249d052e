"""
clock-inspector: MPEG-TS Clock Correlation and Drift Analysis

This package tracks the clocks carried in an MPEG transport stream on a
per-PID basis. It correlates presentation/decode timestamps (90 kHz PTS/DTS)
against the program clock reference (27 MHz SCR/PCR) and against a wall
clock, and estimates drift trends with a windowed linear regression.

Architecture:
    TS packets → ingest (field extraction) → CorrelationEngine → records,
    findings, trend reports (text, JSON snapshot, HTTP status)

It provides:
    1. Wraparound-safe clock arithmetic for both clock domains
    2. Continuity and timing non-conformance findings
    3. Drift trends (slope, deviation, r²) per PID and clock
    4. Presentation-order reconstruction of PTS values

Version: 1.0.0
Author: Michael James Hauan (AC0G)
"""

__version__ = "1.0.0"
__author__ = "Michael James Hauan (AC0G)"

from .config import InspectorConfig, load_config
from .engine import CorrelationEngine
from .interfaces.records import (
    ClockKind,
    Finding,
    FindingKind,
    Pacing,
    TimingRecord,
    TrendSnapshot,
)

__all__ = [
    "InspectorConfig",
    "load_config",
    "CorrelationEngine",
    "ClockKind",
    "Finding",
    "FindingKind",
    "Pacing",
    "TimingRecord",
    "TrendSnapshot",
    "__version__",
]
