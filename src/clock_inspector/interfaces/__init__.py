"""Data contracts exchanged with the parser and reporting collaborators."""

from .records import (
    ClockKind,
    FindingKind,
    Pacing,
    PesTimestamps,
    PacketEvent,
    PesDelivery,
    TimingRecord,
    Finding,
    TrendSnapshot,
    OrderedTimestamp,
    PidSummary,
)

__all__ = [
    'ClockKind', 'FindingKind', 'Pacing', 'PesTimestamps', 'PacketEvent',
    'PesDelivery', 'TimingRecord', 'Finding', 'TrendSnapshot',
    'OrderedTimestamp', 'PidSummary',
]
