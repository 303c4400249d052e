"""Correlation engine - per-PID clock state, findings and trend reporting."""

from .correlation_engine import CorrelationEngine, EngineState, TrendReporter
from .pid_state import ClockTrack, PidClockState

__all__ = ['CorrelationEngine', 'EngineState', 'TrendReporter', 'ClockTrack', 'PidClockState']
