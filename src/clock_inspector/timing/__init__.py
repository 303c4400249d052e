"""
Clock-domain primitives for clock-inspector.

Wrap-safe clock arithmetic, incremental trend regression and
presentation-order reconstruction.
"""

from .clock_model import ClockModel, clock_diff, forward_diff, pts_diff, scr_diff
from .trend_estimator import TrendEstimator, LinearFit
from .ordered_timestamps import OrderedTimestamp, OrderedTimestampReconstructor

__all__ = [
    'ClockModel', 'clock_diff', 'forward_diff', 'pts_diff', 'scr_diff',
    'TrendEstimator', 'LinearFit',
    'OrderedTimestamp', 'OrderedTimestampReconstructor',
]
