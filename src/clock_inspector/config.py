"""
Configuration for clock-inspector.

Settings come from a TOML file (optional), then command-line overrides.
Both layers end up in an InspectorConfig, which is what the engine sees.

Example config.toml:

    [engine]
    scr_pid = "0x31"
    max_drift_ms = 700
    pacing = "fast"
    reorder = false
    non_conformance_findings = true
    pes_delivery_report = false
    stop_after_seconds = 0

    [trend]
    capacity = 216000
    warmup = 16
    report_period = 15
    report_level = 1

    [output]
    snapshot_path = "/dev/shm/clock_inspector_trends.json"
    trend_csv_dir = "/tmp/clock-inspector"
    health_port = 0
"""

import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from .interfaces.records import Pacing
from .timing.clock_constants import (
    DEFAULT_MAX_DRIFT_MS,
    DEFAULT_SCR_PID,
    DEFAULT_TREND_CAPACITY,
    DEFAULT_TREND_REPORT_PERIOD,
    DEFAULT_TREND_WARMUP,
    MAX_PID,
    MIN_TREND_CAPACITY,
    MIN_TREND_REPORT_PERIOD,
)

logger = logging.getLogger(__name__)

# TOML section each flat key lives in
_SECTIONS = {
    'engine': {
        'scr_pid': 'scr_pid',
        'max_drift_ms': 'max_drift_ms',
        'pacing': 'pacing',
        'reorder': 'reorder',
        'non_conformance_findings': 'non_conformance_findings',
        'pes_delivery_report': 'pes_delivery_report',
        'stop_after_seconds': 'stop_after_seconds',
        'initial_time': 'initial_time',
    },
    'trend': {
        'capacity': 'trend_capacity',
        'warmup': 'trend_warmup',
        'report_period': 'trend_report_period',
        'report_level': 'trend_report_level',
    },
    'output': {
        'snapshot_path': 'snapshot_path',
        'trend_csv_dir': 'trend_csv_dir',
        'health_port': 'health_port',
    },
}


@dataclass
class InspectorConfig:
    """Recognized engine options and their defaults."""
    scr_pid: int = DEFAULT_SCR_PID
    max_drift_ms: float = DEFAULT_MAX_DRIFT_MS
    trend_capacity: int = DEFAULT_TREND_CAPACITY
    trend_warmup: int = DEFAULT_TREND_WARMUP
    trend_report_period: float = DEFAULT_TREND_REPORT_PERIOD
    trend_report_level: int = 0          # 1 report, 2 + CSV, 3 + full dataset
    non_conformance_findings: bool = True
    reorder: bool = False
    pes_delivery_report: bool = False
    pacing: str = Pacing.FAST.value
    stop_after_seconds: float = 0.0      # 0 = unlimited
    initial_time: Optional[float] = None  # SCR stream-time anchor (default: start)
    snapshot_path: Optional[str] = None
    trend_csv_dir: Optional[str] = None
    health_port: int = 0

    def __post_init__(self):
        if isinstance(self.scr_pid, str):
            self.scr_pid = int(self.scr_pid, 0)
        if not 0 <= self.scr_pid <= MAX_PID:
            raise ValueError(f"SCR pid must be 0x0000-0x1fff, got {self.scr_pid:#x}")

        if self.max_drift_ms < 0:
            raise ValueError(f"Max drift must be >= 0 ms, got {self.max_drift_ms}")

        try:
            self.pacing = Pacing(self.pacing).value
        except ValueError:
            raise ValueError(f"Unknown pacing mode: {self.pacing!r} (use 'realtime' or 'fast')")

        if self.trend_capacity < MIN_TREND_CAPACITY:
            logger.warning(f"Trend size {self.trend_capacity} too small, using {MIN_TREND_CAPACITY}")
            self.trend_capacity = MIN_TREND_CAPACITY

        if self.trend_report_period < MIN_TREND_REPORT_PERIOD:
            logger.warning(f"Trend report period {self.trend_report_period}s too short, "
                           f"using {MIN_TREND_REPORT_PERIOD}s")
            self.trend_report_period = MIN_TREND_REPORT_PERIOD

        if self.trend_warmup < 0:
            raise ValueError(f"Trend warmup must be >= 0, got {self.trend_warmup}")
        if self.stop_after_seconds < 0:
            raise ValueError(f"Stop time must be >= 0 s, got {self.stop_after_seconds}")

    @property
    def pacing_mode(self) -> Pacing:
        return Pacing(self.pacing)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InspectorConfig":
        """
        Build from a config dictionary.

        Accepts both the sectioned TOML layout ([engine], [trend], [output])
        and flat field names. Unknown keys are ignored with a warning.
        """
        known = set(cls.__dataclass_fields__)
        kwargs: Dict[str, Any] = {}

        for key, value in data.items():
            if key in _SECTIONS and isinstance(value, dict):
                mapping = _SECTIONS[key]
                for sub_key, sub_value in value.items():
                    if sub_key in mapping:
                        kwargs[mapping[sub_key]] = sub_value
                    else:
                        logger.warning(f"Ignoring unknown config key [{key}].{sub_key}")
            elif key in known:
                kwargs[key] = value
            else:
                logger.warning(f"Ignoring unknown config key {key}")

        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(config_path: Optional[str] = None) -> InspectorConfig:
    """Load configuration from a TOML file, or defaults when none is given."""
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Config file not found: {config_path}")
        with open(path, 'r') as f:
            data = toml.load(f)
        logger.info(f"Loaded config from {path}")
        return InspectorConfig.from_dict(data)

    return InspectorConfig()
