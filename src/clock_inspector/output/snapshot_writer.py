"""
Trend Snapshot Writer

Writes the latest trend report to a JSON file (by default in /dev/shm)
for consumption by dashboards and other tools.

The file is updated atomically (write to temp, rename) to prevent
partial reads.

Usage:
    writer = SnapshotWriter('/dev/shm/clock_inspector_trends.json')
    writer.write(engine.report_trends())
"""

import json
import os
import tempfile
import time
import logging
from pathlib import Path
from typing import List, Optional

from ..interfaces.records import TrendSnapshot

logger = logging.getLogger(__name__)


class SnapshotWriter:
    """
    Writes trend snapshots to a JSON file.

    Updates are atomic (write to temp file, then rename).
    """

    DEFAULT_PATH = "/dev/shm/clock_inspector_trends.json"

    def __init__(self, path: Optional[str] = None):
        """
        Initialize snapshot writer.

        Args:
            path: Output file (default: /dev/shm/clock_inspector_trends.json)
        """
        self.path = Path(path or self.DEFAULT_PATH)
        self.write_count = 0

        self.path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"SnapshotWriter initialized: {self.path}")

    def write(self, snapshots: List[TrendSnapshot]) -> bool:
        """
        Write one trend report.

        Args:
            snapshots: Report produced by CorrelationEngine.report_trends()

        Returns:
            True if successful, False on error
        """
        document = {
            'timestamp': time.time(),
            'trends': [s.to_dict() for s in snapshots],
        }

        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix='.clock_inspector_',
                suffix='.tmp'
            )

            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(document, f, indent=2)
                os.rename(temp_path, self.path)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

            self.write_count += 1
            logger.debug(f"Snapshot write #{self.write_count}: {len(snapshots)} trends")
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write trend snapshot: {e}")
            return False

    def read(self) -> Optional[dict]:
        """Read back the last written document, or None."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read trend snapshot: {e}")
            return None

    def clear(self):
        """Remove the snapshot file."""
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Cleared trend snapshot: {self.path}")
