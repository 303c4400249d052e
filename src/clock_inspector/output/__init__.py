"""Output adapters - text reports, JSON trend snapshots, health monitoring."""

from .health_server import HealthServer
from .snapshot_writer import SnapshotWriter
from . import report

__all__ = ['HealthServer', 'SnapshotWriter', 'report']
