#!/usr/bin/env python3
"""
clock-inspector: MPEG-TS clock correlation and drift analysis

Reads a transport stream and reports, per PID:
1. SCR (PCR) progression and stream time
2. PTS/DTS deltas and their offset to the correlated SCR
3. Continuity counter errors and timing non-conformance findings
4. Periodic linear-regression trends of each timestamp clock against
   the reference time (wall clock or correlated SCR)

Usage:
    # Analyze a recording, print PTS/DTS records, trend report every 15s
    clock-inspector -i capture.ts -p -L

    # Live capture piped in, wall clock as reference, stop after 10 minutes
    clock-inspector -i /dev/stdin --pacing realtime -t 600 -L -L
"""

import argparse
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

# Set up logging before imports that use it
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger('clock-inspector')

from .config import InspectorConfig, load_config
from .engine.correlation_engine import CorrelationEngine
from .ingest.file_source import file_size, read_packets, with_progress
from .interfaces.records import ClockKind, Finding, TimingRecord, TrendSnapshot
from .output import report
from .output.health_server import HealthServer
from .output.snapshot_writer import SnapshotWriter


def parse_initial_time(value: str) -> float:
    """
    Parse a YYYYMMDDHHMMSS UTC timestamp.

    Raises:
        argparse.ArgumentTypeError: malformed value
    """
    try:
        dt = datetime.strptime(value, '%Y%m%d%H%M%S').replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Initial time must be YYYYMMDDHHMMSS, got {value!r}")
    return dt.timestamp()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='clock-inspector',
        description='clock-inspector: MPEG-TS PCR/PTS/DTS clock correlation and drift analysis',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # SCR and PTS records for a file, PCR on PID 0x100
    clock-inspector -i capture.ts -S 0x100 -s -p

    # Progress every 10% of a large capture
    clock-inspector -i capture.ts -P

    # Trend report every 30s with CSV export of each trend window
    clock-inspector -i capture.ts -L -L -B 30 -c config.toml

    # Expose /status and /metrics while analyzing a live feed
    clock-inspector -i /dev/stdin --pacing realtime --health-port 8080 -L
        """
    )

    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Transport stream file to analyze (/dev/stdin for a pipe)'
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to TOML configuration file'
    )
    parser.add_argument(
        '--scr-pid', '-S',
        type=lambda v: int(v, 16),
        help='PID carrying the SCR used for correlation, in hex (default: 0x31)'
    )
    parser.add_argument(
        '--max-drift', '-D',
        type=float,
        help='Report PTS/DTS/SCR deltas at or above this many ms (default: 700)'
    )
    parser.add_argument(
        '--reorder', '-R',
        action='store_true',
        help='Reconstruct presentation order of PTS values and dump it at exit'
    )
    parser.add_argument(
        '--quiet-conformance', '-Z',
        action='store_true',
        help='Suppress timing non-conformance findings'
    )
    parser.add_argument(
        '-L',
        dest='trend_level',
        action='count',
        default=0,
        help='Trend reporting: -L report, -LL also CSV dump, -LLL also full dataset'
    )
    parser.add_argument(
        '--pes-delivery', '-Y',
        action='store_true',
        help='Report how long each PES unit took to arrive'
    )
    parser.add_argument(
        '--stop-after', '-t',
        type=float,
        help='Stop after this many seconds'
    )
    parser.add_argument(
        '--trend-size', '-A',
        type=int,
        help='Trend window size in samples (default: 216000, minimum 60)'
    )
    parser.add_argument(
        '--report-period', '-B',
        type=float,
        help='Trend report period in seconds (default: 15, minimum 5)'
    )
    parser.add_argument(
        '--initial-time', '-T',
        type=parse_initial_time,
        help='UTC calendar time of the first SCR, as YYYYMMDDHHMMSS'
    )
    parser.add_argument(
        '-s',
        dest='print_scr',
        action='store_true',
        help='Print SCR records'
    )
    parser.add_argument(
        '-p',
        dest='print_pes',
        action='store_true',
        help='Print PTS/DTS records'
    )
    parser.add_argument(
        '--progress', '-P',
        action='store_true',
        help='Log the percentage of the input processed every 10%%'
    )
    parser.add_argument(
        '--pacing',
        choices=['realtime', 'fast'],
        help='Reference time: capture wall time (realtime) or stream SCR time (fast)'
    )
    parser.add_argument(
        '--snapshot-path',
        help='Write each trend report atomically to this JSON file'
    )
    parser.add_argument(
        '--trend-csv-dir',
        help='Directory for trend CSV exports (used with -LL)'
    )
    parser.add_argument(
        '--health-port',
        type=int,
        help='HTTP port for health monitoring endpoint (default: 0, disabled)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    return parser


def apply_overrides(config: InspectorConfig, args: argparse.Namespace) -> InspectorConfig:
    """Overlay command-line options on the file configuration."""
    values = config.to_dict()
    overrides = {
        'scr_pid': args.scr_pid,
        'max_drift_ms': args.max_drift,
        'stop_after_seconds': args.stop_after,
        'trend_capacity': args.trend_size,
        'trend_report_period': args.report_period,
        'initial_time': args.initial_time,
        'pacing': args.pacing,
        'snapshot_path': args.snapshot_path,
        'trend_csv_dir': args.trend_csv_dir,
        'health_port': args.health_port,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    if args.reorder:
        values['reorder'] = True
    if args.quiet_conformance:
        values['non_conformance_findings'] = False
    if args.pes_delivery:
        values['pes_delivery_report'] = True
    if args.trend_level:
        values['trend_report_level'] = args.trend_level
    if values['trend_report_level'] >= 2 and not values['trend_csv_dir']:
        values['trend_csv_dir'] = '.'

    return InspectorConfig(**values)


def main(argv: Optional[list] = None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = apply_overrides(load_config(args.config), args)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    finding_logger = logging.getLogger('clock-inspector.findings')
    trend_logger = logging.getLogger('clock-inspector.trend')

    def on_record(record: TimingRecord):
        if record.kind == ClockKind.SCR:
            if args.print_scr:
                print(report.format_record(record))
        elif args.print_pes:
            print(report.format_record(record))
        logger.debug(f"{record.kind.value} 0x{record.pid:04x} #{record.sequence} ticks={record.ticks}")

    def on_finding(finding: Finding):
        finding_logger.warning(report.format_finding(finding))

    def on_trend(snapshot: TrendSnapshot):
        trend_logger.info(report.format_trend(snapshot))

    snapshot_writer = SnapshotWriter(config.snapshot_path) if config.snapshot_path else None

    engine = CorrelationEngine(
        config,
        on_record=on_record,
        on_finding=on_finding,
        on_trend=on_trend,
        snapshot_writer=snapshot_writer,
    )

    health_server = None
    if config.health_port > 0:
        health_server = HealthServer(port=config.health_port)
        health_server.set_engine(engine)
        health_server.start()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        engine.running = False

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    size = file_size(args.input)
    logger.info(f"Analyzing {args.input}" + (f" ({size} bytes)" if size else ""))

    packets = read_packets(args.input)
    if args.progress:
        packets = with_progress(packets, size)

    try:
        engine.run(packets)
    except OSError as e:
        logger.error(f"Cannot read {args.input}: {e}")
        sys.exit(1)
    finally:
        if health_server:
            health_server.stop()

    for line in report.format_pid_summary(engine.pid_summary()):
        print(line)

    if config.reorder:
        for pid, items in engine.drain_ordered().items():
            for line in report.format_ordered(pid, items):
                print(line)


if __name__ == '__main__':
    main()
