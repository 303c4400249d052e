#!/usr/bin/env python3
"""
Clock Correlation Engine

Consumes one transport packet at a time and correlates the clocks it
carries: the SCR (PCR) of each PID, and the PTS/DTS of PES headers
against the SCR of the configured correlation PID and against a
reference time.

Architecture:
    ┌──────────────┐    PacketEvent    ┌───────────────────────────────┐
    │ parsing      │ ────────────────▶ │ CorrelationEngine             │
    │ collaborator │                   │   pids{pid: PidClockState}    │
    └──────────────┘                   │     ├─ continuity             │
                                       │     ├─ SCR timeline           │
                                       │     └─ PTS/DTS ClockTracks    │
                                       └──────┬──────────────┬─────────┘
                                TimingRecord  │              │ TrendEstimator
                                Finding       ▼              ▼
                                       callbacks      TrendReporter thread
                                                      (every report period)

Reference time:
    REALTIME - capture wall time of the packet
    FAST     - stream time of the correlation PID's SCR; timestamp clocks
               stay unanchored until that SCR has been seen

Findings are advisory; nothing halts packet processing.
"""

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..config import InspectorConfig
from ..interfaces.records import (
    ClockKind,
    Finding,
    FindingKind,
    OrderedTimestamp,
    PacketEvent,
    Pacing,
    PesDelivery,
    PidSummary,
    TimingRecord,
    TrendSnapshot,
)
from ..ingest.ts_packet import to_packet_event
from ..timing.clock_constants import (
    MAX_PTS_VALUE,
    MAX_SCR_VALUE,
    PTS_BACKWARD_WRAP_TICKS,
    PTS_CLOCK_HZ,
    pts_ticks_to_ms,
    pts_to_scr_ticks,
    scr_ticks_to_ms,
)
from ..timing.clock_model import clock_diff, forward_diff
from .pid_state import ClockTrack, PidClockState

logger = logging.getLogger('clock-inspector.engine')

REPORTER_POLL_INTERVAL = 0.25   # seconds between reporter wake-ups

RecordCallback = Callable[[TimingRecord], None]
FindingCallback = Callable[[Finding], None]
TrendCallback = Callable[[TrendSnapshot], None]


class EngineState(Enum):
    """Correlation engine lifecycle."""
    IDLE = "IDLE"          # created, reporter not running
    RUNNING = "RUNNING"    # reporter running, accepting packets
    STOPPED = "STOPPED"    # final report done, trend buffers released


class TrendReporter(threading.Thread):
    """
    Periodic trend reporting task.

    Wakes every REPORTER_POLL_INTERVAL seconds so that shutdown is noticed
    quickly, and asks the engine for a report once per period.
    """

    def __init__(self, engine: "CorrelationEngine", period: float):
        super().__init__(name="TrendReporter", daemon=True)
        self.engine = engine
        self.period = period
        self.reports = 0

    def run(self):
        logger.info(f"Trend reporter started (every {self.period:.0f}s)")
        next_report = time.monotonic() + self.period

        while self.engine.running:
            try:
                time.sleep(REPORTER_POLL_INTERVAL)
                if not self.engine.running or time.monotonic() < next_report:
                    continue
                self.engine.report_trends()
                self.reports += 1
                next_report = time.monotonic() + self.period
            except Exception as e:
                logger.exception(f"Trend report error: {e}")

        logger.info("Trend reporter stopped")


class CorrelationEngine:
    """
    Per-PID clock correlation and drift trending.

    Packet ingestion is single-threaded. The only concurrent reader is the
    TrendReporter, which works on estimator snapshots.
    """

    def __init__(
        self,
        config: Optional[InspectorConfig] = None,
        on_record: Optional[RecordCallback] = None,
        on_finding: Optional[FindingCallback] = None,
        on_trend: Optional[TrendCallback] = None,
        snapshot_writer=None,
        wallclock: Callable[[], float] = time.time
    ):
        """
        Initialize the engine.

        Args:
            config: Engine options (defaults when None)
            on_record: Called with every SCR/PTS/DTS TimingRecord
            on_finding: Called with every Finding
            on_trend: Called with every TrendSnapshot of a report
            snapshot_writer: Optional SnapshotWriter receiving each report
            wallclock: Time source for start time and report timestamps
        """
        self.config = config or InspectorConfig()
        self.on_record = on_record
        self.on_finding = on_finding
        self.on_trend = on_trend
        self.snapshot_writer = snapshot_writer
        self._wallclock = wallclock

        self.pids: Dict[int, PidClockState] = {}
        self.state = EngineState.IDLE
        self.running = False
        self.reporter: Optional[TrendReporter] = None

        self.initial_time: Optional[float] = self.config.initial_time
        self.current_stream_time: Optional[float] = None
        self.last_snapshots: List[TrendSnapshot] = []
        self._snapshot_lock = threading.Lock()

        self.stats = {
            'start_time': 0.0,
            'packets': 0,
            'malformed_packets': 0,
            'scr_updates': 0,
            'pes_timestamps': 0,
            'trend_reports': 0,
            'findings': {kind.value: 0 for kind in FindingKind},
        }

        logger.info("=" * 60)
        logger.info("CorrelationEngine initializing")
        logger.info(f"  SCR pid: 0x{self.config.scr_pid:04x}")
        logger.info(f"  Max drift: {self.config.max_drift_ms} ms")
        logger.info(f"  Pacing: {self.config.pacing}")
        logger.info(f"  Trend: capacity={self.config.trend_capacity} "
                    f"warmup={self.config.trend_warmup} "
                    f"report level={self.config.trend_report_level}")
        logger.info("=" * 60)

    # ------------------------------------------------------------------
    # Packet ingestion
    # ------------------------------------------------------------------

    def process_ts_packet(self, packet: bytes, wall_time: float, byte_offset: int = 0) -> List[Finding]:
        """
        Parse and process one raw 188-byte packet.

        Malformed packets are counted and skipped.
        """
        try:
            event = to_packet_event(packet, wall_time, byte_offset)
        except ValueError as e:
            self.stats['malformed_packets'] += 1
            logger.debug(f"Skipping malformed packet at offset {byte_offset}: {e}")
            return []
        return self.process_packet(event)

    def process_packet(self, event: PacketEvent) -> List[Finding]:
        """
        Process one parsed packet.

        Args:
            event: Extracted packet fields

        Returns:
            Findings raised by this packet (also sent to on_finding)
        """
        if self.initial_time is None:
            self.initial_time = event.wall_time

        findings: List[Finding] = []
        state = self._state(event.pid)
        self.stats['packets'] += 1

        gap = state.check_continuity(event.continuity_counter, event.has_payload)
        if gap is not None:
            expected, got = gap
            findings.append(Finding(
                kind=FindingKind.CONTINUITY_GAP,
                pid=event.pid,
                message=f"PID 0x{event.pid:04x} CC error, expected {expected:02x} got {got:02x}",
                stream_time=self.current_stream_time,
                data={'expected': expected, 'got': got, 'byte_offset': event.byte_offset},
            ))

        if event.scr_ticks is not None:
            self._process_scr(state, event)

        delivery = state.note_pes_progress(
            event.payload_unit_start,
            self._correlated_scr(unwrapped=True),
            event.wall_time
        )

        if event.pes is not None and event.pes.pts is not None and event.pid > 0:
            findings.extend(self._process_pes(state, event, delivery))

        for finding in findings:
            self._emit_finding(finding)
        return findings

    def _state(self, pid: int) -> PidClockState:
        state = self.pids.get(pid)
        if state is None:
            state = PidClockState(pid)
            self.pids[pid] = state
            logger.debug(f"New PID 0x{pid:04x}")
        return state

    def _process_scr(self, state: PidClockState, event: PacketEvent):
        delta, stream_time = state.update_scr(event.scr_ticks, event.wall_time, self.initial_time)
        self.current_stream_time = stream_time
        self.stats['scr_updates'] += 1

        # In FAST mode the SCR is its own reference, so drift is undefined
        drift_ms = None
        if self.config.pacing_mode == Pacing.REALTIME:
            drift_ms = state.scr_clock.get_drift_ms(event.wall_time)

        self._emit_record(TimingRecord(
            kind=ClockKind.SCR,
            pid=event.pid,
            sequence=state.scr_update_count,
            byte_offset=event.byte_offset,
            ticks=event.scr_ticks,
            delta_ticks=delta,
            wall_time=event.wall_time,
            stream_time=stream_time,
            drift_ms=drift_ms,
        ))

    def _correlated_scr(self, unwrapped: bool = False) -> Optional[int]:
        """Latest SCR of the correlation PID, or None before it is seen."""
        scr_state = self.pids.get(self.config.scr_pid)
        if scr_state is None:
            return None
        return scr_state.scr if unwrapped else scr_state.scr_raw

    def reference_time(self, wall_time: float) -> Optional[float]:
        """
        Time that timestamp clocks are compared against.

        Returns:
            Capture time (REALTIME), correlation-PID stream time (FAST),
            or None in FAST mode before that PID's first SCR
        """
        if self.config.pacing_mode == Pacing.REALTIME:
            return wall_time
        scr_state = self.pids.get(self.config.scr_pid)
        if scr_state is None:
            return None
        return scr_state.stream_time

    def _process_pes(
        self,
        state: PidClockState,
        event: PacketEvent,
        delivery: Optional[PesDelivery]
    ) -> List[Finding]:
        findings: List[Finding] = []
        reference = self.reference_time(event.wall_time)
        correlated = self._correlated_scr()

        findings.extend(self._process_timestamp(
            state, ClockKind.PTS, event.pes.pts, event, reference, correlated, delivery))
        if event.pes.dts is not None:
            findings.extend(self._process_timestamp(
                state, ClockKind.DTS, event.pes.dts, event, reference, correlated, None))

        return findings

    def _process_timestamp(
        self,
        state: PidClockState,
        kind: ClockKind,
        ticks: int,
        event: PacketEvent,
        reference: Optional[float],
        correlated: Optional[int],
        delivery: Optional[PesDelivery]
    ) -> List[Finding]:
        findings: List[Finding] = []
        track = state.track(kind)
        track.count += 1
        self.stats['pes_timestamps'] += 1

        # Tick delta to the previous timestamp; > 10 s forward is a backward step
        if track.last_ticks is None:
            delta = 0
        else:
            delta = forward_diff(track.last_ticks, ticks, MAX_PTS_VALUE)
            if delta > PTS_BACKWARD_WRAP_TICKS:
                delta -= MAX_PTS_VALUE
        track.diff_ticks = delta
        track.last_ticks = ticks

        # SCR elapsed since the previous timestamp on this track
        scr_delta_ms = None
        if correlated is not None:
            if track.last_scr is not None:
                scr_delta_ms = scr_ticks_to_ms(clock_diff(track.last_scr, correlated, MAX_SCR_VALUE))
            else:
                scr_delta_ms = 0.0
            track.last_scr = correlated

        offset_ticks = None
        if correlated is not None:
            offset_ticks = clock_diff(correlated, pts_to_scr_ticks(ticks), MAX_SCR_VALUE)

        drift_ms = self._track_clock(state, track, ticks, reference, findings)

        if self.config.reorder and kind == ClockKind.PTS:
            self._reorder(state, track.count, ticks, event.byte_offset, findings)

        if self.config.non_conformance_findings:
            findings.extend(self._check_timestamp(
                state.pid, track, delta, scr_delta_ms, offset_ticks))

        self._emit_record(TimingRecord(
            kind=kind,
            pid=state.pid,
            sequence=track.count,
            byte_offset=event.byte_offset,
            ticks=ticks,
            delta_ticks=delta,
            wall_time=event.wall_time,
            stream_time=self.current_stream_time,
            drift_ms=drift_ms,
            scr_delta_ms=scr_delta_ms,
            offset_to_scr_ticks=offset_ticks,
            delivery=delivery if self.config.pes_delivery_report else None,
        ))
        return findings

    def _track_clock(
        self,
        state: PidClockState,
        track: ClockTrack,
        ticks: int,
        reference: Optional[float],
        findings: List[Finding]
    ) -> Optional[float]:
        """Advance the track's clock model and trend; returns drift in ms."""
        was_disabled = track.disabled
        if not state.ensure_track(track.kind, self.config.trend_capacity, self.config.trend_warmup):
            if not was_disabled:
                findings.append(Finding(
                    kind=FindingKind.TRACKING_DISABLED,
                    pid=state.pid,
                    clock=track.kind,
                    message=f"PID 0x{state.pid:04x} {track.kind.value} tracking disabled "
                            f"(trend allocation failed)",
                    stream_time=self.current_stream_time,
                ))
            return None

        unwrapped = track.clock.set_ticks(ticks)
        if reference is None:
            return None

        track.clock.establish_wallclock(unwrapped, reference)
        track.trend.add(reference, unwrapped / PTS_CLOCK_HZ)
        return track.clock.get_drift_ms(reference)

    def _reorder(
        self,
        state: PidClockState,
        sequence: int,
        ticks: int,
        byte_offset: int,
        findings: List[Finding]
    ):
        """Queue a PTS for presentation-order output; disables reordering on MemoryError."""
        if state.reorder_disabled:
            return

        reconstructor = state.ensure_reconstructor()
        if reconstructor is not None:
            try:
                reconstructor.insert(sequence, ticks, byte_offset)
                return
            except MemoryError:
                state.disable_reorder()

        findings.append(Finding(
            kind=FindingKind.TRACKING_DISABLED,
            pid=state.pid,
            clock=ClockKind.PTS,
            message=f"PID 0x{state.pid:04x} PTS reordering disabled (reorder buffer allocation failed)",
            stream_time=self.current_stream_time,
            data={'reorder': True},
        ))

    def _check_timestamp(
        self,
        pid: int,
        track: ClockTrack,
        delta: int,
        scr_delta_ms: Optional[float],
        offset_ticks: Optional[int]
    ) -> List[Finding]:
        findings: List[Finding] = []
        kind = track.kind
        max_drift = self.config.max_drift_ms

        if kind == ClockKind.PTS and offset_ticks is not None and offset_ticks < 0:
            findings.append(Finding(
                kind=FindingKind.PTS_BEHIND_PCR,
                pid=pid,
                clock=kind,
                message=f"PID 0x{pid:04x} PTS is {scr_ticks_to_ms(-offset_ticks):.3f} ms behind PCR",
                stream_time=self.current_stream_time,
                data={'offset_ticks': offset_ticks, 'offset_ms': scr_ticks_to_ms(offset_ticks)},
            ))

        # Delta checks need a predecessor
        if track.count < 2:
            return findings

        delta_ms = pts_ticks_to_ms(delta)
        if abs(delta_ms) >= max_drift:
            findings.append(Finding(
                kind=FindingKind.EXCESS_CLOCK_DELTA,
                pid=pid,
                clock=kind,
                message=f"PID 0x{pid:04x} {kind.value} delta {delta_ms:.3f} ms "
                        f"exceeds {max_drift} ms",
                stream_time=self.current_stream_time,
                data={'delta_ticks': delta, 'delta_ms': delta_ms},
            ))

        if scr_delta_ms is not None and abs(scr_delta_ms) >= max_drift:
            findings.append(Finding(
                kind=FindingKind.EXCESS_SCR_DELTA,
                pid=pid,
                clock=kind,
                message=f"PID 0x{pid:04x} SCR advanced {scr_delta_ms:.3f} ms between "
                        f"{kind.value} values, exceeds {max_drift} ms",
                stream_time=self.current_stream_time,
                data={'scr_delta_ms': scr_delta_ms},
            ))

        return findings

    def _emit_record(self, record: TimingRecord):
        if self.on_record:
            try:
                self.on_record(record)
            except Exception as e:
                logger.warning(f"Record callback error: {e}")

    def _emit_finding(self, finding: Finding):
        self.stats['findings'][finding.kind.value] += 1
        logger.debug(f"Finding: {finding.message}")
        if self.on_finding:
            try:
                self.on_finding(finding)
            except Exception as e:
                logger.warning(f"Finding callback error: {e}")

    # ------------------------------------------------------------------
    # Trend reporting
    # ------------------------------------------------------------------

    def report_trends(self) -> List[TrendSnapshot]:
        """
        Fit every allocated trend and publish the results.

        Each estimator is snapshotted under its own lock and fitted on the
        copy, so ingestion is never blocked by the fit or export.
        """
        level = self.config.trend_report_level
        snapshots: List[TrendSnapshot] = []
        timestamp = self._wallclock()

        for pid, state in sorted(list(self.pids.items())):
            for kind, trend in list(state.trends()):
                if trend.closed:
                    continue
                dup = trend.snapshot()
                fit = dup.compute_linear_fit()
                snapshot = TrendSnapshot(
                    pid=pid,
                    clock=kind,
                    name=dup.name,
                    sample_count=dup.count,
                    slope=fit.slope if fit else None,
                    intercept=fit.intercept if fit else None,
                    deviation=fit.deviation if fit else None,
                    r_squared=dup.compute_r_squared(fit),
                    timestamp=timestamp,
                )
                snapshots.append(snapshot)

                if level >= 2 and self.config.trend_csv_dir:
                    path = Path(self.config.trend_csv_dir) / f"trend_0x{pid:04x}_{kind.value.lower()}.csv"
                    try:
                        dup.save_csv(path)
                    except OSError as e:
                        logger.warning(f"Could not export trend '{dup.name}': {e}")

                if level >= 3:
                    x, y = dup.samples()
                    logger.info(f"Trend '{dup.name}' dataset ({len(x)} samples):")
                    for xi, yi in zip(x, y):
                        logger.info(f"  {xi:.6f}, {yi:.9f}")

        with self._snapshot_lock:
            self.last_snapshots = snapshots
        self.stats['trend_reports'] += 1

        if self.snapshot_writer is not None:
            self.snapshot_writer.write(snapshots)

        for snapshot in snapshots:
            if self.on_trend:
                try:
                    self.on_trend(snapshot)
                except Exception as e:
                    logger.warning(f"Trend callback error: {e}")

        return snapshots

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the engine and, when reporting is enabled, the reporter."""
        if self.running:
            logger.warning("Engine already running")
            return
        if self.state == EngineState.STOPPED:
            raise RuntimeError("Engine cannot be restarted after stop()")

        logger.info("Starting CorrelationEngine...")
        self.running = True
        self.state = EngineState.RUNNING
        self.stats['start_time'] = self._wallclock()
        if self.initial_time is None:
            self.initial_time = self.stats['start_time']

        if self.config.trend_report_level > 0:
            self.reporter = TrendReporter(self, self.config.trend_report_period)
            self.reporter.start()

        logger.info("CorrelationEngine started")

    def stop(self):
        """
        Stop the engine.

        The reporter is joined before the final report; trend buffers are
        released only after it. Calling stop() again is a no-op.
        """
        if self.state == EngineState.STOPPED:
            return

        logger.info("Stopping CorrelationEngine...")
        self.running = False

        if self.reporter is not None:
            while self.reporter.is_alive():
                self.reporter.join(timeout=REPORTER_POLL_INTERVAL * 2)
            self.reporter = None

        if self.config.trend_report_level > 0:
            try:
                self.report_trends()
            except Exception as e:
                logger.exception(f"Final trend report failed: {e}")

        for state in self.pids.values():
            state.release_trends()

        self.state = EngineState.STOPPED

        uptime = self._wallclock() - self.stats['start_time'] if self.stats['start_time'] else 0.0
        logger.info("CorrelationEngine stopped")
        logger.info(f"  Uptime: {uptime:.1f}s")
        logger.info(f"  Packets: {self.stats['packets']} "
                    f"({self.stats['malformed_packets']} malformed)")
        logger.info(f"  PIDs: {len(self.pids)}")
        logger.info(f"  Trend reports: {self.stats['trend_reports']}")
        for kind, count in self.stats['findings'].items():
            if count:
                logger.info(f"  {kind}: {count}")

    def expired(self, now: Optional[float] = None) -> bool:
        """True once the configured stop time has elapsed since start()."""
        if self.config.stop_after_seconds <= 0 or not self.stats['start_time']:
            return False
        if now is None:
            now = self._wallclock()
        return now - self.stats['start_time'] >= self.config.stop_after_seconds

    def run(self, packets: Iterable[Tuple[bytes, float, int]]):
        """
        Process a packet source until exhausted, stopped or expired.

        Args:
            packets: (packet, wall_time, byte_offset) tuples
        """
        if not self.running:
            self.start()

        try:
            for packet, wall_time, byte_offset in packets:
                if not self.running:
                    break
                if self.expired():
                    logger.info(f"Stop time of {self.config.stop_after_seconds}s reached")
                    break
                self.process_ts_packet(packet, wall_time, byte_offset)
        finally:
            self.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def drain_ordered(self) -> Dict[int, List[OrderedTimestamp]]:
        """Presentation-ordered PTS values per PID; empties the buffers."""
        result = {}
        for pid, state in sorted(self.pids.items()):
            if state.reconstructor is not None and len(state.reconstructor):
                result[pid] = state.reconstructor.drain()
        return result

    def pid_summary(self) -> List[PidSummary]:
        """Packet totals and share of the multiplex per PID."""
        total = self.stats['packets']
        return [
            PidSummary(
                pid=pid,
                packets=state.packet_count,
                continuity_errors=state.continuity_error_count,
                share_percent=100.0 * state.packet_count / total if total else 0.0,
            )
            for pid, state in sorted(self.pids.items())
        ]

    def get_status(self) -> Dict[str, Any]:
        """JSON-safe engine status for the health server."""
        now = self._wallclock()
        with self._snapshot_lock:
            trends = [s.to_dict() for s in self.last_snapshots]

        pids = {}
        for pid, state in sorted(list(self.pids.items())):
            entry = {
                'packets': state.packet_count,
                'continuity_errors': state.continuity_error_count,
                'pts_count': state.pts.count,
                'dts_count': state.dts.count,
            }
            if state.scr is not None:
                entry['scr'] = state.scr_raw
                entry['stream_time'] = state.stream_time
            for track in (state.pts, state.dts):
                if track.is_tracking and track.clock.is_established:
                    drift = track.clock.get_drift_ms(self.reference_time(now))
                    if drift is not None:
                        entry[f'{track.kind.value.lower()}_drift_ms'] = drift
            pids[f"0x{pid:04x}"] = entry

        return {
            'timestamp': now,
            'state': self.state.value,
            'uptime_seconds': now - self.stats['start_time'] if self.stats['start_time'] else 0.0,
            'packets': self.stats['packets'],
            'malformed_packets': self.stats['malformed_packets'],
            'trend_reports': self.stats['trend_reports'],
            'findings': dict(self.stats['findings']),
            'pids': pids,
            'trends': trends,
        }
