"""
Unit tests for the CorrelationEngine.

Tests findings on synthetic streams, reference-time handling, trend
reporting and the engine/reporter lifecycle.
"""

import pytest

from clock_inspector.config import InspectorConfig
from clock_inspector.engine.correlation_engine import CorrelationEngine, EngineState
from clock_inspector.interfaces.records import (
    ClockKind,
    FindingKind,
    PacketEvent,
    PesTimestamps,
)
from clock_inspector.timing.clock_constants import PTS_CLOCK_HZ, SCR_CLOCK_HZ

VIDEO_PID = 0x100
SCR_PID = 0x31


class Collector:
    """Gathers engine callbacks."""

    def __init__(self):
        self.records = []
        self.findings = []
        self.trends = []

    def engine(self, config, **kwargs):
        return CorrelationEngine(
            config,
            on_record=self.records.append,
            on_finding=self.findings.append,
            on_trend=self.trends.append,
            **kwargs
        )

    def records_of(self, kind, pid=None):
        return [r for r in self.records if r.kind == kind and (pid is None or r.pid == pid)]


def synthetic_stream(ts, base_scr, frames=10, step_back_at=None):
    """
    SCR and video packets alternating, one second apart.

    PTS leads SCR by 5 s. With step_back_at, that frame's PTS is 2 s
    behind its predecessor and later frames continue from it.
    """
    packets = []
    pts = base_scr // 300 + 5 * PTS_CLOCK_HZ
    for i in range(frames):
        scr = base_scr + i * SCR_CLOCK_HZ
        if i > 0:
            pts += PTS_CLOCK_HZ
        if i == step_back_at:
            pts -= 3 * PTS_CLOCK_HZ
        wall = 5000.0 + i
        packets.append((ts.packet(SCR_PID, i, scr=scr, payload=False), wall, 2 * i * 188))
        packets.append((ts.packet(VIDEO_PID, i, pts=pts), wall, (2 * i + 1) * 188))
    return packets


class TestEndToEnd:
    """Test findings on a synthetic 20-packet stream."""

    def test_conformant_stream_has_no_findings(self, ts, base_scr, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr):
            engine.process_ts_packet(packet, wall, offset)

        assert collector.findings == []
        assert len(collector.records_of(ClockKind.SCR)) == 10

        pts = collector.records_of(ClockKind.PTS, VIDEO_PID)
        assert len(pts) == 10
        assert pts[0].delta_ticks == 0
        assert pts[1].delta_ms == pytest.approx(1000.0)
        assert pts[1].scr_delta_ms == pytest.approx(1000.0)
        assert pts[1].offset_to_scr_ms == pytest.approx(5000.0)
        assert all(r.drift_ms == pytest.approx(0.0) for r in pts)

    def test_backward_step_gives_one_excess_delta(self, ts, base_scr, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, step_back_at=5):
            engine.process_ts_packet(packet, wall, offset)

        assert len(collector.findings) == 1
        finding = collector.findings[0]
        assert finding.kind == FindingKind.EXCESS_CLOCK_DELTA
        assert finding.pid == VIDEO_PID
        assert finding.clock == ClockKind.PTS
        assert finding.data['delta_ms'] == pytest.approx(-2000.0)

        pts = collector.records_of(ClockKind.PTS, VIDEO_PID)
        assert pts[5].delta_ticks == -2 * PTS_CLOCK_HZ
        assert pts[6].delta_ticks == PTS_CLOCK_HZ
        assert pts[9].drift_ms == pytest.approx(-3000.0)
        assert engine.stats['findings']['EXCESS_CLOCK_DELTA'] == 1

    def test_pts_behind_pcr(self, ts, base_scr, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        engine.process_ts_packet(ts.packet(SCR_PID, 0, scr=base_scr, payload=False), 0.0)
        engine.process_ts_packet(ts.packet(VIDEO_PID, 0, pts=base_scr // 300 - 900), 0.0)

        kinds = [f.kind for f in collector.findings]
        assert kinds == [FindingKind.PTS_BEHIND_PCR]
        assert collector.findings[0].data['offset_ms'] == pytest.approx(-10.0)

    def test_excess_scr_delta(self, ts, base_scr, fast_config):
        """Two PES units 2 s of SCR apart with PTS 40 ms apart."""
        collector = Collector()
        engine = collector.engine(fast_config)
        pts = base_scr // 300 + 5 * PTS_CLOCK_HZ
        engine.process_ts_packet(ts.packet(SCR_PID, 0, scr=base_scr, payload=False), 0.0)
        engine.process_ts_packet(ts.packet(VIDEO_PID, 0, pts=pts), 0.0)
        engine.process_ts_packet(ts.packet(SCR_PID, 1, scr=base_scr + 2 * SCR_CLOCK_HZ, payload=False), 2.0)
        engine.process_ts_packet(ts.packet(VIDEO_PID, 1, pts=pts + 3600), 2.0)

        assert [f.kind for f in collector.findings] == [FindingKind.EXCESS_SCR_DELTA]

    def test_quiet_conformance(self, ts, base_scr):
        collector = Collector()
        config = InspectorConfig(max_drift_ms=1500, non_conformance_findings=False)
        engine = collector.engine(config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, step_back_at=5):
            engine.process_ts_packet(packet, wall, offset)
        assert collector.findings == []

    def test_dts_tracked_alongside_pts(self, ts, base_scr, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        pts = base_scr // 300 + PTS_CLOCK_HZ
        engine.process_ts_packet(ts.packet(SCR_PID, 0, scr=base_scr, payload=False), 0.0)
        engine.process_ts_packet(ts.packet(VIDEO_PID, 0, pts=pts, dts=pts - 3600), 0.0)

        dts = collector.records_of(ClockKind.DTS)
        assert len(dts) == 1
        assert dts[0].ticks == pts - 3600
        assert engine.pids[VIDEO_PID].dts.trend is not None


class TestContinuity:
    """Test continuity findings through the engine."""

    def test_sequence_with_duplicate(self, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        for cc in (0, 1, 2, 2, 4):
            engine.process_packet(PacketEvent(pid=VIDEO_PID, continuity_counter=cc, wall_time=0.0))

        assert len(collector.findings) == 1
        finding = collector.findings[0]
        assert finding.kind == FindingKind.CONTINUITY_GAP
        assert finding.data['expected'] == 3
        assert finding.data['got'] == 2

    def test_null_pid_ignored(self, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        for cc in (0, 5, 9):
            engine.process_packet(PacketEvent(pid=0x1FFF, continuity_counter=cc, wall_time=0.0))
        assert collector.findings == []

    def test_pid_summary(self, fast_config):
        engine = CorrelationEngine(fast_config)
        for pid, cc in [(0x100, 0), (0x100, 1), (0x100, 5), (0x200, 0)]:
            engine.process_packet(PacketEvent(pid=pid, continuity_counter=cc, wall_time=0.0))

        summary = {s.pid: s for s in engine.pid_summary()}
        assert summary[0x100].packets == 3
        assert summary[0x100].continuity_errors == 1
        assert summary[0x100].share_percent == pytest.approx(75.0)
        assert summary[0x200].share_percent == pytest.approx(25.0)


class TestReferenceTime:
    """Test pacing modes."""

    def _pes(self, pts, wall, cc):
        return PacketEvent(pid=VIDEO_PID, continuity_counter=cc, wall_time=wall,
                           payload_unit_start=True, pes=PesTimestamps(pts=pts))

    def test_fast_mode_waits_for_correlated_scr(self, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        for i in range(3):
            engine.process_packet(self._pes(i * PTS_CLOCK_HZ, float(i), i))

        pts = collector.records_of(ClockKind.PTS)
        assert all(r.drift_ms is None for r in pts)
        assert all(r.offset_to_scr_ticks is None for r in pts)
        assert not engine.pids[VIDEO_PID].pts.clock.is_established
        assert len(engine.pids[VIDEO_PID].pts.trend) == 0

    def test_realtime_uses_wall_time(self):
        collector = Collector()
        config = InspectorConfig(pacing='realtime', trend_warmup=0)
        engine = collector.engine(config)
        # PTS runs 1 ms per second fast against the wall clock
        for i in range(5):
            engine.process_packet(self._pes(i * (PTS_CLOCK_HZ + 90), 100.0 + i, i))

        pts = collector.records_of(ClockKind.PTS)
        assert pts[4].drift_ms == pytest.approx(4.0)
        assert len(engine.pids[VIDEO_PID].pts.trend) == 5


class TestOrdering:
    """Test presentation-order reconstruction through the engine."""

    def test_drain_ordered(self):
        engine = CorrelationEngine(InspectorConfig(reorder=True))
        for cc, frame in enumerate([0, 3, 1, 2]):
            engine.process_packet(PacketEvent(
                pid=VIDEO_PID, continuity_counter=cc, wall_time=0.0, byte_offset=cc * 188,
                payload_unit_start=True, pes=PesTimestamps(pts=frame * 3600)))

        ordered = engine.drain_ordered()
        assert list(ordered) == [VIDEO_PID]
        assert [i.ticks for i in ordered[VIDEO_PID]] == [0, 3600, 7200, 10800]
        assert engine.drain_ordered() == {}


class TestTrendReporting:
    """Test trend reports and lifecycle."""

    def _feed(self, engine, ts, base_scr, frames=10):
        for packet, wall, offset in synthetic_stream(ts, base_scr, frames=frames):
            engine.process_ts_packet(packet, wall, offset)

    def test_report_trends(self, ts, base_scr, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        self._feed(engine, ts, base_scr)

        snapshots = engine.report_trends()
        assert len(snapshots) == 1
        snap = snapshots[0]
        assert snap.pid == VIDEO_PID
        assert snap.clock == ClockKind.PTS
        assert snap.sample_count == 10
        assert snap.slope == pytest.approx(1.0)
        assert snap.deviation == pytest.approx(0.0, abs=1e-6)
        assert collector.trends == snapshots
        assert engine.last_snapshots == snapshots

    def test_single_sample_has_no_model(self, ts, base_scr, fast_config):
        engine = CorrelationEngine(fast_config)
        self._feed(engine, ts, base_scr, frames=1)
        snap = engine.report_trends()[0]
        assert snap.sample_count == 1
        assert not snap.has_model
        assert snap.r_squared is None

    def test_csv_export(self, ts, base_scr, tmp_path):
        config = InspectorConfig(trend_warmup=0, trend_report_level=2, trend_csv_dir=str(tmp_path))
        engine = CorrelationEngine(config)
        self._feed(engine, ts, base_scr)
        engine.report_trends()
        assert (tmp_path / 'trend_0x0100_pts.csv').exists()

    def test_snapshot_writer_receives_report(self, ts, base_scr, fast_config, tmp_path):
        from clock_inspector.output.snapshot_writer import SnapshotWriter

        writer = SnapshotWriter(str(tmp_path / 'trends.json'))
        engine = CorrelationEngine(fast_config, snapshot_writer=writer)
        self._feed(engine, ts, base_scr)
        engine.report_trends()
        assert writer.read()['trends'][0]['pid'] == VIDEO_PID

    def test_reporter_lifecycle(self, ts, base_scr):
        collector = Collector()
        config = InspectorConfig(trend_warmup=0, trend_report_level=1, trend_report_period=5)
        engine = collector.engine(config)

        engine.start()
        reporter = engine.reporter
        assert engine.state == EngineState.RUNNING
        assert reporter.is_alive()

        self._feed(engine, ts, base_scr)
        engine.stop()

        assert not reporter.is_alive()
        assert engine.reporter is None
        assert engine.state == EngineState.STOPPED
        assert engine.stats['trend_reports'] == 1
        assert len(collector.trends) == 1
        assert engine.pids[VIDEO_PID].pts.trend.closed

        engine.stop()
        assert engine.stats['trend_reports'] == 1

    def test_no_reporter_without_report_level(self, fast_config):
        engine = CorrelationEngine(fast_config)
        engine.start()
        assert engine.reporter is None
        engine.stop()
        assert engine.stats['trend_reports'] == 0

    def test_cannot_restart(self, fast_config):
        engine = CorrelationEngine(fast_config)
        engine.start()
        engine.stop()
        with pytest.raises(RuntimeError):
            engine.start()

    def test_run_processes_and_stops(self, ts, base_scr, fast_config):
        collector = Collector()
        engine = collector.engine(fast_config)
        packets = synthetic_stream(ts, base_scr, frames=3)
        packets.insert(1, (b'\x00' * 188, 0.0, 188))

        engine.run(packets)

        assert engine.state == EngineState.STOPPED
        assert engine.stats['packets'] == 6
        assert engine.stats['malformed_packets'] == 1
        assert len(collector.records_of(ClockKind.PTS)) == 3

    def test_stop_after(self, fast_config):
        now = [100.0]
        config = InspectorConfig(stop_after_seconds=10)
        engine = CorrelationEngine(config, wallclock=lambda: now[0])
        assert not engine.expired()

        engine.start()
        now[0] = 105.0
        assert not engine.expired()
        now[0] = 110.0
        assert engine.expired()
        engine.stop()


class TestResourceFailure:
    """Test allocation failure handling."""

    def test_trend_allocation_failure_disables_clock(self, ts, base_scr, fast_config, monkeypatch):
        import clock_inspector.engine.pid_state as pid_state

        def fail(*args, **kwargs):
            raise MemoryError()

        monkeypatch.setattr(pid_state, 'TrendEstimator', fail)

        collector = Collector()
        engine = collector.engine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, frames=4):
            engine.process_ts_packet(packet, wall, offset)

        disabled = [f for f in collector.findings if f.kind == FindingKind.TRACKING_DISABLED]
        assert len(disabled) == 1
        assert disabled[0].pid == VIDEO_PID
        assert disabled[0].clock == ClockKind.PTS

        pts = collector.records_of(ClockKind.PTS)
        assert len(pts) == 4
        assert all(r.drift_ms is None for r in pts)
        assert engine.report_trends() == []

    def test_reorder_insert_failure_disables_reordering(self, ts, base_scr, fast_config, monkeypatch):
        from clock_inspector.timing.ordered_timestamps import OrderedTimestampReconstructor

        def fail(self, *args, **kwargs):
            raise MemoryError()

        monkeypatch.setattr(OrderedTimestampReconstructor, 'insert', fail)
        fast_config.reorder = True

        collector = Collector()
        engine = collector.engine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, frames=5):
            engine.process_ts_packet(packet, wall, offset)

        disabled = [f for f in collector.findings if f.kind == FindingKind.TRACKING_DISABLED]
        assert len(disabled) == 1
        assert disabled[0].pid == VIDEO_PID
        assert disabled[0].clock == ClockKind.PTS
        assert disabled[0].data == {'reorder': True}

        state = engine.pids[VIDEO_PID]
        assert state.reorder_disabled
        assert state.reconstructor is None
        assert engine.drain_ordered() == {}

        pts = collector.records_of(ClockKind.PTS)
        assert len(pts) == 5
        assert pts[-1].drift_ms == pytest.approx(0.0)

    def test_reorder_allocation_failure_is_not_retried(self, ts, base_scr, fast_config, monkeypatch):
        import clock_inspector.engine.pid_state as pid_state

        attempts = []

        def fail(*args, **kwargs):
            attempts.append(args)
            raise MemoryError()

        monkeypatch.setattr(pid_state, 'OrderedTimestampReconstructor', fail)
        fast_config.reorder = True

        collector = Collector()
        engine = collector.engine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, frames=5):
            engine.process_ts_packet(packet, wall, offset)

        assert len(attempts) == 1
        disabled = [f for f in collector.findings if f.kind == FindingKind.TRACKING_DISABLED]
        assert len(disabled) == 1
        assert disabled[0].clock == ClockKind.PTS
        assert engine.pids[VIDEO_PID].reorder_disabled
        assert len(collector.records_of(ClockKind.PTS)) == 5
        assert engine.drain_ordered() == {}

    def test_status_omits_drift_of_disabled_clock(self, ts, base_scr, fast_config, monkeypatch):
        import clock_inspector.engine.pid_state as pid_state

        def fail(*args, **kwargs):
            raise MemoryError()

        monkeypatch.setattr(pid_state, 'TrendEstimator', fail)
        engine = CorrelationEngine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, frames=3):
            engine.process_ts_packet(packet, wall, offset)

        entry = engine.get_status()['pids']['0x0100']
        assert entry['pts_count'] == 3
        assert 'pts_drift_ms' not in entry


class TestStatus:
    """Test status reporting."""

    def test_get_status(self, ts, base_scr, fast_config):
        engine = CorrelationEngine(fast_config)
        for packet, wall, offset in synthetic_stream(ts, base_scr, frames=3):
            engine.process_ts_packet(packet, wall, offset)
        engine.report_trends()

        status = engine.get_status()
        assert status['state'] == 'IDLE'
        assert status['packets'] == 6
        assert status['pids']['0x0031']['scr'] == base_scr + 2 * SCR_CLOCK_HZ
        assert status['pids']['0x0100']['pts_count'] == 3
        assert status['pids']['0x0100']['pts_drift_ms'] == pytest.approx(0.0)
        assert status['trends'][0]['pid'] == VIDEO_PID
