"""
Tests for configuration loading and command-line overrides.
"""

import logging

import pytest

from clock_inspector.config import InspectorConfig, load_config
from clock_inspector.interfaces.records import Pacing


class TestInspectorConfig:
    """Test defaults, validation and clamping."""

    def test_defaults(self):
        config = InspectorConfig()
        assert config.scr_pid == 0x31
        assert config.max_drift_ms == 700
        assert config.trend_capacity == 216000
        assert config.trend_warmup == 16
        assert config.trend_report_period == 15
        assert config.trend_report_level == 0
        assert config.non_conformance_findings is True
        assert config.pacing_mode == Pacing.FAST

    def test_hex_pid_string(self):
        assert InspectorConfig(scr_pid="0x100").scr_pid == 0x100

    def test_pid_out_of_range(self):
        with pytest.raises(ValueError):
            InspectorConfig(scr_pid=0x2000)

    def test_unknown_pacing(self):
        with pytest.raises(ValueError):
            InspectorConfig(pacing="slow")

    def test_negative_drift(self):
        with pytest.raises(ValueError):
            InspectorConfig(max_drift_ms=-1)

    def test_floors_are_clamped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = InspectorConfig(trend_capacity=10, trend_report_period=1)
        assert config.trend_capacity == 60
        assert config.trend_report_period == 5
        assert "too small" in caplog.text

    def test_from_sectioned_dict(self):
        config = InspectorConfig.from_dict({
            'engine': {'scr_pid': '0x44', 'pacing': 'realtime', 'reorder': True},
            'trend': {'capacity': 1000, 'report_level': 2},
            'output': {'health_port': 8080},
        })
        assert config.scr_pid == 0x44
        assert config.pacing_mode == Pacing.REALTIME
        assert config.reorder is True
        assert config.trend_capacity == 1000
        assert config.trend_report_level == 2
        assert config.health_port == 8080

    def test_from_flat_dict_ignores_unknown(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = InspectorConfig.from_dict({'max_drift_ms': 40, 'bogus': 1})
        assert config.max_drift_ms == 40
        assert "bogus" in caplog.text


class TestLoadConfig:
    """Test TOML loading."""

    def test_no_path_gives_defaults(self):
        assert load_config(None) == InspectorConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(str(tmp_path / 'nope.toml'))

    def test_toml_file(self, tmp_path):
        path = tmp_path / 'config.toml'
        path.write_text(
            '[engine]\n'
            'scr_pid = "0x100"\n'
            'max_drift_ms = 250\n'
            '\n'
            '[trend]\n'
            'warmup = 4\n'
        )
        config = load_config(str(path))
        assert config.scr_pid == 0x100
        assert config.max_drift_ms == 250
        assert config.trend_warmup == 4


class TestCommandLine:
    """Test argument parsing and override layering."""

    def test_overrides(self):
        from clock_inspector.main import apply_overrides, build_parser

        args = build_parser().parse_args([
            '-i', 'x.ts', '-S', '100', '-D', '300', '-R', '-Z', '-L', '-L',
            '-A', '500', '-T', '20240101000000', '--pacing', 'realtime',
        ])
        config = apply_overrides(InspectorConfig(max_drift_ms=50), args)

        assert config.scr_pid == 0x100
        assert config.max_drift_ms == 300
        assert config.reorder is True
        assert config.non_conformance_findings is False
        assert config.trend_report_level == 2
        assert config.trend_csv_dir == '.'
        assert config.trend_capacity == 500
        assert config.initial_time == 1704067200.0
        assert config.pacing == 'realtime'

    def test_file_values_survive_without_flags(self):
        from clock_inspector.main import apply_overrides, build_parser

        args = build_parser().parse_args(['-i', 'x.ts'])
        config = apply_overrides(InspectorConfig(max_drift_ms=50, reorder=True), args)
        assert config.max_drift_ms == 50
        assert config.reorder is True

    def test_bad_initial_time(self):
        from clock_inspector.main import build_parser

        with pytest.raises(SystemExit):
            build_parser().parse_args(['-i', 'x.ts', '-T', '2024-01-01'])

    def test_config_error_exits_with_1(self):
        from clock_inspector.main import main

        with pytest.raises(SystemExit) as exc:
            main(['-i', 'x.ts', '--pacing', 'fast', '-D', '-5'])
        assert exc.value.code == 1

    def test_progress_flag_logs_percentages(self, ts, tmp_path, monkeypatch, caplog):
        from clock_inspector import main as cli

        path = tmp_path / 'capture.ts'
        path.write_bytes(b''.join(ts.packet(0x100, cc % 16) for cc in range(20)))
        monkeypatch.setattr(cli.signal, 'signal', lambda *args: None)

        with caplog.at_level(logging.INFO):
            cli.main(['-i', str(path), '-P'])

        marks = [r.getMessage() for r in caplog.records if r.getMessage().startswith('Progress')]
        assert len(marks) == 10
        assert marks[-1] == 'Progress: 100% (3760/3760 bytes)'

    def test_no_progress_without_flag(self, ts, tmp_path, monkeypatch, caplog):
        from clock_inspector import main as cli

        path = tmp_path / 'capture.ts'
        path.write_bytes(b''.join(ts.packet(0x100, cc) for cc in range(4)))
        monkeypatch.setattr(cli.signal, 'signal', lambda *args: None)

        with caplog.at_level(logging.INFO):
            cli.main(['-i', str(path)])

        assert not [r for r in caplog.records if r.getMessage().startswith('Progress')]
