"""
Pytest configuration and fixtures for clock-inspector tests.
"""

import pytest
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


class TsPacketBuilder:
    """Synthesizes 188-byte transport packets for tests."""

    @staticmethod
    def encode_timestamp(ticks: int, prefix: int) -> bytes:
        return bytes([
            (prefix << 4) | (((ticks >> 30) & 0x07) << 1) | 1,
            (ticks >> 22) & 0xFF,
            (((ticks >> 15) & 0x7F) << 1) | 1,
            (ticks >> 7) & 0xFF,
            ((ticks & 0x7F) << 1) | 1,
        ])

    @staticmethod
    def encode_pcr(scr: int) -> bytes:
        base, ext = divmod(scr, 300)
        return bytes([
            (base >> 25) & 0xFF,
            (base >> 17) & 0xFF,
            (base >> 9) & 0xFF,
            (base >> 1) & 0xFF,
            ((base & 0x01) << 7) | 0x7E | ((ext >> 8) & 0x01),
            ext & 0xFF,
        ])

    def pes_header(self, pts=None, dts=None, stream_id=0xE0) -> bytes:
        if pts is None:
            flags, fields = 0, b''
        elif dts is None:
            flags, fields = 2, self.encode_timestamp(pts, 0x2)
        else:
            flags = 3
            fields = self.encode_timestamp(pts, 0x3) + self.encode_timestamp(dts, 0x1)
        return (b'\x00\x00\x01' + bytes([stream_id, 0x00, 0x00, 0x80, flags << 6, len(fields)])
                + fields)

    def packet(self, pid, cc, scr=None, pts=None, dts=None, pusi=None, payload=True) -> bytes:
        if pusi is None:
            pusi = pts is not None

        adaptation = b''
        if scr is not None:
            adaptation = bytes([7, 0x10]) + self.encode_pcr(scr)

        if adaptation and payload:
            afc = 3
        elif adaptation:
            afc = 2
        else:
            afc = 1

        header = bytes([
            0x47,
            (0x40 if pusi else 0x00) | ((pid >> 8) & 0x1F),
            pid & 0xFF,
            (afc << 4) | (cc & 0x0F),
        ])

        body = b''
        if payload and pts is not None:
            body = self.pes_header(pts, dts)

        data = header + adaptation + body
        return data + b'\xff' * (188 - len(data))


@pytest.fixture
def ts():
    """Transport packet builder."""
    return TsPacketBuilder()


@pytest.fixture
def base_scr():
    """SCR at 100 s, far from any wrap."""
    return 27_000_000 * 100


@pytest.fixture
def fast_config():
    """Engine options for synthetic streams: 1.5 s threshold, no reporter."""
    from clock_inspector.config import InspectorConfig
    return InspectorConfig(
        scr_pid=0x31,
        max_drift_ms=1500,
        pacing='fast',
        trend_warmup=0,
        initial_time=1_000_000.0,
    )
