"""Packet field extraction and recorded-stream input."""

from .ts_packet import (
    extract_pid,
    extract_continuity_counter,
    extract_scr,
    parse_pes_header,
    to_packet_event,
)
from .file_source import read_packets, file_size

__all__ = [
    'extract_pid', 'extract_continuity_counter', 'extract_scr',
    'parse_pes_header', 'to_packet_event', 'read_packets', 'file_size',
]
