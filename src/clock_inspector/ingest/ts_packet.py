"""
Transport packet field extraction.

The minimum the correlation engine needs from a 188-byte MPEG-TS packet:
PID, continuity counter, payload flags, adaptation-field PCR, and the
PTS/DTS of a PES header starting in the packet.

Packet header (ISO/IEC 13818-1 2.4.3.2):

    byte 0   sync 0x47
    byte 1   TEI | PUSI | priority | PID[12:8]
    byte 2   PID[7:0]
    byte 3   scrambling(2) | adaptation_field_control(2) | continuity_counter(4)
"""

from typing import Optional

from ..interfaces.records import PacketEvent, PesTimestamps
from ..timing.clock_constants import SCR_TICKS_PER_PTS_TICK, TS_PACKET_SIZE, TS_SYNC_BYTE

PES_START_CODE = b'\x00\x00\x01'

# stream_ids whose PES packets carry no optional header (no PTS/DTS)
_NO_HEADER_STREAM_IDS = {0xBC, 0xBE, 0xBF, 0xF0, 0xF1, 0xF2, 0xF8, 0xFF}


def _check(packet: bytes):
    if len(packet) != TS_PACKET_SIZE:
        raise ValueError(f"TS packet must be {TS_PACKET_SIZE} bytes, got {len(packet)}")
    if packet[0] != TS_SYNC_BYTE:
        raise ValueError(f"Bad sync byte 0x{packet[0]:02x}")


def extract_pid(packet: bytes) -> int:
    _check(packet)
    return ((packet[1] & 0x1F) << 8) | packet[2]


def extract_continuity_counter(packet: bytes) -> int:
    _check(packet)
    return packet[3] & 0x0F


def payload_unit_start(packet: bytes) -> bool:
    _check(packet)
    return (packet[1] & 0x40) != 0


def adaptation_field_control(packet: bytes) -> int:
    _check(packet)
    return (packet[3] >> 4) & 0x03


def has_payload(packet: bytes) -> bool:
    return adaptation_field_control(packet) in (1, 3)


def has_adaptation_field(packet: bytes) -> bool:
    return adaptation_field_control(packet) in (2, 3)


def extract_scr(packet: bytes) -> Optional[int]:
    """
    PCR from the adaptation field, as 27 MHz ticks (base × 300 + extension).

    Returns:
        Tick value, or None when the packet carries no PCR
    """
    if not has_adaptation_field(packet):
        return None

    af_length = packet[4]
    if af_length < 7 or not (packet[5] & 0x10):
        return None

    b = packet[6:12]
    base = (b[0] << 25) | (b[1] << 17) | (b[2] << 9) | (b[3] << 1) | (b[4] >> 7)
    ext = ((b[4] & 0x01) << 8) | b[5]
    return base * SCR_TICKS_PER_PTS_TICK + ext


def payload_offset(packet: bytes) -> Optional[int]:
    """Byte index of the payload, or None when there is none."""
    if not has_payload(packet):
        return None
    offset = 4
    if has_adaptation_field(packet):
        offset += 1 + packet[4]
    if offset >= TS_PACKET_SIZE:
        return None
    return offset


def pes_header_offset(packet: bytes) -> Optional[int]:
    """Index of a PES start code at the start of the payload, if any."""
    if not payload_unit_start(packet):
        return None
    offset = payload_offset(packet)
    if offset is None:
        return None
    if packet[offset:offset + 3] != PES_START_CODE:
        return None
    return offset


def decode_timestamp(b: bytes) -> int:
    """Decode a 5-byte PTS/DTS field into 33-bit 90 kHz ticks."""
    return (
        (((b[0] >> 1) & 0x07) << 30)
        | (b[1] << 22)
        | ((b[2] >> 1) << 15)
        | (b[3] << 7)
        | (b[4] >> 1)
    )


def parse_pes_header(data: bytes) -> Optional[PesTimestamps]:
    """
    Extract PTS/DTS from the start of a PES packet.

    Only enough of the header is parsed to reach the timestamps.

    Args:
        data: Bytes starting at the 00 00 01 start code

    Returns:
        PesTimestamps (possibly empty), or None when data is not a PES header
    """
    if len(data) < 6 or data[:3] != PES_START_CODE:
        return None

    stream_id = data[3]
    if stream_id in _NO_HEADER_STREAM_IDS:
        return PesTimestamps()

    if len(data) < 9:
        raise ValueError(f"Truncated PES header ({len(data)} bytes)")

    flags = (data[7] >> 6) & 0x03
    pts = dts = None

    if flags & 0x02:
        if len(data) < 14:
            raise ValueError("Truncated PES header: PTS field cut off")
        pts = decode_timestamp(data[9:14])
    if flags == 0x03:
        if len(data) < 19:
            raise ValueError("Truncated PES header: DTS field cut off")
        dts = decode_timestamp(data[14:19])

    return PesTimestamps(pts=pts, dts=dts)


def to_packet_event(packet: bytes, wall_time: float, byte_offset: int = 0) -> PacketEvent:
    """
    Build the engine event for one packet.

    Raises:
        ValueError: malformed packet
    """
    _check(packet)
    pid = extract_pid(packet)
    pusi = payload_unit_start(packet)

    pes = None
    if pusi and pid > 0:
        offset = pes_header_offset(packet)
        if offset is not None:
            pes = parse_pes_header(bytes(packet[offset:]))

    return PacketEvent(
        pid=pid,
        continuity_counter=extract_continuity_counter(packet),
        wall_time=wall_time,
        byte_offset=byte_offset,
        has_payload=has_payload(packet),
        payload_unit_start=pusi,
        scr_ticks=extract_scr(packet),
        pes=pes,
    )
