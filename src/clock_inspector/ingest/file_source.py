"""
Recorded transport stream reader.

Yields (packet, wall_time, byte_offset) tuples, the shape the correlation
engine's run() consumes. A trailing partial packet is dropped.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, Iterator, Tuple, Union

from ..timing.clock_constants import TS_PACKET_SIZE

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_PACKETS = 1024


def read_packets(
    path: Union[str, Path],
    chunk_packets: int = DEFAULT_CHUNK_PACKETS,
    wallclock: Callable[[], float] = time.time
) -> Iterator[Tuple[bytes, float, int]]:
    """
    Iterate the packets of a TS file.

    Args:
        path: File to read
        chunk_packets: Packets per read() call
        wallclock: Capture-time source, sampled per packet

    Yields:
        (packet, wall_time, byte_offset)
    """
    path = Path(path)
    chunk_size = TS_PACKET_SIZE * chunk_packets
    position = 0

    with open(path, 'rb') as f:
        while True:
            buf = f.read(chunk_size)
            if not buf:
                break

            usable = len(buf) - (len(buf) % TS_PACKET_SIZE)
            if usable < len(buf):
                logger.warning(f"{path}: dropping {len(buf) - usable} trailing bytes "
                               f"at offset {position + usable}")

            for i in range(0, usable, TS_PACKET_SIZE):
                yield buf[i:i + TS_PACKET_SIZE], wallclock(), position + i

            position += len(buf)


def file_size(path: Union[str, Path]) -> int:
    """Size in bytes, 0 when the input is not a regular file."""
    path = Path(path)
    return path.stat().st_size if path.is_file() else 0


def with_progress(
    packets: Iterable[Tuple[bytes, float, int]],
    total_size: int,
    step_percent: int = 10
) -> Iterator[Tuple[bytes, float, int]]:
    """
    Pass packets through, logging each step_percent of total_size consumed.

    Nothing is logged when total_size is unknown (0).
    """
    next_mark = step_percent
    for item in packets:
        if total_size > 0:
            done = (item[2] + TS_PACKET_SIZE) * 100 // total_size
            if done >= next_mark:
                logger.info(f"Progress: {done}% ({item[2] + TS_PACKET_SIZE}/{total_size} bytes)")
                next_mark = (done // step_percent + 1) * step_percent
        yield item
