"""Demultiplexing of the engine's combined stdout/stderr log stream.

Containers created without a TTY return their logs as a sequence of frames::

    [stream type: 1 byte][padding: 3 bytes][payload length: uint32 BE][payload]

Stream type 1 is stdout and 2 is stderr; 0 (stdin) never carries log data.
"""
import struct
from typing import Iterator, Tuple

STDIN = 0
STDOUT = 1
STDERR = 2

HEADER_SIZE = 8
_LENGTH = struct.Struct(">I")
_LENGTH_OFFSET = 4


def iter_frames(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yield ``(stream_type, payload)`` for each complete frame.

    Iteration ends silently at an incomplete trailing header or payload.
    """
    offset = 0
    size = len(data)

    while offset + HEADER_SIZE <= size:
        stream_type = data[offset]
        (length,) = _LENGTH.unpack_from(data, offset + _LENGTH_OFFSET)
        start = offset + HEADER_SIZE
        end = start + length
        if end > size:
            return
        yield stream_type, data[start:end]
        offset = end


def demultiplex(data: bytes) -> bytes:
    """Concatenate stdout and stderr payloads in stream order.

    Frames of any other stream type are dropped. A truncated last frame is
    left out; everything before it is returned.
    """
    return b"".join(
        payload for stream_type, payload in iter_frames(data)
        if stream_type in (STDOUT, STDERR)
    )
