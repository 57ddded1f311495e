"""Docker attach/exec stream demultiplexing.

Without a TTY the engine multiplexes stdout and stderr onto one stream.
Each frame is an 8-byte header followed by the payload::

    [channel, 0, 0, 0, size_be32] payload...

channel 1 is stdout, 2 is stderr (0 is stdin and never carries output).
"""

from __future__ import annotations

import struct

STDIN = 0
STDOUT = 1
STDERR = 2

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")


def _valid_header(buffer: bytes, offset: int) -> bool:
    return buffer[offset] in (STDIN, STDOUT, STDERR) and buffer[offset + 1 : offset + 4] == (
        b"\x00\x00\x00"
    )


def demux_stream(buffer: bytes) -> tuple[bytes, bytes]:
    """Split a multiplexed stream into ``(stdout, stderr)``.

    Parsing stops at the first header that is malformed or whose payload
    runs past the end of the buffer; everything before it is kept.  If not
    a single frame parses, the buffer is assumed to be raw (TTY-style)
    output and returned whole as stdout.
    """
    stdout = bytearray()
    stderr = bytearray()
    frames = 0
    offset = 0
    total = len(buffer)

    while offset + HEADER_SIZE <= total:
        if not _valid_header(buffer, offset):
            break
        channel, size = _HEADER.unpack_from(buffer, offset)
        start = offset + HEADER_SIZE
        end = start + size
        if end > total:
            break
        if channel == STDOUT:
            stdout += buffer[start:end]
        elif channel == STDERR:
            stderr += buffer[start:end]
        frames += 1
        offset = end

    if frames == 0 and buffer:
        return bytes(buffer), b""
    return bytes(stdout), bytes(stderr)


def encode_frame(channel: int, payload: bytes) -> bytes:
    """Build one multiplexed frame (used by fakes and tests)."""
    return _HEADER.pack(channel, len(payload)) + payload
