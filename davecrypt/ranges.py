"""LEB128 coding and the unencrypted-range table of an encrypted frame."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from .logger import LoggingSeverity, log

LEB128_MAX_SIZE = 10
_UINT64_LIMIT = 1 << 64


@dataclass(frozen=True)
class Range:
    """A span of a frame: start offset and length in bytes."""

    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size


def leb128_size(value: int) -> int:
    """Number of bytes the LEB128 encoding of value takes."""
    if value < 0:
        raise ValueError("LEB128 values must be non-negative")
    size = 1
    while value >= 0x80:
        value >>= 7
        size += 1
    return size


def write_leb128(value: int) -> bytes:
    """Encode a non-negative integer as unsigned LEB128."""
    if value < 0:
        raise ValueError("LEB128 values must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def read_leb128(data: bytes, pos: int = 0) -> tuple[int, int]:
    """Decode an unsigned LEB128 value at pos; return (value, position after it)."""
    value = 0
    shift = 0
    for index in range(pos, min(len(data), pos + LEB128_MAX_SIZE)):
        byte = data[index]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            if value >= _UINT64_LIMIT:
                raise ValueError("LEB128 value does not fit in 64 bits")
            return value, index + 1
        shift += 7
    raise ValueError("truncated or oversized LEB128 value")


def unencrypted_ranges_size(ranges: Iterable[Range]) -> int:
    """Serialized size in bytes of the range table."""
    size = sum(leb128_size(r.offset) + leb128_size(r.size) for r in ranges)
    if size > 0xFF:
        raise ValueError("unencrypted ranges size exceeds 255 bytes")
    return size


def serialize_unencrypted_ranges(ranges: Iterable[Range]) -> bytes:
    """Encode the range table as consecutive LEB128 offset/size pairs."""
    ranges = list(ranges)
    unencrypted_ranges_size(ranges)
    return b"".join(write_leb128(r.offset) + write_leb128(r.size) for r in ranges)


def deserialize_unencrypted_ranges(data: bytes) -> list[Range]:
    """Decode a range table that must fill data exactly."""
    data = bytes(data)
    ranges = []
    pos = 0
    try:
        while pos < len(data):
            offset, pos = read_leb128(data, pos)
            size, pos = read_leb128(data, pos)
            ranges.append(Range(offset, size))
    except ValueError as error:
        log(LoggingSeverity.WARNING, "Failed to deserialize unencrypted ranges")
        raise ValueError("failed to deserialize unencrypted ranges") from error
    return ranges


def validate_unencrypted_ranges(ranges: Sequence[Range], frame_size: int) -> bool:
    """Check that ranges are ordered, do not overlap and stay within the frame."""
    limits = [r.offset for r in ranges[1:]] + [frame_size]
    for current, max_end in zip(ranges, limits):
        end = current.end
        if end >= _UINT64_LIMIT or end > max_end:
            log(
                LoggingSeverity.WARNING,
                "Unencrypted range may overlap or be out of order: current offset: "
                f"{current.offset}, current size: {current.size}, maximum end: "
                f"{max_end}, frame size: {frame_size}",
            )
            return False
    return True


def reconstruct(ranges: Iterable[Range], range_bytes: bytes, other_bytes: bytes) -> bytes:
    """Interleave range_bytes at the given ranges with other_bytes filling the gaps."""
    out = bytearray()
    range_pos = 0
    other_pos = 0

    def take(source: bytes, pos: int, count: int) -> bytes:
        chunk = source[pos:pos + count]
        if len(chunk) != count:
            raise ValueError("not enough bytes to reconstruct the frame")
        return chunk

    for r in ranges:
        if r.offset > len(out):
            gap = r.offset - len(out)
            out += take(other_bytes, other_pos, gap)
            other_pos += gap
        out += take(range_bytes, range_pos, r.size)
        range_pos += r.size

    out += other_bytes[other_pos:]
    if range_pos != len(range_bytes):
        raise ValueError("range bytes were not fully consumed")
    return bytes(out)