"""Per-codec splitting of frames into unencrypted headers and encrypted payloads."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from .common import Codec
from .logger import LoggingSeverity, log
from .ranges import Range, read_leb128, write_leb128

H26X_NALU_LONG_START_CODE = b"\x00\x00\x00\x01"
H26X_NALU_SHORT_START_SEQUENCE_SIZE = 3

_EMULATION_PREVENTION_BYTE = 0x03
_UNENCRYPTED_FRAME_HEADER_SIZE_MAX = 0xFFFF

_H26X_START_CODE_HIGHEST_POSSIBLE_VALUE = 1
_H26X_START_CODE_END_BYTE_VALUE = 1
_H26X_START_CODE_LEADING_BYTES_VALUE = 0

_VP8_KEY_FRAME_UNENCRYPTED_BYTES = 10
_VP8_DELTA_FRAME_UNENCRYPTED_BYTES = 1

_H264_NAL_HEADER_TYPE_MASK = 0x1F
_H264_NAL_TYPE_SLICE = 1
_H264_NAL_TYPE_IDR = 5
_H264_NAL_UNIT_HEADER_SIZE = 1

_H265_NAL_HEADER_TYPE_MASK = 0x7E
_H265_NAL_TYPE_VCL_CUTOFF = 32
_H265_NAL_UNIT_HEADER_SIZE = 2

_AV1_OBU_HEADER_HAS_EXTENSION_MASK = 0b0000_0100
_AV1_OBU_HEADER_HAS_SIZE_MASK = 0b0000_0010
_AV1_OBU_HEADER_TYPE_MASK = 0b0111_1000
_OBU_TYPE_TEMPORAL_DELIMITER = 2
_OBU_TYPE_TILE_LIST = 8
_OBU_TYPE_PADDING = 15
_OBU_EXTENSION_SIZE_BYTES = 1
_DROPPED_OBU_TYPES = frozenset(
    {_OBU_TYPE_TEMPORAL_DELIMITER, _OBU_TYPE_TILE_LIST, _OBU_TYPE_PADDING}
)


class MalformedFrameError(ValueError):
    """A frame does not have the structure its codec requires."""


class FrameSink(Protocol):
    """What the frame splitters need from an outbound frame processor."""

    codec: Codec
    unencrypted_ranges: Sequence[Range]

    def add_unencrypted_bytes(self, data: bytes) -> None: ...

    def add_encrypted_bytes(self, data: bytes) -> None: ...


def _malformed(message: str) -> MalformedFrameError:
    log(LoggingSeverity.WARNING, message)
    return MalformedFrameError(message)


def bytes_covering_h264_pps(payload: bytes) -> int:
    """Bytes of a slice payload that cover first_mb_in_slice, sps_id and pps_id.

    The three values are exponential-Golomb coded; emulation prevention
    bytes are skipped over.
    """
    payload = bytes(payload)
    total_bits = len(payload) * 8
    bit_pos = 0
    zero_bits = 0
    parsed = 0

    while bit_pos < total_bits and parsed < 3:
        bit_index = bit_pos % 8
        byte_index = bit_pos // 8
        byte = payload[byte_index]

        if (
            bit_index == 0
            and byte_index >= 2
            and byte == _EMULATION_PREVENTION_BYTE
            and payload[byte_index - 1] == 0
            and payload[byte_index - 2] == 0
        ):
            bit_pos += 8
            continue

        if byte & (1 << (7 - bit_index)) == 0:
            zero_bits += 1
            bit_pos += 1
            if zero_bits >= 32:
                raise _malformed("Unexpectedly large exponential golomb encoded value")
        else:
            parsed += 1
            bit_pos += 1 + zero_bits
            zero_bits = 0

    result = bit_pos // 8 + 1
    if result > _UNENCRYPTED_FRAME_HEADER_SIZE_MAX:
        log(
            LoggingSeverity.WARNING,
            "BytesCoveringH264PPS result cannot fit in UnencryptedFrameHeaderSize",
        )
        return 0
    return result


def find_next_h26x_nalu_index(
    buffer: bytes, search_start: int = 0
) -> Optional[tuple[int, int]]:
    """Find the next 3 or 4 byte start code at or after search_start.

    Returns (index of the NAL unit after the start code, start code size),
    or None if there is no further start code.
    """
    size = len(buffer)
    if size < H26X_NALU_SHORT_START_SEQUENCE_SIZE:
        return None

    i = search_start
    while i < size - H26X_NALU_SHORT_START_SEQUENCE_SIZE:
        third = buffer[i + 2]
        if third > _H26X_START_CODE_HIGHEST_POSSIBLE_VALUE:
            i += H26X_NALU_SHORT_START_SEQUENCE_SIZE
        elif third == _H26X_START_CODE_END_BYTE_VALUE:
            if (
                buffer[i + 1] == _H26X_START_CODE_LEADING_BYTES_VALUE
                and buffer[i] == _H26X_START_CODE_LEADING_BYTES_VALUE
            ):
                nal_start = i + H26X_NALU_SHORT_START_SEQUENCE_SIZE
                if i >= 1 and buffer[i - 1] == _H26X_START_CODE_LEADING_BYTES_VALUE:
                    return nal_start, 4
                return nal_start, 3
            i += H26X_NALU_SHORT_START_SEQUENCE_SIZE
        else:
            i += 1
    return None


def process_frame_opus(processor: FrameSink, frame: bytes) -> None:
    """Encrypt the whole Opus frame."""
    processor.add_encrypted_bytes(bytes(frame))


def process_frame_vp8(processor: FrameSink, frame: bytes) -> None:
    """Leave the VP8 payload header readable: 10 bytes for key frames, 1 otherwise."""
    frame = bytes(frame)
    if not frame:
        raise _malformed("VP8 frame is empty")

    # The low bit of the first byte is an inverted key frame flag.
    if frame[0] & 0x01 == 0:
        header_size = _VP8_KEY_FRAME_UNENCRYPTED_BYTES
    else:
        header_size = _VP8_DELTA_FRAME_UNENCRYPTED_BYTES

    if len(frame) < header_size:
        raise _malformed("VP8 frame is too small to contain its payload header")

    processor.add_unencrypted_bytes(frame[:header_size])
    processor.add_encrypted_bytes(frame[header_size:])


def process_frame_vp9(processor: FrameSink, frame: bytes) -> None:
    """Encrypt the whole VP9 frame; its descriptor travels in each packet."""
    processor.add_encrypted_bytes(bytes(frame))


def _next_nalu_start(frame: bytes, nal_start: int) -> tuple[Optional[tuple[int, int]], int]:
    next_pair = find_next_h26x_nalu_index(frame, nal_start)
    next_start = next_pair[0] - next_pair[1] if next_pair is not None else len(frame)
    return next_pair, next_start


def process_frame_h264(processor: FrameSink, frame: bytes) -> None:
    """Split an Annex B H.264 frame, encrypting slice data after the PPS id."""
    frame = bytes(frame)
    if len(frame) < H26X_NALU_SHORT_START_SEQUENCE_SIZE + _H264_NAL_UNIT_HEADER_SIZE:
        raise _malformed("H264 frame is too small to contain a NAL unit")

    pair = find_next_h26x_nalu_index(frame)
    while pair is not None and pair[0] < len(frame) - 1:
        nal_start = pair[0]
        nal_type = frame[nal_start] & _H264_NAL_HEADER_TYPE_MASK

        # The receiver rewrites every start code to the long form.
        processor.add_unencrypted_bytes(H26X_NALU_LONG_START_CODE)

        pair, next_start = _next_nalu_start(frame, nal_start)

        if nal_type in (_H264_NAL_TYPE_SLICE, _H264_NAL_TYPE_IDR):
            payload_start = nal_start + _H264_NAL_UNIT_HEADER_SIZE
            pps_bytes = bytes_covering_h264_pps(frame[payload_start:])
            header_end = payload_start + pps_bytes
            if header_end > next_start:
                raise _malformed("H264 slice header overflows its NAL unit")
            processor.add_unencrypted_bytes(frame[nal_start:header_end])
            processor.add_encrypted_bytes(frame[header_end:next_start])
        else:
            processor.add_unencrypted_bytes(frame[nal_start:next_start])


def process_frame_h265(processor: FrameSink, frame: bytes) -> None:
    """Split an Annex B H.265 frame, encrypting the payload of VCL NAL units."""
    frame = bytes(frame)
    if len(frame) < H26X_NALU_SHORT_START_SEQUENCE_SIZE + _H265_NAL_UNIT_HEADER_SIZE:
        raise _malformed("H265 frame is too small to contain a NAL unit")

    pair = find_next_h26x_nalu_index(frame)
    while pair is not None and pair[0] < len(frame) - 1:
        nal_start = pair[0]
        nal_type = (frame[nal_start] & _H265_NAL_HEADER_TYPE_MASK) >> 1

        processor.add_unencrypted_bytes(H26X_NALU_LONG_START_CODE)

        pair, next_start = _next_nalu_start(frame, nal_start)

        if nal_type < _H265_NAL_TYPE_VCL_CUTOFF:
            header_end = nal_start + _H265_NAL_UNIT_HEADER_SIZE
            if header_end > next_start:
                raise _malformed("H265 NAL unit header overflows its NAL unit")
            processor.add_unencrypted_bytes(frame[nal_start:header_end])
            processor.add_encrypted_bytes(frame[header_end:next_start])
        else:
            processor.add_unencrypted_bytes(frame[nal_start:next_start])


def process_frame_av1(processor: FrameSink, frame: bytes) -> None:
    """Split an AV1 frame into readable OBU headers and encrypted OBU payloads.

    OBUs the packetizer drops are left out; the last OBU loses its size field.
    """
    frame = bytes(frame)
    size = len(frame)
    i = 0
    while i < size:
        header_index = i
        header = frame[header_index]
        i += 1

        has_extension = bool(header & _AV1_OBU_HEADER_HAS_EXTENSION_MASK)
        has_size = bool(header & _AV1_OBU_HEADER_HAS_SIZE_MASK)
        obu_type = (header & _AV1_OBU_HEADER_TYPE_MASK) >> 3

        if has_extension:
            i += _OBU_EXTENSION_SIZE_BYTES

        if i >= size:
            raise _malformed("Malformed AV1 frame: header overflows frame")

        if has_size:
            try:
                payload_size, i = read_leb128(frame, i)
            except ValueError as error:
                raise _malformed("Malformed AV1 frame: invalid LEB128 size") from error
        else:
            payload_size = size - i

        payload_index = i
        if i + payload_size > size:
            raise _malformed("Malformed AV1 frame: payload overflows frame")
        i += payload_size

        if obu_type in _DROPPED_OBU_TYPES:
            continue

        rewritten_without_size = False
        if i == size and has_size:
            header &= ~_AV1_OBU_HEADER_HAS_SIZE_MASK & 0xFF
            rewritten_without_size = True

        processor.add_unencrypted_bytes(bytes([header]))
        if has_extension:
            processor.add_unencrypted_bytes(
                frame[header_index + 1:header_index + 1 + _OBU_EXTENSION_SIZE_BYTES]
            )
        if has_size and not rewritten_without_size:
            # Re-encode the size minimally, since some encoders pad it.
            processor.add_unencrypted_bytes(write_leb128(payload_size))

        processor.add_encrypted_bytes(frame[payload_index:payload_index + payload_size])


def validate_encrypted_frame(processor: FrameSink, frame: bytes) -> bool:
    """Check that no encrypted section of an H.26x frame contains a start code."""
    if processor.codec not in (Codec.H264, Codec.H265):
        return True

    frame = bytes(frame)
    padding = H26X_NALU_SHORT_START_SEQUENCE_SIZE - 1

    section_start = 0
    for r in processor.unencrypted_ranges:
        if section_start == r.offset:
            section_start += r.size
            continue

        start = section_start - min(section_start, padding)
        end = min(r.offset + padding, len(frame))
        if find_next_h26x_nalu_index(frame[start:end]) is not None:
            return False
        section_start = r.offset + r.size

    if section_start == len(frame):
        return True

    start = section_start - min(section_start, padding)
    return find_next_h26x_nalu_index(frame[start:]) is None