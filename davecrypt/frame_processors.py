"""Splitting frames into authenticated and encrypted parts, and putting them back."""

from __future__ import annotations

from typing import Callable

from .codec_utils import (
    MalformedFrameError,
    process_frame_av1,
    process_frame_h264,
    process_frame_h265,
    process_frame_opus,
    process_frame_vp8,
    process_frame_vp9,
)
from .common import (
    AES_GCM_128_TRUNCATED_TAG_BYTES,
    MAGIC_MARKER_SIZE,
    MARKER_BYTES,
    SUPPLEMENTAL_BYTES_SIZE_SIZE,
    TRUNCATED_SYNC_NONCE_MAX,
    Codec,
)
from .logger import LoggingSeverity, log
from .ranges import (
    Range,
    deserialize_unencrypted_ranges,
    read_leb128,
    reconstruct,
    validate_unencrypted_ranges,
)

_MIN_SUPPLEMENTAL_BYTES_SIZE = (
    AES_GCM_128_TRUNCATED_TAG_BYTES + SUPPLEMENTAL_BYTES_SIZE_SIZE + MAGIC_MARKER_SIZE
)


class InboundFrameProcessor:
    """Parses a received frame into tag, nonce, authenticated data and ciphertext.

    After a successful parse, ``is_encrypted`` is true; otherwise the frame
    is treated as unencrypted. The caller fills ``plaintext`` after
    decrypting ``ciphertext`` and then calls ``reconstruct_frame``.
    """

    def __init__(self) -> None:
        self.clear()

    def clear(self) -> None:
        """Forget everything about the last parsed frame."""
        self.is_encrypted = False
        self.size = 0
        self.tag = b""
        self.truncated_nonce = TRUNCATED_SYNC_NONCE_MAX
        self.unencrypted_ranges: list[Range] = []
        self.authenticated_data = b""
        self.ciphertext = b""
        self.plaintext = b""

    def parse_frame(self, frame: bytes) -> None:
        """Parse frame; leaves ``is_encrypted`` false if it is not a valid encrypted frame."""
        self.clear()
        frame = bytes(frame)
        frame_size = len(frame)

        if frame_size < _MIN_SUPPLEMENTAL_BYTES_SIZE:
            log(
                LoggingSeverity.WARNING,
                "Encrypted frame is too small to contain min supplemental bytes",
            )
            return

        if frame[-MAGIC_MARKER_SIZE:] != MARKER_BYTES:
            return

        size_index = frame_size - MAGIC_MARKER_SIZE - SUPPLEMENTAL_BYTES_SIZE_SIZE
        supplemental_size = frame[size_index]

        if frame_size < supplemental_size:
            log(
                LoggingSeverity.WARNING,
                "Encrypted frame is too small to contain supplemental bytes",
            )
            return

        if supplemental_size < _MIN_SUPPLEMENTAL_BYTES_SIZE:
            log(
                LoggingSeverity.WARNING,
                "Supplemental bytes size is too small to contain supplemental bytes",
            )
            return

        supplemental_start = frame_size - supplemental_size
        nonce_start = supplemental_start + AES_GCM_128_TRUNCATED_TAG_BYTES
        tag = frame[supplemental_start:nonce_start]

        try:
            nonce, ranges_start = read_leb128(frame[:size_index], nonce_start)
        except ValueError:
            log(LoggingSeverity.WARNING, "Failed to read truncated nonce")
            return

        try:
            ranges = deserialize_unencrypted_ranges(frame[ranges_start:size_index])
        except ValueError:
            log(LoggingSeverity.WARNING, "Failed to read unencrypted ranges")
            return

        if not validate_unencrypted_ranges(ranges, frame_size):
            log(LoggingSeverity.WARNING, "Invalid unencrypted ranges")
            return

        authenticated = bytearray()
        ciphertext = bytearray()
        frame_index = 0
        for r in ranges:
            if r.offset > frame_index:
                ciphertext += frame[frame_index:r.offset]
            authenticated += frame[r.offset:r.end]
            frame_index = r.end

        actual_frame_size = frame_size - supplemental_size
        if frame_index < actual_frame_size:
            ciphertext += frame[frame_index:actual_frame_size]

        self.tag = tag
        self.truncated_nonce = nonce & TRUNCATED_SYNC_NONCE_MAX
        self.unencrypted_ranges = ranges
        self.size = frame_size
        self.authenticated_data = bytes(authenticated)
        self.ciphertext = bytes(ciphertext)
        self.plaintext = bytes(len(ciphertext))
        self.is_encrypted = True

    def reconstruct_frame(self) -> bytes:
        """Interleave the authenticated data with the plaintext into the original frame."""
        if not self.is_encrypted:
            log(LoggingSeverity.WARNING, "Cannot reconstruct an invalid encrypted frame")
            raise ValueError("cannot reconstruct an invalid encrypted frame")
        return reconstruct(
            self.unencrypted_ranges, self.authenticated_data, bytes(self.plaintext)
        )


_FRAME_SPLITTERS: dict[Codec, Callable[["OutboundFrameProcessor", bytes], None]] = {
    Codec.OPUS: process_frame_opus,
    Codec.VP8: process_frame_vp8,
    Codec.VP9: process_frame_vp9,
    Codec.H264: process_frame_h264,
    Codec.H265: process_frame_h265,
    Codec.AV1: process_frame_av1,
}


class OutboundFrameProcessor:
    """Splits an outgoing frame into unencrypted header bytes and bytes to encrypt.

    The caller encrypts ``encrypted_bytes``, stores the result in
    ``ciphertext_bytes`` and calls ``reconstruct_frame``.
    """

    def __init__(self) -> None:
        self.ciphertext_bytes = b""
        self.reset()

    def reset(self) -> None:
        """Drop the state of the last processed frame."""
        self.codec = Codec.UNKNOWN
        self._frame_index = 0
        self.unencrypted_bytes = bytearray()
        self.encrypted_bytes = bytearray()
        self.unencrypted_ranges: list[Range] = []

    def process_frame(self, frame: bytes, codec: Codec) -> None:
        """Split frame according to codec; malformed or unknown frames are encrypted whole."""
        self.reset()
        frame = bytes(frame)
        self.codec = Codec(codec)

        splitter = _FRAME_SPLITTERS.get(self.codec)
        success = False
        if splitter is None:
            log(LoggingSeverity.WARNING, "Unsupported codec for frame encryption")
        else:
            try:
                splitter(self, frame)
                success = True
            except MalformedFrameError:
                success = False

        if not success:
            self._frame_index = 0
            self.unencrypted_bytes = bytearray()
            self.encrypted_bytes = bytearray()
            self.unencrypted_ranges = []
            self.add_encrypted_bytes(frame)

        self.ciphertext_bytes = bytes(len(self.encrypted_bytes))

    def reconstruct_frame(self) -> bytes:
        """Interleave the unencrypted bytes with the ciphertext into the outgoing frame."""
        return reconstruct(
            self.unencrypted_ranges,
            bytes(self.unencrypted_bytes),
            bytes(self.ciphertext_bytes),
        )

    def add_unencrypted_bytes(self, data: bytes) -> None:
        """Append bytes that stay readable, extending the last range when adjacent."""
        data = bytes(data)
        if self.unencrypted_ranges and self.unencrypted_ranges[-1].end == self._frame_index:
            last = self.unencrypted_ranges[-1]
            self.unencrypted_ranges[-1] = Range(last.offset, last.size + len(data))
        else:
            self.unencrypted_ranges.append(Range(self._frame_index, len(data)))
        self.unencrypted_bytes += data
        self._frame_index += len(data)

    def add_encrypted_bytes(self, data: bytes) -> None:
        """Append bytes that are to be encrypted."""
        data = bytes(data)
        self.encrypted_bytes += data
        self._frame_index += len(data)