"""Shared enums and layout, timing and behaviour constants."""

from __future__ import annotations

from enum import IntEnum


class MediaType(IntEnum):
    """Kind of media carried by a frame."""

    AUDIO = 0
    VIDEO = 1

    @property
    def label(self) -> str:
        """Lower-case name used in log messages."""
        return self.name.lower()


class Codec(IntEnum):
    """Codecs whose frames can be encrypted."""

    UNKNOWN = 0
    OPUS = 1
    VP8 = 2
    VP9 = 3
    H264 = 4
    H265 = 5
    AV1 = 6


# Marker that ends every encrypted frame.
MARKER_BYTES = b"\xfa\xfa"
MAGIC_MARKER_SIZE = len(MARKER_BYTES)
SUPPLEMENTAL_BYTES_SIZE_SIZE = 1

# Layout constants
AES_GCM_128_KEY_BYTES = 16
AES_GCM_128_NONCE_BYTES = 12
AES_GCM_128_TRUNCATED_SYNC_NONCE_BYTES = 4
AES_GCM_128_TRUNCATED_SYNC_NONCE_OFFSET = (
    AES_GCM_128_NONCE_BYTES - AES_GCM_128_TRUNCATED_SYNC_NONCE_BYTES
)
AES_GCM_128_TRUNCATED_TAG_BYTES = 8
RATCHET_GENERATION_BYTES = 1
RATCHET_GENERATION_SHIFT_BITS = 8 * (
    AES_GCM_128_TRUNCATED_SYNC_NONCE_BYTES - RATCHET_GENERATION_BYTES
)
SUPPLEMENTAL_BYTES = (
    AES_GCM_128_TRUNCATED_TAG_BYTES + SUPPLEMENTAL_BYTES_SIZE_SIZE + MAGIC_MARKER_SIZE
)
TRANSFORM_PADDING_BYTES = 64

# Timing constants, in seconds
DEFAULT_TRANSITION_DURATION = 10.0
CRYPTOR_EXPIRY = 10.0

# Behaviour constants
INIT_TRANSITION_ID = 0
DISABLED_VERSION = 0
MAX_GENERATION_GAP = 250
MAX_MISSING_NONCES = 1000
GENERATION_WRAP = 1 << (8 * RATCHET_GENERATION_BYTES)
MAX_FRAMES_PER_SECOND = 50 + 2 * 60  # 50 audio frames + 2 * 60fps video streams
OPUS_SILENCE_PACKET = b"\xf8\xff\xfe"

TRUNCATED_SYNC_NONCE_MAX = 0xFFFFFFFF