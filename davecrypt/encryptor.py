"""Encryption of outgoing media frames with a key ratchet."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .codec_utils import validate_encrypted_frame
from .common import (
    AES_GCM_128_TRUNCATED_SYNC_NONCE_BYTES,
    AES_GCM_128_TRUNCATED_SYNC_NONCE_OFFSET,
    MARKER_BYTES,
    RATCHET_GENERATION_SHIFT_BITS,
    SUPPLEMENTAL_BYTES,
    TRANSFORM_PADDING_BYTES,
    TRUNCATED_SYNC_NONCE_MAX,
    Codec,
    MediaType,
)
from .cryptor import AesGcmCryptor, create_cryptor
from .cryptor_manager import KeyRatchet, compute_wrapped_generation
from .frame_processors import OutboundFrameProcessor
from .logger import LoggingSeverity, log
from .ranges import serialize_unencrypted_ranges, unencrypted_ranges_size, write_leb128

DEFAULT_MAX_PROTOCOL_VERSION = 1
MAX_CIPHERTEXT_VALIDATION_RETRIES = 10

_STATS_INTERVAL = 10.0
_SUPPLEMENTAL_BYTES_SIZE_MAX = 0xFF


class EncryptionError(ValueError):
    """A frame could not be encrypted."""


@dataclass
class EncryptorStats:
    """Counters kept per media type; durations are in microseconds."""

    passthrough_count: int = 0
    encrypt_success_count: int = 0
    encrypt_failure_count: int = 0
    encrypt_duration: int = 0
    encrypt_attempts: int = 0
    encrypt_max_attempts: int = 0


def _full_nonce(truncated_nonce: int) -> bytes:
    return bytes(AES_GCM_128_TRUNCATED_SYNC_NONCE_OFFSET) + truncated_nonce.to_bytes(
        AES_GCM_128_TRUNCATED_SYNC_NONCE_BYTES, "little"
    )


class Encryptor:
    """Encrypts frames with keys from the current ratchet, or passes them through."""

    def __init__(self, max_protocol_version: int = DEFAULT_MAX_PROTOCOL_VERSION) -> None:
        self._max_protocol_version = max_protocol_version
        self._passthrough_mode = False

        self._key_lock = threading.Lock()
        self._key_ratchet: Optional[KeyRatchet] = None
        self._cryptor: Optional[AesGcmCryptor] = None
        self._current_key_generation = 0
        self._truncated_nonce = 0

        self._ssrc_codecs: dict[int, Codec] = {}

        self._last_stats_time = float("-inf")
        self._stats = {media: EncryptorStats() for media in MediaType}

        self._protocol_version_changed_callback: Optional[Callable[[], None]] = None
        self._current_protocol_version = max_protocol_version

    def set_key_ratchet(self, key_ratchet: Optional[KeyRatchet]) -> None:
        """Switch to a new key ratchet, restarting generations and nonces."""
        with self._key_lock:
            self._key_ratchet = key_ratchet
            self._cryptor = None
            self._current_key_generation = 0
            self._truncated_nonce = 0

    def set_passthrough_mode(self, passthrough_mode: bool) -> None:
        """Turn pass-through on or off; the protocol version follows."""
        self._passthrough_mode = bool(passthrough_mode)
        self._update_current_protocol_version(
            0 if passthrough_mode else self._max_protocol_version
        )

    def has_key_ratchet(self) -> bool:
        return self._key_ratchet is not None

    def is_passthrough_mode(self) -> bool:
        return self._passthrough_mode

    def assign_ssrc_to_codec(self, ssrc: int, codec: Codec) -> None:
        """Record the codec used by a stream."""
        self._ssrc_codecs[ssrc] = Codec(codec)

    def codec_for_ssrc(self, ssrc: int) -> Codec:
        """The codec recorded for a stream, or UNKNOWN."""
        return self._ssrc_codecs.get(ssrc, Codec.UNKNOWN)

    def encrypt(self, media_type: MediaType, ssrc: int, frame: bytes) -> bytes:
        """Return the encrypted frame, raising EncryptionError if it cannot be produced."""
        try:
            media_type = MediaType(media_type)
        except ValueError as error:
            log(LoggingSeverity.WARNING, f"Encrypt failed, invalid media type: {media_type}")
            raise EncryptionError(f"invalid media type: {media_type}") from error

        frame = bytes(frame)
        stats = self._stats[media_type]

        if self._passthrough_mode:
            stats.passthrough_count += 1
            return frame

        with self._key_lock:
            if self._key_ratchet is None:
                stats.encrypt_failure_count += 1
                raise EncryptionError("no key ratchet is set")

        start = time.monotonic()
        codec = self.codec_for_ssrc(ssrc)

        processor = OutboundFrameProcessor()
        processor.process_frame(frame, codec)

        result: Optional[bytes] = None
        failure = ""
        try:
            result = self._encrypt_processed(processor, stats)
        except EncryptionError as error:
            failure = str(error)

        now = time.monotonic()
        stats.encrypt_duration += int((now - start) * 1_000_000)
        if result is not None:
            stats.encrypt_success_count += 1
        else:
            stats.encrypt_failure_count += 1

        if now > self._last_stats_time + _STATS_INTERVAL:
            self._last_stats_time = now
            audio, video = self._stats[MediaType.AUDIO], self._stats[MediaType.VIDEO]
            log(
                LoggingSeverity.INFO,
                f"Encrypted audio: {audio.encrypt_success_count}, "
                f"video: {video.encrypt_success_count}. "
                f"Failed audio: {audio.encrypt_failure_count}, "
                f"video: {video.encrypt_failure_count}",
            )
            log(
                LoggingSeverity.INFO,
                f"Last encrypted frame, type: {media_type.label}, ssrc: {ssrc}, "
                f"size: {len(frame)}",
            )

        if result is None:
            raise EncryptionError(failure or "encryption failed")
        return result

    def _encrypt_processed(
        self, processor: OutboundFrameProcessor, stats: EncryptorStats
    ) -> bytes:
        plaintext = bytes(processor.encrypted_bytes)
        additional_data = bytes(processor.unencrypted_bytes)
        ranges = processor.unencrypted_ranges
        ranges_bytes = serialize_unencrypted_ranges(ranges)
        ranges_size = unencrypted_ranges_size(ranges)

        # Packetizers of some codecs choke on certain byte sequences, so a
        # frame that fails validation is encrypted again with the next nonce.
        for attempt in range(1, MAX_CIPHERTEXT_VALIDATION_RETRIES + 1):
            cryptor, truncated_nonce = self._next_cryptor_and_nonce()
            if cryptor is None:
                raise EncryptionError("no cryptor available")

            ciphertext, tag = cryptor.encrypt(
                plaintext, _full_nonce(truncated_nonce), additional_data
            )
            stats.encrypt_attempts += 1
            stats.encrypt_max_attempts = max(stats.encrypt_max_attempts, attempt)

            processor.ciphertext_bytes = ciphertext
            reconstructed = processor.reconstruct_frame()

            nonce_bytes = write_leb128(truncated_nonce)
            supplemental_size = SUPPLEMENTAL_BYTES + len(nonce_bytes) + ranges_size
            if supplemental_size > _SUPPLEMENTAL_BYTES_SIZE_MAX:
                raise EncryptionError("supplemental bytes size too large")

            encrypted_frame = b"".join(
                (
                    reconstructed,
                    tag,
                    nonce_bytes,
                    ranges_bytes,
                    bytes([supplemental_size]),
                    MARKER_BYTES,
                )
            )

            if validate_encrypted_frame(processor, encrypted_frame):
                return encrypted_frame

        raise EncryptionError("failed to validate encrypted section for codec")

    def _next_cryptor_and_nonce(self) -> tuple[Optional[AesGcmCryptor], int]:
        with self._key_lock:
            if self._key_ratchet is None:
                return None, 0

            self._truncated_nonce = (self._truncated_nonce + 1) & TRUNCATED_SYNC_NONCE_MAX
            generation = compute_wrapped_generation(
                self._current_key_generation,
                self._truncated_nonce >> RATCHET_GENERATION_SHIFT_BITS,
            )

            if generation != self._current_key_generation or self._cryptor is None:
                self._current_key_generation = generation
                key = self._key_ratchet.get_key(generation)
                self._cryptor = create_cryptor(key)

            return self._cryptor, self._truncated_nonce

    def get_max_ciphertext_byte_size(self, media_type: MediaType, frame_size: int) -> int:
        """Upper bound on the encrypted size of a frame of the given size."""
        return frame_size + SUPPLEMENTAL_BYTES + TRANSFORM_PADDING_BYTES

    def stats(self, media_type: MediaType) -> EncryptorStats:
        """A snapshot of the counters for a media type."""
        return dataclasses.replace(self._stats[MediaType(media_type)])

    def set_protocol_version_changed_callback(
        self, callback: Optional[Callable[[], None]]
    ) -> None:
        """Call callback whenever the protocol version changes."""
        self._protocol_version_changed_callback = callback

    def protocol_version(self) -> int:
        return self._current_protocol_version

    def _update_current_protocol_version(self, version: int) -> None:
        if version == self._current_protocol_version:
            return
        self._current_protocol_version = version
        if self._protocol_version_changed_callback is not None:
            self._protocol_version_changed_callback()