"""Decryption of received media frames across key ratchet transitions."""

from __future__ import annotations

import dataclasses
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag

from .common import (
    AES_GCM_128_TRUNCATED_SYNC_NONCE_OFFSET,
    DEFAULT_TRANSITION_DURATION,
    OPUS_SILENCE_PACKET,
    RATCHET_GENERATION_SHIFT_BITS,
    MediaType,
)
from .cryptor_manager import CryptorManager, KeyRatchet
from .frame_processors import InboundFrameProcessor
from .logger import LoggingSeverity, log

Clock = Callable[[], float]

_STATS_INTERVAL = 10.0


class DecryptionError(ValueError):
    """A frame could not be decrypted or passed through."""


@dataclass
class DecryptorStats:
    """Counters kept per media type; durations are in microseconds."""

    passthrough_count: int = 0
    decrypt_success_count: int = 0
    decrypt_failure_count: int = 0
    decrypt_duration: int = 0
    decrypt_attempts: int = 0


def _full_nonce(truncated_nonce: int) -> bytes:
    return bytes(AES_GCM_128_TRUNCATED_SYNC_NONCE_OFFSET) + truncated_nonce.to_bytes(
        4, "little"
    )


class Decryptor:
    """Decrypts frames with the newest usable key ratchet, falling back to older ones.

    ``clock`` is a callable returning the current time in seconds; it
    defaults to ``time.monotonic``.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock if clock is not None else time.monotonic
        self._cryptor_managers: deque[CryptorManager] = deque()
        self._allow_passthrough_until = -math.inf
        self._last_stats_time = -math.inf
        self._stats = {media: DecryptorStats() for media in MediaType}

    def transition_to_key_ratchet(
        self,
        key_ratchet: Optional[KeyRatchet],
        transition_expiry: float = DEFAULT_TRANSITION_DURATION,
    ) -> None:
        """Expire existing ratchets after transition_expiry seconds and add a new one."""
        log(
            LoggingSeverity.INFO,
            f"Transitioning to new key ratchet: {key_ratchet!r}, expiry: {transition_expiry}",
        )
        max_expiry = self._clock() + transition_expiry
        for manager in self._cryptor_managers:
            manager.update_expiry(max_expiry)

        if key_ratchet is not None:
            self._cryptor_managers.append(CryptorManager(self._clock, key_ratchet))

    def transition_to_passthrough_mode(
        self,
        passthrough_mode: bool,
        transition_expiry: float = DEFAULT_TRANSITION_DURATION,
    ) -> None:
        """Allow unencrypted frames indefinitely, or only for transition_expiry more seconds."""
        if passthrough_mode:
            self._allow_passthrough_until = math.inf
        else:
            max_expiry = self._clock() + transition_expiry
            self._allow_passthrough_until = min(self._allow_passthrough_until, max_expiry)

    def decrypt(self, media_type: MediaType, encrypted_frame: bytes) -> bytes:
        """Return the plaintext frame, raising DecryptionError if it cannot be produced."""
        try:
            media_type = MediaType(media_type)
        except ValueError as error:
            log(LoggingSeverity.WARNING, f"Decrypt failed, invalid media type: {media_type}")
            raise DecryptionError(f"invalid media type: {media_type}") from error

        encrypted_frame = bytes(encrypted_frame)
        start = self._clock()
        stats = self._stats[media_type]

        if media_type is MediaType.AUDIO and encrypted_frame == OPUS_SILENCE_PACKET:
            log(
                LoggingSeverity.VERBOSE,
                f"Decrypt skipping silence of size: {len(encrypted_frame)}",
            )
            return encrypted_frame

        self._cleanup_expired_cryptor_managers()

        frame = InboundFrameProcessor()
        frame.parse_frame(encrypted_frame)

        can_use_passthrough = self._allow_passthrough_until > start
        if not frame.is_encrypted:
            if can_use_passthrough:
                stats.passthrough_count += 1
                return encrypted_frame
            log(
                LoggingSeverity.INFO,
                "Decrypt failed, frame is not encrypted and pass through is disabled",
            )
            stats.decrypt_failure_count += 1
            raise DecryptionError("frame is not encrypted and pass through is disabled")

        success = any(
            self._decrypt_with(manager, media_type, frame)
            for manager in reversed(self._cryptor_managers)
        )

        result: Optional[bytes] = None
        if success:
            stats.decrypt_success_count += 1
            result = frame.reconstruct_frame()
        else:
            stats.decrypt_failure_count += 1
            log(
                LoggingSeverity.WARNING,
                f"Decrypt failed, no valid cryptor found, type: {media_type.label}, "
                f"encrypted frame size: {len(encrypted_frame)}, "
                f"number of cryptor managers: {len(self._cryptor_managers)}, "
                f"pass through enabled: {'yes' if can_use_passthrough else 'no'}",
            )

        end = self._clock()
        if end > self._last_stats_time + _STATS_INTERVAL:
            self._last_stats_time = end
            audio, video = self._stats[MediaType.AUDIO], self._stats[MediaType.VIDEO]
            log(
                LoggingSeverity.INFO,
                f"Decrypted audio: {audio.decrypt_success_count}, "
                f"video: {video.decrypt_success_count}. "
                f"Failed audio: {audio.decrypt_failure_count}, "
                f"video: {video.decrypt_failure_count}",
            )
        stats.decrypt_duration += int((end - start) * 1_000_000)

        if result is None:
            raise DecryptionError("no valid cryptor found")
        return result

    def _decrypt_with(
        self,
        manager: CryptorManager,
        media_type: MediaType,
        frame: InboundFrameProcessor,
    ) -> bool:
        truncated_nonce = frame.truncated_nonce
        generation = manager.compute_wrapped_generation(
            truncated_nonce >> RATCHET_GENERATION_SHIFT_BITS
        )

        if not manager.can_process_nonce(generation, truncated_nonce):
            log(
                LoggingSeverity.INFO,
                f"Decrypt failed, cannot process nonce: {truncated_nonce}",
            )
            return False

        cryptor = manager.get_cryptor(generation)
        if cryptor is None:
            log(
                LoggingSeverity.INFO,
                f"Decrypt failed, no cryptor found for generation: {generation}",
            )
            return False

        try:
            plaintext = cryptor.decrypt(
                frame.ciphertext,
                frame.tag,
                _full_nonce(truncated_nonce),
                frame.authenticated_data,
            )
            success = True
        except InvalidTag:
            success = False
        self._stats[media_type].decrypt_attempts += 1

        if success:
            frame.plaintext = plaintext
            manager.report_cryptor_success(generation, truncated_nonce)
        return success

    def get_max_plaintext_byte_size(
        self, media_type: MediaType, encrypted_frame_size: int
    ) -> int:
        """Upper bound on the plaintext size for an encrypted frame of the given size."""
        return encrypted_frame_size

    def stats(self, media_type: MediaType) -> DecryptorStats:
        """A snapshot of the counters for a media type."""
        return dataclasses.replace(self._stats[MediaType(media_type)])

    def _cleanup_expired_cryptor_managers(self) -> None:
        while self._cryptor_managers and self._cryptor_managers[0].is_expired():
            log(LoggingSeverity.INFO, "Removing expired cryptor manager.")
            self._cryptor_managers.popleft()