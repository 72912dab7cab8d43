"""Per-ratchet management of generation cryptors and replay protection."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from .common import (
    CRYPTOR_EXPIRY,
    GENERATION_WRAP,
    MAX_FRAMES_PER_SECOND,
    MAX_GENERATION_GAP,
    MAX_MISSING_NONCES,
    RATCHET_GENERATION_SHIFT_BITS,
)
from .cryptor import AesGcmCryptor, create_cryptor
from .logger import LoggingSeverity, log

Clock = Callable[[], float]


@runtime_checkable
class KeyRatchet(Protocol):
    """Source of per-generation encryption keys."""

    def get_key(self, generation: int) -> bytes:
        """Return the encryption key for a generation."""

    def delete_key(self, generation: int) -> None:
        """Forget the key for a generation that is no longer needed."""


def compute_wrapped_generation(oldest: int, generation: int) -> int:
    """Expand an 8-bit generation to a full one, assuming it is not older than oldest."""
    remainder = oldest % GENERATION_WRAP
    factor = oldest // GENERATION_WRAP + (1 if generation < remainder else 0)
    return factor * GENERATION_WRAP + generation


def compute_wrapped_big_nonce(generation: int, nonce: int) -> int:
    """Combine a full generation with the low bits of a truncated nonce."""
    masked_nonce = nonce & ((1 << RATCHET_GENERATION_SHIFT_BITS) - 1)
    return (generation << RATCHET_GENERATION_SHIFT_BITS) | masked_nonce


@dataclass
class _ExpiringCryptor:
    cryptor: Optional[AesGcmCryptor]
    expiry: float


class CryptorManager:
    """Holds the cryptors of one key ratchet and tracks which nonces were seen.

    ``clock`` is a callable returning the current time in seconds.
    """

    def __init__(self, clock: Clock, key_ratchet: KeyRatchet) -> None:
        self._clock = clock
        self._key_ratchet = key_ratchet
        self._cryptors: dict[int, _ExpiringCryptor] = {}
        self._ratchet_creation = clock()
        self._ratchet_expiry = math.inf
        self._oldest_generation = 0
        self._newest_generation = 0
        self._newest_processed_nonce: Optional[int] = None
        self._missing_nonces: deque[int] = deque()

    def update_expiry(self, expiry: float) -> None:
        """Set the time after which this manager is expired."""
        self._ratchet_expiry = expiry

    def is_expired(self) -> bool:
        return self._clock() > self._ratchet_expiry

    def can_process_nonce(self, generation: int, nonce: int) -> bool:
        """True if the nonce is newer than any seen, or is a known missing one."""
        if self._newest_processed_nonce is None:
            return True
        big_nonce = compute_wrapped_big_nonce(generation, nonce)
        return big_nonce > self._newest_processed_nonce or big_nonce in self._missing_nonces

    def compute_wrapped_generation(self, generation: int) -> int:
        return compute_wrapped_generation(self._oldest_generation, generation)

    def get_cryptor(self, generation: int) -> Optional[AesGcmCryptor]:
        """Return the cryptor for a generation, or None if it is not acceptable."""
        self._cleanup_expired_cryptors()

        if generation < self._oldest_generation:
            log(
                LoggingSeverity.INFO,
                f"Received frame with old generation: {generation}, "
                f"oldest generation: {self._oldest_generation}",
            )
            return None

        if generation > self._newest_generation + MAX_GENERATION_GAP:
            log(
                LoggingSeverity.INFO,
                f"Received frame with future generation: {generation}, "
                f"newest generation: {self._newest_generation}",
            )
            return None

        lifetime_seconds = int(self._clock() - self._ratchet_creation)
        max_lifetime_frames = MAX_FRAMES_PER_SECOND * lifetime_seconds
        max_lifetime_generations = max_lifetime_frames >> RATCHET_GENERATION_SHIFT_BITS
        if generation > max_lifetime_generations:
            log(
                LoggingSeverity.INFO,
                f"Received frame with generation {generation} beyond ratchet max "
                f"lifetime generations: {max_lifetime_generations}, "
                f"ratchet lifetime: {lifetime_seconds}s",
            )
            return None

        entry = self._cryptors.get(generation)
        if entry is None:
            entry = self._make_expiring_cryptor(generation)
            self._cryptors[generation] = entry
        return entry.cryptor

    def report_cryptor_success(self, generation: int, nonce: int) -> None:
        """Record a successful decryption, updating replay state and cryptor expiry."""
        big_nonce = compute_wrapped_big_nonce(generation, nonce)

        if self._newest_processed_nonce is None:
            self._newest_processed_nonce = big_nonce
        elif big_nonce > self._newest_processed_nonce:
            oldest_missing = max(big_nonce - MAX_MISSING_NONCES, 0)
            while self._missing_nonces and self._missing_nonces[0] < oldest_missing:
                self._missing_nonces.popleft()
            missing_start = max(oldest_missing, self._newest_processed_nonce + 1)
            self._missing_nonces.extend(range(missing_start, big_nonce))
            self._newest_processed_nonce = big_nonce
        else:
            try:
                self._missing_nonces.remove(big_nonce)
            except ValueError:
                pass

        if generation <= self._newest_generation or generation not in self._cryptors:
            return

        log(LoggingSeverity.INFO, f"Reporting cryptor success, generation: {generation}")
        self._newest_generation = generation

        expiry_time = self._clock() + CRYPTOR_EXPIRY
        for gen, entry in self._cryptors.items():
            if gen < self._newest_generation:
                log(LoggingSeverity.INFO, f"Updating expiry for cryptor, generation: {gen}")
                entry.expiry = min(entry.expiry, expiry_time)

    def _make_expiring_cryptor(self, generation: int) -> _ExpiringCryptor:
        key = self._key_ratchet.get_key(generation)
        expiry = math.inf
        # Frames may arrive out of order after moving to a newer generation.
        if generation < self._newest_generation:
            log(LoggingSeverity.INFO, f"Creating cryptor for old generation: {generation}")
            expiry = self._clock() + CRYPTOR_EXPIRY
        else:
            log(LoggingSeverity.INFO, f"Creating cryptor for new generation: {generation}")
        return _ExpiringCryptor(create_cryptor(key), expiry)

    def _cleanup_expired_cryptors(self) -> None:
        now = self._clock()
        for generation in [g for g, e in self._cryptors.items() if e.expiry < now]:
            log(LoggingSeverity.INFO, f"Removing expired cryptor, generation: {generation}")
            del self._cryptors[generation]

        while (
            self._oldest_generation < self._newest_generation
            and self._oldest_generation not in self._cryptors
        ):
            log(
                LoggingSeverity.INFO,
                f"Deleting key for old generation: {self._oldest_generation}",
            )
            self._key_ratchet.delete_key(self._oldest_generation)
            self._oldest_generation += 1