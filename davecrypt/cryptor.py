"""AES-128-GCM with a truncated tag."""

from __future__ import annotations

from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .common import (
    AES_GCM_128_KEY_BYTES,
    AES_GCM_128_NONCE_BYTES,
    AES_GCM_128_TRUNCATED_TAG_BYTES,
)
from .logger import LoggingSeverity, log


class AesGcmCryptor:
    """AES-128-GCM cipher producing and checking 8-byte truncated tags.

    Decryption failures raise ``cryptography.exceptions.InvalidTag``.
    """

    def __init__(self, key: bytes) -> None:
        key = bytes(key)
        if len(key) != AES_GCM_128_KEY_BYTES:
            raise ValueError(
                f"key must be {AES_GCM_128_KEY_BYTES} bytes, got {len(key)}"
            )
        self._algorithm = algorithms.AES(key)

    @staticmethod
    def _check_nonce(nonce: bytes) -> bytes:
        nonce = bytes(nonce)
        if len(nonce) != AES_GCM_128_NONCE_BYTES:
            raise ValueError(
                f"nonce must be {AES_GCM_128_NONCE_BYTES} bytes, got {len(nonce)}"
            )
        return nonce

    def encrypt(
        self, plaintext: bytes, nonce: bytes, additional_data: bytes = b""
    ) -> tuple[bytes, bytes]:
        """Return (ciphertext, truncated tag)."""
        nonce = self._check_nonce(nonce)
        encryptor = Cipher(self._algorithm, modes.GCM(nonce)).encryptor()
        encryptor.authenticate_additional_data(bytes(additional_data))
        ciphertext = encryptor.update(bytes(plaintext)) + encryptor.finalize()
        return ciphertext, encryptor.tag[:AES_GCM_128_TRUNCATED_TAG_BYTES]

    def decrypt(
        self,
        ciphertext: bytes,
        tag: bytes,
        nonce: bytes,
        additional_data: bytes = b"",
    ) -> bytes:
        """Return the plaintext, raising InvalidTag if authentication fails."""
        nonce = self._check_nonce(nonce)
        tag = bytes(tag)
        if len(tag) != AES_GCM_128_TRUNCATED_TAG_BYTES:
            raise ValueError(
                f"tag must be {AES_GCM_128_TRUNCATED_TAG_BYTES} bytes, got {len(tag)}"
            )
        decryptor = Cipher(
            self._algorithm,
            modes.GCM(nonce, tag, min_tag_length=AES_GCM_128_TRUNCATED_TAG_BYTES),
        ).decryptor()
        decryptor.authenticate_additional_data(bytes(additional_data))
        return decryptor.update(bytes(ciphertext)) + decryptor.finalize()


def create_cryptor(key: bytes) -> Optional[AesGcmCryptor]:
    """Build a cryptor for the key, or return None if the key is unusable."""
    try:
        return AesGcmCryptor(key)
    except ValueError as error:
        log(LoggingSeverity.ERROR, f"Failed to initialize AEAD context: {error}")
        return None