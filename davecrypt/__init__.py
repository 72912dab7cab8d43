"""Codec-aware end-to-end encryption of media frames with AES-128-GCM."""

__version__ = "1.0.0"