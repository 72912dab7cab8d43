# davecrypt

Frame-level end-to-end encryption for real-time audio and video.

`davecrypt` encrypts encoded media frames with AES-128-GCM using an 8-byte
truncated tag. The parts of a frame that packetizers must read (H.264/H.265
NAL unit headers and slice headers up to the PPS id, AV1 OBU headers, the VP8
payload header) stay in the clear and are authenticated as additional data.
After the frame comes a trailer holding the tag, the LEB128-encoded truncated
nonce, the table of unencrypted ranges, the trailer size and the marker
bytes `FA FA`. A receiver parses the trailer, decrypts and restores the
original frame.

## Modules

- `davecrypt.common` – `MediaType` and `Codec` enums and the layout, timing
  and behaviour constants.
- `davecrypt.cryptor` – `AesGcmCryptor` (encrypt returns
  `(ciphertext, tag)`; decrypt raises `cryptography.exceptions.InvalidTag` on
  failure) and `create_cryptor`, which returns `None` for an unusable key.
- `davecrypt.ranges` – LEB128 helpers (`leb128_size`, `write_leb128`,
  `read_leb128`), the `Range` type, and serialization, validation and
  reconstruction of unencrypted range tables.
- `davecrypt.codec_utils` – per-codec frame splitting for Opus, VP8, VP9,
  H.264, H.265 and AV1, H.26x start code search, and
  `validate_encrypted_frame`, which rejects H.26x output whose encrypted
  sections contain a start code.
- `davecrypt.frame_processors` – `OutboundFrameProcessor` splits a frame by
  codec (malformed frames and unknown codecs are encrypted whole);
  `InboundFrameProcessor` parses a received frame.
- `davecrypt.cryptor_manager` – the `KeyRatchet` protocol and
  `CryptorManager`, which derives generations from nonces (with 8-bit
  wrapping), caps how far generations may run ahead, rejects replayed nonces
  while tolerating up to 1000 missing ones, and expires and deletes old keys.
- `davecrypt.encryptor` – `Encryptor`, `EncryptionError`, `EncryptorStats`.
- `davecrypt.decryptor` – `Decryptor`, `DecryptionError`, `DecryptorStats`.
- `davecrypt.logger` – `LoggingSeverity`, `log` and `set_log_sink`.

## Installation

```
pip install davecrypt
```

Python 3.10 or later is required. The only runtime dependency is
`cryptography`.

## Usage

Keys come from a key ratchet: any object with `get_key(generation)`
returning a 16-byte key and `delete_key(generation)`, as described by
`davecrypt.cryptor_manager.KeyRatchet`.

```python
from davecrypt.common import Codec, MediaType
from davecrypt.cryptor_manager import KeyRatchet
from davecrypt.decryptor import Decryptor
from davecrypt.encryptor import Encryptor


class FixedRatchet(KeyRatchet):
    def __init__(self, key: bytes) -> None:
        self._key = key

    def get_key(self, generation):
        return self._key

    def delete_key(self, generation):
        pass


key = bytes(16)  # made-up key material for the example

encryptor = Encryptor()
encryptor.set_key_ratchet(FixedRatchet(key))
encryptor.assign_ssrc_to_codec(1234, Codec.OPUS)

encrypted = encryptor.encrypt(MediaType.AUDIO, 1234, b"\x01\x02\x03\x04")

decryptor = Decryptor()
decryptor.transition_to_key_ratchet(FixedRatchet(key))
assert decryptor.decrypt(MediaType.AUDIO, encrypted) == b"\x01\x02\x03\x04"
```

A stream whose SSRC has no assigned codec is treated as `Codec.UNKNOWN` and
its frame is encrypted whole. For H.264 and H.265 the encryptor re-encrypts
with the next nonce, up to 10 times, when the output would contain a start
code.

Failures are raised as `EncryptionError` and `DecryptionError`. Counters are
available as snapshots through `Encryptor.stats(media_type)` and
`Decryptor.stats(media_type)`; durations are in microseconds.
`get_max_ciphertext_byte_size` and `get_max_plaintext_byte_size` give upper
bounds on output sizes.

`Decryptor` takes an optional clock (a callable returning seconds; default
`time.monotonic`). Each call to `transition_to_key_ratchet` sets the
existing ratchets to expire after the transition period (10 seconds by
default) and adds the new one; frames are tried against the newest ratchet
first. The Opus silence packet `F8 FF FE` is returned unchanged for audio.

### Passthrough

`Encryptor.set_passthrough_mode(True)` returns frames unchanged and sets the
protocol version to 0; switching it off restores the encryptor's maximum
protocol version (1 by default, set with `Encryptor(max_protocol_version=...)`).
A callback set with `set_protocol_version_changed_callback` is called when
the version changes; `protocol_version()` returns the current one.

`Decryptor.transition_to_passthrough_mode(True)` accepts unencrypted frames.
Switching it off keeps accepting them for the given transition period and
then rejects them. By default a new `Decryptor` rejects unencrypted frames.

### Logging

Without a sink, messages are printed to standard output prefixed with their
source file and line. To route them elsewhere:

```python
from davecrypt.logger import LoggingSeverity, set_log_sink

def sink(severity: LoggingSeverity, file: str, line: int, message: str) -> None:
    ...

previous = set_log_sink(sink)
```

## What this package does not do

It does not establish keys. There is no group key agreement, session
handling or key ratchet implementation: the caller supplies an object that
provides per-generation keys. It also has no command-line interface and does
no packetization or network transport.

## Running the tests

```
pip install -e ".[test]"
pytest
```