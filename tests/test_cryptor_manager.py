import pytest

from davecrypt.common import CRYPTOR_EXPIRY, GENERATION_WRAP, MAX_GENERATION_GAP
from davecrypt.cryptor import AesGcmCryptor
from davecrypt.cryptor_manager import (
    CryptorManager,
    compute_wrapped_big_nonce,
    compute_wrapped_generation,
)

LATE = 1e9


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeRatchet:
    def __init__(self, key_size=16):
        self.key_size = key_size
        self.deleted = []
        self.requested = []

    def get_key(self, generation):
        self.requested.append(generation)
        return bytes([generation % 256]) * self.key_size

    def delete_key(self, generation):
        self.deleted.append(generation)


def make_manager(now=0.0, key_size=16):
    clock = FakeClock(now)
    ratchet = FakeRatchet(key_size)
    return CryptorManager(clock, ratchet), clock, ratchet


@pytest.mark.parametrize("oldest", range(0, 1200, 37))
def test_wrapped_generation_invariants(oldest):
    for generation in range(GENERATION_WRAP):
        wrapped = compute_wrapped_generation(oldest, generation)
        assert wrapped % GENERATION_WRAP == generation
        assert oldest <= wrapped < oldest + GENERATION_WRAP


def test_wrapped_generation_identity_from_zero():
    assert [compute_wrapped_generation(0, g) for g in range(5)] == [0, 1, 2, 3, 4]


@pytest.mark.parametrize("generation", [0, 1, 255, 300])
@pytest.mark.parametrize("nonce", [0, 1, 0x00FFFFFF, 0x12345678, 0xFFFFFFFF])
def test_wrapped_big_nonce_splits_back(generation, nonce):
    big = compute_wrapped_big_nonce(generation, nonce)
    assert big >> 24 == generation
    assert big & 0xFFFFFF == nonce & 0xFFFFFF


def test_get_cryptor_generation_zero_is_cached():
    manager, _, ratchet = make_manager()
    first = manager.get_cryptor(0)
    assert isinstance(first, AesGcmCryptor)
    assert manager.get_cryptor(0) is first
    assert ratchet.requested == [0]


def test_generation_beyond_ratchet_lifetime_is_rejected():
    manager, clock, _ = make_manager()
    assert manager.get_cryptor(1) is None
    clock.now = LATE
    assert isinstance(manager.get_cryptor(1), AesGcmCryptor)


def test_generation_too_far_in_future_is_rejected():
    manager, clock, _ = make_manager()
    clock.now = LATE
    assert manager.get_cryptor(MAX_GENERATION_GAP + 1) is None
    assert isinstance(manager.get_cryptor(MAX_GENERATION_GAP), AesGcmCryptor)


def test_invalid_key_gives_no_cryptor():
    manager, _, _ = make_manager(key_size=5)
    assert manager.get_cryptor(0) is None


def test_nonce_replay_and_missing_nonces():
    manager, _, _ = make_manager()
    assert manager.can_process_nonce(0, 5)
    manager.report_cryptor_success(0, 5)
    assert not manager.can_process_nonce(0, 5)
    assert manager.can_process_nonce(0, 6)
    assert manager.can_process_nonce(0, 3)
    manager.report_cryptor_success(0, 3)
    assert not manager.can_process_nonce(0, 3)
    assert manager.can_process_nonce(0, 4)


def test_missing_nonce_window_is_bounded():
    manager, _, _ = make_manager()
    manager.report_cryptor_success(0, 0)
    manager.report_cryptor_success(0, 2000)
    assert not manager.can_process_nonce(0, 500)
    assert manager.can_process_nonce(0, 1500)
    assert manager.can_process_nonce(0, 2001)


def test_newer_generation_expires_old_cryptors_and_deletes_keys():
    manager, clock, ratchet = make_manager(now=LATE)
    assert manager.get_cryptor(0) is not None
    assert manager.get_cryptor(1) is not None

    manager.report_cryptor_success(1, 1 << 24)
    clock.now += CRYPTOR_EXPIRY / 2
    assert manager.get_cryptor(0) is not None
    assert ratchet.deleted == []

    clock.now += CRYPTOR_EXPIRY
    assert manager.get_cryptor(1) is not None
    assert ratchet.deleted == [0]
    assert manager.get_cryptor(0) is None
    assert manager.compute_wrapped_generation(0) == GENERATION_WRAP


def test_compute_wrapped_generation_method_uses_oldest_zero():
    manager, _, _ = make_manager()
    assert manager.compute_wrapped_generation(7) == compute_wrapped_generation(0, 7)


def test_update_expiry_and_is_expired():
    manager, clock, _ = make_manager(now=100.0)
    assert not manager.is_expired()
    manager.update_expiry(110.0)
    assert not manager.is_expired()
    clock.now = 110.5
    assert manager.is_expired()