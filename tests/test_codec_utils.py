from dataclasses import dataclass, field

import pytest

from davecrypt.codec_utils import (
    MalformedFrameError,
    bytes_covering_h264_pps,
    find_next_h26x_nalu_index,
    process_frame_av1,
    process_frame_h264,
    process_frame_h265,
    process_frame_opus,
    process_frame_vp8,
    process_frame_vp9,
    validate_encrypted_frame,
)
from davecrypt.common import Codec
from davecrypt.ranges import Range, reconstruct


@dataclass
class _Recorder:
    codec: Codec = Codec.UNKNOWN
    unencrypted: bytearray = field(default_factory=bytearray)
    encrypted: bytearray = field(default_factory=bytearray)
    unencrypted_ranges: list = field(default_factory=list)
    index: int = 0

    def add_unencrypted_bytes(self, data):
        if self.unencrypted_ranges and self.unencrypted_ranges[-1].end == self.index:
            last = self.unencrypted_ranges[-1]
            self.unencrypted_ranges[-1] = Range(last.offset, last.size + len(data))
        else:
            self.unencrypted_ranges.append(Range(self.index, len(data)))
        self.unencrypted += data
        self.index += len(data)

    def add_encrypted_bytes(self, data):
        self.encrypted += data
        self.index += len(data)


def _rebuilt(rec):
    return reconstruct(rec.unencrypted_ranges, bytes(rec.unencrypted), bytes(rec.encrypted))


def test_find_short_start_code():
    assert find_next_h26x_nalu_index(b"\x00\x00\x01\x65\xaa") == (3, 3)


def test_find_long_start_code():
    assert find_next_h26x_nalu_index(b"\x00\x00\x00\x01\x65") == (4, 4)


@pytest.mark.parametrize("buffer", [b"", b"\x00\x00", b"\x00\x00\x01", b"\x05\x05\x05\x05"])
def test_find_no_start_code(buffer):
    assert find_next_h26x_nalu_index(buffer) is None


def test_find_respects_search_start():
    buffer = b"\x00\x00\x01\x65\xaa\xbb\x00\x00\x01\x41\xcc"
    first = find_next_h26x_nalu_index(buffer)
    second = find_next_h26x_nalu_index(buffer, first[0])
    assert first == (3, 3)
    assert second[0] > first[0]
    assert buffer[second[0] - 3:second[0]] == b"\x00\x00\x01"


def test_bytes_covering_pps():
    assert bytes_covering_h264_pps(b"\x88\x80\x11") == 2


def test_bytes_covering_pps_rejects_huge_golomb():
    with pytest.raises(MalformedFrameError):
        bytes_covering_h264_pps(b"\x00" * 5)


def test_opus_all_encrypted():
    rec = _Recorder()
    frame = b"\x01\x02\x03\x04"
    process_frame_opus(rec, frame)
    assert bytes(rec.encrypted) == frame
    assert rec.unencrypted_ranges == []
    assert _rebuilt(rec) == frame


def test_vp9_all_encrypted():
    rec = _Recorder()
    frame = b"\x90\x01\x02"
    process_frame_vp9(rec, frame)
    assert bytes(rec.encrypted) == frame
    assert bytes(rec.unencrypted) == b""


def test_vp8_key_frame():
    rec = _Recorder()
    frame = bytes(range(0x10, 0x24))
    process_frame_vp8(rec, frame)
    assert bytes(rec.unencrypted) == frame[:10]
    assert bytes(rec.encrypted) == frame[10:]
    assert _rebuilt(rec) == frame


def test_vp8_delta_frame():
    rec = _Recorder()
    frame = bytes(range(0x11, 0x24))
    process_frame_vp8(rec, frame)
    assert bytes(rec.unencrypted) == frame[:1]
    assert bytes(rec.encrypted) == frame[1:]


def test_vp8_short_key_frame_rejected():
    with pytest.raises(MalformedFrameError):
        process_frame_vp8(_Recorder(), b"\x10\x01\x02")


def test_h264_splits_sps_and_idr():
    frame = (
        b"\x00\x00\x00\x01\x67\xaa\xbb"
        b"\x00\x00\x00\x01\x65\x88\x80\x11\x22\x33"
    )
    rec = _Recorder()
    process_frame_h264(rec, frame)
    assert bytes(rec.unencrypted) == frame[:14]
    assert bytes(rec.encrypted) == frame[14:]
    assert rec.unencrypted_ranges == [Range(0, 14)]
    assert _rebuilt(rec) == frame


def test_h264_short_start_codes_become_long():
    frame = b"\x00\x00\x01\x67\xaa\xbb"
    rec = _Recorder()
    process_frame_h264(rec, frame)
    assert bytes(rec.unencrypted) == b"\x00\x00\x00\x01" + frame[3:]
    assert bytes(rec.encrypted) == b""


def test_h264_too_small():
    with pytest.raises(MalformedFrameError):
        process_frame_h264(_Recorder(), b"\x00\x00\x01")


def test_h265_splits_vps_and_vcl():
    frame = b"\x00\x00\x01\x40\x01\x0c\x00\x00\x01\x26\x01\xaf\xbb\xcc"
    rec = _Recorder()
    process_frame_h265(rec, frame)
    expected_clear = b"\x00\x00\x00\x01" + frame[3:6] + b"\x00\x00\x00\x01" + frame[9:11]
    assert bytes(rec.unencrypted) == expected_clear
    assert bytes(rec.encrypted) == frame[11:]
    assert rec.unencrypted_ranges == [Range(0, len(expected_clear))]


def test_h265_too_small():
    with pytest.raises(MalformedFrameError):
        process_frame_h265(_Recorder(), b"\x00\x00\x01\x26")


def test_av1_drops_temporal_delimiter_and_strips_last_size():
    frame = b"\x12\x00\x32\x03\xaa\xbb\xcc"
    rec = _Recorder()
    process_frame_av1(rec, frame)
    assert bytes(rec.unencrypted) == b"\x30"
    assert bytes(rec.encrypted) == b"\xaa\xbb\xcc"


def test_av1_rewrites_padded_size():
    frame = b"\x32\x83\x00\xaa\xbb\xcc\x30\xdd"
    rec = _Recorder()
    process_frame_av1(rec, frame)
    assert bytes(rec.unencrypted) == b"\x32\x03\x30"
    assert bytes(rec.encrypted) == b"\xaa\xbb\xcc\xdd"
    assert rec.unencrypted_ranges == [Range(0, 2), Range(5, 1)]
    assert _rebuilt(rec) == b"\x32\x03\xaa\xbb\xcc\x30\xdd"


@pytest.mark.parametrize("frame", [b"\x32", b"\x32\x05\xaa", b"\x36\x01", b"\x32\x80"])
def test_av1_malformed(frame):
    with pytest.raises(MalformedFrameError):
        process_frame_av1(_Recorder(), frame)


def test_validate_ignores_other_codecs():
    rec = _Recorder(codec=Codec.VP8, unencrypted_ranges=[Range(0, 1)])
    assert validate_encrypted_frame(rec, b"\x00\x00\x01\x00\x00\x01") is True


def test_validate_accepts_clean_ciphertext():
    rec = _Recorder(codec=Codec.H264, unencrypted_ranges=[Range(0, 4)])
    assert validate_encrypted_frame(rec, b"\x00\x00\x00\x01\x10\x20\x30\x40") is True


def test_validate_rejects_start_code_in_ciphertext():
    rec = _Recorder(codec=Codec.H265, unencrypted_ranges=[Range(0, 4)])
    assert validate_encrypted_frame(rec, b"\x00\x00\x00\x01\x00\x00\x01\x05") is False


def test_validate_checks_sections_between_ranges():
    rec = _Recorder(codec=Codec.H264, unencrypted_ranges=[Range(0, 2), Range(6, 2)])
    frame = b"\x65\x88\x00\x00\x01\x07\x99\x99"
    assert validate_encrypted_frame(rec, frame) is False
    clean = b"\x65\x88\x10\x20\x30\x40\x99\x99"
    assert validate_encrypted_frame(rec, clean) is True