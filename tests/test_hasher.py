"""
Unit tests for the content hasher.
Verifies MD5 + size fingerprints are deterministic and streamed.
"""
import hashlib
import io

import pytest

from album_sync.errors import FileReadError
from album_sync.hasher import ContentFingerprint, fingerprint_file, fingerprint_stream


class _FailingStream(io.RawIOBase):
    def __init__(self):
        self.reads = 0

    def readable(self):
        return True

    def read(self, size=-1):
        self.reads += 1
        if self.reads > 1:
            raise OSError("device not ready")
        return b"x" * size


class _CountingStream(io.BytesIO):
    def __init__(self, data):
        super().__init__(data)
        self.read_sizes = []

    def read(self, size=-1):
        self.read_sizes.append(size)
        return super().read(size)


class TestFingerprint:

    def test_identical_bytes_give_identical_fingerprints(self, media_files):
        fp1 = fingerprint_file(media_files["a"])
        fp2 = fingerprint_file(media_files["a_copy"])
        assert fp1 == fp2
        assert len(fp1.digest) == 16

    def test_single_byte_difference_changes_digest(self, tmp_path):
        first = tmp_path / "one.jpg"
        second = tmp_path / "two.jpg"
        first.write_bytes(b"same prefix" + b"\x00")
        second.write_bytes(b"same prefix" + b"\x01")
        assert fingerprint_file(first).digest != fingerprint_file(second).digest
        assert fingerprint_file(first).size == fingerprint_file(second).size

    def test_matches_hashlib_and_size(self, media_files):
        data = media_files["b"].read_bytes()
        fp = fingerprint_file(media_files["b"])
        assert fp.hexdigest == hashlib.md5(data).hexdigest()
        assert fp.size == len(data)

    def test_filename_does_not_matter(self, tmp_path):
        (tmp_path / "x.jpg").write_bytes(b"content")
        (tmp_path / "y.mov").write_bytes(b"content")
        assert fingerprint_file(tmp_path / "x.jpg") == fingerprint_file(tmp_path / "y.mov")

    def test_empty_file(self, media_files):
        fp = fingerprint_file(media_files["empty"])
        assert fp.size == 0
        assert fp.hexdigest == "d41d8cd98f00b204e9800998ecf8427e"

    def test_stream_is_read_in_chunks(self):
        stream = _CountingStream(b"z" * 10_000)
        fp = fingerprint_stream(stream, chunk_size=1024)
        assert fp.size == 10_000
        assert set(stream.read_sizes) == {1024}

    def test_missing_file_raises_file_read_error(self, tmp_path):
        with pytest.raises(FileReadError) as excinfo:
            fingerprint_file(tmp_path / "nope.jpg")
        assert "nope.jpg" in str(excinfo.value)

    def test_read_failure_mid_stream_raises_file_read_error(self):
        with pytest.raises(FileReadError):
            fingerprint_stream(_FailingStream(), name="broken", chunk_size=16)


class TestContentFingerprint:

    def test_from_hex_round_trips_hexdigest(self):
        hexdigest = hashlib.md5(b"abc").hexdigest()
        fp = ContentFingerprint.from_hex(hexdigest, 3)
        assert fp.hexdigest == hexdigest
        assert fp.size == 3

    def test_from_hex_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            ContentFingerprint.from_hex("abcd", 1)

    def test_from_hex_rejects_non_hex(self):
        with pytest.raises(ValueError):
            ContentFingerprint.from_hex("zz" * 16, 1)
