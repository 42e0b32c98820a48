"""AES-256-GCM single-shot and chunked streaming modes."""

import io
import os

import pytest

from encryption import (
    ALGORITHM_GCM, ALGORITHM_GCM_STREAM, IV_BYTES, TAG_BYTES, EncryptedPayload,
    EncryptionEngine, decrypt, encrypt, encrypted_size,
)
from errors import IntegrityError, InvalidInputError
from keys import generate_key

CHUNK = 1024


def _seal(engine, plaintext, key):
    sink = io.BytesIO()
    iv = engine.encrypt_stream(io.BytesIO(plaintext), sink, key)
    return iv, sink.getvalue()


def _open(engine, blob, key, iv):
    sink = io.BytesIO()
    engine.decrypt_stream(io.BytesIO(blob), sink, key, iv)
    return sink.getvalue()


class TestSingleShot:

    def setup_method(self):
        self.key = generate_key()

    def test_round_trip(self):
        payload = encrypt(b"attack at dawn", self.key)
        assert len(payload.iv) == IV_BYTES
        assert len(payload.tag) == TAG_BYTES
        assert payload.ciphertext != b"attack at dawn"
        assert decrypt(payload, self.key) == b"attack at dawn"

    def test_fresh_iv_every_time(self):
        assert encrypt(b"x", self.key).iv != encrypt(b"x", self.key).iv

    def test_wrong_key_fails(self):
        payload = encrypt(b"attack at dawn", self.key)
        with pytest.raises(IntegrityError):
            decrypt(payload, generate_key())

    @pytest.mark.parametrize("part", ["ciphertext", "tag"])
    def test_flipped_bit_fails(self, part):
        payload = encrypt(b"attack at dawn", self.key)
        blob = bytearray(payload.blob)
        blob[0 if part == "ciphertext" else -1] ^= 0x01
        with pytest.raises(IntegrityError):
            decrypt(EncryptedPayload.from_blob(payload.iv, bytes(blob)), self.key)

    def test_blob_shorter_than_tag_fails(self):
        with pytest.raises(IntegrityError):
            EncryptedPayload.from_blob(os.urandom(IV_BYTES), b"short")

    def test_bad_key_length_rejected(self):
        with pytest.raises(InvalidInputError):
            encrypt(b"x", b"\x00" * 16)


class TestStreaming:

    def setup_method(self):
        self.engine = EncryptionEngine(chunk_size=CHUNK)
        self.key = generate_key()

    @pytest.mark.parametrize("size", [0, 1, CHUNK - 1, CHUNK, CHUNK + 1, 3 * CHUNK, 5000])
    def test_round_trip_and_size(self, size):
        plaintext = os.urandom(size)
        iv, blob = _seal(self.engine, plaintext, self.key)
        assert len(blob) == encrypted_size(size, CHUNK)
        assert _open(self.engine, blob, self.key, iv) == plaintext

    def test_arbitrary_piece_boundaries(self):
        plaintext = os.urandom(5000)
        iv, blob = _seal(self.engine, plaintext, self.key)
        pieces = [blob[i:i + 7] for i in range(0, len(blob), 7)]
        assert b"".join(self.engine.iter_decrypt(pieces, self.key, iv)) == plaintext

    def test_decrypt_blob_dispatches_on_algorithm(self):
        plaintext = os.urandom(3000)
        iv, blob = _seal(self.engine, plaintext, self.key)
        assert self.engine.decrypt_blob(blob, self.key, iv, ALGORITHM_GCM_STREAM) == plaintext

        payload = self.engine.encrypt(plaintext, self.key)
        assert self.engine.decrypt_blob(payload.blob, self.key, payload.iv, ALGORITHM_GCM) == plaintext

        with pytest.raises(InvalidInputError):
            self.engine.decrypt_blob(blob, self.key, iv, "ROT13")

    def test_wrong_key_fails(self):
        iv, blob = _seal(self.engine, os.urandom(3000), self.key)
        with pytest.raises(IntegrityError):
            _open(self.engine, blob, generate_key(), iv)

    def test_flipped_bit_in_any_chunk_fails(self):
        iv, blob = _seal(self.engine, os.urandom(3 * CHUNK), self.key)
        for offset in (0, CHUNK + TAG_BYTES + 5, len(blob) - 1):
            tampered = bytearray(blob)
            tampered[offset] ^= 0x80
            with pytest.raises(IntegrityError):
                _open(self.engine, bytes(tampered), self.key, iv)

    def test_truncation_at_chunk_boundary_fails(self):
        """Dropping whole trailing chunks must not look like a shorter valid file."""
        iv, blob = _seal(self.engine, os.urandom(2 * CHUNK), self.key)
        record = CHUNK + TAG_BYTES
        assert len(blob) == 2 * record
        with pytest.raises(IntegrityError):
            _open(self.engine, blob[:record], self.key, iv)

    def test_reordered_chunks_fail(self):
        iv, blob = _seal(self.engine, os.urandom(3 * CHUNK + 10), self.key)
        record = CHUNK + TAG_BYTES
        swapped = blob[record:2 * record] + blob[:record] + blob[2 * record:]
        with pytest.raises(IntegrityError):
            _open(self.engine, swapped, self.key, iv)

    def test_appended_bytes_fail(self):
        iv, blob = _seal(self.engine, os.urandom(100), self.key)
        with pytest.raises(IntegrityError):
            _open(self.engine, blob + b"\x00", self.key, iv)

    def test_empty_stream_fails(self):
        with pytest.raises(IntegrityError):
            _open(self.engine, b"", self.key, os.urandom(IV_BYTES))
