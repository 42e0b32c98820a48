from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from dataclasses import dataclass
import os
import struct

from errors import IntegrityError, InvalidInputError

ALGORITHM_GCM = "AES-256-GCM"
ALGORITHM_GCM_STREAM = "AES-256-GCM-STREAM"
SUPPORTED_ALGORITHMS = (ALGORITHM_GCM, ALGORITHM_GCM_STREAM)

KEY_BYTES = 32
IV_BYTES = 16           # 128-bit IV, fresh per encryption
TAG_BYTES = 16          # 128-bit GCM tag
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class EncryptedPayload:
    iv: bytes
    ciphertext: bytes
    tag: bytes

    @property
    def blob(self) -> bytes:
        """Wire form: ciphertext followed by the tag."""
        return self.ciphertext + self.tag

    @classmethod
    def from_blob(cls, iv: bytes, blob: bytes) -> "EncryptedPayload":
        if len(blob) < TAG_BYTES:
            raise IntegrityError()
        return cls(iv=iv, ciphertext=blob[:-TAG_BYTES], tag=blob[-TAG_BYTES:])


def _cipher(key: bytes) -> AESGCM:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
        raise InvalidInputError("Key must be 256 bits")
    return AESGCM(bytes(key))


def _chunk_nonce(iv: bytes, index: int) -> bytes:
    # Counter XORed into the low 8 bytes keeps nonces unique within a file.
    low = int.from_bytes(iv[8:], "big") ^ index
    return iv[:8] + low.to_bytes(8, "big")


def _chunk_aad(index: int, final: bool) -> bytes:
    return struct.pack(">QB", index, 1 if final else 0)


def _read_full(source, size: int) -> bytes:
    """Read up to `size` bytes, tolerating short reads from pipes and sockets."""
    parts = []
    remaining = size
    while remaining:
        part = source.read(remaining)
        if not part:
            break
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


def encrypted_size(plaintext_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Ciphertext length produced by the streaming mode for a given input size."""
    chunks = max(1, -(-plaintext_size // chunk_size))
    return plaintext_size + chunks * TAG_BYTES


class EncryptionEngine:

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise InvalidInputError("Chunk size must be positive")
        self.chunk_size = chunk_size

    # ── single shot ──────────────────────────────────────────

    def encrypt(self, plaintext: bytes, key: bytes) -> EncryptedPayload:
        """AES-256-GCM with a fresh random IV."""
        aesgcm = _cipher(key)
        iv = os.urandom(IV_BYTES)
        sealed = aesgcm.encrypt(iv, plaintext, None)
        return EncryptedPayload(iv=iv, ciphertext=sealed[:-TAG_BYTES], tag=sealed[-TAG_BYTES:])

    def decrypt(self, payload: EncryptedPayload, key: bytes) -> bytes:
        aesgcm = _cipher(key)
        if len(payload.iv) != IV_BYTES or len(payload.tag) != TAG_BYTES:
            raise IntegrityError()
        try:
            return aesgcm.decrypt(payload.iv, payload.ciphertext + payload.tag, None)
        except InvalidTag:
            raise IntegrityError() from None

    # ── streaming ────────────────────────────────────────────

    def iter_encrypt(self, source, key: bytes, iv: bytes):
        """
        Yield sealed chunks for everything readable from `source`.

        Each chunk is `ciphertext || tag`; associated data binds the chunk
        index and a final-chunk flag so truncation and reordering fail to
        authenticate. Memory stays bounded by the chunk size.
        """
        aesgcm = _cipher(key)
        if len(iv) != IV_BYTES:
            raise InvalidInputError("IV must be 128 bits")

        index = 0
        current = _read_full(source, self.chunk_size)
        while True:
            following = _read_full(source, self.chunk_size) if len(current) == self.chunk_size else b""
            final = not following
            yield aesgcm.encrypt(_chunk_nonce(iv, index), current, _chunk_aad(index, final))
            if final:
                return
            index += 1
            current = following

    def iter_decrypt(self, pieces, key: bytes, iv: bytes):
        """
        Authenticate and decrypt a sealed stream delivered in arbitrary pieces.

        Plaintext chunks are yielded only after their tag verifies.
        """
        aesgcm = _cipher(key)
        if len(iv) != IV_BYTES:
            raise IntegrityError()

        record = self.chunk_size + TAG_BYTES
        buf = bytearray()
        index = 0
        for piece in pieces:
            buf += piece
            # A full record is only known to be non-final once more bytes follow it.
            while len(buf) > record:
                sealed = bytes(buf[:record])
                del buf[:record]
                yield self._open(aesgcm, iv, index, sealed, final=False)
                index += 1

        if len(buf) < TAG_BYTES:
            raise IntegrityError()
        yield self._open(aesgcm, iv, index, bytes(buf), final=True)

    @staticmethod
    def _open(aesgcm: AESGCM, iv: bytes, index: int, sealed: bytes, final: bool) -> bytes:
        try:
            return aesgcm.decrypt(_chunk_nonce(iv, index), sealed, _chunk_aad(index, final))
        except InvalidTag:
            raise IntegrityError() from None

    def encrypt_stream(self, source, sink, key: bytes) -> bytes:
        """Encrypt `source` into `sink`; returns the IV."""
        iv = os.urandom(IV_BYTES)
        for sealed in self.iter_encrypt(source, key, iv):
            sink.write(sealed)
        return iv

    def decrypt_stream(self, source, sink, key: bytes, iv: bytes):
        """Decrypt `source` into `sink`. Partial output must be discarded on IntegrityError."""
        pieces = iter(lambda: source.read(self.chunk_size + TAG_BYTES), b"")
        for plain in self.iter_decrypt(pieces, key, iv):
            sink.write(plain)

    def decrypt_blob(self, blob: bytes, key: bytes, iv: bytes, algorithm: str) -> bytes:
        if algorithm == ALGORITHM_GCM:
            return self.decrypt(EncryptedPayload.from_blob(iv, blob), key)
        if algorithm == ALGORITHM_GCM_STREAM:
            return b"".join(self.iter_decrypt([blob], key, iv))
        raise InvalidInputError(f"Unsupported algorithm: {algorithm}")


_engine = EncryptionEngine()


def encrypt(plaintext: bytes, key: bytes) -> EncryptedPayload:
    return _engine.encrypt(plaintext, key)


def decrypt(payload: EncryptedPayload, key: bytes) -> bytes:
    return _engine.decrypt(payload, key)


def decrypt_blob(blob: bytes, key: bytes, iv: bytes, algorithm: str) -> bytes:
    return _engine.decrypt_blob(blob, key, iv, algorithm)
