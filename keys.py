"""
keys.py — Client-side key management.

Keys are either random (embedded in the share link fragment) or derived
from a password with PBKDF2-HMAC-SHA512. Nothing in this module ever
talks to the network; only the salt and iteration count are public.
"""

import base64
import secrets
from dataclasses import dataclass, field
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from errors import InvalidInputError

KEY_BYTES = 32          # AES-256
SALT_BYTES = 32         # 256-bit salt, per file
MIN_SALT_BYTES = 16
DEFAULT_ITERATIONS = 100_000
MIN_ITERATIONS = 100_000

MODE_EMBEDDED = "embedded"
MODE_PASSWORD = "password"

_ACCESS_INFO = b"zkshare/access-secret/v1"


def b64encode(data: bytes) -> str:
    """Unpadded base64url, safe in URL fragments and HTTP headers."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64decode(text: str) -> bytes:
    try:
        padded = text + "=" * (-len(text) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise InvalidInputError("Malformed base64 value") from e


def generate_key() -> bytes:
    return secrets.token_bytes(KEY_BYTES)


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA512 → 256-bit key. Fails closed on weak input."""
    if password is None or not password.strip():
        raise InvalidInputError("Password must not be empty")
    if salt is None or len(salt) < MIN_SALT_BYTES:
        raise InvalidInputError(f"Salt must be at least {MIN_SALT_BYTES} bytes")
    if iterations < MIN_ITERATIONS:
        raise InvalidInputError(f"Iterations must be at least {MIN_ITERATIONS}")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_access_secret(key: bytes) -> str:
    """
    One-way credential for server-side password gating in password mode.

    The server bcrypt-hashes this value; learning it reveals neither the
    key nor the password.
    """
    if len(key) != KEY_BYTES:
        raise InvalidInputError("Key must be 256 bits")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_ACCESS_INFO)
    return b64encode(hkdf.derive(key))


@dataclass
class KeyMaterial:
    """Client-only key holder. Never persisted, never logged."""

    key: bytearray = field(repr=False)
    mode: str = MODE_EMBEDDED
    salt: Optional[bytes] = None
    iterations: Optional[int] = None

    @property
    def key_bytes(self) -> bytes:
        return bytes(self.key)

    @property
    def is_password_derived(self) -> bool:
        return self.mode == MODE_PASSWORD

    def wipe(self):
        """Best-effort zeroing of the key buffer once a transfer is done."""
        for i in range(len(self.key)):
            self.key[i] = 0


def new_key_material(password: Optional[str] = None,
                     iterations: int = DEFAULT_ITERATIONS) -> KeyMaterial:
    if password is not None and password.strip():
        salt = generate_salt()
        key = derive_key(password.strip(), salt, iterations)
        return KeyMaterial(bytearray(key), MODE_PASSWORD, salt, iterations)
    return KeyMaterial(bytearray(generate_key()), MODE_EMBEDDED)


def key_material_from_password(password: str, salt: bytes, iterations: int) -> KeyMaterial:
    key = derive_key(password.strip() if password else password, salt, iterations)
    return KeyMaterial(bytearray(key), MODE_PASSWORD, salt, iterations)


def key_material_from_key(key: bytes) -> KeyMaterial:
    if len(key) != KEY_BYTES:
        raise InvalidInputError("Key must be 256 bits")
    return KeyMaterial(bytearray(key), MODE_EMBEDDED)
