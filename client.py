"""
client.py — Client side of ZKShare: encrypt before upload, decrypt after download.

Everything secret stays in this process. The server receives ciphertext and
public parameters (IV, salt, iteration count); in password mode it also
receives an HKDF-derived access secret, never the password or the key.
The key itself only ever appears in the share link fragment.

Plaintext layout inside the ciphertext:

    [u32 LE header length][JSON header {filename, mimetype, size, timestamp}][content]
"""

import io
import json
import logging
import os
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional, Union

import httpx

from encryption import (
    ALGORITHM_GCM_STREAM, DEFAULT_CHUNK_SIZE, IV_BYTES, EncryptionEngine, encrypted_size,
)
from errors import IntegrityError, PasswordRequiredError, ZKShareError, error_for_code
from keys import (
    DEFAULT_ITERATIONS, MODE_PASSWORD, KeyMaterial, b64decode, b64encode,
    derive_access_secret, key_material_from_key, key_material_from_password,
    new_key_material,
)
import share_link

logger = logging.getLogger(__name__)

PASSWORD_HEADER = "X-Share-Password"
_HEADER_LEN = struct.Struct("<I")
MAX_ENVELOPE_HEADER = 64 * 1024


class _StreamReader:
    """Minimal file-like `read()` over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._buf = bytearray()

    def read(self, size: int = -1) -> bytes:
        while size < 0 or len(self._buf) < size:
            try:
                self._buf += next(self._chunks)
            except StopIteration:
                break
        if size < 0:
            size = len(self._buf)
        out = bytes(self._buf[:size])
        del self._buf[:size]
        return out


def _envelope_header(filename: str, mimetype: str, size: int) -> bytes:
    meta = json.dumps({
        "filename": filename,
        "mimetype": mimetype,
        "size": size,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }).encode("utf-8")
    return _HEADER_LEN.pack(len(meta)) + meta


def _open_envelope(plain: Iterator[bytes], sink) -> dict:
    """Split decrypted chunks into the JSON header and content written to `sink`."""
    buf = bytearray()
    meta = None
    written = 0
    for chunk in plain:
        if meta is None:
            buf += chunk
            if len(buf) < _HEADER_LEN.size:
                continue
            (length,) = _HEADER_LEN.unpack_from(buf)
            if length > MAX_ENVELOPE_HEADER:
                raise IntegrityError("Malformed file header")
            if len(buf) < _HEADER_LEN.size + length:
                continue
            try:
                meta = json.loads(bytes(buf[_HEADER_LEN.size:_HEADER_LEN.size + length]))
            except ValueError:
                raise IntegrityError("Malformed file header") from None
            chunk = bytes(buf[_HEADER_LEN.size + length:])
            buf = bytearray()
        if chunk:
            sink.write(chunk)
            written += len(chunk)

    if meta is None or written != meta.get("size"):
        raise IntegrityError("Decrypted content does not match its header")
    return meta


def _raise_for_error(response: httpx.Response):
    if response.is_success:
        return
    response.read()
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        details = {k: v for k, v in body.items() if k not in ("success", "error", "message")}
        raise error_for_code(body["error"], body.get("message"), **details)
    raise ZKShareError(f"Server returned HTTP {response.status_code}")


@dataclass
class UploadResult:
    share_id: str
    share_url: str = field(repr=False)
    expires_at: str
    max_downloads: Optional[int]
    key_mode: str


@dataclass
class DownloadResult:
    filename: str
    mimetype: str
    size: int
    download_count: int
    downloads_remaining: Optional[int]
    data: Optional[bytes] = field(default=None, repr=False)


class ShareClient:

    def __init__(self, base_url: str, http: Optional[httpx.Client] = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE, iterations: int = DEFAULT_ITERATIONS,
                 timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.Client(timeout=timeout)
        self.engine = EncryptionEngine(chunk_size)
        self.iterations = iterations

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # ── upload ───────────────────────────────────────────────

    def upload(
        self,
        source: Union[bytes, io.IOBase],
        filename: str,
        mimetype: str = "application/octet-stream",
        size: Optional[int] = None,
        password: Optional[str] = None,
        access_password: Optional[str] = None,
        expiration: str = "24h",
        max_downloads: Optional[int] = None,
        token: Optional[str] = None,
    ) -> UploadResult:
        """
        Encrypt `source` and upload it; returns the complete share link.

        With `password` the key is derived from it and the link carries no
        key. Otherwise a random key goes into the link fragment, optionally
        gated by a server-checked `access_password`.
        """
        if isinstance(source, (bytes, bytearray)):
            size = len(source)
            source = io.BytesIO(source)
        elif size is None:
            raise ValueError("size is required when uploading from a stream")

        material = new_key_material(password, self.iterations)
        try:
            header = _envelope_header(filename, mimetype, size)
            plain = _StreamReader(self._with_header(header, source))
            iv = os.urandom(IV_BYTES)
            sealed = _StreamReader(self.engine.iter_encrypt(plain, material.key_bytes, iv))

            form = {
                "iv": b64encode(iv),
                "algorithm": ALGORITHM_GCM_STREAM,
                "key_mode": material.mode,
                "size": str(size),
                "encrypted_size": str(encrypted_size(len(header) + size, self.engine.chunk_size)),
                "expiration": expiration,
            }
            if max_downloads is not None:
                form["max_downloads"] = str(max_downloads)
            if material.is_password_derived:
                form["salt"] = b64encode(material.salt)
                form["iterations"] = str(material.iterations)
                form["password"] = derive_access_secret(material.key_bytes)
            elif access_password:
                form["password"] = access_password

            headers = {"Authorization": f"Bearer {token}"} if token else {}
            response = self.http.post(
                self._url("/api/upload"),
                data=form,
                files={"file": ("blob", sealed, "application/octet-stream")},
                headers=headers,
            )
            _raise_for_error(response)
            body = response.json()

            base = body["share_url"].rsplit(share_link.SHARE_PATH, 1)[0]
            if material.is_password_derived:
                url = share_link.encode(base, body["share_id"], password_mode=True)
            else:
                url = share_link.encode(base, body["share_id"], key=material.key_bytes)
            logger.info(f"Uploaded share {body['share_id']}")
            return UploadResult(
                share_id=body["share_id"],
                share_url=url,
                expires_at=body["expires_at"],
                max_downloads=body.get("max_downloads"),
                key_mode=material.mode,
            )
        finally:
            material.wipe()

    def _with_header(self, header: bytes, source) -> Iterator[bytes]:
        yield header
        while True:
            chunk = source.read(self.engine.chunk_size)
            if not chunk:
                break
            yield chunk

    # ── download ─────────────────────────────────────────────

    def download(self, url: str, password: Optional[str] = None,
                 access_password: Optional[str] = None, sink=None) -> DownloadResult:
        """
        Fetch and decrypt a share.

        With a `sink`, content is written there as it is authenticated; on
        IntegrityError whatever was written must be discarded. Without one,
        the content is returned in `DownloadResult.data`.
        """
        link = share_link.decode(url)
        path = self._url(f"/api/download/{link.share_id}")

        material: Optional[KeyMaterial] = None
        headers = {}
        if link.key is not None:
            material = key_material_from_key(link.key)
            if access_password:
                headers[PASSWORD_HEADER] = access_password
        else:
            if not password:
                raise PasswordRequiredError()
            material = self._password_material(link.share_id, password)
            headers[PASSWORD_HEADER] = derive_access_secret(material.key_bytes)

        try:
            with self.http.stream("GET", path, headers=headers) as response:
                _raise_for_error(response)
                iv = b64decode(response.headers["X-ZK-IV"])
                algorithm = response.headers.get("X-ZK-Algorithm", ALGORITHM_GCM_STREAM)
                target = sink if sink is not None else io.BytesIO()

                if algorithm == ALGORITHM_GCM_STREAM:
                    plain = self.engine.iter_decrypt(response.iter_bytes(), material.key_bytes, iv)
                else:
                    blob = response.read()
                    plain = iter([self.engine.decrypt_blob(blob, material.key_bytes, iv, algorithm)])
                meta = _open_envelope(plain, target)

                remaining = response.headers.get("X-Downloads-Remaining", "unlimited")
                return DownloadResult(
                    filename=meta.get("filename", "download"),
                    mimetype=meta.get("mimetype", "application/octet-stream"),
                    size=meta["size"],
                    download_count=int(response.headers.get("X-Download-Count", "0")),
                    downloads_remaining=None if remaining == "unlimited" else int(remaining),
                    data=target.getvalue() if sink is None else None,
                )
        finally:
            material.wipe()

    def _password_material(self, share_id: str, password: str) -> KeyMaterial:
        """Ask for the public salt and iteration count, then derive the key locally."""
        # An empty password never counts as a failed attempt or a download.
        response = self.http.post(
            self._url(f"/api/shares/{share_id}/verify"), json={"password": ""},
        )
        if response.is_success:
            raise ZKShareError("Share is not password protected")
        try:
            _raise_for_error(response)
        except PasswordRequiredError as e:
            if e.details.get("key_mode") != MODE_PASSWORD or not e.details.get("salt"):
                raise ZKShareError("Share link has no key and the file is not password-derived") from e
            return key_material_from_password(
                password, b64decode(e.details["salt"]), int(e.details["iterations"]),
            )
        raise ZKShareError("Unexpected response while fetching key parameters")

    # ── misc ─────────────────────────────────────────────────

    def file_info(self, url: str) -> dict:
        link = share_link.decode(url)
        response = self.http.get(self._url(f"/api/file-info/{link.share_id}"))
        _raise_for_error(response)
        return response.json()

    def delete(self, share_id: str, token: str):
        response = self.http.delete(
            self._url(f"/api/shares/{share_id}"),
            headers={"Authorization": f"Bearer {token}"},
        )
        _raise_for_error(response)

    def close(self):
        self.http.close()
