"""
lifecycle.py — Server-side lifecycle of shared ciphertext blobs.

    Active → {ExpiredByTime, ExhaustedByCount, DeletedByOwner} → Purged

Transitions are one-way. The download counter is the only contended
state and is only ever changed by a single conditional UPDATE.
"""

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from database import utcnow
from encryption import IV_BYTES, SUPPORTED_ALGORITHMS, TAG_BYTES
from errors import (
    DownloadLimitExceededError, ExpiredError, InvalidInputError,
    NotFoundError, StorageInconsistencyError,
)
from keys import MIN_ITERATIONS, MIN_SALT_BYTES, MODE_EMBEDDED, MODE_PASSWORD, b64decode
from security import hash_password, validate_share_password, verify_password
from storage import StorageBackend
import models

load_dotenv()

logger = logging.getLogger(__name__)

MAX_ENCRYPTED_SIZE = int(os.getenv("MAX_ENCRYPTED_SIZE", str(150 * 1024 * 1024)))

# Expiration choices in hours; "never" is capped at one year.
EXPIRATION_OPTIONS = {
    "1h": 1,
    "24h": 24,
    "7d": 24 * 7,
    "30d": 24 * 30,
    "never": 24 * 365,
}


@dataclass
class UploadMetadata:
    """Public parameters accompanying an upload. Never contains a key."""

    iv: str
    algorithm: str
    size: int
    encrypted_size: int
    key_mode: str = MODE_EMBEDDED
    salt: Optional[str] = None
    iterations: Optional[int] = None
    expiration: str = "24h"
    max_downloads: Optional[int] = None
    password: Optional[str] = None
    owner_id: Optional[str] = None

    def validate(self):
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise InvalidInputError(f"Unsupported algorithm: {self.algorithm}")
        if len(b64decode(self.iv)) != IV_BYTES:
            raise InvalidInputError("IV must be 128 bits")
        if self.key_mode not in (MODE_EMBEDDED, MODE_PASSWORD):
            raise InvalidInputError("key_mode must be 'embedded' or 'password'")
        if self.key_mode == MODE_PASSWORD:
            if not self.salt or len(b64decode(self.salt)) < MIN_SALT_BYTES:
                raise InvalidInputError("Password mode requires a salt of at least 128 bits")
            if not self.iterations or self.iterations < MIN_ITERATIONS:
                raise InvalidInputError(f"Password mode requires at least {MIN_ITERATIONS} iterations")
            if not self.password:
                raise InvalidInputError("Password mode requires an access password")
        if self.size < 0:
            raise InvalidInputError("Size must not be negative")
        if not TAG_BYTES <= self.encrypted_size <= MAX_ENCRYPTED_SIZE:
            raise InvalidInputError("Encrypted size out of range")
        if self.expiration not in EXPIRATION_OPTIONS:
            raise InvalidInputError("Invalid expiration option")
        if self.max_downloads is not None and self.max_downloads < 1:
            raise InvalidInputError("max_downloads must be a positive integer")


def _bounded(chunks: Iterable[bytes], limit: int) -> Iterator[bytes]:
    total = 0
    for chunk in chunks:
        total += len(chunk)
        if total > limit:
            raise InvalidInputError("Encrypted data exceeds the declared size")
        yield chunk


class BlobLifecycleService:

    def __init__(self, db: Session, storage: StorageBackend,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.storage = storage
        self._clock = clock

    # ── create ───────────────────────────────────────────────

    def store(self, chunks: Iterable[bytes], meta: UploadMetadata) -> models.SharedFile:
        """Persist ciphertext and public metadata; download_count starts at 0."""
        meta.validate()
        password_hash = None
        if meta.password:
            password_hash = hash_password(validate_share_password(meta.password))

        share_id = secrets.token_urlsafe(12)
        storage_key = f"{secrets.token_urlsafe(16)}.zkblob"

        written = self.storage.put_stream(storage_key, _bounded(chunks, meta.encrypted_size))
        if written != meta.encrypted_size:
            self.storage.delete(storage_key)
            raise InvalidInputError("Encrypted data size mismatch")

        now = self._clock()
        record = models.SharedFile(
            id=share_id,
            storage_key=storage_key,
            owner_id=meta.owner_id,
            algorithm=meta.algorithm,
            iv=meta.iv,
            salt=meta.salt if meta.key_mode == MODE_PASSWORD else None,
            iterations=meta.iterations if meta.key_mode == MODE_PASSWORD else None,
            key_mode=meta.key_mode,
            size=meta.size,
            encrypted_size=written,
            uploaded_at=now,
            expires_at=now + timedelta(hours=EXPIRATION_OPTIONS[meta.expiration]),
            max_downloads=meta.max_downloads,
            download_count=0,
            is_password_protected=password_hash is not None,
            password_hash=password_hash,
        )
        try:
            self.db.add(record)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.storage.delete(storage_key)
            raise
        logger.info(f"Stored share {share_id} ({written} encrypted bytes)")
        return record

    # ── reads ────────────────────────────────────────────────

    def _is_expired(self, record: models.SharedFile, now: datetime) -> bool:
        return now >= record.expires_at

    @staticmethod
    def _is_exhausted(record: models.SharedFile) -> bool:
        return record.max_downloads is not None and record.download_count >= record.max_downloads

    def get_active(self, share_id: str) -> models.SharedFile:
        """
        Return the record if it can still be served.

        Reading an expired record purges its ciphertext before ExpiredError
        is raised.
        """
        record = self.db.get(models.SharedFile, share_id)
        if record is None or record.is_deleted:
            raise NotFoundError()
        if self._is_expired(record, self._clock()):
            self.purge(record)
            raise ExpiredError()
        if self._is_exhausted(record):
            raise DownloadLimitExceededError()
        return record

    def can_download(self, share_id: str) -> bool:
        try:
            self.get_active(share_id)
        except (NotFoundError, ExpiredError, DownloadLimitExceededError):
            return False
        return True

    @staticmethod
    def remaining_downloads(record: models.SharedFile) -> Optional[int]:
        if record.max_downloads is None:
            return None
        return max(0, record.max_downloads - record.download_count)

    def file_info(self, record: models.SharedFile) -> dict:
        """Metadata safe for unauthenticated callers: no decryption parameters."""
        return {
            "share_id": record.id,
            "size": record.size,
            "encrypted_size": record.encrypted_size,
            "uploaded_at": record.uploaded_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "download_count": record.download_count,
            "max_downloads": record.max_downloads,
            "remaining_downloads": self.remaining_downloads(record),
            "is_password_protected": record.is_password_protected,
            "key_mode": record.key_mode,
        }

    def verify_password(self, share_id: str, password: Optional[str]) -> bool:
        """bcrypt check against the stored hash. Never counts as a download."""
        record = self.get_active(share_id)
        if not record.is_password_protected:
            return True
        return verify_password(password or "", record.password_hash)

    # ── download accounting ──────────────────────────────────

    def record_download(self, share_id: str) -> int:
        """
        Atomically count one download; returns the new count.

        Check and increment are one conditional UPDATE, so concurrent
        requests can never push download_count past max_downloads.
        """
        now = self._clock()
        table = models.SharedFile
        result = self.db.execute(
            update(table)
            .where(
                table.id == share_id,
                table.is_deleted.is_(False),
                table.expires_at > now,
                or_(table.max_downloads.is_(None), table.download_count < table.max_downloads),
            )
            .values(download_count=table.download_count + 1, last_downloaded_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            count = self.db.execute(
                select(table.download_count).where(table.id == share_id)
            ).scalar_one()
            self.db.commit()
            return count

        self.db.rollback()
        record = self.db.get(table, share_id)
        if record is None or record.is_deleted:
            raise NotFoundError()
        if self._is_expired(record, now):
            self.purge(record)
            raise ExpiredError()
        raise DownloadLimitExceededError()

    def open_blob(self, record: models.SharedFile) -> Iterator[bytes]:
        chunks = self.storage.iter_chunks(record.storage_key)
        if chunks is None:
            raise StorageInconsistencyError(share_id=record.id)
        return chunks

    def ensure_blob(self, record: models.SharedFile):
        if not self.storage.exists(record.storage_key):
            raise StorageInconsistencyError(share_id=record.id)

    # ── removal ──────────────────────────────────────────────

    def delete(self, share_id: str, owner_id: str) -> models.SharedFile:
        """Owner soft delete; the ciphertext is removed immediately."""
        record = self.db.get(models.SharedFile, share_id)
        if record is None or record.is_deleted or not owner_id or record.owner_id != owner_id:
            raise NotFoundError()
        record.is_deleted = True
        record.deleted_at = self._clock()
        self.db.commit()
        self.storage.delete(record.storage_key)
        return record

    def purge(self, record: models.SharedFile):
        """Terminal state: blob and row are both gone."""
        self._purge(record.id, record.storage_key)

    def _purge(self, share_id: str, storage_key: str):
        self.storage.delete(storage_key)
        # Bulk delete tolerates a concurrent purge of the same row.
        self.db.execute(
            delete(models.SharedFile)
            .where(models.SharedFile.id == share_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"Purged share {share_id}")

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Backstop purge of expired, exhausted and deleted shares."""
        now = now or self._clock()
        table = models.SharedFile
        doomed = self.db.query(table.id, table.storage_key).filter(
            or_(
                table.is_deleted.is_(True),
                table.expires_at <= now,
                (table.max_downloads.isnot(None)) & (table.download_count >= table.max_downloads),
            )
        ).all()
        for share_id, storage_key in doomed:
            self._purge(share_id, storage_key)
        if doomed:
            logger.info(f"Sweep purged {len(doomed)} shares")
        return len(doomed)
