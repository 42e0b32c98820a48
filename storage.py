"""
storage.py — Ciphertext blob storage: MinIO/S3 with local-disk fallback.

Blobs are opaque; this layer never inspects them. Reads and writes are
streamed so memory stays bounded by the chunk size.
"""

import os
import re
import logging
from functools import lru_cache
from typing import Iterator, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError
from botocore.config import Config
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "http://localhost:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ROOT_USER", "admin")
MINIO_SECRET_KEY = os.getenv("MINIO_ROOT_PASSWORD", "")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "zkshare")
USE_MINIO = os.getenv("USE_MINIO", "false").lower() == "true"

LOCAL_UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
READ_CHUNK_SIZE = 64 * 1024 + 16

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]+\.zkblob$")


def _get_s3_client():
    return boto3.client(
        "s3",
        endpoint_url=MINIO_ENDPOINT,
        aws_access_key_id=MINIO_ACCESS_KEY,
        aws_secret_access_key=MINIO_SECRET_KEY,
        config=Config(
            signature_version="s3v4",
            connect_timeout=5,
            read_timeout=30,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name="us-east-1",
    )


def _ensure_bucket(s3_client, bucket: str):
    try:
        s3_client.head_bucket(Bucket=bucket)
    except ClientError as e:
        if e.response["Error"]["Code"] == "404":
            s3_client.create_bucket(Bucket=bucket)
            logger.info(f"Created MinIO bucket: {bucket}")
        else:
            raise


class _ChunkReader:
    """File-like adapter over an iterator of byte chunks, for upload_fileobj."""

    def __init__(self, chunks):
        self._chunks = iter(chunks)
        self._buf = b""
        self.total = 0

    def read(self, size: int = -1) -> bytes:
        while size < 0 or len(self._buf) < size:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                break
            self.total += len(chunk)
            self._buf += chunk
        if size < 0:
            out, self._buf = self._buf, b""
        else:
            out, self._buf = self._buf[:size], self._buf[size:]
        return out


class StorageBackend:

    def __init__(self, upload_dir: str = LOCAL_UPLOAD_DIR, use_minio: bool = USE_MINIO,
                 bucket: str = MINIO_BUCKET):
        self.upload_dir = upload_dir
        self.bucket = bucket
        self.use_minio = use_minio
        self._minio_available = False
        self._s3 = None
        os.makedirs(self.upload_dir, exist_ok=True)
        if use_minio:
            self._init_minio()

    def _init_minio(self):
        try:
            self._s3 = _get_s3_client()
            _ensure_bucket(self._s3, self.bucket)
            self._minio_available = True
            logger.info(f"MinIO connected: {MINIO_ENDPOINT} / bucket={self.bucket}")
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"MinIO unavailable ({e}). Falling back to local disk.")
            self._minio_available = False

    @property
    def backend_name(self) -> str:
        return "MinIO" if self._minio_available else "LocalDisk"

    def _path(self, key: str) -> str:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return os.path.join(self.upload_dir, key)

    def put_stream(self, key: str, chunks) -> int:
        """Store an iterable of byte chunks under `key`. Returns bytes written."""
        path = self._path(key)
        if self._minio_available:
            reader = _ChunkReader(chunks)
            try:
                self._s3.upload_fileobj(
                    reader, self.bucket, key,
                    ExtraArgs={
                        "ContentType": "application/octet-stream",
                        "Metadata": {"zero-knowledge": "true"},
                    },
                )
                return reader.total
            except (ClientError, BotoCoreError) as e:
                # The source iterator is partly consumed; a disk retry is impossible.
                logger.error(f"MinIO PUT failed for {key}: {e}")
                raise

        tmp_path = f"{path}.part"
        written = 0
        try:
            with open(tmp_path, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
                    written += len(chunk)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return written

    def iter_chunks(self, key: str, chunk_size: int = READ_CHUNK_SIZE) -> Optional[Iterator[bytes]]:
        """Chunk iterator over the blob, or None if it does not exist."""
        path = self._path(key)
        if self._minio_available:
            try:
                response = self._s3.get_object(Bucket=self.bucket, Key=key)
                return response["Body"].iter_chunks(chunk_size)
            except ClientError as e:
                if e.response["Error"]["Code"] not in ("NoSuchKey", "404"):
                    logger.error(f"MinIO GET failed for {key}: {e}")
            except BotoCoreError as e:
                logger.error(f"MinIO GET error for {key}: {e}")

        if not os.path.exists(path):
            return None
        return self._iter_file(path, chunk_size)

    @staticmethod
    def _iter_file(path: str, chunk_size: int) -> Iterator[bytes]:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if self._minio_available:
            try:
                self._s3.delete_object(Bucket=self.bucket, Key=key)
            except (ClientError, BotoCoreError) as e:
                logger.error(f"MinIO DELETE failed for {key}: {e}")

        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.error(f"LocalDisk DELETE failed for {key}: {e}")
                return False
        return True

    def exists(self, key: str) -> bool:
        path = self._path(key)
        if self._minio_available:
            try:
                self._s3.head_object(Bucket=self.bucket, Key=key)
                return True
            except ClientError:
                pass
        return os.path.exists(path)

    def get_stats(self) -> dict:
        stats = {
            "backend": self.backend_name,
            "minio_endpoint": MINIO_ENDPOINT if self._minio_available else None,
        }
        total_size = 0
        total_objects = 0
        if self._minio_available:
            try:
                paginator = self._s3.get_paginator("list_objects_v2")
                for page in paginator.paginate(Bucket=self.bucket):
                    for obj in page.get("Contents", []):
                        total_size += obj["Size"]
                        total_objects += 1
            except (ClientError, BotoCoreError) as e:
                stats["error"] = str(e)
        else:
            for fname in os.listdir(self.upload_dir):
                fpath = os.path.join(self.upload_dir, fname)
                if os.path.isfile(fpath) and fname.endswith(".zkblob"):
                    total_size += os.path.getsize(fpath)
                    total_objects += 1
        stats["objects"] = total_objects
        stats["total_mb"] = round(total_size / (1024 * 1024), 2)
        return stats

    def get_health(self) -> dict:
        if not self.use_minio:
            return {"status": "local_disk", "message": "MinIO disabled"}
        if self._minio_available:
            try:
                self._s3.head_bucket(Bucket=self.bucket)
                return {"status": "healthy", "backend": "MinIO", "endpoint": MINIO_ENDPOINT}
            except (ClientError, BotoCoreError) as e:
                return {"status": "degraded", "backend": "MinIO", "error": str(e)}
        return {"status": "fallback", "backend": "LocalDisk"}


@lru_cache(maxsize=1)
def get_storage() -> StorageBackend:
    """Dependency: the process-wide storage backend."""
    return StorageBackend()
