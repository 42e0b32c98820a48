# share_routes.py

import logging
import os
from typing import Iterator, Optional

from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from audit import AuditService, get_audit_service
from auth import get_current_user, get_optional_user
from database import get_db
from encryption import ALGORITHM_GCM_STREAM
from errors import (
    DownloadLimitExceededError, ExpiredError, InvalidPasswordError, NotFoundError,
    PasswordRequiredError, RateLimitExceededError, StorageInconsistencyError, ZKShareError,
)
from keys import MODE_EMBEDDED
from lifecycle import BlobLifecycleService, UploadMetadata
from notifier import notify_download
from ratelimit import RateLimiters, get_rate_limiters
from storage import StorageBackend, get_storage
import share_link
import schemas

load_dotenv()

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
UPLOAD_READ_SIZE = 64 * 1024
# Peers allowed to set X-Forwarded-For (comma separated); empty trusts nobody.
TRUSTED_PROXIES = frozenset(
    p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip()
)

router = APIRouter(prefix="/api", tags=["Zero-Knowledge Sharing"])


# ─── DEPENDENCIES ─────────────────────────────────────

def get_lifecycle(
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
) -> BlobLifecycleService:
    return BlobLifecycleService(db, storage)


def get_client_ip(request: Request) -> str:
    """Caller address. X-Forwarded-For is honoured only when a trusted proxy sent it."""
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded or peer not in TRUSTED_PROXIES:
        return peer
    # Rightmost hop that is not one of our own proxies.
    for hop in reversed([h.strip() for h in forwarded.split(",") if h.strip()]):
        if hop not in TRUSTED_PROXIES:
            return hop
    return peer


def _iter_upload(upload: UploadFile) -> Iterator[bytes]:
    while True:
        chunk = upload.file.read(UPLOAD_READ_SIZE)
        if not chunk:
            break
        yield chunk


def _audit_denied(audit: AuditService, request: Request, share_id: str, exc: ZKShareError):
    audit.log_security_event(
        "blob_access_denied",
        "Share access denied",
        severity="low", status="failure",
        ip=get_client_ip(request), user_agent=request.headers.get("user-agent"),
        metadata={"share_id": share_id, "reason": exc.error_code},
    )


def _get_active_or_deny(share_id: str, request: Request, lifecycle: BlobLifecycleService,
                        audit: AuditService):
    try:
        return lifecycle.get_active(share_id)
    except (NotFoundError, ExpiredError, DownloadLimitExceededError) as e:
        _audit_denied(audit, request, share_id, e)
        raise


def _gate_password(
    record,
    password: Optional[str],
    request: Request,
    lifecycle: BlobLifecycleService,
    limiters: RateLimiters,
    audit: AuditService,
):
    """
    Server-side password gate.

    Every attempt is counted before bcrypt runs; at most `limit` attempts per
    IP and window reach the verify. A correct password clears the count.
    """
    if not record.is_password_protected:
        return
    if not password:
        raise PasswordRequiredError(
            salt=record.salt, iterations=record.iterations, key_mode=record.key_mode,
        )

    ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent")
    try:
        status = limiters.password.consume(ip)
    except RateLimitExceededError:
        audit.log_security_event(
            "share_password_rate_limited",
            "Share password attempts blocked by rate limit",
            severity="high", status="failure", ip=ip, user_agent=user_agent,
            metadata={"share_id": record.id},
        )
        raise

    if not lifecycle.verify_password(record.id, password):
        audit.log_security_event(
            "share_password_failed",
            "Invalid share password",
            severity="medium", status="failure", ip=ip, user_agent=user_agent,
            metadata={"share_id": record.id, "attempts_remaining": status.remaining},
        )
        raise InvalidPasswordError(attempts_remaining=status.remaining)

    limiters.password.reset(ip)
    audit.log_security_event(
        "share_password_verified",
        "Share password verified",
        severity="info", status="success", ip=ip, user_agent=user_agent,
        metadata={"share_id": record.id},
    )


# ─── UPLOAD ───────────────────────────────────────────

@router.post("/upload", response_model=schemas.UploadResponse)
def upload_encrypted_file(
    request: Request,
    file: UploadFile = File(...),
    iv: str = Form(...),
    size: int = Form(...),
    encrypted_size: int = Form(...),
    algorithm: str = Form(ALGORITHM_GCM_STREAM),
    key_mode: str = Form(MODE_EMBEDDED),
    salt: Optional[str] = Form(None),
    iterations: Optional[int] = Form(None),
    expiration: str = Form("24h"),
    max_downloads: Optional[int] = Form(None),
    password: Optional[str] = Form(None),
    user: Optional[dict] = Depends(get_optional_user),
    lifecycle: BlobLifecycleService = Depends(get_lifecycle),
    limiters: RateLimiters = Depends(get_rate_limiters),
    audit: AuditService = Depends(get_audit_service),
):
    """
    Accept ciphertext plus its public parameters.

    The body is already encrypted; nothing here can read it. The returned
    share_url has no fragment, the client appends the key itself.
    """
    ip = get_client_ip(request)
    try:
        limiters.upload.consume(ip)
    except RateLimitExceededError:
        audit.log_security_event(
            "upload_rate_limited",
            "Upload blocked by rate limit",
            severity="medium", status="failure", ip=ip,
            user_agent=request.headers.get("user-agent"),
        )
        raise

    meta = UploadMetadata(
        iv=iv,
        algorithm=algorithm,
        size=size,
        encrypted_size=encrypted_size,
        key_mode=key_mode,
        salt=salt,
        iterations=iterations,
        expiration=expiration,
        max_downloads=max_downloads,
        password=password,
        owner_id=user["sub"] if user else None,
    )
    try:
        record = lifecycle.store(_iter_upload(file), meta)
    except (ClientError, BotoCoreError, OSError) as e:
        logger.error(f"Blob write failed: {type(e).__name__}")
        audit.log_system_event(
            "blob_store_failed", "Ciphertext could not be written to storage",
            severity="critical", status="failure", ip=ip,
            metadata={"error": type(e).__name__},
        )
        raise StorageInconsistencyError() from e

    audit.log_file_operation(
        "file_uploaded",
        "Encrypted file uploaded",
        ip=ip,
        user_id=meta.owner_id,
        user_agent=request.headers.get("user-agent"),
        metadata={
            "share_id": record.id,
            "encrypted_size": record.encrypted_size,
            "key_mode": record.key_mode,
            "expiration": expiration,
            "max_downloads": record.max_downloads,
            "password_protected": record.is_password_protected,
        },
    )

    return schemas.UploadResponse(
        share_id=record.id,
        share_url=share_link.encode(PUBLIC_BASE_URL, record.id),
        expires_at=record.expires_at.isoformat(),
        max_downloads=record.max_downloads,
        is_password_protected=record.is_password_protected,
        key_mode=record.key_mode,
    )


# ─── DOWNLOAD ─────────────────────────────────────────

@router.get("/download/{share_id}")
def download_encrypted_file(
    share_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    x_share_password: Optional[str] = Header(None),
    lifecycle: BlobLifecycleService = Depends(get_lifecycle),
    limiters: RateLimiters = Depends(get_rate_limiters),
    audit: AuditService = Depends(get_audit_service),
):
    """Stream the ciphertext. Counts exactly one download per 200 response."""
    ip = get_client_ip(request)
    record = _get_active_or_deny(share_id, request, lifecycle, audit)
    _gate_password(record, x_share_password, request, lifecycle, limiters, audit)

    try:
        lifecycle.ensure_blob(record)
    except StorageInconsistencyError:
        logger.error(f"Share {share_id} has metadata but no ciphertext")
        audit.log_system_event(
            "blob_missing", "Ciphertext missing for an active share",
            severity="critical", status="failure", ip=ip,
            metadata={"share_id": share_id},
        )
        raise

    try:
        count = lifecycle.record_download(share_id)
    except (NotFoundError, ExpiredError, DownloadLimitExceededError) as e:
        # Lost the race for the last download.
        _audit_denied(audit, request, share_id, e)
        raise
    remaining = lifecycle.remaining_downloads(record)

    headers = {
        "Content-Length": str(record.encrypted_size),
        "Cache-Control": "no-store",
        "X-ZK-IV": record.iv,
        "X-ZK-Algorithm": record.algorithm,
        "X-ZK-Key-Mode": record.key_mode,
        "X-Download-Count": str(count),
        "X-Downloads-Remaining": "unlimited" if remaining is None else str(remaining),
    }
    if record.salt:
        headers["X-ZK-Salt"] = record.salt
        headers["X-ZK-Iterations"] = str(record.iterations)

    audit.log_data_access(
        "file_downloaded",
        "Encrypted file downloaded",
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        metadata={"share_id": share_id, "download_count": count},
    )
    background_tasks.add_task(notify_download, share_id, ip, record.encrypted_size)

    return StreamingResponse(
        lifecycle.open_blob(record),
        media_type="application/octet-stream",
        headers=headers,
    )


# ─── VERIFY / INFO ────────────────────────────────────

@router.post("/shares/{share_id}/verify", response_model=schemas.VerifyPasswordResponse)
def verify_share_password(
    share_id: str,
    req: schemas.VerifyPasswordRequest,
    request: Request,
    lifecycle: BlobLifecycleService = Depends(get_lifecycle),
    limiters: RateLimiters = Depends(get_rate_limiters),
    audit: AuditService = Depends(get_audit_service),
):
    """Check a password without counting a download."""
    record = _get_active_or_deny(share_id, request, lifecycle, audit)
    _gate_password(record, req.password, request, lifecycle, limiters, audit)
    return schemas.VerifyPasswordResponse(
        valid=True, salt=record.salt, iterations=record.iterations,
    )


@router.get("/file-info/{share_id}", response_model=schemas.FileInfo)
def get_file_info(
    share_id: str,
    lifecycle: BlobLifecycleService = Depends(get_lifecycle),
):
    return lifecycle.file_info(lifecycle.get_active(share_id))


@router.delete("/shares/{share_id}")
def delete_share(
    share_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    lifecycle: BlobLifecycleService = Depends(get_lifecycle),
    audit: AuditService = Depends(get_audit_service),
):
    lifecycle.delete(share_id, user["sub"])
    audit.log_file_operation(
        "file_deleted", "Share deleted by owner",
        ip=get_client_ip(request), user_id=user["sub"],
        metadata={"share_id": share_id},
    )
    return {"success": True, "message": "Share deleted"}


@router.get("/preview/{share_id}")
def preview_share(share_id: str):
    # The server holds ciphertext only; there is nothing to render.
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "preview_unavailable",
            "message": "Preview is not available for end-to-end encrypted files",
        },
    )
