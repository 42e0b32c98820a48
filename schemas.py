from pydantic import BaseModel
from typing import Optional


class UploadResponse(BaseModel):
    success: bool = True
    share_id: str
    share_url: str
    expires_at: str
    max_downloads: Optional[int]
    is_password_protected: bool
    key_mode: str


class FileInfo(BaseModel):
    share_id: str
    size: int
    encrypted_size: int
    uploaded_at: str
    expires_at: str
    download_count: int
    max_downloads: Optional[int]
    remaining_downloads: Optional[int]
    is_password_protected: bool
    key_mode: str


class VerifyPasswordRequest(BaseModel):
    password: str


class VerifyPasswordResponse(BaseModel):
    success: bool = True
    valid: bool
    salt: Optional[str] = None
    iterations: Optional[int] = None


class SweepResult(BaseModel):
    success: bool = True
    shares_purged: int
    audit_entries_purged: int
    rate_limit_windows_purged: int
