from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Text, Boolean, JSON, Index

from database import Base, utcnow


# ─────────────────────────────────────────────────────────────
# Shared File — ciphertext metadata, public parameters only
# ─────────────────────────────────────────────────────────────
class SharedFile(Base):
    __tablename__ = "shared_files"

    id = Column(String, primary_key=True, index=True)
    storage_key = Column(String, nullable=False, unique=True)
    owner_id = Column(String, nullable=True, index=True)

    # Public cryptographic parameters (useless without the key)
    algorithm = Column(String, nullable=False)
    iv = Column(String, nullable=False)
    salt = Column(String, nullable=True)            # password mode only
    iterations = Column(Integer, nullable=True)
    key_mode = Column(String, nullable=False, default="embedded")  # embedded | password

    size = Column(BigInteger, nullable=False)       # plaintext size, for UX
    encrypted_size = Column(BigInteger, nullable=False)

    uploaded_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

    max_downloads = Column(Integer, nullable=True)  # NULL = unlimited
    download_count = Column(Integer, nullable=False, default=0)
    last_downloaded_at = Column(DateTime, nullable=True)

    is_password_protected = Column(Boolean, nullable=False, default=False)
    password_hash = Column(String, nullable=True)   # bcrypt, never the password

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)


# ─────────────────────────────────────────────────────────────
# Audit Log — hashed identifiers, encrypted PII, TTL per category
# ─────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String, unique=True, nullable=False)
    category = Column(String, nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    severity = Column(String, nullable=False, default="info", index=True)
    status = Column(String, nullable=False, default="success")
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    ip_hash = Column(String(64), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    user_agent = Column(String(500), nullable=True)
    meta_data = Column(JSON, nullable=False, default=dict)
    encrypted_fields = Column(JSON, nullable=False, default=dict)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_logs_category_timestamp", "category", "timestamp"),
    )


# ─────────────────────────────────────────────────────────────
# Rate limit windows — shared limiter state for multi-instance deploys
# ─────────────────────────────────────────────────────────────
class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    key = Column(String, primary_key=True)
    window_start = Column(BigInteger, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False, index=True)
