"""
audit.py — Security / compliance event log.

Entries never hold raw IPs (salted SHA-256 instead) and never hold
plaintext PII: sensitive metadata fields are Fernet-encrypted one by one
under a server-held key. Each category has its own retention period;
`expires_at` is fixed at write time and expired rows are purged.
"""

import base64
import hashlib
import logging
import os
import uuid
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv
from fastapi import Depends
from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from database import get_db, utcnow
from errors import AuditEncryptionError, InvalidInputError, NotFoundError
import models

load_dotenv()

logger = logging.getLogger(__name__)

AUDIT_ENCRYPTION_KEY = os.getenv("AUDIT_ENCRYPTION_KEY", "change-this-audit-key-in-production")
IP_HASH_SALT = os.getenv("IP_HASH_SALT", "change-this-ip-salt-in-production")

DEFAULT_RETENTION_DAYS = {
    "user_action": 365,
    "admin_action": 2555,       # 7 years (regulatory requirement)
    "security_event": 2555,
    "system_event": 90,
    "data_access": 2555,        # 7 years (GDPR requirement)
    "file_operation": 365,
    "auth_event": 365,
    "compliance": 2555,
}
SEVERITIES = ("info", "low", "medium", "high", "critical")
STATUSES = ("success", "failure", "pending", "cancelled")
SENSITIVE_FIELDS = ("email", "file_name", "filename", "original_name", "username", "real_name")
MAX_QUERY_LIMIT = 1000


def retention_days(category: str) -> int:
    if category not in DEFAULT_RETENTION_DAYS:
        raise InvalidInputError(f"Unknown audit category: {category}")
    override = os.getenv(f"AUDIT_RETENTION_{category.upper()}")
    return int(override) if override else DEFAULT_RETENTION_DAYS[category]


def fernet_from_secret(secret: str) -> Fernet:
    """Fernet keyed by SHA-256 of an arbitrary server secret."""
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest()))


@lru_cache(maxsize=1)
def _default_fernet() -> Fernet:
    return fernet_from_secret(AUDIT_ENCRYPTION_KEY)


def hash_ip(ip: Optional[str], salt: str = IP_HASH_SALT) -> str:
    return hashlib.sha256(f"{ip or 'unknown'}{salt}".encode("utf-8")).hexdigest()


def to_safe_dict(entry: models.AuditLog) -> dict:
    """Projection for admin tooling: encrypted values are never included."""
    return {
        "entry_id": entry.entry_id,
        "category": entry.category,
        "action": entry.action,
        "description": entry.description,
        "severity": entry.severity,
        "status": entry.status,
        "timestamp": entry.timestamp.isoformat(),
        "ip_hash": entry.ip_hash,
        "user_id": entry.user_id,
        "metadata": dict(entry.meta_data or {}),
        "encrypted_field_names": sorted((entry.encrypted_fields or {}).keys()),
        "expires_at": entry.expires_at.isoformat(),
    }


class AuditService:

    def __init__(self, db: Session, fernet: Optional[Fernet] = None,
                 ip_salt: str = IP_HASH_SALT, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.fernet = fernet or _default_fernet()
        self.ip_salt = ip_salt
        self._clock = clock

    def hash_ip(self, ip: Optional[str]) -> str:
        return hash_ip(ip, self.ip_salt)

    def _encrypt_field(self, name: str, value: str) -> str:
        try:
            return self.fernet.encrypt(value.encode("utf-8")).decode("ascii")
        except (TypeError, ValueError) as e:
            # Never fall back to storing the plaintext value.
            logger.error(f"Audit field encryption failed for '{name}': {type(e).__name__}")
            raise AuditEncryptionError(f"Could not encrypt audit field '{name}'") from e

    def log(
        self,
        category: str,
        action: str,
        description: str,
        severity: str = "info",
        status: str = "success",
        ip: Optional[str] = None,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> models.AuditLog:
        if severity not in SEVERITIES:
            raise InvalidInputError(f"Unknown severity: {severity}")
        if status not in STATUSES:
            raise InvalidInputError(f"Unknown status: {status}")
        timestamp = timestamp or self._clock()
        expires_at = timestamp + timedelta(days=retention_days(category))

        plain = dict(metadata or {})
        plain.pop("ip", None)
        encrypted = {}
        for field in SENSITIVE_FIELDS:
            value = plain.pop(field, None)
            if value is None:
                continue
            encrypted[field] = self._encrypt_field(field, str(value))

        entry = models.AuditLog(
            entry_id=uuid.uuid4().hex,
            category=category,
            action=action[:100],
            description=description[:500],
            severity=severity,
            status=status,
            timestamp=timestamp,
            ip_hash=self.hash_ip(ip),
            user_id=user_id,
            user_agent=user_agent[:500] if user_agent else None,
            meta_data=plain,
            encrypted_fields=encrypted,
            expires_at=expires_at,
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    # ── category helpers ─────────────────────────────────────

    def log_security_event(self, action, description, severity="medium", **kwargs):
        return self.log("security_event", action, description, severity=severity, **kwargs)

    def log_file_operation(self, action, description, severity="low", **kwargs):
        return self.log("file_operation", action, description, severity=severity, **kwargs)

    def log_system_event(self, action, description, severity="info", **kwargs):
        return self.log("system_event", action, description, severity=severity, **kwargs)

    def log_admin_action(self, action, description, severity="medium", **kwargs):
        return self.log("admin_action", action, description, severity=severity, **kwargs)

    def log_auth_event(self, action, description, severity="info", **kwargs):
        return self.log("auth_event", action, description, severity=severity, **kwargs)

    def log_data_access(self, action, description, severity="info", **kwargs):
        return self.log("data_access", action, description, severity=severity, **kwargs)

    def log_compliance_event(self, action, description, severity="high", **kwargs):
        return self.log("compliance", action, description, severity=severity, **kwargs)

    def log_user_action(self, action, description, severity="info", **kwargs):
        return self.log("user_action", action, description, severity=severity, **kwargs)

    # ── reads ────────────────────────────────────────────────

    def query(
        self,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or self._clock()
        limit = max(1, min(limit, MAX_QUERY_LIMIT))
        offset = max(0, offset)

        q = self.db.query(models.AuditLog).filter(models.AuditLog.expires_at > now)
        if category:
            q = q.filter(models.AuditLog.category == category)
        if severity:
            q = q.filter(models.AuditLog.severity == severity)
        if status:
            q = q.filter(models.AuditLog.status == status)
        if action:
            q = q.filter(models.AuditLog.action == action)
        if user_id:
            q = q.filter(models.AuditLog.user_id == user_id)
        if ip:
            q = q.filter(models.AuditLog.ip_hash == self.hash_ip(ip))
        if since:
            q = q.filter(models.AuditLog.timestamp >= since)
        if until:
            q = q.filter(models.AuditLog.timestamp <= until)

        total = q.count()
        logs = q.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()) \
            .offset(offset).limit(limit).all()
        return {
            "logs": [to_safe_dict(entry) for entry in logs],
            "total": total,
            "page": offset // limit + 1,
            "limit": limit,
            "has_more": total > offset + limit,
        }

    def decrypt_entry(self, entry_id: str, admin_id: str, ip: Optional[str] = None) -> dict:
        """Admin-only view with sensitive fields decrypted. The access itself is audited."""
        entry = self.db.query(models.AuditLog).filter(models.AuditLog.entry_id == entry_id).first()
        if entry is None:
            raise NotFoundError("Audit entry not found")

        result = to_safe_dict(entry)
        decrypted, failed = {}, []
        for name, token in (entry.encrypted_fields or {}).items():
            try:
                decrypted[name] = self.fernet.decrypt(token.encode("ascii")).decode("utf-8")
            except InvalidToken:
                failed.append(name)
        if failed:
            logger.error(f"Audit entry {entry_id}: {len(failed)} field(s) failed to decrypt")
        result["decrypted_fields"] = decrypted
        result["undecryptable_fields"] = failed

        self.log_admin_action(
            "audit_fields_decrypted",
            "Sensitive audit fields decrypted by admin",
            severity="high",
            ip=ip,
            user_id=admin_id,
            metadata={"entry_id": entry_id, "fields": sorted(decrypted)},
        )
        return result

    def stats(self, since: Optional[datetime] = None, now: Optional[datetime] = None) -> dict:
        """Aggregates over live entries, limited to those at or after `since` when given."""
        now = now or self._clock()
        live = self.db.query(models.AuditLog).filter(models.AuditLog.expires_at > now)
        scoped = live.filter(models.AuditLog.timestamp >= since) if since else live
        by_category = dict(
            scoped.with_entities(models.AuditLog.category, func.count(models.AuditLog.id))
            .group_by(models.AuditLog.category).all()
        )
        by_severity = dict(
            scoped.with_entities(models.AuditLog.severity, func.count(models.AuditLog.id))
            .group_by(models.AuditLog.severity).all()
        )
        return {
            "since": since.isoformat() if since else None,
            "total_logs": scoped.count(),
            "last_24_hours": live.filter(models.AuditLog.timestamp >= now - timedelta(hours=24)).count(),
            "by_category": by_category,
            "by_severity": by_severity,
            "security_events": by_category.get("security_event", 0),
            "critical_events": by_severity.get("critical", 0),
        }

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Physically delete entries past their retention."""
        now = now or self._clock()
        result = self.db.execute(delete(models.AuditLog).where(models.AuditLog.expires_at <= now))
        self.db.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} expired audit entries")
        return purged


def get_audit_service(db: Session = Depends(get_db)) -> AuditService:
    """Dependency: one service per request session."""
    return AuditService(db)
