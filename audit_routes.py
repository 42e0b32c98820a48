# audit_routes.py — admin tooling over the audit log and lifecycle sweep

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from audit import MAX_QUERY_LIMIT, AuditService, get_audit_service
from auth import require_admin
from database import get_db
from maintenance import run_sweep
from ratelimit import RateLimiters, get_rate_limiters
from share_routes import get_client_ip
from storage import StorageBackend, get_storage
import schemas

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/audit/logs")
def list_audit_logs(
    category: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=MAX_QUERY_LIMIT),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service),
):
    """Safe projection only: encrypted fields are listed by name, never by value."""
    result = audit.query(
        category=category, severity=severity, status=status, action=action,
        user_id=user_id, since=since, until=until, limit=limit, offset=offset,
    )
    return {"success": True, **result}


@router.get("/audit/stats")
def audit_stats(
    since: Optional[datetime] = Query(None),
    admin: dict = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service),
):
    return {"success": True, **audit.stats(since=since)}


@router.post("/audit/logs/{entry_id}/decrypt")
def decrypt_audit_entry(
    entry_id: str,
    request: Request,
    admin: dict = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service),
):
    entry = audit.decrypt_entry(entry_id, admin_id=admin["sub"], ip=get_client_ip(request))
    return {"success": True, "entry": entry}


@router.post("/maintenance/sweep", response_model=schemas.SweepResult)
def sweep(
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
    limiters: RateLimiters = Depends(get_rate_limiters),
    audit: AuditService = Depends(get_audit_service),
):
    result = run_sweep(db, storage, limiters.store)
    audit.log_admin_action(
        "maintenance_sweep_triggered", "Lifecycle sweep triggered by admin",
        severity="low", ip=get_client_ip(request), user_id=admin["sub"], metadata=result,
    )
    return schemas.SweepResult(**result)
