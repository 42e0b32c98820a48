"""
maintenance.py — Purge everything whose lifetime has ended.

  * shares that expired, ran out of downloads or were deleted (blob + row)
  * audit entries past their category's retention
  * finished rate-limit windows

The API runs this periodically (SWEEP_INTERVAL_SECONDS) and admins can
trigger it through POST /api/admin/maintenance/sweep. From cron:

  python maintenance.py

Safe to run at any time; every step is idempotent.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from audit import AuditService
from database import utcnow
from lifecycle import BlobLifecycleService
from ratelimit import RateLimitStore
from storage import StorageBackend

logger = logging.getLogger(__name__)


def run_sweep(
    db: Session,
    storage: StorageBackend,
    rate_limit_store: Optional[RateLimitStore] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    audit = AuditService(db, clock=lambda: now)

    result = {
        "shares_purged": BlobLifecycleService(db, storage, clock=lambda: now).sweep(now),
        "audit_entries_purged": audit.purge_expired(now),
        "rate_limit_windows_purged": (
            rate_limit_store.purge_expired(now) if rate_limit_store is not None else 0
        ),
    }
    audit.log_system_event(
        "maintenance_sweep", "Expired shares, audit entries and limiter windows purged",
        metadata=result,
    )
    logger.info(
        f"Sweep complete: {result['shares_purged']} shares, "
        f"{result['audit_entries_purged']} audit entries, "
        f"{result['rate_limit_windows_purged']} limiter windows"
    )
    return result


def main():
    from database import Base, SessionLocal, engine
    from ratelimit import DatabaseRateLimitStore, RATE_LIMIT_BACKEND
    from storage import get_storage

    logging.basicConfig(level=logging.INFO)
    print("=" * 60)
    print("ZKShare Maintenance Sweep")
    print("=" * 60)

    Base.metadata.create_all(bind=engine)
    # In-memory limiter state belongs to the API process; only a shared store can be swept here.
    store = DatabaseRateLimitStore(SessionLocal) if RATE_LIMIT_BACKEND == "database" else None

    db = SessionLocal()
    try:
        result = run_sweep(db, get_storage(), store)
    finally:
        db.close()

    for name, count in result.items():
        print(f"  [{count:>5}] {name.replace('_', ' ')}")
    print("=" * 60)


if __name__ == "__main__":
    main()
