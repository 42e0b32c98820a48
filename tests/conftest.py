"""Shared fixtures: a throwaway SQLite database, local-disk storage and the app wired to both."""

import os
from datetime import datetime

import pytest
from cryptography.fernet import Fernet
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from audit import AuditService, get_audit_service
from auth import create_access_token
from database import Base, build_engine, get_db
from encryption import ALGORITHM_GCM, EncryptionEngine
from keys import b64encode, generate_key
from lifecycle import BlobLifecycleService, UploadMetadata
from ratelimit import InMemoryRateLimitStore, RateLimiters, get_rate_limiters
from storage import StorageBackend, get_storage

IP_SALT = "test-ip-salt"


class FakeClock:
    """Settable clock for lifecycle and audit services."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 1, 1, 12, 0, 0))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def storage(tmp_path):
    return StorageBackend(upload_dir=str(tmp_path / "blobs"), use_minio=False)


@pytest.fixture
def fernet():
    return Fernet(Fernet.generate_key())


@pytest.fixture
def limiters():
    return RateLimiters(InMemoryRateLimitStore())


@pytest.fixture
def lifecycle(db, storage):
    return BlobLifecycleService(db, storage)


@pytest.fixture
def make_share(storage):
    """Factory storing a small single-shot ciphertext; returns (record, key, plaintext)."""

    def _make(lifecycle: BlobLifecycleService, plaintext: bytes = b"hello world", **meta):
        key = generate_key()
        payload = EncryptionEngine().encrypt(plaintext, key)
        fields = dict(
            iv=b64encode(payload.iv),
            algorithm=ALGORITHM_GCM,
            size=len(plaintext),
            encrypted_size=len(payload.blob),
        )
        fields.update(meta)
        record = lifecycle.store([payload.blob], UploadMetadata(**fields))
        return record, key, plaintext

    return _make


@pytest.fixture
def app(session_factory, storage, limiters, fernet):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_audit(db: Session = Depends(get_db)):
        return AuditService(db, fernet=fernet, ip_salt=IP_SALT)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_rate_limiters] = lambda: limiters
    app.dependency_overrides[get_audit_service] = override_audit
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # Not used as a context manager: no lifespan, so no background sweep task.
    return TestClient(app)


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin-1", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers():
    token = create_access_token({"sub": "user-1", "role": "user"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def _no_webhook(monkeypatch):
    monkeypatch.setattr("notifier.NOTIFY_WEBHOOK_URL", "")
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    for name in list(os.environ):
        if name.startswith("AUDIT_RETENTION_"):
            monkeypatch.delenv(name)
