"""HTTP surface of the share service, driven through FastAPI's TestClient."""

import io
import os
from concurrent.futures import ThreadPoolExecutor

import pytest

from encryption import ALGORITHM_GCM_STREAM, EncryptionEngine, encrypted_size
from keys import b64encode, derive_access_secret, generate_key, generate_salt, derive_key
from lifecycle import BlobLifecycleService
from ratelimit import InMemoryRateLimitStore, RateLimiter


def _upload(client, plaintext=b"x" * 5000, headers=None, **fields):
    key = generate_key()
    sink = io.BytesIO()
    iv = EncryptionEngine().encrypt_stream(io.BytesIO(plaintext), sink, key)
    form = {
        "iv": b64encode(iv),
        "algorithm": ALGORITHM_GCM_STREAM,
        "size": str(len(plaintext)),
        "encrypted_size": str(encrypted_size(len(plaintext))),
        "expiration": "24h",
    }
    form.update({k: str(v) for k, v in fields.items()})
    response = client.post(
        "/api/upload", data=form,
        files={"file": ("blob", sink.getvalue(), "application/octet-stream")},
        headers=headers or {},
    )
    return response, key, iv


class TestUpload:

    def test_upload_returns_fragmentless_url(self, client):
        response, key, _ = _upload(client, max_downloads=3)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "#" not in body["share_url"]
        assert body["share_url"].endswith(f"/s/{body['share_id']}")
        assert body["max_downloads"] == 3
        assert b64encode(key) not in response.text

    def test_size_mismatch_rejected(self, client):
        response, _, _ = _upload(client, encrypted_size=99999)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_input"

    def test_bad_expiration_rejected(self, client):
        response, _, _ = _upload(client, expiration="forever")
        assert response.status_code == 400

    def test_upload_rate_limited(self, client, limiters):
        limiters.upload = RateLimiter(InMemoryRateLimitStore(), limit=2, window_seconds=60, name="upload")
        assert _upload(client)[0].status_code == 200
        assert _upload(client)[0].status_code == 200
        response = _upload(client)[0]
        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert "Retry-After" in response.headers

    def test_upload_is_audited_without_secrets(self, client, admin_headers):
        response, key, _ = _upload(client)
        share_id = response.json()["share_id"]
        logs = client.get("/api/admin/audit/logs", params={"action": "file_uploaded"},
                          headers=admin_headers).json()["logs"]
        assert logs[0]["metadata"]["share_id"] == share_id
        assert b64encode(key) not in str(logs)


class TestDownload:

    def test_streams_ciphertext_with_public_parameters(self, client):
        plaintext = os.urandom(200_000)
        response, key, iv = _upload(client, plaintext=plaintext, max_downloads=2)
        share_id = response.json()["share_id"]

        download = client.get(f"/api/download/{share_id}")
        assert download.status_code == 200
        assert download.headers["X-ZK-IV"] == b64encode(iv)
        assert download.headers["X-ZK-Algorithm"] == ALGORITHM_GCM_STREAM
        assert download.headers["X-Download-Count"] == "1"
        assert download.headers["X-Downloads-Remaining"] == "1"
        assert download.headers["Cache-Control"] == "no-store"
        assert download.headers["Referrer-Policy"] == "no-referrer"
        assert EncryptionEngine().decrypt_blob(download.content, key, iv, ALGORITHM_GCM_STREAM) == plaintext

    def test_limit_then_gone(self, client):
        response, _, _ = _upload(client, max_downloads=1)
        share_id = response.json()["share_id"]
        assert client.get(f"/api/download/{share_id}").status_code == 200

        second = client.get(f"/api/download/{share_id}")
        assert second.status_code == 410
        assert second.json()["error"] == "download_limit_exceeded"

    def test_unknown_share(self, client):
        response = client.get("/api/download/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "not_found", "message": "File not found"}

    def test_missing_blob_is_generic_500_and_audited(self, client, storage, admin_headers, session_factory):
        response, _, _ = _upload(client)
        share_id = response.json()["share_id"]
        db = session_factory()
        try:
            record = BlobLifecycleService(db, storage).get_active(share_id)
            storage.delete(record.storage_key)
        finally:
            db.close()

        download = client.get(f"/api/download/{share_id}")
        assert download.status_code == 500
        assert download.json()["error"] == "storage_error"
        assert download.json()["message"] == "File not available"

        logs = client.get("/api/admin/audit/logs", params={"action": "blob_missing"},
                          headers=admin_headers).json()["logs"]
        assert logs[0]["severity"] == "critical"
        info = client.get(f"/api/file-info/{share_id}").json()
        assert info["download_count"] == 0


class TestPasswordGate:

    def _password_share(self, client):
        salt = generate_salt()
        key = derive_key("Secr3t!", salt)
        secret = derive_access_secret(key)
        sink = io.BytesIO()
        iv = EncryptionEngine().encrypt_stream(io.BytesIO(b"secret"), sink, key)
        response = client.post(
            "/api/upload",
            data={
                "iv": b64encode(iv), "algorithm": ALGORITHM_GCM_STREAM, "size": "6",
                "encrypted_size": str(encrypted_size(6)), "key_mode": "password",
                "salt": b64encode(salt), "iterations": "100000", "password": secret,
            },
            files={"file": ("blob", sink.getvalue(), "application/octet-stream")},
        )
        assert response.status_code == 200
        return response.json()["share_id"], salt, secret

    def test_missing_password_returns_derivation_parameters(self, client):
        share_id, salt, _ = self._password_share(client)
        response = client.get(f"/api/download/{share_id}")
        assert response.status_code == 401
        body = response.json()
        assert body["error"] == "password_required"
        assert body["salt"] == b64encode(salt)
        assert body["iterations"] == 100000
        assert body["key_mode"] == "password"

    def test_correct_password_downloads(self, client):
        share_id, _, secret = self._password_share(client)
        response = client.get(f"/api/download/{share_id}", headers={"X-Share-Password": secret})
        assert response.status_code == 200
        assert response.headers["X-ZK-Iterations"] == "100000"

    def test_sixth_wrong_password_is_rate_limited(self, client, admin_headers):
        share_id, _, secret = self._password_share(client)
        for attempt in range(5):
            response = client.get(f"/api/download/{share_id}", headers={"X-Share-Password": "nope-nope"})
            assert response.status_code == 401
            assert response.json()["error"] == "invalid_password"
            assert response.json()["attempts_remaining"] == 4 - attempt

        blocked = client.get(f"/api/download/{share_id}", headers={"X-Share-Password": secret})
        assert blocked.status_code == 429
        assert blocked.json()["error"] == "rate_limit_exceeded"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"

        logs = client.get("/api/admin/audit/logs", params={"category": "security_event"},
                          headers=admin_headers).json()
        actions = [log["action"] for log in logs["logs"]]
        assert actions.count("share_password_failed") == 5
        assert "share_password_rate_limited" in actions

    def test_verify_does_not_count_download(self, client):
        share_id, _, secret = self._password_share(client)
        response = client.post(f"/api/shares/{share_id}/verify", json={"password": secret})
        assert response.status_code == 200
        assert response.json()["valid"] is True
        assert client.get(f"/api/file-info/{share_id}").json()["download_count"] == 0

    def test_verify_wrong_password(self, client):
        share_id, _, _ = self._password_share(client)
        response = client.post(f"/api/shares/{share_id}/verify", json={"password": "wrong-one"})
        assert response.status_code == 401

    def test_correct_password_is_audited(self, client, admin_headers):
        share_id, _, secret = self._password_share(client)
        client.get(f"/api/download/{share_id}", headers={"X-Share-Password": secret})
        logs = client.get("/api/admin/audit/logs", params={"action": "share_password_verified"},
                          headers=admin_headers).json()["logs"]
        assert len(logs) == 1
        assert logs[0]["severity"] == "info"
        assert logs[0]["metadata"] == {"share_id": share_id}

    def test_rotating_forwarded_for_does_not_reset_throttle(self, client):
        share_id, _, secret = self._password_share(client)
        for i in range(5):
            response = client.get(f"/api/download/{share_id}", headers={
                "X-Share-Password": "nope-nope", "X-Forwarded-For": f"10.0.0.{i}"})
            assert response.status_code == 401

        blocked = client.get(f"/api/download/{share_id}", headers={
            "X-Share-Password": secret, "X-Forwarded-For": "10.0.0.99"})
        assert blocked.status_code == 429

    def test_forwarded_for_honoured_from_trusted_proxy(self, client, monkeypatch):
        monkeypatch.setattr("share_routes.TRUSTED_PROXIES", frozenset({"testclient"}))
        share_id, _, secret = self._password_share(client)
        for _ in range(5):
            client.get(f"/api/download/{share_id}", headers={
                "X-Share-Password": "nope-nope", "X-Forwarded-For": "198.51.100.1"})

        assert client.get(f"/api/download/{share_id}", headers={
            "X-Share-Password": secret, "X-Forwarded-For": "198.51.100.1"}).status_code == 429
        assert client.get(f"/api/download/{share_id}", headers={
            "X-Share-Password": secret, "X-Forwarded-For": "198.51.100.2"}).status_code == 200

    def test_concurrent_wrong_guesses_are_capped(self, client):
        share_id, _, _ = self._password_share(client)

        def guess(_):
            return client.get(f"/api/download/{share_id}",
                              headers={"X-Share-Password": "nope-nope"}).status_code

        with ThreadPoolExecutor(max_workers=10) as pool:
            statuses = list(pool.map(guess, range(20)))

        assert set(statuses) <= {401, 429}
        assert statuses.count(401) <= 5
        assert statuses.count(429) >= 15


class TestDeniedAccessAudit:

    def _security_logs(self, client, admin_headers, action):
        return client.get("/api/admin/audit/logs", params={"action": action},
                          headers=admin_headers).json()["logs"]

    def test_upload_rate_limit_is_audited(self, client, limiters, admin_headers):
        limiters.upload = RateLimiter(InMemoryRateLimitStore(), limit=1, window_seconds=60, name="upload")
        _upload(client)
        assert _upload(client)[0].status_code == 429

        logs = self._security_logs(client, admin_headers, "upload_rate_limited")
        assert len(logs) == 1
        assert logs[0]["category"] == "security_event"
        assert logs[0]["status"] == "failure"

    def test_refused_downloads_are_audited(self, client, admin_headers):
        response, _, _ = _upload(client, max_downloads=1)
        share_id = response.json()["share_id"]
        assert client.get(f"/api/download/{share_id}").status_code == 200
        assert client.get(f"/api/download/{share_id}").status_code == 410
        assert client.get("/api/download/missing-share").status_code == 404

        logs = self._security_logs(client, admin_headers, "blob_access_denied")
        assert {(log["metadata"]["share_id"], log["metadata"]["reason"]) for log in logs} == {
            ("missing-share", "not_found"),
            (share_id, "download_limit_exceeded"),
        }
        for log in logs:
            assert set(log["metadata"]) == {"share_id", "reason"}


class TestInfoPreviewDelete:

    def test_file_info_has_no_decryption_parameters(self, client):
        response, _, _ = _upload(client, max_downloads=4)
        info = client.get(f"/api/file-info/{response.json()['share_id']}").json()
        assert info["remaining_downloads"] == 4
        assert "iv" not in info
        assert "salt" not in info

    def test_preview_always_refused(self, client):
        response, _, _ = _upload(client)
        preview = client.get(f"/api/preview/{response.json()['share_id']}")
        assert preview.status_code == 422
        assert preview.json()["error"] == "preview_unavailable"

    def test_owner_can_delete(self, client, user_headers):
        response, _, _ = _upload(client, headers=user_headers)
        share_id = response.json()["share_id"]
        assert client.delete(f"/api/shares/{share_id}", headers=user_headers).status_code == 200
        assert client.get(f"/api/download/{share_id}").status_code == 404

    def test_delete_requires_owner(self, client, user_headers, admin_headers):
        response, _, _ = _upload(client, headers=user_headers)
        share_id = response.json()["share_id"]
        assert client.delete(f"/api/shares/{share_id}").status_code == 401
        assert client.delete(f"/api/shares/{share_id}", headers=admin_headers).status_code == 404


class TestAdmin:

    def test_admin_endpoints_require_admin_role(self, client, user_headers):
        assert client.get("/api/admin/audit/logs").status_code == 401
        assert client.get("/api/admin/audit/logs", headers=user_headers).status_code == 403
        assert client.post("/api/admin/maintenance/sweep", headers=user_headers).status_code == 403

    def test_stats(self, client, admin_headers):
        _upload(client)
        stats = client.get("/api/admin/audit/stats", headers=admin_headers).json()
        assert stats["by_category"]["file_operation"] == 1

    def test_decrypt_entry(self, client, admin_headers, db, fernet):
        from audit import AuditService
        entry = AuditService(db, fernet=fernet).log_user_action(
            "signup", "User signed up", metadata={"email": "erin@example.com"})

        response = client.post(f"/api/admin/audit/logs/{entry.entry_id}/decrypt", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["entry"]["decrypted_fields"] == {"email": "erin@example.com"}

    def test_sweep(self, client, admin_headers):
        response, _, _ = _upload(client, max_downloads=1)
        client.get(f"/api/download/{response.json()['share_id']}")

        result = client.post("/api/admin/maintenance/sweep", headers=admin_headers)
        assert result.status_code == 200
        assert result.json()["shares_purged"] == 1


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["Referrer-Policy"] == "no-referrer"
