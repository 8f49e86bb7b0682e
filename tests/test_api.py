"""HTTP surface: ledger and admin routes, auth, rate limiting, error envelope."""

import pytest
from fastapi.testclient import TestClient

from main import create_app

from conftest import ADMIN, DAY, ISSUER, NOW, FixedClock

KYC = {"name": "Asha Rao", "document_number": "P1234567", "dob": "1990-01-01"}


@pytest.fixture
def api_clock():
    return FixedClock()


@pytest.fixture
def client(settings, api_clock):
    with TestClient(create_app(settings, clock=api_clock)) as test_client:
        yield test_client


def bearer(client, subject, roles):
    token = client.app.state.tokens.create_token(subject, roles)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def issuer_headers(client):
    return bearer(client, ISSUER, ["issuer"])


@pytest.fixture
def admin_headers(client):
    return bearer(client, ADMIN, ["admin"])


def mint(client, headers, subject_id="subject-1", **extra):
    response = client.post("/ledger/identities", json={"subject_id": subject_id, "kyc_data": KYC, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


# ─── Ledger routes ────────────────────────────────────────────────────────────


def test_root_reports_operational(client):
    assert client.get("/").json()["status"] == "operational"


def test_mint_verify_revoke_flow(client, issuer_headers):
    minted = mint(client, issuer_headers, expiry_days=30)
    asset_id = minted["asset_id"]
    assert minted["offchain_stored"] is True
    assert minted["expiry_timestamp"] == NOW + 30 * DAY

    view = client.get(f"/ledger/identities/{asset_id}").json()
    assert view["status"] == "ACTIVE"
    assert view["issuer_id"] == ISSUER
    assert "kyc_hash" not in view and "signature" not in view

    verified = client.post(f"/ledger/identities/{asset_id}/verify", json={"kyc_data": KYC}).json()
    assert verified["valid"] is True

    revoked = client.post(
        f"/ledger/identities/{asset_id}/revoke",
        json={"reason": "fraud detected", "expected_version": 1},
        headers=issuer_headers,
    )
    assert revoked.status_code == 200
    assert revoked.json()["status"] == "REVOKED"

    after = client.post(f"/ledger/identities/{asset_id}/verify").json()
    assert (after["valid"], after["reason"]) == (False, "REVOKED")


def test_verify_strict_raises_the_reason(client, issuer_headers):
    asset_id = mint(client, issuer_headers)["asset_id"]

    mismatch = client.post(f"/ledger/identities/{asset_id}/verify", json={"kyc_data": {"name": "x"}, "strict": True})
    assert mismatch.status_code == 403
    assert mismatch.json()["code"] == "HASH_MISMATCH"

    missing = client.post("/ledger/identities/DID-missing/verify", json={"strict": True})
    assert missing.status_code == 404


def test_verify_rejects_both_data_and_hash(client):
    response = client.post("/ledger/identities/DID-1/verify", json={"kyc_data": KYC, "kyc_hash": "h" * 64})
    assert response.status_code == 400


def test_renew_extends_from_now(client, issuer_headers, api_clock):
    asset_id = mint(client, issuer_headers, expiry_days=1)["asset_id"]
    api_clock.advance(3 * DAY)

    response = client.post(f"/ledger/identities/{asset_id}/renew", json={"extend_days": 10}, headers=issuer_headers)
    assert response.status_code == 200
    assert response.json()["new_expiry"] == api_clock() + 10 * DAY
    assert client.post(f"/ledger/identities/{asset_id}/verify").json()["valid"] is True


def test_queries_statistics_and_status(client, issuer_headers):
    mint(client, issuer_headers, "subject-1")
    mint(client, issuer_headers, "subject-2")

    assert client.get("/ledger/subjects/subject-1/identities").json()["count"] == 1
    assert client.get(f"/ledger/issuers/{ISSUER}/identities").json()["count"] == 2
    assert client.get("/ledger/statistics").json()["active"] == 2

    status = client.get("/ledger/status").json()
    assert status["connected"] is True
    assert status["chain_valid"] is True
    assert status["blocks"] == 3        # genesis + two mints


def test_bulk_verify_route(client, issuer_headers):
    asset_id = mint(client, issuer_headers)["asset_id"]
    result = client.post("/ledger/bulk-verify", json={"asset_ids": [asset_id, "DID-missing"]}).json()
    assert (result["total_checked"], result["valid_count"]) == (2, 1)

    too_many = client.post("/ledger/bulk-verify", json={"asset_ids": [f"DID-{i}" for i in range(11)]})
    assert too_many.status_code == 400
    assert too_many.json()["code"] == "BATCH_TOO_LARGE"


# ─── Auth & errors ────────────────────────────────────────────────────────────


def test_mint_without_token_is_401(client):
    response = client.post("/ledger/identities", json={"subject_id": "s", "kyc_data": KYC})
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "Missing bearer token",
        "category": "UNAUTHENTICATED",
        "code": "MISSING_TOKEN",
        "retryable": False,
    }


def test_garbage_token_is_401(client):
    response = client.get("/admin/health", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


def test_unregistered_issuer_token_is_rejected_by_the_ledger(client):
    headers = bearer(client, "rogue-issuer", ["issuer"])
    response = client.post("/ledger/identities", json={"subject_id": "s", "kyc_data": KYC}, headers=headers)
    assert response.status_code == 403
    assert response.json()["code"] == "ISSUER_NOT_AUTHORIZED"


def test_issuer_token_cannot_use_admin_routes(client, issuer_headers):
    response = client.get("/admin/health", headers=issuer_headers)
    assert response.status_code == 403
    assert response.json()["code"] == "ADMIN_ACCESS_DENIED"


def test_conflict_envelope(client, issuer_headers):
    asset_id = mint(client, issuer_headers)["asset_id"]
    client.post(f"/ledger/identities/{asset_id}/revoke", json={"reason": "r"}, headers=issuer_headers)
    again = client.post(f"/ledger/identities/{asset_id}/revoke", json={"reason": "r"}, headers=issuer_headers)

    assert again.status_code == 409
    body = again.json()
    assert (body["category"], body["code"], body["retryable"]) == ("CONFLICT", "ALREADY_REVOKED", False)


def test_malformed_body_is_400_in_the_same_envelope(client, issuer_headers):
    response = client.post("/ledger/identities", json={"subject_id": ""}, headers=issuer_headers)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "INVALID_REQUEST"


def test_unknown_identity_is_404(client):
    response = client.get("/ledger/identities/DID-missing")
    assert response.status_code == 404
    assert response.json()["category"] == "NOT_FOUND"


def test_admin_rate_limit_returns_429_with_retry_after(settings, api_clock):
    limited = settings.model_copy(update={"ADMIN_RATE_LIMIT_PER_MINUTE": 2})
    with TestClient(create_app(limited, clock=api_clock)) as client:
        headers = bearer(client, ADMIN, ["admin"])
        assert client.get("/admin/keys/status", headers=headers).status_code == 200
        assert client.get("/admin/keys/status", headers=headers).status_code == 200

        response = client.get("/admin/keys/status", headers=headers)
        assert response.status_code == 429
        assert response.json()["category"] == "RATE_LIMITED"
        assert response.json()["retryable"] is True
        assert int(response.headers["Retry-After"]) >= 1

        # ledger routes have their own window
        assert client.get("/ledger/statistics").status_code == 200


# ─── Admin routes ─────────────────────────────────────────────────────────────


def test_admin_bulk_mint_and_audit(client, admin_headers):
    response = client.post("/admin/bulk/mint", headers=admin_headers, json={"subjects": [
        {"subject_id": "s-1", "kyc_data": {"name": "a"}},
        {"subject_id": "s-2"},
    ]})
    assert response.status_code == 200
    summary = response.json()["summary"]
    assert (summary["successful"], summary["failed"]) == (1, 1)

    audit = client.get("/admin/audit", params={"type": "BULK_MINT_COMPLETE"}, headers=admin_headers).json()
    assert audit["count"] == 1
    assert audit["entries"][0]["actor"] == ADMIN


def test_admin_bulk_revoke(client, admin_headers, issuer_headers):
    asset_id = mint(client, issuer_headers)["asset_id"]
    response = client.post(
        "/admin/bulk/revoke", headers=admin_headers, json={"asset_ids": [asset_id, "DID-missing"], "reason": "audit"},
    )
    results = response.json()["results"]
    assert [r["success"] for r in results] == [True, False]


def test_admin_health_config_and_report(client, admin_headers, settings):
    health = client.get("/admin/health", headers=admin_headers).json()
    assert health["overall_health"] == "healthy"

    config = client.get("/admin/config", headers=admin_headers)
    assert settings.HMAC_SECRET not in config.text
    assert config.json()["ledger"]["connected"] is True

    validation = client.get("/admin/config/validate", headers=admin_headers).json()
    assert validation["valid"] is True

    report = client.get("/admin/report", headers=admin_headers).json()
    assert report["success"] is True
    assert "system_health" in report["report"]


def test_admin_key_rotation_routes(client, admin_headers):
    before = client.get("/admin/keys/status", headers=admin_headers).json()
    rotated = client.post("/admin/keys/rotate/encryption", headers=admin_headers).json()

    assert rotated["archived_key_id"] == before["encryption_key_id"]
    after = client.get("/admin/keys/status", headers=admin_headers).json()
    assert after["encryption_key_id"] == rotated["key_id"]
    assert after["archived_encryption_keys"] == 1

    client.post("/admin/keys/rotate/hmac", headers=admin_headers)
    env = client.post("/admin/keys/generate-env", headers=admin_headers).json()
    assert set(env["environment"]) == {"ENCRYPTION_KEY", "HMAC_SECRET", "ADMIN_JWT_SECRET"}

    types = [e["type"] for e in client.get("/admin/audit", headers=admin_headers).json()["entries"]]
    assert types == ["ENVIRONMENT_GENERATED", "KEY_ROTATED", "KEY_ROTATED"]


def test_admin_audit_limit_is_validated(client, admin_headers):
    assert client.get("/admin/audit", params={"limit": 0}, headers=admin_headers).status_code == 400
