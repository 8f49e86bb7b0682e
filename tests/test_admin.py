"""Admin orchestrator: bulk operations, health, audit trail, configuration, keys."""

import asyncio

import pytest

from core.crypto import KeyService
from core.errors import ValidationError
from modules.admin import AdminOrchestrator
from modules.audit import AuditLog, generate_audit_id

from conftest import ADMIN, BULK_ISSUER, DAY, ENCRYPTION_KEY, ISSUER


def subject(subject_id, **extra):
    return {"subject_id": subject_id, "kyc_data": {"name": f"Name of {subject_id}", "dob": "1990-01-01"}, **extra}


# ─── Bulk mint ────────────────────────────────────────────────────────────────


async def test_bulk_mint_isolates_failing_entries(admin, issuer):
    await issuer.mint_identity("existing", {"name": "x"}, asset_id="DID-existing")

    result = await admin.bulk_mint_digital_identities([
        subject("s-1"),
        subject("s-1"),
        subject("existing"),
        {"subject_id": "s-bad"},
        subject("s-2", expiry_days=10),
    ], actor=ADMIN)

    assert result["summary"]["total"] == 5
    assert result["summary"]["successful"] == 2
    assert result["summary"]["failed"] == 3
    codes = [(r["subject_id"], r.get("code")) for r in result["results"]]
    assert codes == [
        ("s-1", None),
        ("s-1", "DUPLICATE_SUBJECT"),
        ("existing", "ALREADY_HAS_IDENTITY"),
        ("s-bad", "INVALID_ARGUMENT"),
        ("s-2", None),
    ]

    minted = result["results"][0]
    assert minted["offchain_stored"] is True
    identity = await issuer.get_identity(minted["id"])
    assert identity.issuer_id == BULK_ISSUER


async def test_bulk_mint_writes_start_and_complete_audit_entries(admin, audit):
    await admin.bulk_mint_digital_identities([subject("s-1"), {"subject_id": ""}], actor=ADMIN)

    complete, start = audit.entries(limit=2)
    assert start.type == "BULK_MINT_START"
    assert start.payload == {"subject_count": 2}
    assert complete.type == "BULK_MINT_COMPLETE"
    assert complete.payload["successful"] == 1
    assert complete.payload["failures"] == [{"subject_id": "", "code": "INVALID_ARGUMENT"}]
    assert complete.actor == ADMIN


@pytest.mark.parametrize("retire", ["revoke", "expire"])
async def test_bulk_mint_refuses_subject_with_a_retired_identity(admin, issuer, clock, retire):
    await issuer.mint_identity("s-1", {"name": "x"}, asset_id="DID-old", expiry_days=1)
    if retire == "revoke":
        await issuer.revoke("DID-old", "lost card", ISSUER)
    else:
        clock.advance(2 * DAY)

    result = await admin.bulk_mint_digital_identities([subject("s-1")])
    assert result["summary"]["successful"] == 0
    assert result["results"][0]["code"] == "ALREADY_HAS_IDENTITY"
    assert (await issuer.identities_for_subject("s-1")).count == 1


async def test_concurrent_batches_mint_a_subject_once(admin, issuer):
    first, second = await asyncio.gather(
        admin.bulk_mint_digital_identities([subject("s-1"), subject("s-2")]),
        admin.bulk_mint_digital_identities([subject("s-1")]),
    )

    assert first["summary"]["successful"] + second["summary"]["successful"] == 2
    assert (await issuer.identities_for_subject("s-1")).count == 1


@pytest.mark.parametrize("subjects", [[], [subject(f"s-{i}") for i in range(6)]])
async def test_bulk_mint_rejects_empty_or_oversized_batches(admin, audit, subjects):
    with pytest.raises(ValidationError):
        await admin.bulk_mint_digital_identities(subjects)
    assert len(audit) == 0


async def test_bulk_mint_oversized_batch_code(admin):
    with pytest.raises(ValidationError) as exc:
        await admin.bulk_mint_digital_identities([subject(f"s-{i}") for i in range(6)])
    assert exc.value.code == "BATCH_TOO_LARGE"


async def test_unexpected_failure_is_audited_and_raised(admin, issuer, audit, monkeypatch):
    async def broken(subject_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(issuer, "has_identity", broken)
    with pytest.raises(RuntimeError):
        await admin.bulk_mint_digital_identities([subject("s-1")])
    assert audit.entries(limit=1)[0].type == "BULK_MINT_ERROR"


# ─── Bulk revoke / verify ─────────────────────────────────────────────────────


async def test_bulk_revoke_reports_each_item(admin, issuer, audit):
    await issuer.mint_identity("s-1", {"name": "a"}, asset_id="DID-1")
    await issuer.mint_identity("s-2", {"name": "b"}, asset_id="DID-2")
    await issuer.revoke("DID-2", "earlier", ISSUER)

    result = await admin.bulk_revoke(["DID-1", "DID-2", "DID-missing"], "compromised batch", actor=ADMIN)

    assert [(r["id"], r["success"], r.get("code")) for r in result["results"]] == [
        ("DID-1", True, None),
        ("DID-2", False, "ALREADY_REVOKED"),
        ("DID-missing", False, "NOT_FOUND"),
    ]
    assert result["summary"]["successful"] == 1
    assert (await issuer.verify("DID-1")).reason.value == "REVOKED"
    entries = audit.entries()
    assert [e.type for e in entries] == [
        "BULK_REVOKE_COMPLETE", "REVOKE_FAILED", "REVOKE_FAILED", "BULK_REVOKE_START",
    ]
    assert sorted(e.payload["code"] for e in entries[1:3]) == ["ALREADY_REVOKED", "NOT_FOUND"]


async def test_bulk_revoke_requires_reason(admin):
    with pytest.raises(ValidationError):
        await admin.bulk_revoke(["DID-1"], "")


async def test_bulk_verify_is_bounded_and_audited(admin, issuer, audit):
    await issuer.mint_identity("s-1", {"name": "a"}, asset_id="DID-1")
    result = await admin.bulk_verify(["DID-1", "DID-2"])

    assert (result.total_checked, result.valid_count) == (2, 1)
    assert audit.entries(limit=1)[0].type == "BULK_VERIFY"

    with pytest.raises(ValidationError) as exc:
        await admin.bulk_verify([f"DID-{i}" for i in range(11)])
    assert exc.value.code == "BATCH_TOO_LARGE"


# ─── Health ───────────────────────────────────────────────────────────────────


async def test_system_health_when_everything_is_up(admin, issuer):
    await issuer.mint_identity("s-1", {"name": "a"}, asset_id="DID-1")
    health = await admin.system_health()

    assert health["overall_health"] == "healthy"
    assert health["issues"] == []
    assert health["critical_services_count"] == health["total_critical_services"] == 2
    assert health["services"]["ledger"]["connected"] is True
    assert health["services"]["key_management"]["validation"]["valid"] is True
    assert health["services"]["database"] == {"status": "connected", "mappings": 1}
    assert health["services"]["identities"]["total"] == 1


async def test_system_health_degrades_when_ledger_is_down(admin, gateway):
    await gateway.disconnect()
    health = await admin.system_health()

    assert health["overall_health"] == "degraded"
    assert health["critical_services_count"] == 1
    assert health["issues"][0].startswith("Ledger not connected")
    assert "error" in health["services"]["identities"]


async def test_system_health_degrades_without_hmac_secret(settings, issuer, gateway, audit, offchain):
    admin = AdminOrchestrator(settings, issuer, gateway, KeyService(ENCRYPTION_KEY, ""), audit, offchain)
    health = await admin.system_health()

    assert health["overall_health"] == "degraded"
    assert health["issues"] == ["HMAC secret not configured"]
    assert health["services"]["ledger"]["connected"] is True
    assert health["services"]["key_management"]["validation"]["issues"][0]["code"] == "HMAC_SECRET_MISSING"


# ─── Audit trail ──────────────────────────────────────────────────────────────


def test_audit_entries_newest_first_and_filtered(admin, audit):
    audit.record("A", ADMIN)
    audit.record("B", ADMIN)
    audit.record("A", ADMIN, {"n": 2})

    assert [e["type"] for e in admin.audit_log(10)] == ["A", "B", "A"]
    filtered = admin.audit_log(10, type_filter="A")
    assert [e["payload"] for e in filtered] == [{"n": 2}, {}]
    assert len(admin.audit_log(1)) == 1


@pytest.mark.parametrize("limit", [0, 1001])
def test_audit_limit_out_of_range_is_rejected(admin, limit):
    with pytest.raises(ValidationError):
        admin.audit_log(limit)


def test_audit_log_is_bounded(keys):
    log = AuditLog(keys.hash_for_privacy, max_size=3)
    for i in range(5):
        log.record("EVENT", ADMIN, {"i": i})
    assert len(log) == 3
    assert [e.payload["i"] for e in log.entries()] == [4, 3, 2]


def test_audit_payloads_are_redacted(audit, keys):
    entry = audit.record("X", ADMIN, {
        "subject_id": "s-1",
        "kyc_data": {"name": "Asha"},
        "items": [{"email": "a@example.com", "count": 2}],
        "dob": 19900101,
    })
    assert entry.payload["subject_id"] == "s-1"
    assert entry.payload["kyc_data"] == "sha256:" + keys.hash_for_privacy({"name": "Asha"})
    assert entry.payload["items"][0]["email"] == "sha256:" + keys.hash_for_privacy("a@example.com")
    assert entry.payload["items"][0]["count"] == 2
    assert entry.payload["dob"] == "sha256:" + keys.hash_for_privacy("19900101")
    assert "Asha" not in entry.model_dump_json()


def test_audit_ids_have_the_documented_shape():
    audit_id = generate_audit_id(1_700_000_000_000)
    prefix, ms, suffix = audit_id.split("-")
    assert (prefix, ms) == ("AUDIT", "1700000000000")
    assert len(suffix) == 9 and suffix.isalnum()


# ─── Configuration ────────────────────────────────────────────────────────────


def test_configuration_view_hides_secrets(admin, settings):
    config = admin.system_configuration()
    text = str(config)

    assert settings.ENCRYPTION_KEY not in text
    assert settings.HMAC_SECRET not in text
    assert settings.ADMIN_JWT_SECRET not in text
    assert config["security"] == {
        "encryption": True, "hmac": True, "admin_jwt": True, "key_store": settings.KEY_STORE_PATH,
    }
    assert config["database"]["driver"] == "sqlite+aiosqlite"
    assert config["ledger"]["connected"] is True


def test_configuration_validation_in_development(admin):
    result = admin.validate_system_configuration()
    assert result["valid"] is True
    assert result["critical_issues"] == 0
    assert any("Network profile" in w for w in result["warnings"])


def test_configuration_validation_in_production_flags_defaults(admin, settings):
    admin.settings = settings.model_copy(update={
        "ENVIRONMENT": "production",
        "ADMIN_JWT_SECRET": "change-me-in-production",
        "BULK_ISSUER_ID": "nobody",
    })
    result = admin.validate_system_configuration()

    assert result["valid"] is False
    assert "ADMIN_JWT_SECRET is not set to a unique value" in result["issues"]
    assert any("sqlite in production" in w for w in result["warnings"])
    assert any("BULK_ISSUER_ID nobody" in w for w in result["warnings"])


async def test_system_report_bundles_everything(admin, audit):
    audit.record("SOMETHING", ADMIN)
    report = (await admin.system_report())["report"]

    assert set(report) == {
        "timestamp", "system_health", "configuration", "configuration_validation",
        "statistics", "recent_audit_log",
    }
    assert report["recent_audit_log"][0]["type"] == "SOMETHING"


# ─── Keys ─────────────────────────────────────────────────────────────────────


def test_rotate_keys_is_audited_without_material(admin, audit):
    new_secret = "c3" * 32
    result = admin.rotate_keys("hmac", actor=ADMIN, new_material=new_secret)

    entry = audit.entries(limit=1)[0]
    assert entry.type == "KEY_ROTATED"
    assert entry.category == "security"
    assert entry.payload["key_id"] == result["key_id"]
    assert new_secret not in entry.model_dump_json()
    assert admin.key_status()["archived_hmac_secrets"] == 1


def test_failed_rotation_is_audited(admin, audit):
    with pytest.raises(ValidationError):
        admin.rotate_keys("encryption", new_material="short")
    assert audit.entries(limit=1)[0].type == "KEY_ROTATION_FAILED"


def test_unknown_key_kind_is_rejected(admin):
    with pytest.raises(ValidationError):
        admin.rotate_keys("signing")


def test_generate_environment_audits_names_only(admin, audit):
    result = admin.generate_environment(actor=ADMIN)
    env = result["environment"]

    entry = audit.entries(limit=1)[0]
    assert entry.type == "ENVIRONMENT_GENERATED"
    assert entry.payload == {"variables": ["ADMIN_JWT_SECRET", "ENCRYPTION_KEY", "HMAC_SECRET"]}
    assert all(value not in entry.model_dump_json() for value in env.values())
