"""
modules/admin.py — Admin & Bulk Orchestrator
==============================================
Everything an operator does that is bigger than one identity:

    bulk_mint_digital_identities()  → mint for many subjects, per-item isolation
    bulk_revoke()                   → revoke many ids, per-item isolation
    bulk_verify()                   → verify many ids in one evaluation
    system_health()                 → ledger + keys + statistics, healthy / degraded
    system_configuration()          → redacted config view
    validate_system_configuration() → issues + warnings
    system_report()                 → all of the above + recent audit trail
    rotate_keys()                   → audited key / secret rotation

Every action is written to the audit trail (START / COMPLETE pairs for
bulk work). One bad item never aborts a batch.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.crypto import KeyService
from core.errors import ConnectivityError, LedgerError, ValidationError
from modules.audit import SECURITY, AuditLog
from modules.gateway import GatewayClient
from modules.issuance import IdentityIssuer
from modules.offchain import OffChainMappingStore
from modules.schemas import BulkVerifyResult, SubjectEntry, parse_model

logger = logging.getLogger("digiid.admin")

KEY_KINDS = ("encryption", "hmac")
DEFAULT_JWT_SECRET = "change-me-in-production"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class AdminOrchestrator:

    def __init__(
        self,
        settings,
        issuer: IdentityIssuer,
        gateway: GatewayClient,
        keys: KeyService,
        audit: AuditLog,
        offchain: Optional[OffChainMappingStore] = None,
    ):
        self.settings = settings
        self.issuer = issuer
        self.gateway = gateway
        self.keys = keys
        self.audit = audit
        self.offchain = offchain

    def _check_batch(self, items: list, limit: int, label: str):
        if not items:
            raise ValidationError(f"{label} must be a non-empty list")
        if len(items) > limit:
            raise ValidationError(
                f"Maximum {limit} {label} per bulk operation, got {len(items)}",
                code="BATCH_TOO_LARGE",
            )

    # ── Bulk mint ──────────────────────────────────────────────────────────
    async def bulk_mint_digital_identities(
        self,
        subjects: List[Union[SubjectEntry, dict]],
        actor: str = "admin",
    ) -> dict:
        self._check_batch(subjects, self.settings.BULK_MAX_ITEMS, "subjects")
        started = time.perf_counter()
        self.audit.record("BULK_MINT_START", actor, {"subject_count": len(subjects)})

        semaphore = asyncio.Semaphore(self.settings.BULK_CONCURRENCY)
        claimed = set()

        async def mint_one(raw) -> dict:
            if isinstance(raw, SubjectEntry):
                subject_id = raw.subject_id
            else:
                subject_id = raw.get("subject_id") if isinstance(raw, dict) else None
            try:
                entry = raw if isinstance(raw, SubjectEntry) else parse_model(SubjectEntry, raw)
                # two entries for one subject in the same batch: only the first may mint
                if entry.subject_id in claimed:
                    return {"success": False, "subject_id": subject_id,
                            "reason": "Subject appears more than once in this batch", "code": "DUPLICATE_SUBJECT"}
                claimed.add(entry.subject_id)
                async with semaphore:
                    minted = await self.issuer.mint_for_new_subject(
                        entry.subject_id,
                        entry.kyc_data,
                        documents=entry.documents,
                        expiry_days=entry.expiry_days,
                        issuer_id=self.settings.BULK_ISSUER_ID,
                    )
            except LedgerError as exc:
                return {"success": False, "subject_id": subject_id, "reason": exc.message, "code": exc.code}
            return {
                "success": True,
                "subject_id": entry.subject_id,
                "id": minted["asset_id"],
                "transaction_id": minted["transaction_id"],
                "offchain_stored": minted["offchain_stored"],
            }

        try:
            results = await asyncio.gather(*(mint_one(raw) for raw in subjects))
        except Exception as exc:
            self.audit.record("BULK_MINT_ERROR", actor, {"error": str(exc)})
            raise
        return self._finish("BULK_MINT", actor, list(results), started, key="subject_id")

    # ── Bulk revoke ────────────────────────────────────────────────────────
    async def bulk_revoke(self, asset_ids: List[str], reason: str, actor: str = "admin") -> dict:
        self._check_batch(asset_ids, self.settings.BULK_MAX_ITEMS, "asset ids")
        if not reason:
            raise ValidationError("A revocation reason is required")
        started = time.perf_counter()
        self.audit.record("BULK_REVOKE_START", actor, {"asset_count": len(asset_ids), "reason": reason})

        semaphore = asyncio.Semaphore(self.settings.BULK_CONCURRENCY)

        async def revoke_one(asset_id: str) -> dict:
            try:
                async with semaphore:
                    receipt = await self.issuer.revoke(asset_id, reason, actor)
            except LedgerError as exc:
                return {"success": False, "id": asset_id, "reason": exc.message, "code": exc.code}
            return {"success": True, "id": asset_id, "transaction_id": receipt.transaction_id}

        try:
            results = await asyncio.gather(*(revoke_one(asset_id) for asset_id in asset_ids))
        except Exception as exc:
            self.audit.record("BULK_REVOKE_ERROR", actor, {"error": str(exc)})
            raise
        return self._finish("BULK_REVOKE", actor, list(results), started, key="id")

    def _finish(self, prefix: str, actor: str, results: List[dict], started: float, key: str) -> dict:
        successful = sum(1 for r in results if r["success"])
        summary = {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "duration_ms": int((time.perf_counter() - started) * 1000),
        }
        self.audit.record(f"{prefix}_COMPLETE", actor, {
            **summary,
            "failures": [{key: r.get(key), "code": r.get("code")} for r in results if not r["success"]],
        })
        logger.info(f"{prefix} by {actor}: {successful}/{len(results)} succeeded in {summary['duration_ms']}ms")
        return {"success": True, "results": results, "summary": summary}

    # ── Bulk verify ────────────────────────────────────────────────────────
    async def bulk_verify(self, asset_ids: List[str], actor: str = "admin") -> BulkVerifyResult:
        self._check_batch(asset_ids, self.settings.BULK_VERIFY_MAX_ITEMS, "asset ids")
        result = await self.issuer.bulk_verify(asset_ids)
        self.audit.record("BULK_VERIFY", actor, {"total_checked": result.total_checked, "valid_count": result.valid_count})
        return result

    # ── Health ─────────────────────────────────────────────────────────────
    async def system_health(self) -> dict:
        ledger = await self.gateway.get_network_status()
        key_issues = self.keys.validate_key_configuration()
        key_management = {
            **self.keys.key_status(),
            "validation": {
                "valid": not key_issues,
                "issues": [{"code": i.code, "message": i.message} for i in key_issues],
            },
        }

        try:
            identities: Dict[str, Any] = (await self.issuer.statistics()).model_dump()
        except LedgerError as exc:
            identities = {"error": exc.message}

        database: Dict[str, Any] = {"status": "not configured"}
        if self.offchain is not None:
            try:
                database = {"status": "connected", "mappings": await self.offchain.count()}
            except ConnectivityError as exc:
                database = {"status": "error", "error": exc.message}

        critical = [bool(ledger.get("connected")), not key_issues]
        issues = [i.message for i in key_issues]
        if not ledger.get("connected"):
            issues.insert(0, f"Ledger not connected: {ledger.get('reason', 'unknown')}")

        return {
            "timestamp": _utcnow(),
            "environment": self.settings.ENVIRONMENT,
            "services": {
                "ledger": ledger,
                "key_management": key_management,
                "database": database,
                "identities": identities,
            },
            "overall_health": "healthy" if all(critical) else "degraded",
            "issues": issues,
            "critical_services_count": sum(critical),
            "total_critical_services": len(critical),
        }

    # ── Audit ──────────────────────────────────────────────────────────────
    def audit_log(self, limit: int = 100, type_filter: Optional[str] = None) -> List[dict]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if limit > self.settings.AUDIT_QUERY_MAX_LIMIT:
            raise ValidationError(f"limit cannot exceed {self.settings.AUDIT_QUERY_MAX_LIMIT}")
        return [entry.model_dump() for entry in self.audit.entries(limit, type_filter)]

    # ── Configuration ──────────────────────────────────────────────────────
    def system_configuration(self) -> dict:
        """Secrets are reported as configured / not configured, never shown."""
        s = self.settings
        return {
            "environment": s.ENVIRONMENT,
            "port": s.PORT,
            "database": {
                "url": "configured" if s.DATABASE_URL else "not configured",
                "driver": s.DATABASE_URL.split(":", 1)[0] if s.DATABASE_URL else None,
            },
            "ledger": {
                "network_profile": s.FABRIC_NETWORK_PROFILE,
                "channel": s.FABRIC_CHANNEL,
                "contract": s.FABRIC_CONTRACT,
                "identity": s.FABRIC_IDENTITY,
                "msp_id": s.FABRIC_MSP_ID,
                "connected": self.gateway.is_connected,
            },
            "security": {
                "encryption": bool(s.ENCRYPTION_KEY),
                "hmac": bool(s.HMAC_SECRET),
                "admin_jwt": bool(s.ADMIN_JWT_SECRET) and s.ADMIN_JWT_SECRET != DEFAULT_JWT_SECRET,
                "key_store": s.KEY_STORE_PATH,
            },
            "limits": {
                "bulk_max_items": s.BULK_MAX_ITEMS,
                "bulk_verify_max_items": s.BULK_VERIFY_MAX_ITEMS,
                "bulk_concurrency": s.BULK_CONCURRENCY,
                "audit_log_max_size": s.AUDIT_LOG_MAX_SIZE,
                "rate_limit_per_minute": s.RATE_LIMIT_PER_MINUTE,
                "admin_rate_limit_per_minute": s.ADMIN_RATE_LIMIT_PER_MINUTE,
            },
            "timestamp": _utcnow(),
        }

    def validate_system_configuration(self) -> dict:
        s = self.settings
        production = s.ENVIRONMENT == "production"
        issues = [i.message for i in self.keys.validate_key_configuration()]
        warnings = []

        if not s.DATABASE_URL:
            issues.append("DATABASE_URL is required")
        elif production and s.DATABASE_URL.startswith("sqlite"):
            warnings.append("DATABASE_URL points at sqlite in production")

        if not s.ADMIN_JWT_SECRET or s.ADMIN_JWT_SECRET == DEFAULT_JWT_SECRET:
            message = "ADMIN_JWT_SECRET is not set to a unique value"
            (issues if production else warnings).append(message)

        if not s.AUTHORIZED_ISSUERS:
            warnings.append("AUTHORIZED_ISSUERS is empty - no issuer can mint")
        if s.BULK_ISSUER_ID not in s.AUTHORIZED_ISSUERS:
            warnings.append(f"BULK_ISSUER_ID {s.BULK_ISSUER_ID} is not an authorized issuer - bulk mint will fail")
        if not Path(s.FABRIC_NETWORK_PROFILE).is_file():
            warnings.append(f"Network profile {s.FABRIC_NETWORK_PROFILE} not found - using built-in local profile")
        if production and s.DEBUG:
            warnings.append("DEBUG is enabled in production")

        return {
            "valid": not issues,
            "issues": issues,
            "warnings": warnings,
            "critical_issues": len(issues),
            "warnings_count": len(warnings),
            "timestamp": _utcnow(),
        }

    async def system_report(self) -> dict:
        health = await self.system_health()
        return {
            "success": True,
            "report": {
                "timestamp": _utcnow(),
                "system_health": health,
                "configuration": self.system_configuration(),
                "configuration_validation": self.validate_system_configuration(),
                "statistics": health["services"]["identities"],
                "recent_audit_log": self.audit_log(50),
            },
        }

    # ── Keys ───────────────────────────────────────────────────────────────
    def key_status(self) -> dict:
        issues = self.keys.validate_key_configuration()
        return {
            **self.keys.key_status(),
            "valid": not issues,
            "issues": [i.message for i in issues],
        }

    def rotate_keys(self, kind: str, actor: str = "admin", new_material: Optional[str] = None) -> dict:
        if kind not in KEY_KINDS:
            raise ValidationError(f"Unknown key kind {kind}; expected one of {', '.join(KEY_KINDS)}")
        try:
            if kind == "encryption":
                result = self.keys.rotate_encryption_key(new_material)
            else:
                result = self.keys.rotate_hmac_secret(new_material)
        except LedgerError as exc:
            self.audit.record("KEY_ROTATION_FAILED", actor, {"kind": kind, "code": exc.code}, category=SECURITY)
            raise
        self.audit.record("KEY_ROTATED", actor, {
            "kind": kind,
            "key_id": result["key_id"],
            "archived_key_id": result["archived_key_id"],
        }, category=SECURITY)
        return result

    def generate_environment(self, actor: str = "admin") -> dict:
        """Fresh secrets for a new deployment. Only the fact is audited, never the values."""
        env = self.keys.generate_secure_environment()
        self.audit.record("ENVIRONMENT_GENERATED", actor, {"variables": sorted(env)}, category=SECURITY)
        return {
            "success": True,
            "environment": env,
            "warning": "Store these values securely; they are not kept by the service",
        }
