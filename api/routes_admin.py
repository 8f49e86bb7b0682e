"""
api/routes_admin.py — Admin Endpoints
=======================================
Every route needs `Authorization: Bearer <jwt>` with the admin role and is
held to ADMIN_RATE_LIMIT_PER_MINUTE.

Endpoints:
    GET  /admin/health                  → Ledger + keys + statistics
    GET  /admin/config                  → Redacted configuration
    GET  /admin/config/validate         → Issues + warnings
    POST /admin/bulk/mint               → Mint for many subjects
    POST /admin/bulk/revoke             → Revoke many identities
    POST /admin/bulk/verify             → Verify many identities
    GET  /admin/audit                   → Audit trail, newest first
    GET  /admin/report                  → Everything above in one document
    GET  /admin/keys/status             → Key material status (ids only)
    POST /admin/keys/rotate/encryption  → Rotate the encryption key
    POST /admin/keys/rotate/hmac        → Rotate the HMAC secret
    POST /admin/keys/generate-env       → Fresh secrets for a new deployment
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_admin, rate_limit, require_admin
from core.authz import Principal
from modules.admin import AdminOrchestrator
from modules.schemas import BulkVerifyResult

router = APIRouter(dependencies=[Depends(rate_limit("admin")), Depends(require_admin)])


# ── Request schemas ───────────────────────────────────────────────────────────
class BulkMintBody(BaseModel):
    # entries are validated one by one so a bad entry fails alone
    subjects: List[Dict[str, Any]] = Field(min_length=1)


class BulkRevokeBody(BaseModel):
    asset_ids: List[str] = Field(min_length=1)
    reason: str = Field(min_length=1)


class BulkVerifyBody(BaseModel):
    asset_ids: List[str] = Field(min_length=1)


# ── Endpoints ─────────────────────────────────────────────────────────────────
@router.get("/health")
async def system_health(admin: AdminOrchestrator = Depends(get_admin)):
    return await admin.system_health()


@router.get("/config")
async def system_configuration(admin: AdminOrchestrator = Depends(get_admin)):
    return admin.system_configuration()


@router.get("/config/validate")
async def validate_configuration(admin: AdminOrchestrator = Depends(get_admin)):
    return admin.validate_system_configuration()


@router.post("/bulk/mint")
async def bulk_mint(
    body: BulkMintBody,
    principal: Principal = Depends(require_admin),
    admin: AdminOrchestrator = Depends(get_admin),
):
    return await admin.bulk_mint_digital_identities(body.subjects, actor=principal.subject)


@router.post("/bulk/revoke")
async def bulk_revoke(
    body: BulkRevokeBody,
    principal: Principal = Depends(require_admin),
    admin: AdminOrchestrator = Depends(get_admin),
):
    return await admin.bulk_revoke(body.asset_ids, body.reason, actor=principal.subject)


@router.post("/bulk/verify", response_model=BulkVerifyResult)
async def bulk_verify(
    body: BulkVerifyBody,
    principal: Principal = Depends(require_admin),
    admin: AdminOrchestrator = Depends(get_admin),
):
    return await admin.bulk_verify(body.asset_ids, actor=principal.subject)


@router.get("/audit")
async def audit_log(
    limit: int = Query(100, ge=1, le=1000),
    type: Optional[str] = Query(None, description="Only entries of this type, e.g. BULK_MINT_COMPLETE"),
    admin: AdminOrchestrator = Depends(get_admin),
):
    entries = admin.audit_log(limit, type)
    return {"success": True, "entries": entries, "count": len(entries)}


@router.get("/report")
async def system_report(admin: AdminOrchestrator = Depends(get_admin)):
    return await admin.system_report()


@router.get("/keys/status")
async def key_status(admin: AdminOrchestrator = Depends(get_admin)):
    return admin.key_status()


@router.post("/keys/rotate/encryption")
async def rotate_encryption_key(
    principal: Principal = Depends(require_admin),
    admin: AdminOrchestrator = Depends(get_admin),
):
    """Old key is archived so existing off-chain payloads still decrypt."""
    return admin.rotate_keys("encryption", actor=principal.subject)


@router.post("/keys/rotate/hmac")
async def rotate_hmac_secret(
    principal: Principal = Depends(require_admin),
    admin: AdminOrchestrator = Depends(get_admin),
):
    return admin.rotate_keys("hmac", actor=principal.subject)


@router.post("/keys/generate-env")
async def generate_environment(
    principal: Principal = Depends(require_admin),
    admin: AdminOrchestrator = Depends(get_admin),
):
    return admin.generate_environment(actor=principal.subject)
