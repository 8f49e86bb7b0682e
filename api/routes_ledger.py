"""
api/routes_ledger.py — Identity Ledger Endpoints
==================================================
Endpoints:
    POST /ledger/identities                          → Mint (issuer token)
    GET  /ledger/identities/{asset_id}               → Public view
    POST /ledger/identities/{asset_id}/verify        → Verify, optionally against KYC data
    POST /ledger/identities/{asset_id}/revoke        → Revoke (issuer token)
    POST /ledger/identities/{asset_id}/renew         → Renew by N days (issuer token)
    POST /ledger/bulk-verify                         → Verify many ids
    GET  /ledger/subjects/{subject_id}/identities    → All identities of a subject
    GET  /ledger/issuers/{issuer_id}/identities      → All identities from an issuer
    GET  /ledger/statistics                          → Counts by state
    GET  /ledger/status                              → Network status

Raw KYC data sent here is hashed before it reaches the ledger.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from api.deps import get_gateway, get_issuer, rate_limit, require_issuer
from core.authz import Principal
from core.errors import ValidationError
from modules.gateway import GatewayClient
from modules.issuance import IdentityIssuer, raise_for_verification
from modules.schemas import (
    AssetQueryResult,
    BulkVerifyResult,
    DocumentInput,
    LedgerStatistics,
    PublicAssetView,
    TransactionReceipt,
    VerifyResult,
)

router = APIRouter(dependencies=[Depends(rate_limit("ledger"))])


# ── Request / Response schemas ────────────────────────────────────────────────
class MintBody(BaseModel):
    subject_id: str = Field(min_length=1)
    kyc_data: Dict[str, Any]
    documents: List[DocumentInput] = []
    expiry_days: Optional[int] = Field(default=None, gt=0)


class MintResponse(BaseModel):
    success: bool
    asset_id: str
    transaction_id: str
    block_number: Optional[int] = None
    kyc_hash: str
    expiry_timestamp: int
    offchain_stored: bool


class VerifyBody(BaseModel):
    kyc_data: Optional[Dict[str, Any]] = None     # hashed server-side
    kyc_hash: Optional[str] = None
    strict: bool = False                          # raise instead of returning valid=false


class RevokeBody(BaseModel):
    reason: str = Field(min_length=1)
    expected_version: Optional[int] = None


class RenewBody(BaseModel):
    extend_days: int = Field(gt=0)
    expected_version: Optional[int] = None


class BulkVerifyBody(BaseModel):
    asset_ids: List[str] = Field(min_length=1)


# ── Endpoints ─────────────────────────────────────────────────────────────────
@router.post("/identities", response_model=MintResponse, status_code=201)
async def mint_identity(
    body: MintBody,
    principal: Principal = Depends(require_issuer),
    issuer: IdentityIssuer = Depends(get_issuer),
):
    """
    Mint a digital identity. The caller's token subject is the issuer id,
    so it must also be a registered issuer on the ledger.
    """
    return await issuer.mint_identity(
        body.subject_id,
        body.kyc_data,
        documents=body.documents,
        expiry_days=body.expiry_days,
        issuer_id=principal.subject,
    )


@router.get("/identities/{asset_id}", response_model=PublicAssetView)
async def get_identity(asset_id: str, issuer: IdentityIssuer = Depends(get_issuer)):
    return await issuer.get_identity(asset_id)


@router.post("/identities/{asset_id}/verify", response_model=VerifyResult)
async def verify_identity(
    asset_id: str,
    body: Optional[VerifyBody] = None,
    issuer: IdentityIssuer = Depends(get_issuer),
):
    """
    valid=false comes back with a reason (NOT_FOUND, REVOKED, EXPIRED,
    HASH_MISMATCH). With strict=true the reason is raised as an error instead.
    """
    body = body or VerifyBody()
    if body.kyc_data is not None and body.kyc_hash is not None:
        raise ValidationError("Send either kyc_data or kyc_hash, not both")
    result = await issuer.verify(asset_id, kyc_data=body.kyc_data, kyc_hash=body.kyc_hash)
    if body.strict:
        raise_for_verification(result)
    return result


@router.post("/identities/{asset_id}/revoke", response_model=TransactionReceipt)
async def revoke_identity(
    asset_id: str,
    body: RevokeBody,
    principal: Principal = Depends(require_issuer),
    issuer: IdentityIssuer = Depends(get_issuer),
):
    return await issuer.revoke(asset_id, body.reason, principal.subject, body.expected_version)


@router.post("/identities/{asset_id}/renew", response_model=TransactionReceipt)
async def renew_identity(
    asset_id: str,
    body: RenewBody,
    principal: Principal = Depends(require_issuer),
    issuer: IdentityIssuer = Depends(get_issuer),
):
    return await issuer.renew(asset_id, body.extend_days, principal.subject, body.expected_version)


@router.post("/bulk-verify", response_model=BulkVerifyResult)
async def bulk_verify(
    body: BulkVerifyBody,
    request: Request,
    issuer: IdentityIssuer = Depends(get_issuer),
):
    limit = request.app.state.settings.BULK_VERIFY_MAX_ITEMS
    if len(body.asset_ids) > limit:
        raise ValidationError(f"Maximum {limit} asset ids per bulk verification", code="BATCH_TOO_LARGE")
    return await issuer.bulk_verify(body.asset_ids)


@router.get("/subjects/{subject_id}/identities", response_model=AssetQueryResult)
async def identities_for_subject(subject_id: str, issuer: IdentityIssuer = Depends(get_issuer)):
    return await issuer.identities_for_subject(subject_id)


@router.get("/issuers/{issuer_id}/identities", response_model=AssetQueryResult)
async def identities_for_issuer(issuer_id: str, issuer: IdentityIssuer = Depends(get_issuer)):
    return await issuer.identities_for_issuer(issuer_id)


@router.get("/statistics", response_model=LedgerStatistics)
async def statistics(issuer: IdentityIssuer = Depends(get_issuer)):
    return await issuer.statistics()


@router.get("/status")
async def network_status(request: Request, gateway: GatewayClient = Depends(get_gateway)):
    """Never fails: a disconnected ledger is reported, not raised."""
    status = await gateway.get_network_status()
    ledger = request.app.state.ledger
    status["blocks"] = len(ledger.blocks)
    status["chain_valid"] = ledger.verify_chain()
    return status
