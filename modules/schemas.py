"""
modules/schemas.py — Typed Ledger Schemas
===========================================
Every structured value that crosses the contract boundary is one of these
pydantic models. Arguments travel as JSON strings and are validated on the
way in; a malformed argument is a ValidationError, never a half-parsed dict.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


class AssetStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class VerificationReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    HASH_MISMATCH = "HASH_MISMATCH"


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ── Asset ─────────────────────────────────────────────────────────────────────
class DocumentHash(BaseModel):
    type: str = Field(min_length=1)
    hash: str = Field(min_length=1)
    timestamp: int


class IssuerSignature(BaseModel):
    signature: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    algorithm: str = "HMAC-SHA256"


class AssetMetadata(BaseModel):
    contract_version: str
    minted_by: str
    transaction_id: str


class PublicAssetView(BaseModel):
    """What anyone may see: no kyc_hash, no signature."""
    id: str
    subject_id: str
    issuer_id: str
    status: AssetStatus
    expiry_timestamp: int
    minted_at: int
    last_updated: int
    version: int
    document_count: int = 0
    revoked_at: Optional[int] = None
    revocation_reason: Optional[str] = None
    renewed_at: Optional[int] = None


class DigitalIdentityAsset(BaseModel):
    id: str
    subject_id: str
    issuer_id: str
    kyc_hash: str
    document_hashes: List[DocumentHash] = []
    status: AssetStatus = AssetStatus.ACTIVE
    expiry_timestamp: int
    minted_at: int
    last_updated: int
    version: int = 1
    signature: IssuerSignature
    revoked_at: Optional[int] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    renewed_at: Optional[int] = None
    renewed_by: Optional[str] = None
    metadata: Optional[AssetMetadata] = None

    def is_expired(self, now: int) -> bool:
        return self.expiry_timestamp <= now

    def public_view(self) -> PublicAssetView:
        return PublicAssetView(
            id=self.id,
            subject_id=self.subject_id,
            issuer_id=self.issuer_id,
            status=self.status,
            expiry_timestamp=self.expiry_timestamp,
            minted_at=self.minted_at,
            last_updated=self.last_updated,
            version=self.version,
            document_count=len(self.document_hashes),
            revoked_at=self.revoked_at,
            revocation_reason=self.revocation_reason,
            renewed_at=self.renewed_at,
        )


# ── Requests ──────────────────────────────────────────────────────────────────
class MintRequest(_Request):
    id: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    kyc_hash: str = Field(min_length=1)
    document_hashes: List[DocumentHash] = []
    expiry_timestamp: int
    issuer_id: str = Field(min_length=1)
    signature: IssuerSignature


class RevokeRequest(_Request):
    asset_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    revoked_by: str = Field(min_length=1)
    expected_version: Optional[int] = None


class RenewRequest(_Request):
    asset_id: str = Field(min_length=1)
    new_expiry_timestamp: int
    renewed_by: str = Field(min_length=1)
    expected_version: Optional[int] = None


# ── Results ───────────────────────────────────────────────────────────────────
class TransactionReceipt(BaseModel):
    success: bool = True
    asset_id: str
    transaction_id: str
    status: AssetStatus
    version: int
    message: str = ""
    block_number: Optional[int] = None
    old_expiry: Optional[int] = None
    new_expiry: Optional[int] = None


class VerifyResult(BaseModel):
    asset_id: str
    valid: bool
    reason: Optional[VerificationReason] = None
    status: Optional[AssetStatus] = None
    subject_id: Optional[str] = None
    issuer_id: Optional[str] = None
    expiry_timestamp: Optional[int] = None
    version: Optional[int] = None
    minted_at: Optional[int] = None
    checked_at: Optional[int] = None
    error: Optional[str] = None


class BulkItemResult(BaseModel):
    index: int
    asset_id: Optional[str] = None
    success: bool
    transaction_id: Optional[str] = None
    code: Optional[str] = None
    error: Optional[str] = None


class BulkMintResult(BaseModel):
    results: List[BulkItemResult]
    total_processed: int
    successful: int
    failed: int


class BulkVerifyResult(BaseModel):
    results: List[VerifyResult]
    total_checked: int
    valid_count: int


class AssetQueryResult(BaseModel):
    index: str              # subject | issuer
    key: str
    assets: List[PublicAssetView]
    count: int


class LedgerStatistics(BaseModel):
    total: int = 0
    active: int = 0
    revoked: int = 0
    expired: int = 0
    subjects: int = 0
    checked_at: Optional[int] = None


# ── Issuance / admin inputs ───────────────────────────────────────────────────
class DocumentInput(BaseModel):
    type: str = Field(min_length=1)
    data: Any


class SubjectEntry(BaseModel):
    """One subject in a bulk mint: raw KYC data is hashed and encrypted, never put on-chain."""
    subject_id: str = Field(min_length=1)
    kyc_data: Dict[str, Any]
    documents: List[DocumentInput] = []
    expiry_days: Optional[int] = Field(default=None, gt=0)


def parse_model(model: Type[M], raw: Any) -> M:
    """
    Validate a JSON string (or already-decoded object) into `model`.
    Raises our ValidationError listing every bad field.
    """
    try:
        if isinstance(raw, (str, bytes)):
            return model.model_validate_json(raw)
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        fields = ", ".join(
            ".".join(str(loc) for loc in err["loc"]) or "<root>" for err in exc.errors()
        )
        raise ValidationError(
            f"Invalid {model.__name__}: {fields}",
            code="INVALID_ARGUMENT",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc
