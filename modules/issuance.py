"""
modules/issuance.py — Identity Issuance Service
=================================================
The client side of minting. Raw KYC data comes in here and never goes
further than this module in clear form:

    1. hash the KYC payload and every document
    2. sign (asset_id, kyc_hash, issuer_id, timestamp) with the issuer secret
    3. submit MintAsset through the gateway
    4. encrypt the KYC payload and store it off-chain

Step 4 failing does not undo a committed mint: it is logged and audited,
and the response says the mapping was not stored.

A rejected mint, revoke or renew is audited as MINT_FAILED / REVOKE_FAILED /
RENEW_FAILED (category `issuance`) and re-raised. Mints are serialized per
subject within this process, so "no identity yet, then mint" cannot
interleave with another mint for the same subject.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from core.crypto import KeyService
from core.errors import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from core.identity import build_document_hashes, compute_kyc_hash, expiry_from_days, generate_asset_id
from modules.audit import ISSUANCE, OFFCHAIN, AuditLog
from modules.gateway import GatewayClient
from modules.offchain import OffChainMappingStore
from modules.schemas import (
    AssetQueryResult,
    BulkVerifyResult,
    DocumentInput,
    IssuerSignature,
    LedgerStatistics,
    MintRequest,
    PublicAssetView,
    RenewRequest,
    RevokeRequest,
    TransactionReceipt,
    VerificationReason,
    VerifyResult,
)

logger = logging.getLogger("digiid.issuance")


def raise_for_verification(result: VerifyResult):
    """Turn a negative verification into the matching error."""
    if result.valid:
        return
    if result.reason == VerificationReason.NOT_FOUND:
        raise NotFoundError(f"Digital identity {result.asset_id} not found")
    if result.reason == VerificationReason.EXPIRED:
        raise ExpiredError(f"Digital identity {result.asset_id} has expired")
    if result.reason == VerificationReason.REVOKED:
        raise ConflictError(f"Digital identity {result.asset_id} has been revoked", code="REVOKED")
    if result.reason == VerificationReason.HASH_MISMATCH:
        raise AuthorizationError("KYC data does not match the recorded hash", code="HASH_MISMATCH")
    raise ValidationError(result.error or f"Digital identity {result.asset_id} is not valid")


class IdentityIssuer:

    def __init__(
        self,
        gateway: GatewayClient,
        keys: KeyService,
        offchain: Optional[OffChainMappingStore] = None,
        audit: Optional[AuditLog] = None,
        issuer_id: str = "digi-id-issuer",
        default_expiry_days: int = 365,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.gateway = gateway
        self.keys = keys
        self.offchain = offchain
        self.audit = audit
        self.issuer_id = issuer_id
        self.default_expiry_days = default_expiry_days
        self.clock = clock or (lambda: int(time.time()))
        self._subject_locks: Dict[str, list] = {}

    @asynccontextmanager
    async def _subject_guard(self, subject_id: str):
        entry = self._subject_locks.setdefault(subject_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._subject_locks[subject_id]

    def _audit_failure(self, operation: str, actor: str, exc: LedgerError, **context):
        logger.warning(f"{operation} by {actor} rejected: {exc.code} — {exc.message}")
        if self.audit is not None:
            self.audit.record(
                f"{operation}_FAILED",
                actor,
                {**context, "code": exc.code, "category": exc.category, "error": exc.message},
                category=ISSUANCE,
            )

    # ── Mint ───────────────────────────────────────────────────────────────
    def prepare_mint(
        self,
        subject_id: str,
        kyc_data: dict,
        documents: Optional[List[DocumentInput]] = None,
        expiry_days: Optional[int] = None,
        issuer_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> MintRequest:
        """Build a signed MintRequest. Nothing here touches the network."""
        if not kyc_data:
            raise ValidationError("kyc_data is required")
        days = self.default_expiry_days if expiry_days is None else expiry_days
        if days <= 0:
            raise ValidationError("expiry_days must be positive")

        now = self.clock()
        issuer = issuer_id or self.issuer_id
        asset_id = asset_id or generate_asset_id(now * 1000)
        kyc_hash = compute_kyc_hash(self.keys, kyc_data)
        signed = self.keys.generate_signature(asset_id, kyc_hash, issuer)
        return MintRequest(
            id=asset_id,
            subject_id=subject_id,
            kyc_hash=kyc_hash,
            document_hashes=build_document_hashes(self.keys, documents or [], now),
            expiry_timestamp=expiry_from_days(now, days),
            issuer_id=issuer,
            signature=IssuerSignature(
                signature=signed.signature,
                timestamp=signed.timestamp,
                algorithm=signed.algorithm,
            ),
        )

    async def mint_identity(
        self,
        subject_id: str,
        kyc_data: dict,
        documents: Optional[List[DocumentInput]] = None,
        expiry_days: Optional[int] = None,
        issuer_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> dict:
        async with self._subject_guard(subject_id):
            return await self._mint(subject_id, kyc_data, documents, expiry_days, issuer_id, asset_id)

    async def mint_for_new_subject(
        self,
        subject_id: str,
        kyc_data: dict,
        documents: Optional[List[DocumentInput]] = None,
        expiry_days: Optional[int] = None,
        issuer_id: Optional[str] = None,
    ) -> dict:
        """Mint only if the subject holds no identity at all (active, revoked or expired)."""
        async with self._subject_guard(subject_id):
            if await self.has_identity(subject_id):
                exc = ConflictError(f"Subject {subject_id} already has a digital identity", code="ALREADY_HAS_IDENTITY")
                self._audit_failure("MINT", issuer_id or self.issuer_id, exc, subject_id=subject_id)
                raise exc
            return await self._mint(subject_id, kyc_data, documents, expiry_days, issuer_id, None)

    async def _mint(self, subject_id, kyc_data, documents, expiry_days, issuer_id, asset_id) -> dict:
        request = None
        try:
            request = self.prepare_mint(subject_id, kyc_data, documents, expiry_days, issuer_id, asset_id)
            receipt = TransactionReceipt(**await self.gateway.submit_transaction("MintAsset", request))
        except LedgerError as exc:
            self._audit_failure(
                "MINT",
                issuer_id or self.issuer_id,
                exc,
                subject_id=subject_id,
                asset_id=request.id if request is not None else asset_id,
            )
            raise
        logger.info(f"Digital identity minted: {request.id} for subject {subject_id} (tx {receipt.transaction_id[:16]})")

        offchain_stored = await self._store_offchain(request, kyc_data, documents or [])
        return {
            "success": True,
            "asset_id": request.id,
            "transaction_id": receipt.transaction_id,
            "block_number": receipt.block_number,
            "kyc_hash": request.kyc_hash,
            "expiry_timestamp": request.expiry_timestamp,
            "offchain_stored": offchain_stored,
        }

    async def _store_offchain(self, request: MintRequest, kyc_data: dict, documents: List[DocumentInput]) -> bool:
        if self.offchain is None:
            return False
        payload = {
            "subject_id": request.subject_id,
            "kyc_data": kyc_data,
            "documents": [doc.model_dump(mode="json") for doc in documents],
        }
        try:
            await self.offchain.put(request.id, payload, request.kyc_hash)
        except LedgerError as exc:
            logger.error(f"Off-chain mapping failed for {request.id}: {exc.code} — {exc.message}")
            if self.audit is not None:
                self.audit.record(
                    "OFFCHAIN_STORE_FAILED",
                    request.issuer_id,
                    {"asset_id": request.id, "code": exc.code, "error": exc.message},
                    category=OFFCHAIN,
                )
            return False
        return True

    # ── Verify ─────────────────────────────────────────────────────────────
    async def verify(
        self,
        asset_id: str,
        kyc_data: Optional[dict] = None,
        kyc_hash: Optional[str] = None,
    ) -> VerifyResult:
        """Raw KYC data, if given, is hashed here and only the hash is sent."""
        if kyc_data is not None and kyc_hash is None:
            kyc_hash = compute_kyc_hash(self.keys, kyc_data)
        raw = await self.gateway.evaluate_transaction("VerifyAsset", asset_id, kyc_hash or "")
        return VerifyResult(**raw)

    async def verify_or_raise(self, asset_id: str, kyc_data: Optional[dict] = None) -> VerifyResult:
        result = await self.verify(asset_id, kyc_data=kyc_data)
        raise_for_verification(result)
        return result

    # ── Revoke / renew ─────────────────────────────────────────────────────
    async def revoke(
        self,
        asset_id: str,
        reason: str,
        revoked_by: str,
        expected_version: Optional[int] = None,
    ) -> TransactionReceipt:
        request = RevokeRequest(
            asset_id=asset_id, reason=reason, revoked_by=revoked_by, expected_version=expected_version,
        )
        try:
            receipt = TransactionReceipt(**await self.gateway.submit_transaction("RevokeAsset", request))
        except LedgerError as exc:
            self._audit_failure("REVOKE", revoked_by, exc, asset_id=asset_id, reason=reason)
            raise
        logger.info(f"Digital identity revoked: {asset_id} by {revoked_by}")
        return receipt

    async def renew(
        self,
        asset_id: str,
        extend_days: int,
        renewed_by: str,
        expected_version: Optional[int] = None,
    ) -> TransactionReceipt:
        """New expiry is counted from now, not from the old expiry."""
        try:
            if extend_days <= 0:
                raise ValidationError("extend_days must be positive")
            request = RenewRequest(
                asset_id=asset_id,
                new_expiry_timestamp=expiry_from_days(self.clock(), extend_days),
                renewed_by=renewed_by,
                expected_version=expected_version,
            )
            receipt = TransactionReceipt(**await self.gateway.submit_transaction("RenewAsset", request))
        except LedgerError as exc:
            self._audit_failure("RENEW", renewed_by, exc, asset_id=asset_id, extend_days=extend_days)
            raise
        logger.info(f"Digital identity renewed: {asset_id} until {request.new_expiry_timestamp}")
        return receipt

    # ── Lookups ────────────────────────────────────────────────────────────
    async def get_identity(self, asset_id: str) -> PublicAssetView:
        return PublicAssetView(**await self.gateway.evaluate_transaction("GetAsset", asset_id))

    async def identities_for_subject(self, subject_id: str) -> AssetQueryResult:
        return AssetQueryResult(**await self.gateway.evaluate_transaction("QueryBySubject", subject_id))

    async def identities_for_issuer(self, issuer_id: str) -> AssetQueryResult:
        return AssetQueryResult(**await self.gateway.evaluate_transaction("QueryByIssuer", issuer_id))

    async def has_identity(self, subject_id: str) -> bool:
        """Any identity on record for the subject, whatever its status."""
        result = await self.identities_for_subject(subject_id)
        return result.count > 0

    async def statistics(self) -> LedgerStatistics:
        return LedgerStatistics(**await self.gateway.evaluate_transaction("GetStatistics"))

    async def bulk_verify(self, asset_ids: List[str]) -> BulkVerifyResult:
        return BulkVerifyResult(**await self.gateway.evaluate_transaction("BulkVerify", asset_ids))
