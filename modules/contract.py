"""
modules/contract.py — Digital Identity Ledger Contract
========================================================
The asset state machine. Runs on the ledger platform (core/blockchain.py);
nothing else reads or writes assets except through these functions.

Privacy-preserving by construction:
- only hashes of KYC data and documents are stored on-chain
- public projections never include kyc_hash or signature

Lifecycle:
    MintAsset ──► ACTIVE ──RenewAsset──► ACTIVE (new expiry, version+1)
                     │
                     └──RevokeAsset──► REVOKED (terminal)

Expiry is lazy: an ACTIVE asset past its expiry simply verifies as EXPIRED.
No read ever writes.
"""

import json
import logging
from typing import Any, Iterable, List, Optional

from core.authz import AuthorizationChecker, require
from core.blockchain import Contract, TransactionContext, transaction
from core.crypto import KeyService
from core.errors import ConflictError, LedgerError, NotFoundError, ValidationError
from modules.schemas import (
    AssetMetadata,
    AssetQueryResult,
    AssetStatus,
    BulkItemResult,
    BulkMintResult,
    BulkVerifyResult,
    DigitalIdentityAsset,
    LedgerStatistics,
    MintRequest,
    RenewRequest,
    RevokeRequest,
    TransactionReceipt,
    VerificationReason,
    VerifyResult,
    parse_model,
)

logger = logging.getLogger("digiid.contract")

SUBJECT_INDEX = "subject~asset"
ISSUER_INDEX = "issuer~asset"

EVENT_MINTED = "DigitalIdentityMinted"
EVENT_REVOKED = "DigitalIdentityRevoked"
EVENT_RENEWED = "DigitalIdentityRenewed"


class DigitalIdentityContract(Contract):

    name = "digi-id-contract"
    version = "1.0.0"

    def __init__(self, keys: KeyService, authz: AuthorizationChecker, name: Optional[str] = None):
        self.keys = keys
        self.authz = authz
        if name:
            self.name = name

    # ── State helpers ──────────────────────────────────────────────────────
    @staticmethod
    def _read_asset(ctx: TransactionContext, asset_id: str) -> Optional[DigitalIdentityAsset]:
        raw = ctx.get_state(asset_id)
        if not raw:
            return None
        return DigitalIdentityAsset.model_validate_json(raw)

    def _require_asset(self, ctx: TransactionContext, asset_id: str) -> DigitalIdentityAsset:
        asset = self._read_asset(ctx, asset_id)
        if asset is None:
            raise NotFoundError(f"Digital identity {asset_id} not found")
        return asset

    @staticmethod
    def _write_asset(ctx: TransactionContext, asset: DigitalIdentityAsset):
        ctx.put_state(asset.id, asset.model_dump_json().encode())

    @staticmethod
    def _check_version(asset: DigitalIdentityAsset, expected_version: Optional[int]):
        if expected_version is not None and expected_version != asset.version:
            raise ConflictError(
                f"Version mismatch on {asset.id}: expected {expected_version}, found {asset.version}",
                code="VERSION_MISMATCH",
            )

    @staticmethod
    def _parse_list(raw: str, label: str) -> List[Any]:
        try:
            items = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{label} must be a JSON array", code="INVALID_ARGUMENT") from exc
        if not isinstance(items, list):
            raise ValidationError(f"{label} must be a JSON array", code="INVALID_ARGUMENT")
        return items

    # ── Mint ───────────────────────────────────────────────────────────────
    @transaction("MintAsset")
    async def mint_asset(self, ctx: TransactionContext, request: str) -> dict:
        req = parse_model(MintRequest, request)
        return self._mint(ctx, req).model_dump(mode="json")

    def _mint(self, ctx: TransactionContext, req: MintRequest) -> TransactionReceipt:
        if ctx.get_state(req.id) is not None:
            raise ConflictError(f"Digital identity {req.id} already exists", code="ALREADY_EXISTS")

        now = ctx.timestamp
        if req.expiry_timestamp <= now:
            raise ValidationError("Expiry timestamp must be in the future", code="EXPIRY_NOT_IN_FUTURE")

        require(
            self.authz.can_mint(req.issuer_id),
            f"Issuer {req.issuer_id} is not authorized to mint digital identities",
            code="ISSUER_NOT_AUTHORIZED",
        )
        valid_signature = self.keys.verify_signature(
            req.id, req.kyc_hash, req.issuer_id, req.signature.signature, req.signature.timestamp,
        )
        require(valid_signature, "Invalid issuer signature", code="INVALID_SIGNATURE")

        asset = DigitalIdentityAsset(
            id=req.id,
            subject_id=req.subject_id,
            issuer_id=req.issuer_id,
            kyc_hash=req.kyc_hash,
            document_hashes=req.document_hashes,
            status=AssetStatus.ACTIVE,
            expiry_timestamp=req.expiry_timestamp,
            minted_at=now,
            last_updated=now,
            version=1,
            signature=req.signature,
            metadata=AssetMetadata(
                contract_version=self.version,
                minted_by=ctx.client_identity.msp_id,
                transaction_id=ctx.tx_id,
            ),
        )
        self._write_asset(ctx, asset)
        ctx.put_state(ctx.create_composite_key(SUBJECT_INDEX, [asset.subject_id, asset.id]), asset.id.encode())
        ctx.put_state(ctx.create_composite_key(ISSUER_INDEX, [asset.issuer_id, asset.id]), asset.id.encode())

        ctx.set_event(EVENT_MINTED, {
            "asset_id": asset.id,
            "subject_id": asset.subject_id,
            "issuer_id": asset.issuer_id,
            "expiry_timestamp": asset.expiry_timestamp,
            "minted_at": now,
        })
        return TransactionReceipt(
            asset_id=asset.id,
            transaction_id=ctx.tx_id,
            status=asset.status,
            version=asset.version,
            message="Digital identity minted",
        )

    # ── Verify ─────────────────────────────────────────────────────────────
    @transaction("VerifyAsset", submit=False)
    async def verify_asset(self, ctx: TransactionContext, asset_id: str, kyc_hash: str = "") -> dict:
        return self._verify(ctx, asset_id, kyc_hash or None).model_dump(mode="json")

    def _verify(self, ctx: TransactionContext, asset_id: str, kyc_hash: Optional[str]) -> VerifyResult:
        now = ctx.timestamp
        asset = self._read_asset(ctx, asset_id)
        if asset is None:
            return VerifyResult(asset_id=asset_id, valid=False, reason=VerificationReason.NOT_FOUND, checked_at=now)

        if asset.status != AssetStatus.ACTIVE:
            return VerifyResult(
                asset_id=asset_id, valid=False, reason=VerificationReason(asset.status.value),
                status=asset.status, checked_at=now,
            )

        # lazy expiry: report it, never store it
        if asset.is_expired(now):
            return VerifyResult(
                asset_id=asset_id, valid=False, reason=VerificationReason.EXPIRED,
                status=asset.status, expiry_timestamp=asset.expiry_timestamp, checked_at=now,
            )

        if kyc_hash is not None and kyc_hash != asset.kyc_hash:
            return VerifyResult(
                asset_id=asset_id, valid=False, reason=VerificationReason.HASH_MISMATCH,
                status=asset.status, checked_at=now,
            )

        return VerifyResult(
            asset_id=asset_id,
            valid=True,
            status=asset.status,
            subject_id=asset.subject_id,
            issuer_id=asset.issuer_id,
            expiry_timestamp=asset.expiry_timestamp,
            version=asset.version,
            minted_at=asset.minted_at,
            checked_at=now,
        )

    # ── Revoke ─────────────────────────────────────────────────────────────
    @transaction("RevokeAsset")
    async def revoke_asset(self, ctx: TransactionContext, request: str) -> dict:
        req = parse_model(RevokeRequest, request)
        asset = self._require_asset(ctx, req.asset_id)

        if asset.status == AssetStatus.REVOKED:
            raise ConflictError(f"Digital identity {asset.id} is already revoked", code="ALREADY_REVOKED")
        self._check_version(asset, req.expected_version)
        require(
            self.authz.can_revoke(req.revoked_by, asset.issuer_id),
            f"{req.revoked_by} is not authorized to revoke {asset.id}",
            code="REVOKER_NOT_AUTHORIZED",
        )

        now = ctx.timestamp
        asset.status = AssetStatus.REVOKED
        asset.revoked_at = now
        asset.revoked_by = req.revoked_by
        asset.revocation_reason = req.reason
        asset.last_updated = now
        asset.version += 1
        self._write_asset(ctx, asset)

        ctx.set_event(EVENT_REVOKED, {
            "asset_id": asset.id,
            "subject_id": asset.subject_id,
            "issuer_id": asset.issuer_id,
            "reason": req.reason,
            "revoked_by": req.revoked_by,
            "revoked_at": now,
        })
        return TransactionReceipt(
            asset_id=asset.id,
            transaction_id=ctx.tx_id,
            status=asset.status,
            version=asset.version,
            message="Digital identity revoked",
        ).model_dump(mode="json")

    # ── Renew ──────────────────────────────────────────────────────────────
    @transaction("RenewAsset")
    async def renew_asset(self, ctx: TransactionContext, request: str) -> dict:
        req = parse_model(RenewRequest, request)
        asset = self._require_asset(ctx, req.asset_id)

        if asset.status != AssetStatus.ACTIVE:
            raise ConflictError(
                f"Cannot renew {asset.status.value.lower()} digital identity {asset.id}",
                code="CANNOT_RENEW_REVOKED",
            )
        now = ctx.timestamp
        if req.new_expiry_timestamp <= now:
            raise ValidationError("New expiry timestamp must be in the future", code="EXPIRY_NOT_IN_FUTURE")
        self._check_version(asset, req.expected_version)
        require(
            self.authz.can_renew(req.renewed_by, asset.issuer_id),
            f"{req.renewed_by} is not authorized to renew {asset.id}",
            code="RENEWER_NOT_AUTHORIZED",
        )

        # works for lazily-expired assets too: the new expiry restores validity
        old_expiry = asset.expiry_timestamp
        asset.expiry_timestamp = req.new_expiry_timestamp
        asset.renewed_at = now
        asset.renewed_by = req.renewed_by
        asset.last_updated = now
        asset.version += 1
        self._write_asset(ctx, asset)

        ctx.set_event(EVENT_RENEWED, {
            "asset_id": asset.id,
            "subject_id": asset.subject_id,
            "issuer_id": asset.issuer_id,
            "old_expiry": old_expiry,
            "new_expiry": asset.expiry_timestamp,
            "renewed_by": req.renewed_by,
            "renewed_at": now,
        })
        return TransactionReceipt(
            asset_id=asset.id,
            transaction_id=ctx.tx_id,
            status=asset.status,
            version=asset.version,
            message="Digital identity renewed",
            old_expiry=old_expiry,
            new_expiry=asset.expiry_timestamp,
        ).model_dump(mode="json")

    # ── Batch ──────────────────────────────────────────────────────────────
    @transaction("BulkVerify", submit=False)
    async def bulk_verify(self, ctx: TransactionContext, asset_ids: str) -> dict:
        results = []
        for raw_id in self._parse_list(asset_ids, "asset_ids"):
            if not isinstance(raw_id, str) or not raw_id:
                results.append(VerifyResult(asset_id=str(raw_id), valid=False, error="Asset id must be a non-empty string"))
                continue
            try:
                results.append(self._verify(ctx, raw_id, None))
            except LedgerError as exc:
                results.append(VerifyResult(asset_id=raw_id, valid=False, error=exc.message))
        return BulkVerifyResult(
            results=results,
            total_checked=len(results),
            valid_count=sum(1 for r in results if r.valid),
        ).model_dump(mode="json")

    @transaction("BulkMint")
    async def bulk_mint(self, ctx: TransactionContext, entries: str) -> dict:
        """
        Each entry runs in its own savepoint: a failing entry leaves no writes
        behind and does not undo entries already applied in this batch.
        """
        caller = ctx.client_identity.label
        require(self.authz.is_admin(caller), "Only administrators can perform bulk operations", code="ADMIN_REQUIRED")

        results = []
        for index, raw in enumerate(self._parse_list(entries, "entries")):
            asset_id = raw.get("id") if isinstance(raw, dict) else None
            try:
                with ctx.savepoint():
                    req = parse_model(MintRequest, raw)
                    receipt = self._mint(ctx, req)
                results.append(BulkItemResult(
                    index=index, asset_id=receipt.asset_id, success=True, transaction_id=receipt.transaction_id,
                ))
            except LedgerError as exc:
                logger.info(f"BulkMint entry {index} ({asset_id}) failed: {exc.code}")
                results.append(BulkItemResult(
                    index=index, asset_id=asset_id, success=False, code=exc.code, error=exc.message,
                ))
        successful = sum(1 for r in results if r.success)
        return BulkMintResult(
            results=results,
            total_processed=len(results),
            successful=successful,
            failed=len(results) - successful,
        ).model_dump(mode="json")

    # ── Queries ────────────────────────────────────────────────────────────
    def _hydrate(self, ctx: TransactionContext, index: str, key: str) -> AssetQueryResult:
        assets = []
        for _, value in ctx.get_state_by_partial_composite_key(index, [key]):
            asset = self._read_asset(ctx, value.decode())
            if asset is not None:
                assets.append(asset.public_view())
        return AssetQueryResult(
            index="subject" if index == SUBJECT_INDEX else "issuer",
            key=key,
            assets=assets,
            count=len(assets),
        )

    @transaction("QueryBySubject", submit=False)
    async def query_by_subject(self, ctx: TransactionContext, subject_id: str) -> dict:
        if not subject_id:
            raise ValidationError("subject_id is required")
        return self._hydrate(ctx, SUBJECT_INDEX, subject_id).model_dump(mode="json")

    @transaction("QueryByIssuer", submit=False)
    async def query_by_issuer(self, ctx: TransactionContext, issuer_id: str) -> dict:
        if not issuer_id:
            raise ValidationError("issuer_id is required")
        return self._hydrate(ctx, ISSUER_INDEX, issuer_id).model_dump(mode="json")

    @transaction("GetAsset", submit=False)
    async def get_asset(self, ctx: TransactionContext, asset_id: str) -> dict:
        return self._require_asset(ctx, asset_id).public_view().model_dump(mode="json")

    @transaction("GetStatistics", submit=False)
    async def get_statistics(self, ctx: TransactionContext) -> dict:
        return self._statistics(ctx, (value for _, value in ctx.get_simple_keys())).model_dump(mode="json")

    @staticmethod
    def _statistics(ctx: TransactionContext, records: Iterable[bytes]) -> LedgerStatistics:
        now = ctx.timestamp
        stats = LedgerStatistics(checked_at=now)
        subjects = set()
        for raw in records:
            asset = DigitalIdentityAsset.model_validate_json(raw)
            stats.total += 1
            subjects.add(asset.subject_id)
            if asset.status == AssetStatus.REVOKED:
                stats.revoked += 1
            elif asset.is_expired(now):
                stats.expired += 1
            else:
                stats.active += 1
        stats.subjects = len(subjects)
        return stats
