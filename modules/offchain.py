"""
modules/offchain.py — Off-chain Mapping Store
===============================================
Holds the encrypted KYC payload behind each asset, keyed by asset id.
The ledger never consults it; the only link is the kyc_hash, which must
equal the hash recorded on-chain.

    put(asset_id, payload, kyc_hash)      → encrypt + store (ConflictError on a second put)
    put(..., replace=True)                → overwrite, version + 1
    get(asset_id)                         → decrypted payload (NotFoundError if absent)
    verify_consistency(asset_id, hash)    → does the stored kyc_hash match the chain?
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.crypto import EncryptedPayload, KeyService
from core.errors import ConflictError, ConnectivityError, NotFoundError, ValidationError
from db.models import OffChainMappingRecord
from db.session import Database

logger = logging.getLogger("digiid.offchain")

T = TypeVar("T")


class OffChainMapping(BaseModel):
    asset_id: str
    kyc_hash: str
    payload: dict
    key_id: str
    algorithm: str
    version: int
    stored_at: Optional[str] = None


class OffChainMappingStore:

    def __init__(self, database: Database, keys: KeyService, timeout: float = 5.0):
        self.database = database
        self.keys = keys
        self.timeout = timeout

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectivityError(f"Off-chain {operation} timed out after {self.timeout}s", code="TIMEOUT") from exc
        except IntegrityError as exc:
            raise ConflictError(f"Off-chain {operation} conflicts with an existing mapping", code="ALREADY_EXISTS") from exc
        except SQLAlchemyError as exc:
            raise ConnectivityError(f"Off-chain store unavailable during {operation}", code="STORE_UNAVAILABLE") from exc

    # ── Write ──────────────────────────────────────────────────────────────
    async def put(self, asset_id: str, payload: dict, kyc_hash: str, replace: bool = False) -> dict:
        if not asset_id or not kyc_hash:
            raise ValidationError("asset_id and kyc_hash are required")
        encrypted = self.keys.encrypt_dict(payload)
        return await self._bounded("put", self._put(asset_id, encrypted, kyc_hash, replace))

    async def _put(self, asset_id: str, encrypted: EncryptedPayload, kyc_hash: str, replace: bool) -> dict:
        async with self.database.session() as session:
            record = await session.scalar(
                select(OffChainMappingRecord).where(OffChainMappingRecord.asset_id == asset_id)
            )
            if record is not None and not replace:
                raise ConflictError(f"Off-chain mapping for {asset_id} already exists", code="ALREADY_EXISTS")

            if record is None:
                record = OffChainMappingRecord(asset_id=asset_id, version=1)
                session.add(record)
            else:
                record.version += 1

            record.kyc_hash = kyc_hash
            record.ciphertext = encrypted.ciphertext
            record.iv = encrypted.iv
            record.key_id = encrypted.key_id
            record.algorithm = encrypted.algorithm
            await session.flush()
            version = record.version

        logger.info(f"Off-chain mapping stored for {asset_id} (v{version}, key {encrypted.key_id})")
        return {"success": True, "asset_id": asset_id, "version": version, "key_id": encrypted.key_id}

    # ── Read ───────────────────────────────────────────────────────────────
    async def _load(self, asset_id: str) -> Optional[OffChainMappingRecord]:
        async with self.database.session() as session:
            return await session.scalar(
                select(OffChainMappingRecord).where(OffChainMappingRecord.asset_id == asset_id)
            )

    async def get(self, asset_id: str) -> OffChainMapping:
        record = await self._bounded("get", self._load(asset_id))
        if record is None:
            raise NotFoundError(f"No off-chain mapping for {asset_id}")
        payload = self.keys.decrypt_dict(EncryptedPayload(
            ciphertext=record.ciphertext,
            iv=record.iv,
            algorithm=record.algorithm,
            key_id=record.key_id,
        ))
        return OffChainMapping(
            asset_id=record.asset_id,
            kyc_hash=record.kyc_hash,
            payload=payload,
            key_id=record.key_id,
            algorithm=record.algorithm,
            version=record.version,
            stored_at=record.stored_at.isoformat() if record.stored_at else None,
        )

    async def exists(self, asset_id: str) -> bool:
        return await self._bounded("get", self._load(asset_id)) is not None

    async def verify_consistency(self, asset_id: str, on_chain_hash: str) -> dict:
        """The off-chain kyc_hash must equal the one on the ledger."""
        record = await self._bounded("get", self._load(asset_id))
        if record is None:
            return {"asset_id": asset_id, "consistent": False, "reason": "NOT_FOUND"}
        consistent = record.kyc_hash == on_chain_hash
        if not consistent:
            logger.warning(f"Off-chain hash mismatch for {asset_id}")
        return {
            "asset_id": asset_id,
            "consistent": consistent,
            "reason": None if consistent else "HASH_MISMATCH",
        }

    async def count(self) -> int:
        async def _count() -> Any:
            async with self.database.session() as session:
                return await session.scalar(select(func.count()).select_from(OffChainMappingRecord))
        return await self._bounded("count", _count())
