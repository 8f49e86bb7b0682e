"""
db/models.py — Database Table Definitions
==========================================
The ledger stores hashes; this table stores the encrypted payload behind
each asset (encrypted by core/crypto.py before saving) plus the kyc_hash
that must match the on-chain record.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.session import Base


def new_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class OffChainMappingRecord(Base):
    __tablename__ = "offchain_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    asset_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    kyc_hash: Mapped[str] = mapped_column(String(128), nullable=False)     # must equal on-chain kyc_hash
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(64), nullable=False)
    key_id: Mapped[str] = mapped_column(String(64), nullable=False)        # which key encrypted it
    algorithm: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
