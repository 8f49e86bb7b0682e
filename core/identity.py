"""
core/identity.py — Identifier & Hash Helpers
==============================================
Turns raw subject data into what the ledger is allowed to hold:
an opaque asset id, a KYC hash, and one hash per document.
Called by modules/issuance.py before anything is submitted.
"""

import secrets
import string
import time
from typing import Iterable, List, Optional

from core.crypto import KeyService, canonical_json
from modules.schemas import DocumentHash, DocumentInput

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_asset_id(now_ms: Optional[int] = None) -> str:
    """
    Format: DID-<unix ms>-<9 random base36 chars>
    Random part comes from `secrets`, so ids are not guessable from the clock.
    """
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"DID-{ms}-{suffix}"


def compute_kyc_hash(keys: KeyService, kyc_data: dict) -> str:
    """Canonical hash of the KYC payload — the only trace of it on-chain."""
    return keys.hash_for_privacy(kyc_data)


def build_document_hashes(keys: KeyService, documents: Iterable[DocumentInput], now: int) -> List[DocumentHash]:
    """Hash each document's data; order is preserved."""
    return [
        DocumentHash(type=doc.type, hash=keys.hash_for_privacy(canonical_json(doc.data)), timestamp=now)
        for doc in documents
    ]


def expiry_from_days(now: int, days: int) -> int:
    return now + days * 24 * 60 * 60
