"""
modules/audit.py — Audit Trail
================================
Append-only, bounded record of every admin action and every failure worth
keeping. Oldest entries fall off once AUDIT_LOG_MAX_SIZE is reached.

Payloads are redacted before they are stored: known PII keys are replaced
by their hash, so the trail can be shared with auditors without leaking
KYC data.
"""

import logging
import secrets
import string
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger("digiid.audit")

# Categories
ADMIN = "admin"
ISSUANCE = "issuance"
OFFCHAIN = "offchain"
SECURITY = "security"

PII_KEYS = {
    "name", "full_name", "first_name", "last_name", "dob", "date_of_birth",
    "address", "phone", "email", "aadhaar", "aadhaar_number", "passport",
    "passport_number", "pan", "kyc_data", "documents", "nationality",
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


class AuditLogEntry(BaseModel):
    id: str
    type: str
    actor: str
    timestamp: int          # unix ms
    category: str
    payload: Dict[str, Any] = {}


def generate_audit_id(now_ms: Optional[int] = None) -> str:
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"AUDIT-{ms}-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


class AuditLog:

    def __init__(self, hasher: Callable[[Any], str], max_size: int = 10_000, max_query_limit: int = 1000):
        self._entries: deque = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self.hasher = hasher
        self.max_size = max_size
        self.max_query_limit = max_query_limit

    def redact(self, payload: Any) -> Any:
        """Replace the values of PII keys with their hash, at any depth."""
        if isinstance(payload, dict):
            return {
                key: self._hashed(value) if str(key).lower() in PII_KEYS else self.redact(value)
                for key, value in payload.items()
            }
        if isinstance(payload, (list, tuple)):
            return [self.redact(item) for item in payload]
        return payload

    def _hashed(self, value: Any) -> str:
        if not isinstance(value, (str, bytes, dict, list)):
            value = str(value)
        return "sha256:" + self.hasher(value)

    def record(self, type: str, actor: str, payload: Optional[dict] = None, category: str = ADMIN) -> AuditLogEntry:
        now_ms = int(time.time() * 1000)
        entry = AuditLogEntry(
            id=generate_audit_id(now_ms),
            type=type,
            actor=actor,
            timestamp=now_ms,
            category=category,
            payload=self.redact(payload or {}),
        )
        with self._lock:
            self._entries.append(entry)
        logger.info(f"Audit: {type} by {actor} [{category}]")
        return entry

    def entries(self, limit: int = 100, type_filter: Optional[str] = None) -> List[AuditLogEntry]:
        """Most recent first, optionally filtered by type, truncated to `limit`."""
        limit = max(0, min(limit, self.max_query_limit))
        with self._lock:
            snapshot = list(self._entries)
        if type_filter:
            snapshot = [e for e in snapshot if e.type == type_filter]
        snapshot.reverse()
        return snapshot[:limit]

    def __len__(self) -> int:
        return len(self._entries)
