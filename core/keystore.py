"""
core/keystore.py — Key Store
=============================
Keeps every key and HMAC secret that has ever been active, so ciphertext and
signatures produced before a rotation stay usable after a restart.

Layout on disk (KEY_STORE_PATH):
    encryption-<key_id>.key     JSON record, mode 0600
    hmac-<key_id>.key           JSON record, mode 0600
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List

logger = logging.getLogger("digiid.keystore")

KIND_ENCRYPTION = "encryption"
KIND_HMAC = "hmac"


class FileKeyStore:

    def __init__(self, path: str):
        self.path = Path(path)

    def ensure(self):
        """Create the key store directory if it does not exist yet."""
        if not self.path.exists():
            self.path.mkdir(parents=True, exist_ok=True)
            os.chmod(self.path, 0o700)
            logger.info(f"Key store directory created: {self.path}")

    def exists(self) -> bool:
        return self.path.is_dir()

    def save(self, kind: str, key_id: str, material: str, status: str) -> Path:
        """Write one key record. Existing records for the same key are overwritten with the new status."""
        self.ensure()
        key_path = self.path / f"{kind}-{key_id}.key"
        record = {
            "kind": kind,
            "key_id": key_id,
            "material": material,
            "status": status,
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(record, fh)
        logger.info(f"Key stored: {kind} {key_id} ({status})")
        return key_path

    def load(self, kind: str) -> List[dict]:
        """All records of one kind, oldest first."""
        if not self.exists():
            return []
        records = []
        for key_path in self.path.glob(f"{kind}-*.key"):
            with key_path.open(encoding="utf-8") as fh:
                records.append(json.load(fh))
        return sorted(records, key=lambda r: r["stored_at"])
