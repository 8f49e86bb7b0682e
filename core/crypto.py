"""
core/crypto.py — Key & Signature Service
==========================================
Central place for ALL encryption, signing, and hashing operations.
Every component gets the same KeyService instance injected — never roll your
own crypto elsewhere.

Provides:
- AES-256-GCM encryption / decryption   (explicit IV per call)
- HMAC-SHA256 issuer signatures         (constant-time verification)
- SHA-256 / SHA-3 privacy hashes        (raw PII never reaches the ledger)
- Key / secret rotation with archiving  (old keys kept for old data)
"""

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from typing import Any, Dict, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel

from core.errors import ConfigurationError, ValidationError
from core.keystore import FileKeyStore, KIND_ENCRYPTION, KIND_HMAC

logger = logging.getLogger("digiid.crypto")

ENCRYPTION_ALGORITHM = "AES-256-GCM"
SIGNATURE_ALGORITHM = "HMAC-SHA256"
IV_BYTES = 12
HASH_ALGORITHMS = {"sha256", "sha3_256", "sha512"}


class EncryptedPayload(BaseModel):
    ciphertext: str     # hex
    iv: str             # hex, fresh per call
    algorithm: str = ENCRYPTION_ALGORITHM
    key_id: str


class SignatureResult(BaseModel):
    signature: str
    timestamp: str
    algorithm: str = SIGNATURE_ALGORITHM


def fingerprint(material: str) -> str:
    """Short, non-reversible identifier for a key or secret."""
    return hashlib.sha256(material.encode()).hexdigest()[:16]


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class KeyService:
    """
    Owns the active encryption key and HMAC secret plus every archived one.
    Built once in main.py (or per test) and passed to whoever needs it.
    """

    def __init__(
        self,
        encryption_key: str = "",
        hmac_secret: str = "",
        key_store: Optional[FileKeyStore] = None,
        min_key_length: int = 32,
    ):
        self._encryption_key = encryption_key or ""
        self._hmac_secret = hmac_secret or ""
        self._archived_keys: Dict[str, str] = {}
        self._archived_secrets: Dict[str, str] = {}
        self._derived: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.key_store = key_store
        self.min_key_length = min_key_length
        self._ready = False

    @classmethod
    def from_settings(cls, settings) -> "KeyService":
        return cls(
            encryption_key=settings.ENCRYPTION_KEY,
            hmac_secret=settings.HMAC_SECRET,
            key_store=FileKeyStore(settings.KEY_STORE_PATH),
            min_key_length=settings.MIN_KEY_LENGTH,
        )

    def initialize(self):
        """Called once on app startup (main.py lifespan). Loads archived material from the key store."""
        if self.key_store is not None:
            self.key_store.ensure()
            for record in self.key_store.load(KIND_ENCRYPTION):
                if record["material"] != self._encryption_key:
                    self._archived_keys[record["key_id"]] = record["material"]
            for record in self.key_store.load(KIND_HMAC):
                if record["material"] != self._hmac_secret:
                    self._archived_secrets[record["key_id"]] = record["material"]
        self._ready = True
        logger.info(
            f"Key service initialized — {len(self._archived_keys)} archived keys, "
            f"{len(self._archived_secrets)} archived secrets"
        )

    def is_ready(self) -> str:
        return "ok" if self._ready else "not initialized"

    # ── Key generation ─────────────────────────────────────────────────────
    @staticmethod
    def generate_encryption_key(length: int = 32) -> str:
        return secrets.token_hex(length)

    @staticmethod
    def generate_hmac_secret(length: int = 64) -> str:
        return secrets.token_hex(length)

    @staticmethod
    def generate_secure_token(length: int = 32) -> str:
        return secrets.token_hex(length)

    def generate_secure_environment(self) -> dict:
        """Fresh values for a new deployment's .env file."""
        return {
            "ENCRYPTION_KEY": self.generate_encryption_key(),
            "HMAC_SECRET": self.generate_hmac_secret(),
            "ADMIN_JWT_SECRET": self.generate_secure_token(64),
        }

    # ── Encryption ─────────────────────────────────────────────────────────
    def _aes_key(self, material: str) -> bytes:
        key_id = fingerprint(material)
        derived = self._derived.get(key_id)
        if derived is None:
            derived = HKDF(
                algorithm=hashes.SHA256(),
                length=32,
                salt=None,
                info=b"digiid-ledger/aes-256-gcm",
            ).derive(material.encode())
            self._derived[key_id] = derived
        return derived

    def encrypt(self, plaintext: str, key: Optional[str] = None) -> EncryptedPayload:
        """
        Encrypts a string with AES-256-GCM under `key` (or the active key).
        A new random IV is generated for every call.
        """
        material = key or self._encryption_key
        if not material:
            raise ConfigurationError("No encryption key available", code="ENCRYPTION_KEY_MISSING")
        iv = os.urandom(IV_BYTES)
        ciphertext = AESGCM(self._aes_key(material)).encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedPayload(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            key_id=fingerprint(material),
        )

    def decrypt(
        self,
        ciphertext: str,
        iv: str,
        key: Optional[str] = None,
        key_id: Optional[str] = None,
    ) -> str:
        """
        Decrypts a previously encrypted string.
        Without an explicit key, `key_id` selects the active or an archived key.
        """
        material = key or self._material_for(key_id)
        if not material:
            raise ConfigurationError("No encryption key available", code="ENCRYPTION_KEY_MISSING")
        try:
            plaintext = AESGCM(self._aes_key(material)).decrypt(
                bytes.fromhex(iv), bytes.fromhex(ciphertext), None
            )
        except (InvalidTag, ValueError) as exc:
            raise ValidationError("Decryption failed", code="DECRYPTION_FAILED") from exc
        return plaintext.decode("utf-8")

    def decrypt_payload(self, payload: EncryptedPayload) -> str:
        return self.decrypt(payload.ciphertext, payload.iv, key_id=payload.key_id)

    def encrypt_dict(self, data: dict) -> EncryptedPayload:
        return self.encrypt(canonical_json(data))

    def decrypt_dict(self, payload: EncryptedPayload) -> dict:
        return json.loads(self.decrypt_payload(payload))

    def _material_for(self, key_id: Optional[str]) -> str:
        active = self._encryption_key
        if key_id is None or (active and fingerprint(active) == key_id):
            return active
        return self._archived_keys.get(key_id, "")

    # ── Signatures ─────────────────────────────────────────────────────────
    @staticmethod
    def _signing_input(asset_id: str, kyc_hash: str, issuer_id: str, timestamp: str) -> bytes:
        # JSON array keeps field boundaries unambiguous even if a value contains ":"
        return json.dumps(
            [asset_id, kyc_hash, issuer_id, str(timestamp)],
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")

    @staticmethod
    def _hmac(secret: str, data: bytes) -> str:
        return hmac.new(secret.encode(), data, hashlib.sha256).hexdigest()

    def generate_signature(
        self,
        asset_id: str,
        kyc_hash: str,
        issuer_id: str,
        timestamp: Optional[str] = None,
    ) -> SignatureResult:
        """Deterministic HMAC over (asset_id, kyc_hash, issuer_id, timestamp)."""
        secret = self._hmac_secret
        if not secret:
            raise ConfigurationError("No HMAC secret available", code="HMAC_SECRET_MISSING")
        ts = str(timestamp) if timestamp is not None else str(int(time.time() * 1000))
        signature = self._hmac(secret, self._signing_input(asset_id, kyc_hash, issuer_id, ts))
        return SignatureResult(signature=signature, timestamp=ts)

    def verify_signature(
        self,
        asset_id: str,
        kyc_hash: str,
        issuer_id: str,
        signature: str,
        timestamp: str,
    ) -> bool:
        """
        Recompute and compare in constant time.
        Tries the active secret first, then archived secrets, so signatures
        made just before a rotation still verify.
        """
        if not signature:
            return False
        data = self._signing_input(asset_id, kyc_hash, issuer_id, timestamp)
        candidates = [self._hmac_secret] + list(reversed(list(self._archived_secrets.values())))
        matched = False
        for secret in candidates:
            if secret and hmac.compare_digest(self._hmac(secret, data), signature):
                matched = True
        return matched

    # ── Hashing ────────────────────────────────────────────────────────────
    def hash_for_privacy(self, data: Union[str, bytes, dict, list], algorithm: str = "sha256") -> str:
        """
        One-way hash. This is the only form in which sensitive data may reach
        the ledger. Dicts and lists are canonicalized before hashing.
        """
        if algorithm not in HASH_ALGORITHMS:
            raise ValidationError(f"Unsupported hash algorithm: {algorithm}")
        if isinstance(data, (dict, list)):
            data = canonical_json(data)
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.new(algorithm, data).hexdigest()

    # ── Rotation ───────────────────────────────────────────────────────────
    def rotate_encryption_key(self, new_key: Optional[str] = None) -> dict:
        """
        Swap in a new encryption key. The previous key is archived, never
        deleted. Existing ciphertext is NOT re-encrypted.
        """
        new_key = new_key or self.generate_encryption_key()
        self._check_strength(new_key, "Encryption key")
        with self._lock:
            old_key = self._encryption_key
            if old_key:
                self._archived_keys[fingerprint(old_key)] = old_key
            self._encryption_key = new_key
        self._persist(KIND_ENCRYPTION, old_key, new_key)
        logger.info(f"Encryption key rotated → {fingerprint(new_key)}")
        return {
            "success": True,
            "key_id": fingerprint(new_key),
            "archived_key_id": fingerprint(old_key) if old_key else None,
        }

    def rotate_hmac_secret(self, new_secret: Optional[str] = None) -> dict:
        """Swap in a new HMAC secret, archiving the previous one."""
        new_secret = new_secret or self.generate_hmac_secret()
        self._check_strength(new_secret, "HMAC secret")
        with self._lock:
            old_secret = self._hmac_secret
            if old_secret:
                self._archived_secrets[fingerprint(old_secret)] = old_secret
            self._hmac_secret = new_secret
        self._persist(KIND_HMAC, old_secret, new_secret)
        logger.info(f"HMAC secret rotated → {fingerprint(new_secret)}")
        return {
            "success": True,
            "key_id": fingerprint(new_secret),
            "archived_key_id": fingerprint(old_secret) if old_secret else None,
        }

    def _check_strength(self, material: str, label: str):
        if len(material) < self.min_key_length:
            raise ValidationError(
                f"{label} too short (minimum {self.min_key_length} characters)",
                code="KEY_TOO_SHORT",
            )

    def _persist(self, kind: str, old: str, new: str):
        if self.key_store is None:
            return
        if old:
            self.key_store.save(kind, fingerprint(old), old, "archived")
        self.key_store.save(kind, fingerprint(new), new, "active")

    # ── Status / validation ────────────────────────────────────────────────
    def validate_key_configuration(self) -> List[ConfigurationError]:
        """Every missing or weak key/secret, not just the first one found."""
        issues = []
        if not self._encryption_key:
            issues.append(ConfigurationError("Encryption key not configured", code="ENCRYPTION_KEY_MISSING"))
        elif len(self._encryption_key) < self.min_key_length:
            issues.append(ConfigurationError(
                f"Encryption key too short (minimum {self.min_key_length} characters)",
                code="ENCRYPTION_KEY_TOO_SHORT",
            ))
        if not self._hmac_secret:
            issues.append(ConfigurationError("HMAC secret not configured", code="HMAC_SECRET_MISSING"))
        elif len(self._hmac_secret) < self.min_key_length:
            issues.append(ConfigurationError(
                f"HMAC secret too short (minimum {self.min_key_length} characters)",
                code="HMAC_SECRET_TOO_SHORT",
            ))
        return issues

    def ensure_valid(self):
        """Fail fast: raise one ConfigurationError listing every issue."""
        issues = self.validate_key_configuration()
        if issues:
            raise ConfigurationError(
                "Invalid key configuration: " + "; ".join(issue.message for issue in issues),
                code="INVALID_KEY_CONFIGURATION",
                issues=issues,
            )

    def key_status(self) -> dict:
        return {
            "encryption_key_configured": bool(self._encryption_key),
            "hmac_secret_configured": bool(self._hmac_secret),
            "encryption_key_id": fingerprint(self._encryption_key) if self._encryption_key else None,
            "hmac_secret_id": fingerprint(self._hmac_secret) if self._hmac_secret else None,
            "archived_encryption_keys": len(self._archived_keys),
            "archived_hmac_secrets": len(self._archived_secrets),
            "key_store_path": str(self.key_store.path) if self.key_store else None,
            "key_store_exists": self.key_store.exists() if self.key_store else False,
        }
