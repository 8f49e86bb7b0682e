"""
config.py — DigiID Ledger Global Configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    APP_NAME: str = "DigiID Ledger"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5500",
    ]

    # Database (off-chain mapping store)
    DATABASE_URL: str = "sqlite+aiosqlite:///./digiid.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Ledger network
    FABRIC_NETWORK_PROFILE: str = "network-profile.json"
    FABRIC_CHANNEL: str = "digiid-channel"
    FABRIC_CONTRACT: str = "digi-id-contract"
    FABRIC_WALLET_PATH: str = "./wallet"
    FABRIC_IDENTITY: str = "admin"
    FABRIC_MSP_ID: str = "IssuerMSP"

    # Gateway behaviour
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_BACKOFF_BASE_SECONDS: float = 0.5

    # Cryptography
    ENCRYPTION_KEY: str = ""
    HMAC_SECRET: str = ""
    KEY_STORE_PATH: str = "./keys"
    MIN_KEY_LENGTH: int = 32

    # Authorization
    AUTHORIZED_ISSUERS: List[str] = ["digi-id-issuer", "bulk-issuer"]
    LEDGER_ADMINS: List[str] = ["admin"]
    BULK_ISSUER_ID: str = "bulk-issuer"
    DEFAULT_ISSUER_ID: str = "digi-id-issuer"
    ADMIN_JWT_SECRET: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 30

    # Off-chain store
    OFFCHAIN_TIMEOUT_SECONDS: float = 5.0

    # Bulk / admin
    BULK_MAX_ITEMS: int = 100
    BULK_VERIFY_MAX_ITEMS: int = 200
    BULK_CONCURRENCY: int = 4
    AUDIT_LOG_MAX_SIZE: int = 10_000
    AUDIT_QUERY_MAX_LIMIT: int = 1000
    DEFAULT_EXPIRY_DAYS: int = 365

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 60
    ADMIN_RATE_LIMIT_PER_MINUTE: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "digiid.log"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
