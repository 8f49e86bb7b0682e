"""
Shared fixtures: a fixed clock, a key service with a throwaway key store,
the ledger platform with the contract deployed, a connected gateway, a
sqlite-backed off-chain store, and the services built on top of them.
"""

import pytest

from config import Settings
from core.authz import PermissiveAuthorizationChecker, RoleAuthorizationChecker
from core.blockchain import ClientIdentity, SimulatedLedger
from core.crypto import KeyService
from core.keystore import FileKeyStore
from db.session import Database
from modules.admin import AdminOrchestrator
from modules.audit import AuditLog
from modules.contract import DigitalIdentityContract
from modules.gateway import (
    GatewayClient,
    InMemoryWallet,
    WalletCredentials,
    WalletIdentity,
    local_network_profile,
)
from modules.issuance import IdentityIssuer
from modules.offchain import OffChainMappingStore
from modules.schemas import IssuerSignature, MintRequest

NOW = 1_700_000_000
DAY = 24 * 60 * 60

CHANNEL = "digiid-channel"
CONTRACT = "digi-id-contract"
MSP_ID = "IssuerMSP"
ISSUER = "digi-id-issuer"
BULK_ISSUER = "bulk-issuer"
ADMIN = "admin"

ENCRYPTION_KEY = "0f" * 32
HMAC_SECRET = "a5" * 32


class FixedClock:
    """Unix seconds that only move when a test says so."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


def make_identity(msp_id: str = MSP_ID) -> WalletIdentity:
    return WalletIdentity(
        msp_id=msp_id,
        credentials=WalletCredentials(certificate="-----BEGIN CERTIFICATE-----", private_key="-----BEGIN KEY-----"),
    )


def signed_request(
    keys: KeyService,
    asset_id: str = "DID-1-test",
    subject_id: str = "subject-1",
    issuer_id: str = ISSUER,
    kyc_hash: str = None,
    expiry_timestamp: int = NOW + 30 * DAY,
) -> MintRequest:
    kyc_hash = kyc_hash or keys.hash_for_privacy({"name": subject_id})
    signed = keys.generate_signature(asset_id, kyc_hash, issuer_id)
    return MintRequest(
        id=asset_id,
        subject_id=subject_id,
        kyc_hash=kyc_hash,
        expiry_timestamp=expiry_timestamp,
        issuer_id=issuer_id,
        signature=IssuerSignature(signature=signed.signature, timestamp=signed.timestamp),
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def keys(tmp_path):
    service = KeyService(ENCRYPTION_KEY, HMAC_SECRET, key_store=FileKeyStore(str(tmp_path / "keys")))
    service.initialize()
    return service


@pytest.fixture
def role_authz():
    return RoleAuthorizationChecker(issuers=[ISSUER, BULK_ISSUER], admins=[ADMIN])


@pytest.fixture
def permissive_authz():
    return PermissiveAuthorizationChecker()


@pytest.fixture
def contract(keys, role_authz):
    return DigitalIdentityContract(keys, role_authz)


@pytest.fixture
async def ledger(clock, contract):
    platform = SimulatedLedger(clock=clock)
    platform.deploy(CHANNEL, contract)
    await platform.connect()
    yield platform
    await platform.disconnect()


@pytest.fixture
def admin_identity():
    return ClientIdentity(label=ADMIN, msp_id=MSP_ID)


@pytest.fixture
async def wallet():
    store = InMemoryWallet()
    await store.put(ADMIN, make_identity())
    return store


@pytest.fixture
def profile():
    return local_network_profile(CHANNEL, MSP_ID)


@pytest.fixture
async def gateway(ledger, wallet, profile):
    client = GatewayClient(ledger, wallet, CHANNEL, CONTRACT, timeout=1.0, max_retries=2, backoff_base=0.0)
    await client.connect(profile, ADMIN)
    yield client
    await client.disconnect()


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'offchain.db'}")
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture
def offchain(database, keys):
    return OffChainMappingStore(database, keys, timeout=2.0)


@pytest.fixture
def audit(keys):
    return AuditLog(keys.hash_for_privacy, max_size=100, max_query_limit=50)


@pytest.fixture
def issuer(gateway, keys, offchain, audit, clock):
    return IdentityIssuer(gateway, keys, offchain, audit, issuer_id=ISSUER, default_expiry_days=365, clock=clock)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        ENCRYPTION_KEY=ENCRYPTION_KEY,
        HMAC_SECRET=HMAC_SECRET,
        KEY_STORE_PATH=str(tmp_path / "keys"),
        FABRIC_WALLET_PATH=str(tmp_path / "wallet"),
        FABRIC_NETWORK_PROFILE=str(tmp_path / "missing-profile.json"),
        ADMIN_JWT_SECRET="test-admin-secret-" + "x" * 32,
        LOG_FILE="",
        BULK_MAX_ITEMS=5,
        BULK_VERIFY_MAX_ITEMS=10,
        BULK_CONCURRENCY=2,
        ADMIN_RATE_LIMIT_PER_MINUTE=50,
        RATE_LIMIT_PER_MINUTE=200,
    )


@pytest.fixture
def admin(settings, issuer, gateway, keys, audit, offchain):
    return AdminOrchestrator(settings, issuer, gateway, keys, audit, offchain)
