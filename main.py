"""
main.py — DigiID Ledger Entry Point
=====================================
This is the file you run to start the entire system.
On startup, in order:
    1. Key service     (production refuses to start on weak / missing keys)
    2. Database        (off-chain mapping store tables)
    3. Ledger platform (contract deployed on the channel)
    4. Gateway         (network profile + wallet identity)
    5. Services        (issuance, audit, admin) stored on app.state

Run with:
    uvicorn main:app --reload --host 0.0.0.0 --port 8000

Or simply:
    python main.py
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, get_settings

# ── Core systems ──────────────────────────────────────────────────────────────
from core.authz import AdminTokenService, RoleAuthorizationChecker
from core.blockchain import ContractEvent, SimulatedLedger
from core.crypto import KeyService
from core.errors import ConnectivityError
from db.session import Database

# ── Services ──────────────────────────────────────────────────────────────────
from modules.admin import AdminOrchestrator
from modules.audit import AuditLog
from modules.contract import DigitalIdentityContract
from modules.gateway import (
    FileSystemWallet,
    GatewayClient,
    NetworkProfile,
    create_local_identity,
    local_network_profile,
)
from modules.issuance import IdentityIssuer
from modules.offchain import OffChainMappingStore

# ── API ───────────────────────────────────────────────────────────────────────
from api.errors import install_exception_handlers
from api.ratelimit import RateLimiter
from api.routes_admin import router as admin_router
from api.routes_ledger import router as ledger_router

logger = logging.getLogger("digiid.main")


# ── Logging setup ─────────────────────────────────────────────────────────────
def configure_logging(settings: Settings):
    handlers = [logging.StreamHandler()]                  # print to terminal
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE))   # also save to file
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        handlers=handlers,
    )


async def _load_identity(settings: Settings, wallet: FileSystemWallet):
    """Production must ship a wallet identity; development enrolls a local one."""
    if await wallet.get(settings.FABRIC_IDENTITY) is not None:
        return
    if settings.ENVIRONMENT == "production":
        return  # gateway.connect reports IDENTITY_NOT_FOUND
    logger.warning(f"Identity {settings.FABRIC_IDENTITY} not in wallet — enrolling a local development identity")
    await wallet.put(settings.FABRIC_IDENTITY, create_local_identity(settings.FABRIC_MSP_ID, settings.FABRIC_IDENTITY))


def _network_profile(settings: Settings):
    path = Path(settings.FABRIC_NETWORK_PROFILE)
    if path.is_file() or settings.ENVIRONMENT == "production":
        return path
    logger.warning(f"Network profile {path} not found — using the local single-peer profile")
    return NetworkProfile.load(local_network_profile(settings.FABRIC_CHANNEL, settings.FABRIC_MSP_ID))


async def _log_event(event: ContractEvent):
    logger.info(f"Event {event.name} — asset {event.payload.get('asset_id')} (block #{event.block_number})")


def create_app(settings: Optional[Settings] = None, clock: Optional[Callable[[], int]] = None) -> FastAPI:
    settings = settings or get_settings()
    production = settings.ENVIRONMENT == "production"

    # ── Lifespan: runs on startup and shutdown ────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        logger.info(f"Environment: {settings.ENVIRONMENT}")

        # 1. Keys: fail fast in production
        keys = KeyService.from_settings(settings)
        keys.initialize()
        if production:
            keys.ensure_valid()
        else:
            for issue in keys.validate_key_configuration():
                logger.warning(f"Key configuration: {issue.message}")
        logger.info("✓ Key service ready")

        # 2. Database
        database = Database.from_settings(settings)
        await database.init()
        logger.info("✓ Database ready")

        # 3. Ledger platform + contract
        ledger = SimulatedLedger(clock=clock)
        authz = RoleAuthorizationChecker.from_settings(settings)
        ledger.deploy(settings.FABRIC_CHANNEL, DigitalIdentityContract(keys, authz, name=settings.FABRIC_CONTRACT))

        # 4. Gateway
        wallet = FileSystemWallet(settings.FABRIC_WALLET_PATH)
        await _load_identity(settings, wallet)
        gateway = GatewayClient.from_settings(settings, ledger, wallet)
        try:
            await gateway.connect(_network_profile(settings), settings.FABRIC_IDENTITY)
            gateway.add_event_listener(_log_event)
            logger.info(f"✓ Ledger connected — channel {settings.FABRIC_CHANNEL}")
        except ConnectivityError as exc:
            if production:
                raise
            logger.error(f"Ledger connection failed, running degraded: {exc.code} — {exc.message}")

        # 5. Services
        audit = AuditLog(keys.hash_for_privacy, settings.AUDIT_LOG_MAX_SIZE, settings.AUDIT_QUERY_MAX_LIMIT)
        offchain = OffChainMappingStore(database, keys, timeout=settings.OFFCHAIN_TIMEOUT_SECONDS)
        issuer = IdentityIssuer(
            gateway, keys, offchain, audit,
            issuer_id=settings.DEFAULT_ISSUER_ID,
            default_expiry_days=settings.DEFAULT_EXPIRY_DAYS,
            clock=clock,
        )

        app.state.settings = settings
        app.state.keys = keys
        app.state.database = database
        app.state.ledger = ledger
        app.state.gateway = gateway
        app.state.audit = audit
        app.state.offchain = offchain
        app.state.issuer = issuer
        app.state.admin = AdminOrchestrator(settings, issuer, gateway, keys, audit, offchain)
        app.state.tokens = AdminTokenService.from_settings(settings)
        app.state.limiter = RateLimiter(window_seconds=60)

        logger.info("=" * 50)
        logger.info(f"  {settings.APP_NAME} is LIVE on port {settings.PORT}")
        logger.info("=" * 50)

        yield   # ← App runs here (handles all requests)

        logger.info("Shutting down — closing connections...")
        await gateway.disconnect()
        await ledger.disconnect()
        await database.dispose()
        logger.info("✓ Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Privacy-preserving digital identity ledger",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_exception_handlers(app)

    app.include_router(ledger_router, prefix="/ledger", tags=["Ledger"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/", tags=["Status"])
    async def root():
        """Confirms the API is running."""
        return {
            "system": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "operational",
            "docs": "/docs",
        }

    return app


configure_logging(get_settings())
app = create_app()


# ── Run directly ──────────────────────────────────────────────────────────────
if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
