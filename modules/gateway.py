"""
modules/gateway.py — Ledger Gateway Client
============================================
Long-lived connection to the ledger network, shared by every caller.

    connect()               → validate profile, load identity from wallet, resolve contract
    submit_transaction()    → mutating ops (mint / revoke / renew / bulk mint), ordered path
    evaluate_transaction()  → read-only ops (verify / get / query), local path
    get_network_status()    → never raises

Every call carries a timeout. Timeouts and transport failures are
ConnectivityErrors and are retried with exponential backoff; contract
rejections (conflict, validation, authorization) are never retried.
A submit that times out is never re-sent: it may already have committed,
so it fails with OUTCOME_UNKNOWN and the caller re-reads state first.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.blockchain import ClientIdentity, SimulatedLedger
from core.errors import ConnectivityError, LedgerError, ValidationError, error_from_category

logger = logging.getLogger("digiid.gateway")


# ── Network profile ───────────────────────────────────────────────────────────
class PeerConfig(BaseModel):
    url: str = Field(min_length=1)


class OrganizationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    msp_id: str = Field(alias="mspid", min_length=1)
    peers: List[str] = []


class ClientConfig(BaseModel):
    organization: str = Field(min_length=1)


class ChannelConfig(BaseModel):
    peers: List[str] = Field(min_length=1)


class NetworkProfile(BaseModel):
    """Connection profile in the shape of a Fabric common connection profile."""
    name: str = Field(min_length=1)
    version: str = "1.0.0"
    client: ClientConfig
    organizations: Dict[str, OrganizationConfig]
    peers: Dict[str, PeerConfig]
    channels: Dict[str, ChannelConfig]

    @classmethod
    def load(cls, source: Union[str, Path, dict]) -> "NetworkProfile":
        if isinstance(source, dict):
            return cls.model_validate(source)
        return cls.model_validate_json(Path(source).read_text(encoding="utf-8"))

    def check(self, channel: str):
        """Cross-reference checks pydantic cannot express on its own."""
        if self.client.organization not in self.organizations:
            raise ValueError(f"client organization {self.client.organization} is not defined")
        if channel not in self.channels:
            raise ValueError(f"channel {channel} is not defined in the profile")
        for peer in self.channels[channel].peers:
            if peer not in self.peers:
                raise ValueError(f"channel peer {peer} has no peer definition")

    @property
    def msp_id(self) -> str:
        return self.organizations[self.client.organization].msp_id


# ── Wallets (credential stores) ───────────────────────────────────────────────
class WalletCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    certificate: str
    private_key: str = Field(alias="privateKey")


class WalletIdentity(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "X.509"
    msp_id: str = Field(alias="mspId", min_length=1)
    credentials: WalletCredentials


class InMemoryWallet:

    def __init__(self):
        self._identities: Dict[str, WalletIdentity] = {}

    async def put(self, label: str, identity: WalletIdentity):
        self._identities[label] = identity

    async def get(self, label: str) -> Optional[WalletIdentity]:
        return self._identities.get(label)


class FileSystemWallet:
    """One `<label>.id` JSON file per identity, as written by Fabric tooling."""

    def __init__(self, path: str):
        self.path = Path(path)

    async def put(self, label: str, identity: WalletIdentity):
        self.path.mkdir(parents=True, exist_ok=True)
        target = self.path / f"{label}.id"
        target.write_text(identity.model_dump_json(by_alias=True), encoding="utf-8")
        target.chmod(0o600)

    async def get(self, label: str) -> Optional[WalletIdentity]:
        target = self.path / f"{label}.id"
        if not target.is_file():
            return None
        return WalletIdentity.model_validate_json(target.read_text(encoding="utf-8"))


# ── Gateway ───────────────────────────────────────────────────────────────────
class GatewayClient:

    def __init__(
        self,
        platform: SimulatedLedger,
        wallet,
        channel: str,
        contract_name: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
    ):
        self.platform = platform
        self.wallet = wallet
        self.channel = channel
        self.contract_name = contract_name
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.profile: Optional[NetworkProfile] = None
        self.identity: Optional[ClientIdentity] = None
        self._operations: Dict[str, str] = {}
        self.is_connected = False

    @classmethod
    def from_settings(cls, settings, platform: SimulatedLedger, wallet) -> "GatewayClient":
        return cls(
            platform=platform,
            wallet=wallet,
            channel=settings.FABRIC_CHANNEL,
            contract_name=settings.FABRIC_CONTRACT,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_retries=settings.GATEWAY_MAX_RETRIES,
            backoff_base=settings.GATEWAY_BACKOFF_BASE_SECONDS,
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────
    async def connect(self, network_profile: Union[NetworkProfile, dict, str, Path], identity: str) -> dict:
        """Establish the session. Calling it again while connected is a no-op."""
        if self.is_connected:
            return {"success": True, "message": "Already connected"}

        try:
            profile = network_profile if isinstance(network_profile, NetworkProfile) else NetworkProfile.load(network_profile)
            profile.check(self.channel)
        except (PydanticValidationError, ValueError, OSError) as exc:
            raise ConnectivityError(f"Malformed network profile: {exc}", code="MALFORMED_NETWORK_CONFIG") from exc

        wallet_identity = await self.wallet.get(identity)
        if wallet_identity is None:
            raise ConnectivityError(f"Identity {identity} not found in wallet", code="IDENTITY_NOT_FOUND")
        if wallet_identity.msp_id != profile.msp_id:
            raise ConnectivityError(
                f"Identity {identity} belongs to {wallet_identity.msp_id}, profile expects {profile.msp_id}",
                code="IDENTITY_MSP_MISMATCH",
            )

        try:
            await asyncio.wait_for(self.platform.connect(), timeout=self.timeout)
            contract = self.platform.get_contract(self.channel, self.contract_name)
        except asyncio.TimeoutError as exc:
            raise ConnectivityError("Timed out connecting to the ledger", code="TIMEOUT") from exc
        except LedgerError as exc:
            raise ConnectivityError(f"Cannot resolve contract: {exc.message}", code="CONTRACT_NOT_FOUND") from exc

        self._operations = {name: kind for name, (kind, _) in contract.operations().items()}
        self.profile = profile
        self.identity = ClientIdentity(label=identity, msp_id=wallet_identity.msp_id)
        self.is_connected = True
        logger.info(f"Gateway connected — network {profile.name}, channel {self.channel}, identity {identity}")
        return {"success": True, "message": "Ledger network connected"}

    async def disconnect(self):
        if self.is_connected:
            self.is_connected = False
            self.identity = None
            self._operations = {}
            logger.info("Gateway disconnected")

    # ── Invocation ─────────────────────────────────────────────────────────
    async def submit_transaction(self, operation: str, *args: Any) -> Any:
        """Mutating operation through the ordered path."""
        self._check_path(operation, "submit")
        return await self._invoke(operation, args, submit=True)

    async def evaluate_transaction(self, operation: str, *args: Any) -> Any:
        """Read-only operation through the local path."""
        self._check_path(operation, "evaluate")
        return await self._invoke(operation, args, submit=False)

    def _check_path(self, operation: str, path: str):
        if not self.is_connected:
            raise ConnectivityError("Gateway is not connected", code="NOT_CONNECTED")
        kind = self._operations.get(operation)
        if kind is None:
            raise ValidationError(f"Unknown ledger operation: {operation}", code="UNKNOWN_OPERATION")
        if kind != path:
            raise ValidationError(
                f"{operation} must be {'submitted' if kind == 'submit' else 'evaluated'}, not {path}ed",
                code="WRONG_INVOCATION_PATH",
            )

    @staticmethod
    def _serialize(arg: Any) -> str:
        if isinstance(arg, BaseModel):
            return arg.model_dump_json()
        if isinstance(arg, str):
            return arg
        return json.dumps(arg)

    async def _invoke(self, operation: str, args, submit: bool) -> Any:
        wire_args = [self._serialize(a) for a in args]
        attempt = 0
        while True:
            try:
                response = await asyncio.wait_for(
                    self.platform.invoke(self.channel, self.contract_name, operation, wire_args, self.identity, submit),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError as exc:
                if submit:
                    # the transaction may have committed; re-submitting could apply it twice
                    logger.error(f"{operation} timed out after {self.timeout}s, outcome unknown")
                    raise ConnectivityError(
                        f"{operation} timed out after {self.timeout}s and may have committed; "
                        f"re-read the current state before retrying",
                        code="OUTCOME_UNKNOWN",
                    ) from exc
                error = ConnectivityError(f"{operation} timed out after {self.timeout}s", code="TIMEOUT")
            except ConnectivityError as exc:
                error = exc
            else:
                if not response.ok:
                    raise error_from_category(response.error_category, response.message, response.error_code)
                result = json.loads(response.payload)
                if submit and isinstance(result, dict):
                    result.setdefault("transaction_id", response.tx_id)
                    result["block_number"] = response.block_number
                return result

            if attempt >= self.max_retries:
                logger.error(f"{operation} failed after {attempt + 1} attempts: {error.message}")
                raise error
            delay = self.backoff_base * (2 ** attempt)
            attempt += 1
            logger.warning(f"{operation} retrying ({attempt}/{self.max_retries}) in {delay:.2f}s — {error.message}")
            await asyncio.sleep(delay)

    # ── Events ─────────────────────────────────────────────────────────────
    def add_event_listener(self, callback: Callable):
        self.platform.add_listener(callback)

    # ── Status ─────────────────────────────────────────────────────────────
    async def get_network_status(self) -> dict:
        """Network health. Reports problems in the result instead of raising."""
        if not self.is_connected:
            return {"connected": False, "reason": "Not connected to ledger network"}
        try:
            ping = await asyncio.wait_for(self.platform.ping(), timeout=self.timeout)
        except asyncio.TimeoutError:
            return {"connected": False, "reason": "Ledger ping timed out"}
        except Exception as exc:
            return {"connected": False, "reason": str(exc)}
        return {
            "connected": True,
            "network": self.profile.name if self.profile else None,
            "channel": self.channel,
            "contract": self.contract_name,
            "identity": self.identity.label if self.identity else None,
            "msp_id": self.identity.msp_id if self.identity else None,
            "platform": ping,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


# ── Local development network ─────────────────────────────────────────────────
def local_network_profile(channel: str, msp_id: str, org: str = "Issuer") -> dict:
    """Single-peer profile used when no profile file is deployed."""
    peer = f"peer0.{org.lower()}.digiid.local"
    return {
        "name": "digiid-local",
        "version": "1.0.0",
        "client": {"organization": org},
        "organizations": {org: {"mspid": msp_id, "peers": [peer]}},
        "peers": {peer: {"url": "grpcs://localhost:7051"}},
        "channels": {channel: {"peers": [peer]}},
    }


def create_local_identity(msp_id: str, common_name: str, valid_days: int = 365) -> WalletIdentity:
    """Self-signed P-256 identity for local development. Never used in production."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, msp_id),
    ])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=valid_days))
        .sign(key, hashes.SHA256())
    )
    return WalletIdentity(
        msp_id=msp_id,
        credentials=WalletCredentials(
            certificate=certificate.public_bytes(serialization.Encoding.PEM).decode(),
            private_key=key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ).decode(),
        ),
    )
