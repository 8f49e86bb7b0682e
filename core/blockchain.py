"""
core/blockchain.py — Ledger Platform
======================================
In-process ledger platform with Fabric-like semantics, so the contract can run
with zero external setup:

  - world state: key → bytes, plus composite keys for secondary indexes
  - every submitted invocation is serialized and all-or-nothing:
    its write set is applied only if the contract function returns normally
  - committed transactions are chained into hash-linked blocks (tamper-evident)
  - contract events are delivered to listeners after commit, in commit order,
    on a background task: a slow or failing listener never delays the caller

Consensus and replication are out of scope; this is the single-peer view.
"""

import asyncio
import hashlib
import inspect
import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from core.errors import ConnectivityError, LedgerError, NotFoundError, ValidationError

logger = logging.getLogger("digiid.blockchain")

COMPOSITE_KEY_NAMESPACE = "\x00"
MIN_UNICODE_RUNE = "\x00"


# ── Contract API ──────────────────────────────────────────────────────────────
def transaction(name: str, submit: bool = True):
    """
    Marks a contract method as a remotely invokable transaction function.
    submit=True  → mutating, goes through the ordered path
    submit=False → read-only, evaluated locally
    """
    def decorator(fn):
        fn.__ledger_tx__ = (name, "submit" if submit else "evaluate")
        return fn
    return decorator


class Contract:
    """Base class for contracts deployed on the platform."""

    name = "contract"
    version = "1.0.0"

    def operations(self) -> Dict[str, Tuple[str, Callable]]:
        ops = {}
        for _, member in inspect.getmembers(self, predicate=inspect.ismethod):
            marker = getattr(member, "__ledger_tx__", None)
            if marker:
                op_name, kind = marker
                ops[op_name] = (kind, member)
        return ops


@dataclass
class ClientIdentity:
    label: str
    msp_id: str


@dataclass
class ContractEvent:
    name: str
    payload: dict
    tx_id: str = ""
    block_number: Optional[int] = None


class TransactionContext:
    """
    What a contract function sees: a buffered view over the world state.
    Reads see this transaction's own pending writes.
    """

    def __init__(
        self,
        state: Dict[str, bytes],
        tx_id: str,
        timestamp: int,
        client_identity: ClientIdentity,
        read_only: bool = False,
    ):
        self._state = state
        self._writes: Dict[str, Optional[bytes]] = {}
        self.events: List[ContractEvent] = []
        self.tx_id = tx_id
        self.timestamp = timestamp
        self.client_identity = client_identity
        self.read_only = read_only

    # ── State access ───────────────────────────────────────────────────────
    def get_state(self, key: str) -> Optional[bytes]:
        if key in self._writes:
            return self._writes[key]
        return self._state.get(key)

    def put_state(self, key: str, value: bytes):
        if self.read_only:
            raise ValidationError("Cannot write state during an evaluated (read-only) transaction",
                                  code="READ_ONLY_TRANSACTION")
        if not key:
            raise ValidationError("State key must not be empty")
        self._writes[key] = value

    def delete_state(self, key: str):
        if self.read_only:
            raise ValidationError("Cannot delete state during an evaluated (read-only) transaction",
                                  code="READ_ONLY_TRANSACTION")
        self._writes[key] = None

    def _merged_keys(self) -> List[str]:
        keys = set(self._state) | set(self._writes)
        return sorted(k for k in keys if self.get_state(k) is not None)

    # ── Composite keys (secondary indexes) ─────────────────────────────────
    @staticmethod
    def create_composite_key(object_type: str, attributes: List[str]) -> str:
        for attr in [object_type, *attributes]:
            if MIN_UNICODE_RUNE in attr:
                raise ValidationError("Composite key attributes must not contain U+0000")
        return COMPOSITE_KEY_NAMESPACE + object_type + MIN_UNICODE_RUNE + "".join(
            attr + MIN_UNICODE_RUNE for attr in attributes
        )

    @staticmethod
    def split_composite_key(key: str) -> Tuple[str, List[str]]:
        parts = key[len(COMPOSITE_KEY_NAMESPACE):].split(MIN_UNICODE_RUNE)
        return parts[0], parts[1:-1]

    def get_state_by_partial_composite_key(self, object_type: str, attributes: List[str]) -> Iterator[Tuple[str, bytes]]:
        prefix = self.create_composite_key(object_type, attributes)
        for key in self._merged_keys():
            if key.startswith(prefix):
                yield key, self.get_state(key)

    def get_simple_keys(self) -> Iterator[Tuple[str, bytes]]:
        """All non-composite keys (primary records)."""
        for key in self._merged_keys():
            if not key.startswith(COMPOSITE_KEY_NAMESPACE):
                yield key, self.get_state(key)

    # ── Events ─────────────────────────────────────────────────────────────
    def set_event(self, name: str, payload: dict):
        self.events.append(ContractEvent(name=name, payload=payload, tx_id=self.tx_id))

    # ── Partial rollback ───────────────────────────────────────────────────
    @contextmanager
    def savepoint(self):
        """
        Scope whose writes and events are dropped if it raises.
        Used by batch operations so one bad item never takes others with it.
        """
        writes = dict(self._writes)
        events = list(self.events)
        try:
            yield self
        except Exception:
            self._writes = writes
            self.events = events
            raise

    @property
    def write_set(self) -> Dict[str, Optional[bytes]]:
        return dict(self._writes)


@dataclass
class InvocationResponse:
    status: str                 # SUCCESS | ERROR
    tx_id: str
    payload: str = ""
    block_number: Optional[int] = None
    error_category: str = ""
    error_code: str = ""
    message: str = ""
    events: List[ContractEvent] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "SUCCESS"


# ── Simulated ledger (default, works with zero setup) ─────────────────────────
class SimulatedLedger:
    """
    In-memory ledger platform.
    Data resets when the process restarts — it stands in for the real network.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self.clock = clock or (lambda: int(time.time()))
        self.blocks: List[dict] = []
        self.block_number = 0
        self.world_state: Dict[str, bytes] = {}
        self._channels: Dict[str, Dict[str, Contract]] = {}
        self._listeners: List[Callable] = []
        self._deliveries: Set[asyncio.Task] = set()
        self._last_delivery: Optional[asyncio.Task] = None
        self._commit_lock = asyncio.Lock()
        self.running = False

    async def connect(self):
        if self.running:
            return
        logger.info("SimulatedLedger: ready (in-memory mode)")
        if not self.blocks:
            self._mine_block("GENESIS", {"message": "DigiID ledger genesis block"})
        self.running = True

    async def disconnect(self):
        self.running = False
        await self.drain_events()
        logger.info("SimulatedLedger: stopped")

    async def ping(self) -> str:
        return f"ok — simulated ledger, {len(self.blocks)} blocks"

    # ── Deployment ─────────────────────────────────────────────────────────
    def deploy(self, channel: str, contract: Contract):
        self._channels.setdefault(channel, {})[contract.name] = contract
        logger.info(f"Contract deployed: {contract.name} v{contract.version} on channel {channel}")

    def get_contract(self, channel: str, contract_name: str) -> Contract:
        contract = self._channels.get(channel, {}).get(contract_name)
        if contract is None:
            raise NotFoundError(f"Contract {contract_name} not deployed on channel {channel}")
        return contract

    def add_listener(self, callback: Callable):
        self._listeners.append(callback)

    # ── Blocks ─────────────────────────────────────────────────────────────
    @staticmethod
    def _block_hash(block: dict) -> str:
        payload = json.dumps({
            "block_number": block["block_number"],
            "block_type": block["block_type"],
            "data": block["data"],
            "prev_hash": block["prev_hash"],
            "timestamp": block["timestamp"],
        }, sort_keys=True)
        return hashlib.sha3_256(payload.encode()).hexdigest()

    def _mine_block(self, block_type: str, data: dict) -> dict:
        block = {
            "block_number": self.block_number,
            "block_type": block_type,
            "data": data,
            "prev_hash": self.blocks[-1]["hash"] if self.blocks else "0" * 64,
            "timestamp": self.clock(),
        }
        block["hash"] = self._block_hash(block)
        self.blocks.append(block)
        self.block_number += 1
        return block

    def verify_chain(self) -> bool:
        """Recompute every block hash and link; False if anything was altered."""
        prev_hash = "0" * 64
        for block in self.blocks:
            if block["prev_hash"] != prev_hash or self._block_hash(block) != block["hash"]:
                return False
            prev_hash = block["hash"]
        return True

    async def get_block(self, block_hash: str) -> Optional[dict]:
        for block in self.blocks:
            if block["hash"] == block_hash:
                return block
        return None

    async def get_all_blocks(self) -> list:
        return self.blocks

    # ── Invocation ─────────────────────────────────────────────────────────
    @staticmethod
    def _new_tx_id(identity: ClientIdentity) -> str:
        nonce = os.urandom(24)
        return hashlib.sha256(nonce + identity.msp_id.encode() + identity.label.encode()).hexdigest()

    async def invoke(
        self,
        channel: str,
        contract_name: str,
        operation: str,
        args: List[str],
        identity: ClientIdentity,
        submit: bool,
    ) -> InvocationResponse:
        if not self.running:
            raise ConnectivityError("Ledger platform is not running", code="PLATFORM_DOWN")
        tx_id = self._new_tx_id(identity)
        try:
            contract = self.get_contract(channel, contract_name)
            kind, fn = self._resolve(contract, operation, submit)
        except LedgerError as exc:
            return self._error(tx_id, exc)

        if kind == "evaluate":
            ctx = TransactionContext(self.world_state, tx_id, self.clock(), identity, read_only=True)
            return await self._run(ctx, fn, args)

        async with self._commit_lock:
            ctx = TransactionContext(self.world_state, tx_id, self.clock(), identity)
            response = await self._run(ctx, fn, args)
            if not response.ok:
                return response
            for key, value in ctx.write_set.items():
                if value is None:
                    self.world_state.pop(key, None)
                else:
                    self.world_state[key] = value
            block = self._mine_block("TRANSACTION", {
                "tx_id": tx_id,
                "contract": contract_name,
                "operation": operation,
                "creator": identity.msp_id,
                "args_hash": hashlib.sha256(json.dumps(args).encode()).hexdigest(),
                "writes": sorted(ctx.write_set),
            })
        response.block_number = block["block_number"]
        for event in ctx.events:
            event.block_number = block["block_number"]
        response.events = ctx.events
        self._dispatch(ctx.events)
        logger.info(f"Block #{block['block_number']} committed [{operation}] tx={tx_id[:16]}...")
        return response

    @staticmethod
    def _resolve(contract: Contract, operation: str, submit: bool):
        ops = contract.operations()
        if operation not in ops:
            raise ValidationError(f"Unknown operation {operation} on {contract.name}", code="UNKNOWN_OPERATION")
        kind, fn = ops[operation]
        if submit and kind == "evaluate":
            raise ValidationError(f"{operation} is read-only and must be evaluated, not submitted",
                                  code="WRONG_INVOCATION_PATH")
        if not submit and kind == "submit":
            raise ValidationError(f"{operation} mutates state and must be submitted, not evaluated",
                                  code="WRONG_INVOCATION_PATH")
        return kind, fn

    async def _run(self, ctx: TransactionContext, fn: Callable, args: List[str]) -> InvocationResponse:
        try:
            inspect.signature(fn).bind(ctx, *args)
        except TypeError as exc:
            return self._error(ctx.tx_id, ValidationError(f"Bad arguments: {exc}", code="BAD_ARGUMENTS"))
        try:
            result = await fn(ctx, *args)
        except LedgerError as exc:
            logger.info(f"tx {ctx.tx_id[:16]} rejected: {exc.code} — {exc.message}")
            return self._error(ctx.tx_id, exc)
        return InvocationResponse(status="SUCCESS", tx_id=ctx.tx_id, payload=json.dumps(result))

    @staticmethod
    def _error(tx_id: str, exc: LedgerError) -> InvocationResponse:
        return InvocationResponse(
            status="ERROR",
            tx_id=tx_id,
            error_category=exc.category,
            error_code=exc.code,
            message=exc.message,
        )

    # ── Event delivery ─────────────────────────────────────────────────────
    def _dispatch(self, events: List[ContractEvent]):
        if not events or not self._listeners:
            return
        task = asyncio.create_task(self._deliver(events, self._last_delivery))
        self._last_delivery = task
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def drain_events(self):
        """Wait until every committed event has reached the listeners."""
        while self._deliveries:
            await asyncio.gather(*self._deliveries)

    async def _deliver(self, events: List[ContractEvent], previous: Optional[asyncio.Task]):
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        for event in events:
            for listener in list(self._listeners):
                try:
                    outcome = listener(event)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    logger.exception(f"Event listener failed for {event.name} (tx already committed)")
