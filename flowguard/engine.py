"""
FlowGuard Engine

Front door that wires the builder, signing sessions, supervisor and
state store together.

    submit(request)
      │
      ├── fetch latest UTXO, soft-lock its outpoint
      ├── build descriptor  (one automatic rebuild on StaleState)
      ├── register created entities (PENDING), take one-per-actor records
      │
      ├── WALLET   return descriptor for the user's wallet
      ├── SESSION  open a signing session; lock passes to the session
      └── READY    broadcast now, apply optimistic status

    on_confirmed(utxo) / on_spent(entity_id)
      └── indexer callbacks: update the mirror, reconcile status
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from flowguard.abi import CovenantDeployment, DeploymentRegistry
from flowguard.builder import BuildMode, TransactionBuilder, UnsignedTxDescriptor
from flowguard.chain import BroadcastSink, WalletSigner
from flowguard.config import FlowGuardConfig, get_config
from flowguard.errors import BroadcastRejected, InvalidTransition, StaleState
from flowguard.hardening import CryptoUtils
from flowguard.keys import SigningKey, generate_claim_authority
from flowguard.observability import (
    FlowGuardLayer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
    timed_operation,
)
from flowguard.requests import is_create, parse_request
from flowguard.sessions import SessionCoordinator, SessionStatus, SigningSession, SubmissionResult
from flowguard.store import InMemoryStateStore, UtxoLockRegistry
from flowguard.supervisor import EntityKind, EntityStatus, StateSupervisor, status_for_state
from flowguard.transaction import Transaction
from flowguard.utxo import CovenantUTXO

logger = get_logger("engine", FlowGuardLayer.ENGINE)


@dataclass(frozen=True)
class EngineResult:
    """What a submitted operation produced."""
    descriptor: UnsignedTxDescriptor
    session_id: str = ""
    txid: str = ""

    @property
    def mode(self) -> BuildMode:
        return self.descriptor.mode

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "operation": self.descriptor.operation,
            "entity_id": self.descriptor.entity_id,
            "mode": self.mode.value,
        }
        if self.session_id:
            d["session_id"] = self.session_id
        if self.txid:
            d["txid"] = self.txid
        if self.mode is BuildMode.WALLET:
            d["descriptor"] = self.descriptor.to_dict()
        return d


class FlowGuardEngine:
    def __init__(
        self,
        sink: BroadcastSink,
        store=None,
        deployments: Optional[DeploymentRegistry] = None,
        config: Optional[FlowGuardConfig] = None,
        clock: Callable[[], int] = lambda: int(time.time()),
        supervisor: Optional[StateSupervisor] = None,
    ):
        self.store = store if store is not None else InMemoryStateStore()
        self.deployments = deployments or DeploymentRegistry()
        self.sink = sink
        self._config = config
        self.clock = clock
        self.locks = UtxoLockRegistry()
        self._pending: Dict[str, UnsignedTxDescriptor] = {}
        self._pending_lock = threading.Lock()
        self.builder = TransactionBuilder(self.store, self.deployments, config)
        self.supervisor = supervisor or StateSupervisor(self.store)
        self.sessions = SessionCoordinator(
            self.store,
            sink,
            config=config,
            clock=clock,
            on_broadcast=self._session_broadcast,
            on_close=self._session_closed,
        )

    @property
    def config(self) -> FlowGuardConfig:
        return self._config or get_config()

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def register_deployment(self, entity_id: str, deployment: CovenantDeployment) -> None:
        """Track a covenant deployed outside this engine."""
        self.deployments.register(entity_id, deployment)
        self.supervisor.register(entity_id, EntityKind.for_covenant(deployment.kind), now=self.clock())

    def generate_claim_authority(self) -> SigningKey:
        """New campaign claim-authority key, escrowed in the state store."""
        return generate_claim_authority(self.store)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def submit(self, request: Any, utxo: Optional[CovenantUTXO] = None) -> EngineResult:
        """Build and route one operation; ``request`` may be a raw JSON mapping."""
        if isinstance(request, Mapping):
            request = parse_request(request, self.config.limits)
        token = set_correlation_id(generate_correlation_id())
        try:
            return self._submit(request, utxo)
        finally:
            reset_correlation_id(token)

    @timed_operation(logger, "submit")
    def _submit(self, request: Any, utxo: Optional[CovenantUTXO]) -> EngineResult:
        now = self.clock()
        holder = f"op-{CryptoUtils.secure_random_hex(8)}"
        expires_at = now + self.config.sessions.ttl_seconds.get()

        if is_create(request):
            descriptor = self.builder.build(request, None, now)
            return self._dispatch(descriptor, holder, now)

        retries = self.config.sessions.stale_retry_limit.get()
        attempt = 0
        while True:
            current = utxo if (utxo is not None and attempt == 0) else self.store.get_latest_utxo(request.target)
            try:
                if current is not None:
                    self.locks.acquire(str(current.outpoint), holder, expires_at, now)
                descriptor = self.builder.build(request, current, now)
                for spent in descriptor.spent:
                    self.locks.acquire(str(spent.outpoint), holder, expires_at, now)
                break
            except StaleState as exc:
                self.locks.release_holder(holder)
                if attempt >= retries:
                    raise
                attempt += 1
                logger.info(
                    "Rebuilding against latest state",
                    entity_id=exc.entity_id,
                    attempt=attempt,
                    expected_sequence=exc.expected_sequence,
                    actual_sequence=exc.actual_sequence,
                )
            except Exception:
                self.locks.release_holder(holder)
                raise

        try:
            return self._dispatch(descriptor, holder, now)
        except Exception:
            self.locks.release_holder(holder)
            raise

    def _dispatch(self, descriptor: UnsignedTxDescriptor, holder: str, now: int) -> EngineResult:
        for created in descriptor.created:
            self.deployments.register(created.entity_id, created.deployment)
            self.supervisor.register(
                created.entity_id, EntityKind.for_covenant(created.deployment.kind), now=now,
            )

        logger.info("Built descriptor", **descriptor.summary())

        if descriptor.mode is BuildMode.WALLET:
            # Reservations wait for the wallet's transaction to confirm.
            if descriptor.reservations:
                with self._pending_lock:
                    for spent in descriptor.spent:
                        self._pending[str(spent.outpoint)] = descriptor
            return EngineResult(descriptor)

        if descriptor.mode is BuildMode.SESSION:
            session_id = self.sessions.create_session(descriptor, holder=holder)
            session = self.sessions.get(session_id)
            for spent in descriptor.spent:
                self.locks.transfer(str(spent.outpoint), holder, session_id, session.expires_at)
            return EngineResult(descriptor, session_id=session_id)

        try:
            txid = self.sink.broadcast(descriptor.transaction.to_hex())
        except BroadcastRejected as exc:
            logger.error(
                "Broadcast rejected",
                error_code=exc.kind,
                entity_id=descriptor.entity_id,
                reason=exc.reason,
            )
            raise
        self._after_broadcast(descriptor, txid)
        return EngineResult(descriptor, txid=txid)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def submit_signature(self, session_id: str, signer: str, signature: bytes) -> SubmissionResult:
        return self.sessions.submit_signature(session_id, signer, signature)

    def collect(self, session_id: str, wallet: WalletSigner) -> SubmissionResult:
        return self.sessions.collect(session_id, wallet)

    def expire_sessions(self, now: Optional[int] = None) -> List[str]:
        """
        Periodic sweep: close overdue sessions, drop expired soft locks and
        expire entities that never confirmed or outlived their window.

        Returns the ids of the sessions closed.
        """
        now = self.clock() if now is None else now
        expired = self.sessions.expire_stale(now)
        self.locks.expire(now)
        self.supervisor.expire(now, self.config.sessions.ttl_seconds.get())
        return expired

    def _session_broadcast(self, session: SigningSession, tx: Transaction) -> None:
        self._after_broadcast(session.descriptor, session.txid)

    def _session_closed(self, session: SigningSession) -> None:
        released = self.locks.release_holder(session.session_id)
        logger.debug("Released soft locks", session_id=session.session_id, outpoints=released)

    # -------------------------------------------------------------------------
    # Broadcast effects
    # -------------------------------------------------------------------------

    def _record_reservations(self, descriptor: UnsignedTxDescriptor) -> None:
        for reservation in descriptor.reservations:
            if reservation.kind == "approval":
                self.store.record_approval(reservation.scope, reservation.actor)
            elif reservation.kind == "vote":
                self.store.record_vote(reservation.scope, reservation.actor)
            elif reservation.kind == "claim":
                self.store.record_claim(reservation.scope, reservation.actor)

    def _after_broadcast(self, descriptor: UnsignedTxDescriptor, txid: str) -> None:
        self._record_reservations(descriptor)

        spend = descriptor.details.get("category_spend")
        if spend:
            self.store.add_category_spend(
                descriptor.details["vault_id"], descriptor.details["period_id"], spend
            )

        targets = {}
        continuing = descriptor.continuing_entity
        if continuing:
            kind = self.deployments.for_entity(continuing).kind
            targets[continuing] = status_for_state(kind, descriptor.successor_state)
        retired_as = EntityStatus.CANCELLED if descriptor.operation == "cancel" else EntityStatus.COMPLETED
        for entity_id in descriptor.retired:
            targets[entity_id] = retired_as

        for entity_id, target in targets.items():
            try:
                self.supervisor.apply_optimistic(entity_id, target, txid=txid)
            except InvalidTransition as exc:
                # Already on chain; the indexer's reconcile will settle it.
                logger.warning(
                    "Optimistic status not applied",
                    entity_id=entity_id,
                    target=target.value,
                    reason=exc.message,
                )

    # -------------------------------------------------------------------------
    # Indexer callbacks
    # -------------------------------------------------------------------------

    def on_confirmed(self, utxo: CovenantUTXO) -> CovenantUTXO:
        """A new covenant output for ``utxo.entity_id`` was indexed."""
        previous = self.store.get_latest_utxo(utxo.entity_id)
        stored = self.store.put_utxo(utxo)
        if previous is not None and previous.outpoint != stored.outpoint:
            pending = self._replaced(previous)
            if pending is not None and pending.successor_state == stored.state:
                self._record_reservations(pending)
        self.supervisor.reconcile(utxo.entity_id, stored)
        return stored

    def on_spent(self, entity_id: str, retired_as: EntityStatus = EntityStatus.COMPLETED) -> EntityStatus:
        """The covenant for ``entity_id`` was spent with no successor output."""
        previous = self.store.get_latest_utxo(entity_id)
        self.store.retire_utxo(entity_id)
        if previous is not None:
            self._replaced(previous)
        return self.supervisor.reconcile(entity_id, None, retired_as)

    def _replaced(self, previous: CovenantUTXO) -> Optional[UnsignedTxDescriptor]:
        """
        ``previous`` is no longer the live output: free its soft lock and
        abandon any session still collecting signatures against it.

        Returns the wallet descriptor last built on ``previous``, if any.
        """
        outpoint = str(previous.outpoint)
        holder = self.locks.holder_of(outpoint, self.clock())
        if holder is not None:
            self.locks.release(outpoint, holder)

        for session in self.sessions.sessions(SessionStatus.PENDING):
            if any(str(spent.outpoint) == outpoint for spent in session.descriptor.spent):
                logger.info(
                    "Abandoning session built on a spent output",
                    session_id=session.session_id,
                    outpoint=outpoint,
                )
                self.sessions.abandon(session.session_id)

        with self._pending_lock:
            pending = self._pending.pop(outpoint, None)
            if pending is not None:
                for spent in pending.spent:
                    if self._pending.get(str(spent.outpoint)) is pending:
                        del self._pending[str(spent.outpoint)]
        return pending
