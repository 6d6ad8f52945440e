"""
FlowGuard Signing Sessions

M-of-N signature collection for treasury spends.

    PENDING ──(threshold reached, broadcast accepted)──▶ BROADCASTED
       │
       └──(expiry, abandonment, broadcast rejected)────▶ EXPIRED

Signers submit independently, possibly hours apart. Submissions to one
session are serialized on a per-session lock, so exactly one caller
sees the threshold crossed and exactly one broadcast is attempted. A
submission after broadcast is a no-op that returns the known txid.

Reaching the threshold is not an error: until then ``submit_signature``
returns ``SubmissionResult.pending(collected, required)``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from flowguard.builder import BuildMode, SignerSpec, UnsignedTxDescriptor
from flowguard.chain import BroadcastSink, WalletSigner
from flowguard.config import FlowGuardConfig, get_config
from flowguard.errors import (
    BroadcastRejected,
    InvalidSignature,
    SessionError,
    SessionExpired,
    UnauthorizedSigner,
    UnknownSession,
)
from flowguard.hardening import CryptoUtils, KeyedLocks
from flowguard.keys import verify_signature
from flowguard.observability import FlowGuardLayer, get_logger
from flowguard.transaction import Transaction, verify_outputs

logger = get_logger("sessions", FlowGuardLayer.SESSIONS)


class SessionStatus(Enum):
    PENDING = "pending"
    BROADCASTED = "broadcasted"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self is not SessionStatus.PENDING


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of a signature submission: still collecting, or broadcast."""
    status: SessionStatus
    collected: int = 0
    required: int = 0
    txid: str = ""

    @classmethod
    def pending(cls, collected: int, required: int) -> "SubmissionResult":
        return cls(SessionStatus.PENDING, collected=collected, required=required)

    @classmethod
    def broadcasted(cls, txid: str, collected: int = 0, required: int = 0) -> "SubmissionResult":
        return cls(SessionStatus.BROADCASTED, collected=collected, required=required, txid=txid)

    @property
    def is_broadcasted(self) -> bool:
        return self.status is SessionStatus.BROADCASTED

    def to_dict(self) -> Dict[str, Any]:
        if self.is_broadcasted:
            return {"status": self.status.value, "txid": self.txid}
        return {"status": self.status.value, "collected": self.collected, "required": self.required}


@dataclass
class SigningSession:
    session_id: str
    descriptor: UnsignedTxDescriptor
    signers: List[SignerSpec]
    threshold: int
    digest: bytes
    created_at: int
    expires_at: int
    holder: str = ""
    status: SessionStatus = SessionStatus.PENDING
    signatures: Dict[str, bytes] = field(default_factory=dict)
    txid: str = ""
    rejection_reason: str = ""

    @property
    def collected(self) -> int:
        return len(self.signatures)

    def signer(self, identity: str) -> Optional[SignerSpec]:
        for s in self.signers:
            if s.identity == identity:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "operation": self.descriptor.operation,
            "entity_id": self.descriptor.entity_id,
            "status": self.status.value,
            "threshold": self.threshold,
            "collected": sorted(self.signatures),
            "signers": [s.identity for s in self.signers],
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "txid": self.txid,
            "rejection_reason": self.rejection_reason,
        }


BroadcastHook = Callable[[SigningSession, Transaction], None]
CloseHook = Callable[[SigningSession], None]


class SessionCoordinator:
    """
    Creates sessions, collects signatures and broadcasts exactly once.

    ``on_broadcast`` runs under the session lock after the sink accepts
    the transaction; ``on_close`` runs whenever a session ends without a
    broadcast (expiry, abandonment, rejection) so the caller can release
    the UTXO soft lock.
    """

    def __init__(
        self,
        store,
        sink: BroadcastSink,
        config: Optional[FlowGuardConfig] = None,
        clock: Callable[[], int] = lambda: int(time.time()),
        on_broadcast: Optional[BroadcastHook] = None,
        on_close: Optional[CloseHook] = None,
    ):
        self.store = store
        self.sink = sink
        self._config = config
        self.clock = clock
        self.on_broadcast = on_broadcast
        self.on_close = on_close
        self._sessions: Dict[str, SigningSession] = {}
        self._registry_lock = threading.Lock()
        self._locks = KeyedLocks()

    @property
    def config(self) -> FlowGuardConfig:
        return self._config or get_config()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create_session(
        self,
        descriptor: UnsignedTxDescriptor,
        required_signers: Optional[Sequence[SignerSpec]] = None,
        threshold: Optional[int] = None,
        ttl: Optional[int] = None,
        holder: str = "",
    ) -> str:
        if descriptor.mode is not BuildMode.SESSION:
            raise SessionError(
                f"{descriptor.operation} descriptors are not collected in sessions",
                field="mode",
            )
        signers = list(required_signers if required_signers is not None else descriptor.signers)
        threshold = descriptor.threshold if threshold is None else threshold
        if not 1 <= threshold <= len(signers):
            raise SessionError(f"threshold {threshold} with {len(signers)} signers", field="threshold")
        if threshold > len(descriptor.signature_slots):
            raise SessionError(
                f"threshold {threshold} exceeds {len(descriptor.signature_slots)} signature slots",
                field="threshold",
            )

        now = self.clock()
        session = SigningSession(
            session_id=f"sess-{CryptoUtils.secure_random_hex(12)}",
            descriptor=descriptor,
            signers=signers,
            threshold=threshold,
            digest=descriptor.signing_digest(),
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.config.sessions.ttl_seconds.get()),
            holder=holder,
        )
        with self._registry_lock:
            self._sessions[session.session_id] = session
        self.store.record_session(session)
        logger.info(
            "Signing session opened",
            operation="create_session",
            session_id=session.session_id,
            entity_id=descriptor.entity_id,
            threshold=threshold,
            signers=len(signers),
        )
        return session.session_id

    def get(self, session_id: str) -> SigningSession:
        with self._registry_lock:
            session = self._sessions.get(session_id)
        if session is None:
            session = self.store.get_session(session_id)
            if session is None:
                raise UnknownSession(f"no session {session_id}", field="session_id")
            with self._registry_lock:
                session = self._sessions.setdefault(session_id, session)
        return session

    def sessions(self, status: Optional[SessionStatus] = None) -> List[SigningSession]:
        with self._registry_lock:
            found = list(self._sessions.values())
        return [s for s in found if status is None or s.status is status]

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit_signature(self, session_id: str, signer: str, signature: bytes) -> SubmissionResult:
        session = self.get(session_id)
        try:
            return self._submit(session, signer, signature)
        finally:
            self._forget_lock(session)

    def _submit(self, session: SigningSession, signer: str, signature: bytes) -> SubmissionResult:
        session_id = session.session_id
        with self._locks.hold(session_id):
            if session.status is SessionStatus.BROADCASTED:
                return SubmissionResult.broadcasted(session.txid, session.collected, session.threshold)
            if session.status is SessionStatus.EXPIRED:
                raise SessionExpired(
                    session.rejection_reason or f"session {session_id} expired",
                    field="session_id",
                )
            if self.clock() >= session.expires_at:
                self._close(session, "expired")
                raise SessionExpired(f"session {session_id} expired at {session.expires_at}", field="session_id")

            spec = session.signer(signer)
            if spec is None:
                raise UnauthorizedSigner(f"{signer} is not a signer for this session", field="signer")
            if self.config.sessions.verify_signatures.get():
                if not verify_signature(spec.pubkey, session.digest, signature):
                    raise InvalidSignature(f"signature from {signer} does not verify", field="signature")

            if signer in session.signatures:
                logger.debug("Duplicate signature ignored", session_id=session_id, signer=signer)
            else:
                session.signatures[signer] = bytes(signature)
            self.store.record_session(session)

            if session.collected < session.threshold:
                return SubmissionResult.pending(session.collected, session.threshold)
            return self._finalize(session)

    def _finalize(self, session: SigningSession) -> SubmissionResult:
        descriptor = session.descriptor
        tx = descriptor.assemble(session.signatures)
        if descriptor.successor is not None:
            problems = verify_outputs(tx, [descriptor.successor])
            if problems:
                raise SessionError("; ".join(problems), field="transaction")

        try:
            txid = self.sink.broadcast(tx.to_hex())
        except BroadcastRejected as exc:
            session.rejection_reason = exc.reason
            self._close(session, "rejected")
            logger.error(
                "Broadcast rejected",
                error_code=exc.kind,
                session_id=session.session_id,
                reason=exc.reason,
            )
            raise

        session.status = SessionStatus.BROADCASTED
        session.txid = txid
        self.store.record_session(session)
        logger.info(
            "Session broadcast",
            operation="broadcast",
            session_id=session.session_id,
            entity_id=descriptor.entity_id,
            txid=txid,
        )
        if self.on_broadcast is not None:
            self.on_broadcast(session, tx)
        return SubmissionResult.broadcasted(txid, session.collected, session.threshold)

    def collect(self, session_id: str, wallet: WalletSigner) -> SubmissionResult:
        """Request each outstanding signature from ``wallet`` until broadcast."""
        session = self.get(session_id)
        result = SubmissionResult.pending(session.collected, session.threshold)
        for spec in session.signers:
            if result.is_broadcasted:
                break
            if spec.identity in session.signatures:
                continue
            try:
                signature = wallet.request_signature(session.digest, spec.identity)
            except UnauthorizedSigner:
                logger.warning("Wallet cannot sign", session_id=session_id, signer=spec.identity)
                continue
            result = self.submit_signature(session_id, spec.identity, signature)
        return result

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def _close(self, session: SigningSession, reason: str) -> None:
        session.status = SessionStatus.EXPIRED
        if not session.rejection_reason:
            session.rejection_reason = reason
        self.store.record_session(session)
        logger.info("Session closed", session_id=session.session_id, reason=reason)
        if self.on_close is not None:
            self.on_close(session)

    def _forget_lock(self, session: SigningSession) -> None:
        if session.status is not SessionStatus.PENDING:
            self._locks.discard(session.session_id)

    def abandon(self, session_id: str) -> SigningSession:
        session = self.get(session_id)
        with self._locks.hold(session_id):
            if session.status is SessionStatus.PENDING:
                self._close(session, "abandoned")
        self._forget_lock(session)
        return session

    def expire_stale(self, now: Optional[int] = None) -> List[str]:
        """Expire every pending session past its deadline; returns their ids."""
        now = self.clock() if now is None else now
        expired = []
        for session in self.sessions(SessionStatus.PENDING):
            with self._locks.hold(session.session_id):
                if session.status is SessionStatus.PENDING and now >= session.expires_at:
                    self._close(session, "expired")
                    expired.append(session.session_id)
            self._forget_lock(session)
        return expired
