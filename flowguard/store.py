"""
FlowGuard State Store

The key/value contract the engine consumes for its off-chain mirror, and
an in-memory implementation used by tests and single-process
deployments. The storage engine itself is out of scope; anything that
honours ``StateStore`` (SQL, KV, document store) can be dropped in.

Optimistic concurrency:
    Every covenant UTXO record carries a ``sequence``. ``put_utxo`` is a
    compare-and-swap on that sequence; a writer holding an older record
    gets StaleState and must rebuild against the latest one.

Soft locks:
    ``UtxoLockRegistry`` marks an outpoint as claimed by an in-flight
    operation (usually a signing session) until it is released or its
    expiry passes.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Mapping, Optional, Protocol, Set, Tuple, TypeVar

from flowguard.errors import StaleState, UtxoBusy
from flowguard.hardening import AtomicCounter, sat_add
from flowguard.utxo import CovenantUTXO

T = TypeVar("T")


# =============================================================================
# VERSIONED VALUES
# =============================================================================

@dataclass
class VersionedValue(Generic[T]):
    """A value with version for optimistic locking."""
    value: T
    version: int
    updated_at: str


class VersionedStore(Generic[T]):
    """
    Thread-safe versioned key-value store.

    Supports optimistic locking via compare-and-swap operations.
    Versions come from one store-wide counter, so they never repeat for a
    key even after a delete.
    """

    def __init__(self):
        self._data: Dict[str, VersionedValue[T]] = {}
        self._lock = threading.RLock()
        self._version_counter = AtomicCounter(0)

    def get(self, key: str) -> Optional[VersionedValue[T]]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: T) -> VersionedValue[T]:
        """Set value, assigning the next version."""
        with self._lock:
            versioned = VersionedValue(
                value=value,
                version=self._version_counter.increment(),
                updated_at=datetime.now(timezone.utc).isoformat(),
            )
            self._data[key] = versioned
            return versioned

    def compare_and_swap(
        self,
        key: str,
        expected_version: Optional[int],
        new_value: T,
    ) -> Tuple[bool, Optional[VersionedValue[T]]]:
        """
        Atomically update value if version matches.

        ``expected_version`` of None means "key must not exist yet".
        Returns (success, new_versioned_value or current_value).
        """
        with self._lock:
            current = self._data.get(key)
            current_version = current.version if current else None
            if current_version != expected_version:
                return (False, current)
            return (True, self.set(key, new_value))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())


# =============================================================================
# STORE CONTRACT
# =============================================================================

class StateStore(Protocol):
    """
    Persistence contract for the off-chain mirror.

    Implementations must make each method atomic with respect to the
    others for the same key.
    """

    def get_latest_utxo(self, entity_id: str) -> Optional[CovenantUTXO]:
        """Latest confirmed (or optimistically applied) UTXO, None once retired."""
        ...

    def put_utxo(self, utxo: CovenantUTXO, expected_sequence: Optional[int] = None) -> CovenantUTXO:
        """
        Replace the entity's UTXO, returning the stored record with its new sequence.

        When ``expected_sequence`` is given the write is a compare-and-swap
        and raises StaleState on mismatch.
        """
        ...

    def retire_utxo(self, entity_id: str, expected_sequence: Optional[int] = None) -> None:
        ...

    def is_retired(self, entity_id: str) -> bool:
        ...

    def put_status(self, entity_id: str, status: str) -> None:
        ...

    def get_status(self, entity_id: str) -> Optional[str]:
        ...

    def record_session(self, session: Any) -> None:
        ...

    def get_session(self, session_id: str) -> Optional[Any]:
        ...

    def escrow_secret(self, key: str, secret: bytes) -> None:
        ...

    def load_secret(self, key: str) -> Optional[bytes]:
        ...

    def record_approval(self, entity_id: str, signer: str) -> bool:
        """Record an approval; False if this signer already approved."""
        ...

    def has_approved(self, entity_id: str, signer: str) -> bool:
        ...

    def record_vote(self, tally_id: str, voter: str) -> bool:
        ...

    def has_voted(self, tally_id: str, voter: str) -> bool:
        ...

    def vote_count(self, tally_id: str) -> int:
        ...

    def record_claim(self, campaign_id: str, claimer: str) -> bool:
        ...

    def has_claimed(self, campaign_id: str, claimer: str) -> bool:
        ...

    def category_spent(self, vault_id: str, period_id: int) -> Dict[int, int]:
        ...

    def add_category_spend(self, vault_id: str, period_id: int, amounts: Mapping[int, int]) -> None:
        ...


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryStateStore:
    """Process-local StateStore."""

    def __init__(self):
        self._utxos: VersionedStore[CovenantUTXO] = VersionedStore()
        self._retired: Set[str] = set()
        self._statuses: Dict[str, str] = {}
        self._sessions: Dict[str, Any] = {}
        self._secrets: Dict[str, bytes] = {}
        self._approvals: Dict[str, Set[str]] = {}
        self._votes: Dict[str, Set[str]] = {}
        self._claims: Dict[str, Set[str]] = {}
        self._category_spend: Dict[Tuple[str, int], Dict[int, int]] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # UTXOs
    # -------------------------------------------------------------------------

    def get_latest_utxo(self, entity_id: str) -> Optional[CovenantUTXO]:
        with self._lock:
            versioned = self._utxos.get(entity_id)
            return versioned.value if versioned else None

    def put_utxo(self, utxo: CovenantUTXO, expected_sequence: Optional[int] = None) -> CovenantUTXO:
        with self._lock:
            if expected_sequence is None:
                versioned = self._utxos.set(utxo.entity_id, utxo)
            else:
                ok, versioned = self._utxos.compare_and_swap(utxo.entity_id, expected_sequence, utxo)
                if not ok:
                    raise StaleState(
                        utxo.entity_id,
                        expected_sequence=expected_sequence,
                        actual_sequence=versioned.version if versioned else None,
                    )
            stored = replace(utxo, sequence=versioned.version)
            versioned.value = stored
            self._retired.discard(utxo.entity_id)
            return stored

    def retire_utxo(self, entity_id: str, expected_sequence: Optional[int] = None) -> None:
        with self._lock:
            current = self._utxos.get(entity_id)
            if expected_sequence is not None and (current is None or current.version != expected_sequence):
                raise StaleState(
                    entity_id,
                    expected_sequence=expected_sequence,
                    actual_sequence=current.version if current else None,
                )
            self._utxos.delete(entity_id)
            self._retired.add(entity_id)

    def is_retired(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._retired

    # -------------------------------------------------------------------------
    # Statuses, sessions, secrets
    # -------------------------------------------------------------------------

    def put_status(self, entity_id: str, status: str) -> None:
        with self._lock:
            self._statuses[entity_id] = status

    def get_status(self, entity_id: str) -> Optional[str]:
        with self._lock:
            return self._statuses.get(entity_id)

    def record_session(self, session: Any) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get_session(self, session_id: str) -> Optional[Any]:
        with self._lock:
            return self._sessions.get(session_id)

    def escrow_secret(self, key: str, secret: bytes) -> None:
        with self._lock:
            self._secrets[key] = bytes(secret)

    def load_secret(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._secrets.get(key)

    # -------------------------------------------------------------------------
    # One-per-actor records
    # -------------------------------------------------------------------------

    @staticmethod
    def _add_once(table: Dict[str, Set[str]], key: str, member: str) -> bool:
        members = table.setdefault(key, set())
        if member in members:
            return False
        members.add(member)
        return True

    def record_approval(self, entity_id: str, signer: str) -> bool:
        with self._lock:
            return self._add_once(self._approvals, entity_id, signer)

    def has_approved(self, entity_id: str, signer: str) -> bool:
        with self._lock:
            return signer in self._approvals.get(entity_id, set())

    def record_vote(self, tally_id: str, voter: str) -> bool:
        with self._lock:
            return self._add_once(self._votes, tally_id, voter)

    def has_voted(self, tally_id: str, voter: str) -> bool:
        with self._lock:
            return voter in self._votes.get(tally_id, set())

    def vote_count(self, tally_id: str) -> int:
        with self._lock:
            return len(self._votes.get(tally_id, set()))

    def record_claim(self, campaign_id: str, claimer: str) -> bool:
        with self._lock:
            return self._add_once(self._claims, campaign_id, claimer)

    def has_claimed(self, campaign_id: str, claimer: str) -> bool:
        with self._lock:
            return claimer in self._claims.get(campaign_id, set())

    def category_spent(self, vault_id: str, period_id: int) -> Dict[int, int]:
        with self._lock:
            return dict(self._category_spend.get((vault_id, period_id), {}))

    def add_category_spend(self, vault_id: str, period_id: int, amounts: Mapping[int, int]) -> None:
        with self._lock:
            bucket = self._category_spend.setdefault((vault_id, period_id), {})
            for category_id, amount in amounts.items():
                bucket[category_id] = sat_add(bucket.get(category_id, 0), amount)


# =============================================================================
# SOFT LOCKS
# =============================================================================

@dataclass(frozen=True)
class SoftLock:
    outpoint: str
    holder: str
    expires_at: int


class UtxoLockRegistry:
    """
    Outpoint soft locks.

    A lock does not stop anyone spending the UTXO on chain; it stops this
    engine from building a second transaction against an outpoint that
    an unfinished operation already claims.
    """

    def __init__(self):
        self._locks: Dict[str, SoftLock] = {}
        self._lock = threading.Lock()

    def acquire(self, outpoint: str, holder: str, expires_at: int, now: int) -> SoftLock:
        """Take the lock for ``holder``; raises UtxoBusy if another live holder has it."""
        with self._lock:
            current = self._locks.get(outpoint)
            if current is not None and current.holder != holder and current.expires_at > now:
                raise UtxoBusy(outpoint, current.holder, current.expires_at)
            lock = SoftLock(outpoint, holder, expires_at)
            self._locks[outpoint] = lock
            return lock

    def transfer(self, outpoint: str, old_holder: str, new_holder: str, expires_at: int) -> None:
        """Hand a held lock to a new holder (e.g. from a build to its signing session)."""
        with self._lock:
            current = self._locks.get(outpoint)
            if current is not None and current.holder == old_holder:
                self._locks[outpoint] = SoftLock(outpoint, new_holder, expires_at)

    def release(self, outpoint: str, holder: str) -> bool:
        with self._lock:
            current = self._locks.get(outpoint)
            if current is not None and current.holder == holder:
                del self._locks[outpoint]
                return True
            return False

    def release_holder(self, holder: str) -> List[str]:
        with self._lock:
            released = [op for op, lock in self._locks.items() if lock.holder == holder]
            for op in released:
                del self._locks[op]
            return released

    def holder_of(self, outpoint: str, now: int) -> Optional[str]:
        with self._lock:
            current = self._locks.get(outpoint)
            if current is None or current.expires_at <= now:
                return None
            return current.holder

    def expire(self, now: int) -> List[str]:
        with self._lock:
            expired = [op for op, lock in self._locks.items() if lock.expires_at <= now]
            for op in expired:
                del self._locks[op]
            return expired
