"""
FlowGuard State Machine Supervisor

Mirrors the lifecycle status of every entity the engine manages and is
the only component that writes status into the state store.

Lifecycle (every kind):

    PENDING ──(creation confirmed)──▶ ACTIVE ──▶ ... ──▶ COMPLETED
       │                                │                CANCELLED
       └──────────(never confirmed)─────┴──────────────▶ EXPIRED

Status changes arrive two ways:

    optimistic     the known effect of a transaction this engine built
                   and broadcast; checked against the kind's table
    reconciled     the re-indexed on-chain UTXO (or its retirement);
                   authoritative, overrides any optimistic status

Every write is appended to a hash-chained audit trail.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Set

from flowguard.codec import (
    CampaignStatus,
    CovenantKind,
    CovenantState,
    ProposalStatus,
    TallyState,
    VaultStatus,
)
from flowguard.errors import InvalidTransition
from flowguard.hardening import InvariantChecker, KeyedLocks
from flowguard.observability import AuditLogger, FlowGuardLayer, get_logger
from flowguard.utxo import CovenantUTXO

logger = get_logger("supervisor", FlowGuardLayer.SUPERVISOR)


# =============================================================================
# STATUSES
# =============================================================================

class EntityKind(Enum):
    VAULT = "vault"
    PROPOSAL = "proposal"
    STREAM = "stream"
    CAMPAIGN = "campaign"
    VOTE = "vote"

    @classmethod
    def for_covenant(cls, kind: CovenantKind) -> "EntityKind":
        return _COVENANT_ENTITY[kind]


_COVENANT_ENTITY = {
    CovenantKind.VAULT: EntityKind.VAULT,
    CovenantKind.PROPOSAL: EntityKind.PROPOSAL,
    CovenantKind.SCHEDULE: EntityKind.STREAM,
    CovenantKind.CAMPAIGN: EntityKind.CAMPAIGN,
    CovenantKind.TALLY: EntityKind.VOTE,
    CovenantKind.VOTE_LOCK: EntityKind.VOTE,
}


class EntityStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    LOCKED = "locked"
    MIGRATING = "migrating"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self in {EntityStatus.COMPLETED, EntityStatus.CANCELLED, EntityStatus.EXPIRED}


_S = EntityStatus

TRANSITIONS: Dict[EntityKind, Dict[EntityStatus, Set[EntityStatus]]] = {
    EntityKind.VAULT: {
        _S.PENDING: {_S.ACTIVE, _S.EXPIRED},
        _S.ACTIVE: {_S.PAUSED, _S.LOCKED, _S.MIGRATING},
        _S.PAUSED: {_S.ACTIVE, _S.LOCKED},
        _S.LOCKED: {_S.PAUSED},
        _S.MIGRATING: {_S.COMPLETED},
    },
    EntityKind.PROPOSAL: {
        _S.PENDING: {_S.ACTIVE, _S.EXPIRED},
        _S.ACTIVE: {_S.APPROVED, _S.CANCELLED, _S.EXPIRED},
        _S.APPROVED: {_S.COMPLETED, _S.CANCELLED, _S.EXPIRED},
    },
    EntityKind.STREAM: {
        _S.PENDING: {_S.ACTIVE, _S.EXPIRED},
        _S.ACTIVE: {_S.COMPLETED, _S.CANCELLED},
    },
    EntityKind.CAMPAIGN: {
        _S.PENDING: {_S.ACTIVE, _S.EXPIRED},
        _S.ACTIVE: {_S.PAUSED, _S.COMPLETED, _S.CANCELLED},
        _S.PAUSED: {_S.ACTIVE, _S.CANCELLED},
    },
    EntityKind.VOTE: {
        _S.PENDING: {_S.ACTIVE, _S.EXPIRED},
        _S.ACTIVE: {_S.COMPLETED},
    },
}

_VAULT_STATUS = {
    VaultStatus.ACTIVE: _S.ACTIVE,
    VaultStatus.PAUSED: _S.PAUSED,
    VaultStatus.EMERGENCY_LOCK: _S.LOCKED,
    VaultStatus.MIGRATING: _S.MIGRATING,
}

_PROPOSAL_STATUS = {
    ProposalStatus.DRAFT: _S.ACTIVE,
    ProposalStatus.SUBMITTED: _S.ACTIVE,
    ProposalStatus.VOTING: _S.ACTIVE,
    ProposalStatus.APPROVED: _S.APPROVED,
    ProposalStatus.QUEUED: _S.APPROVED,
    ProposalStatus.EXECUTABLE: _S.APPROVED,
    ProposalStatus.EXECUTED: _S.COMPLETED,
    ProposalStatus.CANCELLED: _S.CANCELLED,
    ProposalStatus.EXPIRED: _S.EXPIRED,
}

_CAMPAIGN_STATUS = {
    CampaignStatus.ACTIVE: _S.ACTIVE,
    CampaignStatus.PAUSED: _S.PAUSED,
    CampaignStatus.CANCELLED: _S.CANCELLED,
    CampaignStatus.COMPLETED: _S.COMPLETED,
}


def status_for_state(kind: CovenantKind, state: CovenantState) -> EntityStatus:
    """Lifecycle status implied by a live covenant commitment."""
    if kind is CovenantKind.VAULT:
        return _VAULT_STATUS[state.status]
    if kind is CovenantKind.PROPOSAL:
        return _PROPOSAL_STATUS[state.status]
    if kind is CovenantKind.CAMPAIGN:
        return _CAMPAIGN_STATUS[state.status]
    if kind is CovenantKind.TALLY:
        return _S.COMPLETED if isinstance(state, TallyState) and state.tally_timestamp else _S.ACTIVE
    return _S.ACTIVE


# =============================================================================
# SUPERVISOR
# =============================================================================

class StateSupervisor:
    """Single writer of entity status into the state store."""

    def __init__(self, store, audit: Optional[AuditLogger] = None):
        self.store = store
        self.audit = audit or AuditLogger(get_logger("audit", FlowGuardLayer.SUPERVISOR))
        self._kinds: Dict[str, EntityKind] = {}
        self._registered_at: Dict[str, int] = {}
        self._locks = KeyedLocks()

    def kind_of(self, entity_id: str) -> EntityKind:
        kind = self._kinds.get(entity_id)
        if kind is None:
            raise InvalidTransition(f"{entity_id} is not supervised", field="entity_id")
        return kind

    def status(self, entity_id: str) -> Optional[EntityStatus]:
        raw = self.store.get_status(entity_id)
        return EntityStatus(raw) if raw else None

    def _write(self, entity_id: str, status: EntityStatus, action: str, actor: str, **details) -> None:
        self.store.put_status(entity_id, status.value)
        self.audit.log(
            actor=actor,
            action=action,
            entity_kind=self._kinds[entity_id].value,
            entity_id=entity_id,
            outcome=status.value,
            **details,
        )

    def register(
        self,
        entity_id: str,
        kind: EntityKind,
        actor: str = "engine",
        now: Optional[int] = None,
    ) -> EntityStatus:
        """Start tracking a newly built entity in PENDING.

        ``now`` starts the clock for :meth:`expire`; entities registered
        without it are never expired for want of a confirmation.
        """
        with self._locks.hold(entity_id):
            known = self._kinds.get(entity_id)
            if known is not None:
                if known is not kind:
                    raise InvalidTransition(
                        f"{entity_id} already registered as {known.value}",
                        field="kind",
                    )
                return self.status(entity_id) or EntityStatus.PENDING
            self._kinds[entity_id] = kind
            if now is not None:
                self._registered_at[entity_id] = now
            self._write(entity_id, EntityStatus.PENDING, "register", actor)
            return EntityStatus.PENDING

    def apply_optimistic(
        self,
        entity_id: str,
        target: EntityStatus,
        txid: str = "",
        actor: str = "engine",
    ) -> EntityStatus:
        """Apply the known effect of a broadcast transaction; rejects illegal moves."""
        with self._locks.hold(entity_id):
            kind = self.kind_of(entity_id)
            current = self.status(entity_id) or EntityStatus.PENDING
            if current is target:
                return current
            InvariantChecker.check_state_transition(current, target, TRANSITIONS[kind])
            self._write(entity_id, target, "optimistic", actor, txid=txid, previous=current.value)
            return target

    def reconcile(
        self,
        entity_id: str,
        utxo: Optional[CovenantUTXO],
        retired_as: EntityStatus = EntityStatus.COMPLETED,
    ) -> EntityStatus:
        """
        Set status from the indexed chain state.

        ``utxo`` is the latest confirmed output, or None once the covenant
        has been spent without a successor; in that case an already
        terminal status is kept and anything else becomes ``retired_as``.
        """
        with self._locks.hold(entity_id):
            if utxo is not None and entity_id not in self._kinds:
                self._kinds[entity_id] = EntityKind.for_covenant(utxo.kind)
            self.kind_of(entity_id)
            current = self.status(entity_id)

            if utxo is not None:
                target = status_for_state(utxo.kind, utxo.state)
            elif current is not None and current.is_terminal():
                target = current
            else:
                target = retired_as

            if current is target:
                return target
            if current is not None and current is not EntityStatus.PENDING:
                logger.warning(
                    "Chain state overrides mirrored status",
                    entity_id=entity_id,
                    mirrored=current.value,
                    chain=target.value,
                )
            self._write(
                entity_id, target, "reconcile", "indexer",
                previous=current.value if current else "",
                outpoint=str(utxo.outpoint) if utxo is not None else "",
            )
            return target

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def expire(self, now: int, pending_ttl: int, actor: str = "supervisor") -> List[str]:
        """
        Expire entities that can no longer progress; returns their ids.

        - PENDING entities with no confirmed output ``pending_ttl`` seconds
          after registration (the creating transaction was never mined)
        - ACTIVE proposals whose voting window closed before the threshold

        Approved proposals carry no on-chain execution deadline and stay
        APPROVED until executed or cancelled.
        """
        expired = []
        for entity_id in list(self._kinds):
            with self._locks.hold(entity_id):
                current = self.status(entity_id)
                utxo = self.store.get_latest_utxo(entity_id)
                if current is EntityStatus.PENDING:
                    registered = self._registered_at.get(entity_id)
                    if utxo is not None or registered is None or now < registered + pending_ttl:
                        continue
                    reason = "unconfirmed"
                elif current is EntityStatus.ACTIVE and self._kinds[entity_id] is EntityKind.PROPOSAL:
                    if utxo is None or not _voting_closed(utxo.state, now):
                        continue
                    reason = "voting_closed"
                else:
                    continue
                self._write(entity_id, EntityStatus.EXPIRED, "expire", actor, previous=current.value, reason=reason)
                self._registered_at.pop(entity_id, None)
                expired.append(entity_id)
        if expired:
            logger.info("Expired entities", operation="expire", count=len(expired))
        return expired


def _voting_closed(state: CovenantState, now: int) -> bool:
    end = getattr(state, "voting_end_timestamp", 0)
    return bool(end) and now >= end and state.status in {
        ProposalStatus.DRAFT,
        ProposalStatus.SUBMITTED,
        ProposalStatus.VOTING,
    }
