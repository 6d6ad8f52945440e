"""
State Machine Supervisor Test Suite

Tests the mirrored lifecycle status:
- Registration in PENDING
- Optimistic transitions checked against per-kind tables
- Reconciliation from indexed chain state
- Hash-chained audit trail

Run with: pytest tests/test_supervisor.py -v
"""

import pytest

from conftest import entity_hex
from flowguard.codec import (
    CampaignState,
    CampaignStatus,
    CovenantKind,
    ProposalState,
    ProposalStatus,
    ScheduleState,
    TallyState,
    VaultState,
    VaultStatus,
)
from flowguard.errors import InvalidTransition
from flowguard.supervisor import (
    TRANSITIONS,
    EntityKind,
    EntityStatus,
    StateSupervisor,
    status_for_state,
)

VAULT = entity_hex("vault")
PROPOSAL = entity_hex("proposal")


@pytest.fixture
def supervisor(store):
    return StateSupervisor(store)


class TestStatusMapping:
    """Tests for deriving lifecycle status from commitments."""

    def test_covenant_kinds(self):
        assert EntityKind.for_covenant(CovenantKind.SCHEDULE) is EntityKind.STREAM
        assert EntityKind.for_covenant(CovenantKind.TALLY) is EntityKind.VOTE
        assert EntityKind.for_covenant(CovenantKind.VOTE_LOCK) is EntityKind.VOTE

    @pytest.mark.parametrize("kind,state,expected", [
        (CovenantKind.VAULT, VaultState(status=VaultStatus.EMERGENCY_LOCK), EntityStatus.LOCKED),
        (CovenantKind.PROPOSAL, ProposalState(status=ProposalStatus.SUBMITTED), EntityStatus.ACTIVE),
        (CovenantKind.PROPOSAL, ProposalState(status=ProposalStatus.QUEUED), EntityStatus.APPROVED),
        (CovenantKind.PROPOSAL, ProposalState(status=ProposalStatus.EXECUTED), EntityStatus.COMPLETED),
        (CovenantKind.CAMPAIGN, CampaignState(status=CampaignStatus.PAUSED), EntityStatus.PAUSED),
        (CovenantKind.TALLY, TallyState(), EntityStatus.ACTIVE),
        (CovenantKind.TALLY, TallyState(tally_timestamp=5), EntityStatus.COMPLETED),
        (CovenantKind.SCHEDULE, ScheduleState(), EntityStatus.ACTIVE),
    ])
    def test_status_for_state(self, kind, state, expected):
        assert status_for_state(kind, state) is expected

    def test_every_kind_starts_pending(self):
        for table in TRANSITIONS.values():
            assert EntityStatus.ACTIVE in table[EntityStatus.PENDING]
            assert EntityStatus.EXPIRED in table[EntityStatus.PENDING]

    def test_terminal_statuses_have_no_exits(self):
        for table in TRANSITIONS.values():
            for status in table:
                assert not status.is_terminal()


class TestRegistration:
    """Tests for tracking new entities."""

    def test_register_pending(self, supervisor, store):
        assert supervisor.register(VAULT, EntityKind.VAULT) is EntityStatus.PENDING
        assert store.get_status(VAULT) == "pending"
        assert supervisor.status(VAULT) is EntityStatus.PENDING

    def test_register_twice(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE)
        assert supervisor.register(VAULT, EntityKind.VAULT) is EntityStatus.ACTIVE

    def test_register_conflicting_kind(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        with pytest.raises(InvalidTransition) as exc_info:
            supervisor.register(VAULT, EntityKind.PROPOSAL)
        assert exc_info.value.field == "kind"

    def test_unsupervised_entity(self, supervisor):
        with pytest.raises(InvalidTransition) as exc_info:
            supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE)
        assert exc_info.value.field == "entity_id"


class TestOptimistic:
    """Tests for statuses applied after this engine's broadcasts."""

    def test_legal_path(self, supervisor):
        supervisor.register(PROPOSAL, EntityKind.PROPOSAL)
        for target in (EntityStatus.ACTIVE, EntityStatus.APPROVED, EntityStatus.COMPLETED):
            assert supervisor.apply_optimistic(PROPOSAL, target, txid="t") is target
        assert supervisor.status(PROPOSAL) is EntityStatus.COMPLETED

    def test_illegal_move_rejected(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE)
        with pytest.raises(InvalidTransition):
            supervisor.apply_optimistic(VAULT, EntityStatus.COMPLETED)
        assert supervisor.status(VAULT) is EntityStatus.ACTIVE

    def test_terminal_is_final(self, supervisor):
        supervisor.register(PROPOSAL, EntityKind.PROPOSAL)
        supervisor.apply_optimistic(PROPOSAL, EntityStatus.EXPIRED)
        with pytest.raises(InvalidTransition):
            supervisor.apply_optimistic(PROPOSAL, EntityStatus.ACTIVE)

    def test_same_status_is_noop(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE)
        before = len(supervisor.audit.events)
        supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE)
        assert len(supervisor.audit.events) == before


class TestReconcile:
    """Tests for authoritative chain state."""

    def test_reconcile_registers_unknown_entity(self, supervisor, covenants):
        covenants.deploy(CovenantKind.VAULT, VAULT)
        utxo = covenants.utxo(VAULT, VaultState(status=VaultStatus.PAUSED), 5000)
        assert supervisor.reconcile(VAULT, utxo) is EntityStatus.PAUSED
        assert supervisor.kind_of(VAULT) is EntityKind.VAULT

    def test_chain_overrides_optimistic(self, supervisor, covenants):
        """Chain state wins even where the optimistic table has no such move."""
        covenants.deploy(CovenantKind.PROPOSAL, PROPOSAL)
        supervisor.register(PROPOSAL, EntityKind.PROPOSAL)
        supervisor.apply_optimistic(PROPOSAL, EntityStatus.ACTIVE)
        supervisor.apply_optimistic(PROPOSAL, EntityStatus.CANCELLED)
        utxo = covenants.utxo(PROPOSAL, ProposalState(status=ProposalStatus.APPROVED, approval_count=1), 5000)
        assert supervisor.reconcile(PROPOSAL, utxo) is EntityStatus.APPROVED
        assert supervisor.status(PROPOSAL) is EntityStatus.APPROVED

    def test_retired_without_successor(self, supervisor):
        supervisor.register(PROPOSAL, EntityKind.PROPOSAL)
        supervisor.apply_optimistic(PROPOSAL, EntityStatus.ACTIVE)
        assert supervisor.reconcile(PROPOSAL, None, EntityStatus.CANCELLED) is EntityStatus.CANCELLED

    def test_retirement_keeps_terminal_status(self, supervisor):
        supervisor.register(PROPOSAL, EntityKind.PROPOSAL)
        supervisor.apply_optimistic(PROPOSAL, EntityStatus.EXPIRED)
        assert supervisor.reconcile(PROPOSAL, None) is EntityStatus.EXPIRED

    def test_retirement_of_unknown_entity(self, supervisor):
        with pytest.raises(InvalidTransition):
            supervisor.reconcile(PROPOSAL, None)


class TestAuditTrail:
    """Tests for the hash-chained status log."""

    def test_every_write_audited(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE, txid="ab" * 32)
        events = supervisor.audit.events_for(VAULT)
        assert [e.action for e in events] == ["register", "optimistic"]
        assert events[1].outcome == "active"
        assert events[1].details["previous"] == "pending"
        assert events[1].previous_hash == events[0].event_hash

    def test_chain_verifies_and_detects_tampering(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        supervisor.apply_optimistic(VAULT, EntityStatus.ACTIVE)
        supervisor.apply_optimistic(VAULT, EntityStatus.PAUSED)
        assert supervisor.audit.verify_chain()
        supervisor.audit._events[1].outcome = "locked"
        assert not supervisor.audit.verify_chain()


class TestExpiry:
    """Tests for the expiry sweep."""

    def test_unconfirmed_entity_expires_after_ttl(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT, now=1000)
        assert supervisor.expire(1000 + 599, 600) == []
        assert supervisor.expire(1000 + 600, 600) == [VAULT]
        assert supervisor.status(VAULT) is EntityStatus.EXPIRED
        event = supervisor.audit.events_for(VAULT)[-1]
        assert event.action == "expire"
        assert event.actor == "supervisor"
        assert event.details == {"previous": "pending", "reason": "unconfirmed"}

    def test_confirmed_entity_not_expired(self, supervisor, covenants):
        covenants.deploy(CovenantKind.VAULT, VAULT)
        supervisor.register(VAULT, EntityKind.VAULT, now=1000)
        covenants.utxo(VAULT, VaultState(), 5000)
        assert supervisor.expire(10_000, 600) == []
        assert supervisor.status(VAULT) is EntityStatus.PENDING

    def test_registration_without_clock_never_expires(self, supervisor):
        supervisor.register(VAULT, EntityKind.VAULT)
        assert supervisor.expire(10 ** 9, 600) == []

    def test_proposal_past_voting_window(self, supervisor, covenants):
        covenants.deploy(CovenantKind.PROPOSAL, PROPOSAL)
        utxo = covenants.utxo(PROPOSAL, ProposalState(
            status=ProposalStatus.SUBMITTED, required_approvals=2, voting_end_timestamp=5000,
        ), 5000)
        supervisor.reconcile(PROPOSAL, utxo)
        assert supervisor.expire(4999, 600) == []
        assert supervisor.expire(5000, 600) == [PROPOSAL]
        assert supervisor.status(PROPOSAL) is EntityStatus.EXPIRED
        assert supervisor.audit.events_for(PROPOSAL)[-1].details["reason"] == "voting_closed"

    @pytest.mark.parametrize("state", [
        ProposalState(status=ProposalStatus.SUBMITTED),
        ProposalState(status=ProposalStatus.APPROVED, approval_count=2, voting_end_timestamp=5000),
    ])
    def test_proposals_that_stay_live(self, supervisor, covenants, state):
        covenants.deploy(CovenantKind.PROPOSAL, PROPOSAL)
        supervisor.reconcile(PROPOSAL, covenants.utxo(PROPOSAL, state, 5000))
        assert supervisor.expire(10 ** 9, 600) == []

    def test_chain_confirmation_overrides_expiry(self, supervisor, covenants):
        covenants.deploy(CovenantKind.VAULT, VAULT)
        supervisor.register(VAULT, EntityKind.VAULT, now=1000)
        supervisor.expire(5000, 600)
        utxo = covenants.utxo(VAULT, VaultState(), 5000)
        assert supervisor.reconcile(VAULT, utxo) is EntityStatus.ACTIVE
