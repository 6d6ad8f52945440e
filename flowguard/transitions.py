"""
FlowGuard State Transitions

Pure functions from a decoded covenant state (plus operation inputs) to
its successor state. The builder encodes the result as the successor
commitment; nothing here touches transactions, stores or clocks other
than the ``now`` it is handed.

Every function raises InvalidTransition when the operation is not legal
from the current state, naming the field that blocks it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Set, Tuple

from flowguard.codec import (
    CampaignState,
    CampaignStatus,
    ProposalState,
    ProposalStatus,
    ScheduleState,
    ScheduleType,
    TallyState,
    VaultState,
    VaultStatus,
    VoteChoice,
)
from flowguard.config import TransactionConfig, get_config
from flowguard.errors import InvalidTransition
from flowguard.guardrails import PeriodState
from flowguard.hardening import InvariantChecker, sat_add, sat_sub


# =============================================================================
# TRANSITION TABLES
# =============================================================================

PROPOSAL_TRANSITIONS: Dict[ProposalStatus, Set[ProposalStatus]] = {
    ProposalStatus.DRAFT: {ProposalStatus.SUBMITTED, ProposalStatus.CANCELLED},
    ProposalStatus.SUBMITTED: {
        ProposalStatus.VOTING,
        ProposalStatus.APPROVED,
        ProposalStatus.CANCELLED,
        ProposalStatus.EXPIRED,
    },
    ProposalStatus.VOTING: {ProposalStatus.APPROVED, ProposalStatus.CANCELLED, ProposalStatus.EXPIRED},
    ProposalStatus.APPROVED: {
        ProposalStatus.QUEUED,
        ProposalStatus.EXECUTABLE,
        ProposalStatus.EXECUTED,
        ProposalStatus.CANCELLED,
        ProposalStatus.EXPIRED,
    },
    ProposalStatus.QUEUED: {
        ProposalStatus.EXECUTABLE,
        ProposalStatus.EXECUTED,
        ProposalStatus.CANCELLED,
        ProposalStatus.EXPIRED,
    },
    ProposalStatus.EXECUTABLE: {ProposalStatus.EXECUTED, ProposalStatus.CANCELLED, ProposalStatus.EXPIRED},
    ProposalStatus.EXECUTED: set(),
    ProposalStatus.CANCELLED: set(),
    ProposalStatus.EXPIRED: set(),
}

VAULT_TRANSITIONS: Dict[VaultStatus, Set[VaultStatus]] = {
    VaultStatus.ACTIVE: {VaultStatus.PAUSED, VaultStatus.EMERGENCY_LOCK, VaultStatus.MIGRATING},
    VaultStatus.PAUSED: {VaultStatus.ACTIVE, VaultStatus.EMERGENCY_LOCK},
    VaultStatus.EMERGENCY_LOCK: {VaultStatus.PAUSED},
    VaultStatus.MIGRATING: set(),
}

CAMPAIGN_TRANSITIONS: Dict[CampaignStatus, Set[CampaignStatus]] = {
    CampaignStatus.ACTIVE: {CampaignStatus.PAUSED, CampaignStatus.CANCELLED, CampaignStatus.COMPLETED},
    CampaignStatus.PAUSED: {CampaignStatus.ACTIVE, CampaignStatus.CANCELLED},
    CampaignStatus.CANCELLED: set(),
    CampaignStatus.COMPLETED: set(),
}

APPROVABLE = frozenset({ProposalStatus.SUBMITTED, ProposalStatus.VOTING})
EXECUTABLE = frozenset({ProposalStatus.APPROVED, ProposalStatus.QUEUED, ProposalStatus.EXECUTABLE})


# =============================================================================
# PROPOSALS
# =============================================================================

def approve(state: ProposalState, now: int, execution_delay: int = 0) -> ProposalState:
    """
    One more approval.

    The approval that meets the threshold moves the proposal to APPROVED
    and starts the execution timelock at ``now + execution_delay``.
    """
    if state.status not in APPROVABLE:
        raise InvalidTransition(
            f"cannot approve a proposal in status {state.status.name}",
            field="status",
            current=state.status.name,
        )
    if state.voting_end_timestamp and now >= state.voting_end_timestamp:
        raise InvalidTransition(
            f"voting ended at {state.voting_end_timestamp}",
            field="voting_end_timestamp",
        )
    if state.threshold_reached:
        raise InvalidTransition("approval threshold already reached", field="approval_count")

    count = state.approval_count + 1
    if count < state.required_approvals:
        return replace(state, approval_count=count)
    return replace(
        state,
        approval_count=count,
        status=ProposalStatus.APPROVED,
        execution_timelock=max(state.execution_timelock, sat_add(now, execution_delay)),
    )


def check_executable(state: ProposalState, now: int) -> None:
    if state.status not in EXECUTABLE:
        raise InvalidTransition(
            f"cannot execute a proposal in status {state.status.name}",
            field="status",
            current=state.status.name,
        )
    if not state.threshold_reached:
        raise InvalidTransition(
            f"{state.approval_count} of {state.required_approvals} approvals",
            field="approval_count",
        )
    if now < state.execution_timelock:
        raise InvalidTransition(
            f"timelock until {state.execution_timelock}, now {now}",
            field="execution_timelock",
        )


def execute(state: ProposalState, now: int) -> ProposalState:
    check_executable(state, now)
    return replace(state, status=ProposalStatus.EXECUTED)


def cancel_proposal(state: ProposalState) -> ProposalState:
    InvariantChecker.check_state_transition(state.status, ProposalStatus.CANCELLED, PROPOSAL_TRANSITIONS)
    return replace(state, status=ProposalStatus.CANCELLED)


# =============================================================================
# VAULTS
# =============================================================================

def require_vault_active(vault: VaultState) -> None:
    if vault.status is not VaultStatus.ACTIVE:
        raise InvalidTransition(
            f"vault is {vault.status.name}, payouts need ACTIVE",
            field="status",
            current=vault.status.name,
        )


def vault_after_payout(vault: VaultState, period: PeriodState, amount: int, now: int) -> VaultState:
    """Successor vault state after paying ``amount`` in ``period`` (rollover already applied)."""
    require_vault_active(vault)
    InvariantChecker.check_monotonic_increase("current_period_id", vault.current_period_id, period.period_id)
    return replace(
        vault,
        current_period_id=period.period_id,
        spent_this_period=sat_add(period.spent, amount),
        last_update_timestamp=now,
    )


def set_vault_status(vault: VaultState, target: VaultStatus, now: int) -> VaultState:
    InvariantChecker.check_state_transition(vault.status, target, VAULT_TRANSITIONS)
    return replace(vault, status=target, last_update_timestamp=now)


# =============================================================================
# SCHEDULES
# =============================================================================

@dataclass(frozen=True)
class VestingTerms:
    """Constructor terms of a vesting schedule; not part of the commitment."""
    total_amount: int
    start_timestamp: int
    end_timestamp: int

    @property
    def duration(self) -> int:
        return sat_sub(self.end_timestamp, self.start_timestamp)


def recurring_unlock(state: ScheduleState, now: int, amount: Optional[int] = None) -> ScheduleState:
    """Release one interval of a recurring schedule."""
    if state.schedule_type is not ScheduleType.RECURRING:
        raise InvalidTransition("unlock applies to recurring schedules only", field="schedule_type")
    if now < state.next_unlock_timestamp:
        raise InvalidTransition(
            f"next unlock at {state.next_unlock_timestamp}, now {now}",
            field="next_unlock_timestamp",
        )
    released = state.amount_per_interval if amount is None else amount
    return replace(
        state,
        next_unlock_timestamp=sat_add(state.next_unlock_timestamp, state.interval_seconds),
        total_released=sat_add(state.total_released, released),
    )


def vested_amount(state: ScheduleState, terms: VestingTerms, now: int) -> int:
    """Total vested at ``now``, before subtracting what was already released."""
    if not state.schedule_type.is_vesting:
        raise InvalidTransition("schedule is not a vesting schedule", field="schedule_type")
    if now < state.cliff_timestamp or now <= terms.start_timestamp:
        return 0
    elapsed = min(now, terms.end_timestamp) - terms.start_timestamp

    if state.schedule_type is ScheduleType.LINEAR_VESTING:
        if terms.duration == 0 or elapsed >= terms.duration:
            return terms.total_amount
        return terms.total_amount * elapsed // terms.duration

    if state.interval_seconds == 0:
        raise InvalidTransition("step vesting needs a nonzero interval", field="interval_seconds")
    steps = elapsed // state.interval_seconds
    return min(steps * state.amount_per_interval, terms.total_amount)


def vesting_claimable(state: ScheduleState, terms: VestingTerms, now: int) -> int:
    return sat_sub(vested_amount(state, terms, now), state.total_released)


def vesting_claim(state: ScheduleState, terms: VestingTerms, now: int) -> Tuple[ScheduleState, int]:
    """Successor schedule and amount for a claim; refuses a zero-value claim."""
    claimable = vesting_claimable(state, terms, now)
    if claimable == 0:
        raise InvalidTransition(
            "nothing vested to claim yet",
            field="claimable",
            claimable=0,
            cliff_timestamp=state.cliff_timestamp,
            total_released=state.total_released,
        )
    return replace(state, total_released=sat_add(state.total_released, claimable)), claimable


# =============================================================================
# CAMPAIGNS
# =============================================================================

def campaign_claim(state: CampaignState, amount: int, now: int) -> CampaignState:
    if state.status is not CampaignStatus.ACTIVE:
        raise InvalidTransition(
            f"campaign is {state.status.name}, claims need ACTIVE",
            field="status",
            current=state.status.name,
        )
    return replace(
        state,
        total_claimed=sat_add(state.total_claimed, amount),
        claims_count=state.claims_count + 1,
        last_claim_timestamp=now,
    )


def set_campaign_status(state: CampaignState, target: CampaignStatus) -> CampaignState:
    InvariantChecker.check_state_transition(state.status, target, CAMPAIGN_TRANSITIONS)
    return replace(state, status=target)


# =============================================================================
# VOTING
# =============================================================================

class TallyOutcome(Enum):
    PASSED = "passed"
    REJECTED = "rejected"
    NO_QUORUM = "no_quorum"


def cast_vote(tally: TallyState, prefix: bytes, choice: VoteChoice, weight: int) -> TallyState:
    if tally.tally_timestamp:
        raise InvalidTransition("tally is already finalized", field="tally_timestamp")
    if prefix != tally.proposal_id_prefix:
        raise InvalidTransition(
            f"vote for {prefix.hex()} cannot count toward tally {tally.proposal_id_prefix.hex()}",
            field="proposal_id_prefix",
        )
    if weight <= 0:
        raise InvalidTransition("vote weight must be positive", field="weight")
    if choice is VoteChoice.FOR:
        return replace(tally, votes_for=sat_add(tally.votes_for, weight))
    if choice is VoteChoice.AGAINST:
        return replace(tally, votes_against=sat_add(tally.votes_against, weight))
    return replace(tally, votes_abstain=sat_add(tally.votes_abstain, weight))


def finalize_tally(tally: TallyState, now: int) -> TallyState:
    if tally.tally_timestamp:
        raise InvalidTransition("tally is already finalized", field="tally_timestamp")
    return replace(tally, tally_timestamp=now)


def tally_outcome(tally: TallyState, majority_threshold: int = 50) -> TallyOutcome:
    """Quorum counts every vote; the majority is taken over FOR + AGAINST, in percent."""
    if tally.total_votes < tally.quorum_threshold:
        return TallyOutcome.NO_QUORUM
    decided = sat_add(tally.votes_for, tally.votes_against)
    if decided and tally.votes_for * 100 > decided * majority_threshold:
        return TallyOutcome.PASSED
    return TallyOutcome.REJECTED


# =============================================================================
# FEES
# =============================================================================

def executor_fee(payout: int, config: Optional[TransactionConfig] = None) -> int:
    """Executor reward: a per-mille share of the payout clamped to [min, max]."""
    cfg = config or get_config().transaction
    fee = payout * cfg.executor_fee_per_mille.get() // 1000
    return max(cfg.executor_fee_min.get(), min(fee, cfg.executor_fee_max.get()))
