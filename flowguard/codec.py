"""
FlowGuard State Codec

Fixed-width binary layouts carried as CashTokens NFT commitments. Each
covenant type has exactly one layout; integers are little-endian so they
match the script's numeric reads.

    VaultState      32 bytes
    ProposalState   64 bytes
    ScheduleState   48 bytes
    VoteState       32 bytes
    TallyState      48 bytes
    CampaignState   40 bytes

Decoding is strict. A commitment of the wrong length, an enum byte past
the highest known ordinal, or nonzero reserved bytes is rejected with
MalformedCommitment so that encode(decode(b)) == b holds for every
accepted buffer.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Tuple, Type, Union

from flowguard.errors import MalformedCommitment

STATE_VERSION = 1

PAYOUT_HASH_SIZE = 28
PROPOSAL_PREFIX_SIZE = 4


# =============================================================================
# ENUMERATIONS
# =============================================================================

class VaultStatus(IntEnum):
    ACTIVE = 0
    PAUSED = 1
    EMERGENCY_LOCK = 2
    MIGRATING = 3


class ProposalStatus(IntEnum):
    """Proposal lifecycle. Forward only; CANCELLED/EXPIRED end any pre-EXECUTED state."""
    DRAFT = 0
    SUBMITTED = 1
    VOTING = 2
    APPROVED = 3
    QUEUED = 4
    EXECUTABLE = 5
    EXECUTED = 6
    CANCELLED = 7
    EXPIRED = 8

    def is_terminal(self) -> bool:
        return self in (ProposalStatus.EXECUTED, ProposalStatus.CANCELLED, ProposalStatus.EXPIRED)


class ScheduleType(IntEnum):
    RECURRING = 0
    LINEAR_VESTING = 1
    STEP_VESTING = 2

    @property
    def is_vesting(self) -> bool:
        return self is not ScheduleType.RECURRING


class VoteChoice(IntEnum):
    AGAINST = 0
    FOR = 1
    ABSTAIN = 2


class CampaignStatus(IntEnum):
    ACTIVE = 0
    PAUSED = 1
    CANCELLED = 2
    COMPLETED = 3


class SignerRole(IntEnum):
    """Bit positions inside the vault's 24-bit role mask."""
    APPROVER = 0
    EXECUTOR = 1
    PAUSER = 2
    GUARDIAN = 3


class CampaignFlag(IntEnum):
    CANCELABLE = 0x01
    PAUSABLE = 0x02
    REQUIRES_AUTHORITY = 0x04


# =============================================================================
# STATE STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class VaultState:
    status: VaultStatus = VaultStatus.ACTIVE
    roles_mask: int = 0
    current_period_id: int = 0
    spent_this_period: int = 0
    last_update_timestamp: int = 0
    version: int = STATE_VERSION

    def has_role(self, role: SignerRole) -> bool:
        return bool(self.roles_mask & (1 << role))


@dataclass(frozen=True)
class ProposalState:
    status: ProposalStatus = ProposalStatus.DRAFT
    approval_count: int = 0
    required_approvals: int = 1
    voting_end_timestamp: int = 0
    execution_timelock: int = 0
    payout_total: int = 0
    payout_hash: bytes = bytes(PAYOUT_HASH_SIZE)
    version: int = STATE_VERSION

    @property
    def threshold_reached(self) -> bool:
        return self.approval_count >= self.required_approvals


@dataclass(frozen=True)
class ScheduleState:
    schedule_type: ScheduleType = ScheduleType.RECURRING
    interval_seconds: int = 0
    next_unlock_timestamp: int = 0
    amount_per_interval: int = 0
    total_released: int = 0
    cliff_timestamp: int = 0
    version: int = STATE_VERSION


@dataclass(frozen=True)
class VoteState:
    proposal_id_prefix: bytes = bytes(PROPOSAL_PREFIX_SIZE)
    vote_choice: VoteChoice = VoteChoice.ABSTAIN
    lock_timestamp: int = 0
    unlock_timestamp: int = 0
    version: int = STATE_VERSION


@dataclass(frozen=True)
class TallyState:
    proposal_id_prefix: bytes = bytes(PROPOSAL_PREFIX_SIZE)
    votes_for: int = 0
    votes_against: int = 0
    votes_abstain: int = 0
    quorum_threshold: int = 0
    tally_timestamp: int = 0
    version: int = STATE_VERSION

    @property
    def total_votes(self) -> int:
        return self.votes_for + self.votes_against + self.votes_abstain


@dataclass(frozen=True)
class CampaignState:
    status: CampaignStatus = CampaignStatus.ACTIVE
    flags: int = 0
    total_claimed: int = 0
    claims_count: int = 0
    last_claim_timestamp: int = 0

    def has_flag(self, flag: CampaignFlag) -> bool:
        return bool(self.flags & flag)


CovenantState = Union[VaultState, ProposalState, ScheduleState, VoteState, TallyState, CampaignState]


# =============================================================================
# FIELD CHECKS
# =============================================================================

def _check_uint(name: str, value: Any, bits: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0 or value >= (1 << bits):
        raise MalformedCommitment(f"value {value!r} does not fit u{bits}", field=name)
    return value


def _check_blob(name: str, value: Any, size: int) -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != size:
        raise MalformedCommitment(f"expected {size} bytes", field=name)
    return bytes(value)


def _check_length(data: bytes, size: int, name: str) -> None:
    if not isinstance(data, (bytes, bytearray)):
        raise MalformedCommitment(f"expected bytes, got {type(data).__name__}", field=name)
    if len(data) != size:
        raise MalformedCommitment(f"expected {size} bytes, got {len(data)}", field=name)


def _enum(enum_cls: Type[IntEnum], raw: int, name: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError:
        raise MalformedCommitment(
            f"value {raw} outside {enum_cls.__name__} range 0..{max(enum_cls)}",
            field=name,
        ) from None


def _check_reserved(raw: bytes, name: str) -> None:
    if any(raw):
        raise MalformedCommitment("reserved bytes must be zero", field=name)


def _u24(raw: bytes) -> int:
    return int.from_bytes(raw, "little")


# =============================================================================
# VAULT
# =============================================================================

VAULT_STATE_SIZE = 32
_VAULT = struct.Struct("<IB3sQQQ")


def encode_vault_state(state: VaultState) -> bytes:
    return _VAULT.pack(
        _check_uint("version", state.version, 32),
        _enum(VaultStatus, state.status, "status"),
        _check_uint("roles_mask", state.roles_mask, 24).to_bytes(3, "little"),
        _check_uint("current_period_id", state.current_period_id, 64),
        _check_uint("spent_this_period", state.spent_this_period, 64),
        _check_uint("last_update_timestamp", state.last_update_timestamp, 64),
    )


def decode_vault_state(data: bytes) -> VaultState:
    _check_length(data, VAULT_STATE_SIZE, "vault_state")
    version, status, roles, period, spent, updated = _VAULT.unpack(data)
    return VaultState(
        status=_enum(VaultStatus, status, "status"),
        roles_mask=_u24(roles),
        current_period_id=period,
        spent_this_period=spent,
        last_update_timestamp=updated,
        version=version,
    )


# =============================================================================
# PROPOSAL
# =============================================================================

PROPOSAL_STATE_SIZE = 64
_PROPOSAL = struct.Struct("<IB3sIQQQ28s")


def encode_proposal_state(state: ProposalState) -> bytes:
    if state.approval_count > state.required_approvals:
        raise MalformedCommitment(
            f"approval_count {state.approval_count} exceeds "
            f"required_approvals {state.required_approvals}",
            field="approval_count",
        )
    return _PROPOSAL.pack(
        _check_uint("version", state.version, 32),
        _enum(ProposalStatus, state.status, "status"),
        _check_uint("approval_count", state.approval_count, 24).to_bytes(3, "little"),
        _check_uint("required_approvals", state.required_approvals, 32),
        _check_uint("voting_end_timestamp", state.voting_end_timestamp, 64),
        _check_uint("execution_timelock", state.execution_timelock, 64),
        _check_uint("payout_total", state.payout_total, 64),
        _check_blob("payout_hash", state.payout_hash, PAYOUT_HASH_SIZE),
    )


def decode_proposal_state(data: bytes) -> ProposalState:
    _check_length(data, PROPOSAL_STATE_SIZE, "proposal_state")
    (version, status, approvals, required, voting_end,
     timelock, payout_total, payout_hash) = _PROPOSAL.unpack(data)
    approval_count = _u24(approvals)
    if approval_count > required:
        raise MalformedCommitment(
            f"approval_count {approval_count} exceeds required_approvals {required}",
            field="approval_count",
        )
    return ProposalState(
        status=_enum(ProposalStatus, status, "status"),
        approval_count=approval_count,
        required_approvals=required,
        voting_end_timestamp=voting_end,
        execution_timelock=timelock,
        payout_total=payout_total,
        payout_hash=payout_hash,
        version=version,
    )


# =============================================================================
# SCHEDULE
# =============================================================================

SCHEDULE_STATE_SIZE = 48
_SCHEDULE = struct.Struct("<IB3sQQQQQ")


def encode_schedule_state(state: ScheduleState) -> bytes:
    return _SCHEDULE.pack(
        _check_uint("version", state.version, 32),
        _enum(ScheduleType, state.schedule_type, "schedule_type"),
        bytes(3),
        _check_uint("interval_seconds", state.interval_seconds, 64),
        _check_uint("next_unlock_timestamp", state.next_unlock_timestamp, 64),
        _check_uint("amount_per_interval", state.amount_per_interval, 64),
        _check_uint("total_released", state.total_released, 64),
        _check_uint("cliff_timestamp", state.cliff_timestamp, 64),
    )


def decode_schedule_state(data: bytes) -> ScheduleState:
    _check_length(data, SCHEDULE_STATE_SIZE, "schedule_state")
    (version, schedule_type, reserved, interval, next_unlock,
     per_interval, released, cliff) = _SCHEDULE.unpack(data)
    _check_reserved(reserved, "reserved")
    return ScheduleState(
        schedule_type=_enum(ScheduleType, schedule_type, "schedule_type"),
        interval_seconds=interval,
        next_unlock_timestamp=next_unlock,
        amount_per_interval=per_interval,
        total_released=released,
        cliff_timestamp=cliff,
        version=version,
    )


# =============================================================================
# VOTE / TALLY
# =============================================================================

VOTE_STATE_SIZE = 32
_VOTE = struct.Struct("<I4sB7sQQ")

TALLY_STATE_SIZE = 48
_TALLY = struct.Struct("<I4sQQQQQ")


def encode_vote_state(state: VoteState) -> bytes:
    return _VOTE.pack(
        _check_uint("version", state.version, 32),
        _check_blob("proposal_id_prefix", state.proposal_id_prefix, PROPOSAL_PREFIX_SIZE),
        _enum(VoteChoice, state.vote_choice, "vote_choice"),
        bytes(7),
        _check_uint("lock_timestamp", state.lock_timestamp, 64),
        _check_uint("unlock_timestamp", state.unlock_timestamp, 64),
    )


def decode_vote_state(data: bytes) -> VoteState:
    _check_length(data, VOTE_STATE_SIZE, "vote_state")
    version, prefix, choice, reserved, locked, unlock = _VOTE.unpack(data)
    _check_reserved(reserved, "reserved")
    return VoteState(
        proposal_id_prefix=prefix,
        vote_choice=_enum(VoteChoice, choice, "vote_choice"),
        lock_timestamp=locked,
        unlock_timestamp=unlock,
        version=version,
    )


def encode_tally_state(state: TallyState) -> bytes:
    return _TALLY.pack(
        _check_uint("version", state.version, 32),
        _check_blob("proposal_id_prefix", state.proposal_id_prefix, PROPOSAL_PREFIX_SIZE),
        _check_uint("votes_for", state.votes_for, 64),
        _check_uint("votes_against", state.votes_against, 64),
        _check_uint("votes_abstain", state.votes_abstain, 64),
        _check_uint("quorum_threshold", state.quorum_threshold, 64),
        _check_uint("tally_timestamp", state.tally_timestamp, 64),
    )


def decode_tally_state(data: bytes) -> TallyState:
    _check_length(data, TALLY_STATE_SIZE, "tally_state")
    version, prefix, votes_for, against, abstain, quorum, ts = _TALLY.unpack(data)
    return TallyState(
        proposal_id_prefix=prefix,
        votes_for=votes_for,
        votes_against=against,
        votes_abstain=abstain,
        quorum_threshold=quorum,
        tally_timestamp=ts,
        version=version,
    )


# =============================================================================
# CAMPAIGN
# =============================================================================

CAMPAIGN_STATE_SIZE = 40
_CAMPAIGN = struct.Struct("<BBQQ5s17s")


def encode_campaign_state(state: CampaignState) -> bytes:
    return _CAMPAIGN.pack(
        _enum(CampaignStatus, state.status, "status"),
        _check_uint("flags", state.flags, 8),
        _check_uint("total_claimed", state.total_claimed, 64),
        _check_uint("claims_count", state.claims_count, 64),
        _check_uint("last_claim_timestamp", state.last_claim_timestamp, 40).to_bytes(5, "little"),
        bytes(17),
    )


def decode_campaign_state(data: bytes) -> CampaignState:
    _check_length(data, CAMPAIGN_STATE_SIZE, "campaign_state")
    status, flags, claimed, count, last_claim, reserved = _CAMPAIGN.unpack(data)
    _check_reserved(reserved, "reserved")
    return CampaignState(
        status=_enum(CampaignStatus, status, "status"),
        flags=flags,
        total_claimed=claimed,
        claims_count=count,
        last_claim_timestamp=int.from_bytes(last_claim, "little"),
    )


# =============================================================================
# DISPATCH
# =============================================================================

class CovenantKind(Enum):
    """Covenant contract families and their commitment layouts."""
    VAULT = "vault"
    PROPOSAL = "proposal"
    SCHEDULE = "schedule"
    VOTE_LOCK = "vote_lock"
    TALLY = "tally"
    CAMPAIGN = "campaign"

    @property
    def commitment_size(self) -> int:
        return _CODECS[self][0]

    @property
    def state_type(self) -> type:
        return _CODECS[self][1]


_CODECS: Dict[CovenantKind, Tuple[int, type, Callable[[Any], bytes], Callable[[bytes], Any]]] = {
    CovenantKind.VAULT: (VAULT_STATE_SIZE, VaultState, encode_vault_state, decode_vault_state),
    CovenantKind.PROPOSAL: (PROPOSAL_STATE_SIZE, ProposalState, encode_proposal_state, decode_proposal_state),
    CovenantKind.SCHEDULE: (SCHEDULE_STATE_SIZE, ScheduleState, encode_schedule_state, decode_schedule_state),
    CovenantKind.VOTE_LOCK: (VOTE_STATE_SIZE, VoteState, encode_vote_state, decode_vote_state),
    CovenantKind.TALLY: (TALLY_STATE_SIZE, TallyState, encode_tally_state, decode_tally_state),
    CovenantKind.CAMPAIGN: (CAMPAIGN_STATE_SIZE, CampaignState, encode_campaign_state, decode_campaign_state),
}


def kind_of(state: CovenantState) -> CovenantKind:
    for kind, (_, state_type, _, _) in _CODECS.items():
        if isinstance(state, state_type):
            return kind
    raise MalformedCommitment(f"unsupported state type {type(state).__name__}", field="state")


def encode_state(state: CovenantState) -> bytes:
    """Encode any covenant state to its commitment bytes."""
    return _CODECS[kind_of(state)][2](state)


def decode_commitment(kind: CovenantKind, data: bytes) -> CovenantState:
    """Decode a commitment for a known covenant kind."""
    return _CODECS[kind][3](data)
