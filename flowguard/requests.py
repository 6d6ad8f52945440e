"""
FlowGuard Operation Requests

Tagged request types, one per operation. Inbound JSON bodies are checked
against ``requests.schema.json`` and converted here, at the boundary, so
the builder only ever sees typed, validated values.

    parse_request({"operation": "approve", "proposal_id": "...", "signer": "alice"})
    -> ApproveRequest(proposal_id="...", signer="alice")

Entity references are lowercase hex of the 32-byte identifier; hashes
and scripts are bytes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type, Union

from flowguard.codec import CampaignFlag, CovenantKind, ScheduleType, VoteChoice
from flowguard.config import LimitsConfig, get_config
from flowguard.errors import RequestValidationError
from flowguard.identifiers import PayoutRecipient
from flowguard.policy import TreasuryPolicy
from flowguard.schema import validate_against_schema
from flowguard.utxo import WalletUTXO


def _recipients(items) -> Tuple[PayoutRecipient, ...]:
    return tuple(
        PayoutRecipient(
            recipient_hash=bytes.fromhex(r["recipient_hash"]),
            amount=r["amount"],
            category_id=r.get("category_id", 0),
        )
        for r in items
    )


def _hash(value: Optional[str]) -> bytes:
    return bytes.fromhex(value) if value else b""


class TokenType(Enum):
    """What a schedule or campaign pays out.

    Fungible-token covenants lock ``token_amount`` units of one category
    beside their state NFT; amounts are then counted in token units and
    every payout output carries the dust-level ``token_output_satoshis``.
    """
    BCH = "BCH"
    FUNGIBLE_TOKEN = "FUNGIBLE_TOKEN"


@dataclass(frozen=True)
class CovenantFunding:
    """Wallet inputs and redeem script for a new covenant output."""
    redeem_script: bytes
    value_satoshis: int
    utxos: Tuple[WalletUTXO, ...]
    change_hash: bytes

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CovenantFunding":
        return cls(
            redeem_script=bytes.fromhex(data["redeem_script"]),
            value_satoshis=data["value_satoshis"],
            utxos=tuple(WalletUTXO.from_dict(u) for u in data["utxos"]),
            change_hash=bytes.fromhex(data["change_hash"]),
        )

    @property
    def available(self) -> int:
        return sum(u.value_satoshis for u in self.utxos)


# =============================================================================
# CREATION
# =============================================================================

@dataclass(frozen=True)
class CreateVaultRequest:
    operation: ClassVar[str] = "create_vault"
    kind: ClassVar[CovenantKind] = CovenantKind.VAULT

    creator_hash: bytes
    policy: TreasuryPolicy
    funding: CovenantFunding
    timestamp: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CreateVaultRequest":
        return cls(
            creator_hash=bytes.fromhex(data["creator_hash"]),
            policy=TreasuryPolicy.from_dict(data["policy"]),
            funding=CovenantFunding.from_dict(data["funding"]),
            timestamp=data["timestamp"],
        )


@dataclass(frozen=True)
class CreateProposalRequest:
    operation: ClassVar[str] = "create_proposal"
    kind: ClassVar[CovenantKind] = CovenantKind.PROPOSAL

    vault_id: str
    proposer: str
    recipients: Tuple[PayoutRecipient, ...]
    funding: CovenantFunding
    timestamp: int

    @property
    def payout_total(self) -> int:
        return sum(r.amount for r in self.recipients)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CreateProposalRequest":
        return cls(
            vault_id=data["vault_id"],
            proposer=data["proposer"],
            recipients=_recipients(data["recipients"]),
            funding=CovenantFunding.from_dict(data["funding"]),
            timestamp=data["timestamp"],
        )


@dataclass(frozen=True)
class CreateScheduleRequest:
    operation: ClassVar[str] = "create_schedule"
    kind: ClassVar[CovenantKind] = CovenantKind.SCHEDULE

    vault_id: str
    recipient_hash: bytes
    authority_hash: bytes
    schedule_type: ScheduleType
    interval_seconds: int
    amount_per_interval: int
    start_timestamp: int
    funding: CovenantFunding
    cliff_timestamp: int = 0
    end_timestamp: int = 0
    total_amount: int = 0
    refund_hash: bytes = b""
    token_type: TokenType = TokenType.BCH
    token_category: str = ""
    token_amount: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CreateScheduleRequest":
        return cls(
            vault_id=data["vault_id"],
            recipient_hash=bytes.fromhex(data["recipient_hash"]),
            authority_hash=bytes.fromhex(data["authority_hash"]),
            schedule_type=ScheduleType[data["schedule_type"].upper()],
            interval_seconds=data["interval_seconds"],
            amount_per_interval=data["amount_per_interval"],
            start_timestamp=data["start_timestamp"],
            funding=CovenantFunding.from_dict(data["funding"]),
            cliff_timestamp=data.get("cliff_timestamp", 0),
            end_timestamp=data.get("end_timestamp", 0),
            total_amount=data.get("total_amount", 0),
            refund_hash=_hash(data.get("refund_hash")),
            token_type=TokenType(data.get("token_type", "BCH")),
            token_category=data.get("token_category", ""),
            token_amount=data.get("token_amount", 0),
        )


@dataclass(frozen=True)
class CreateCampaignRequest:
    operation: ClassVar[str] = "create_campaign"
    kind: ClassVar[CovenantKind] = CovenantKind.CAMPAIGN

    vault_id: str
    authority_pubkey: bytes
    amount_per_claim: int
    funding: CovenantFunding
    timestamp: int
    flags: int = 0
    merkle_root: bytes = b""
    refund_hash: bytes = b""
    token_type: TokenType = TokenType.BCH
    token_category: str = ""
    token_amount: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CreateCampaignRequest":
        flags = 0
        for name in data.get("flags", []):
            flags |= CampaignFlag[name.upper()]
        return cls(
            vault_id=data["vault_id"],
            authority_pubkey=bytes.fromhex(data["authority_pubkey"]),
            amount_per_claim=data["amount_per_claim"],
            funding=CovenantFunding.from_dict(data["funding"]),
            timestamp=data["timestamp"],
            flags=flags,
            merkle_root=_hash(data.get("merkle_root")),
            refund_hash=_hash(data.get("refund_hash")),
            token_type=TokenType(data.get("token_type", "BCH")),
            token_category=data.get("token_category", ""),
            token_amount=data.get("token_amount", 0),
        )


@dataclass(frozen=True)
class CreateTallyRequest:
    operation: ClassVar[str] = "create_tally"
    kind: ClassVar[CovenantKind] = CovenantKind.TALLY

    proposal_id: str
    voting_end_timestamp: int
    funding: CovenantFunding
    quorum_threshold: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CreateTallyRequest":
        return cls(
            proposal_id=data["proposal_id"],
            voting_end_timestamp=data["voting_end_timestamp"],
            funding=CovenantFunding.from_dict(data["funding"]),
            quorum_threshold=data.get("quorum_threshold", 0),
        )


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

@dataclass(frozen=True)
class ApproveRequest:
    operation: ClassVar[str] = "approve"

    proposal_id: str
    signer: str

    @property
    def target(self) -> str:
        return self.proposal_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApproveRequest":
        return cls(proposal_id=data["proposal_id"], signer=data["signer"])


@dataclass(frozen=True)
class ExecuteRequest:
    """Execute an approved proposal; anyone may execute and collect the executor fee."""
    operation: ClassVar[str] = "execute"

    proposal_id: str
    recipients: Tuple[PayoutRecipient, ...]
    executor_hash: bytes

    @property
    def target(self) -> str:
        return self.proposal_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecuteRequest":
        return cls(
            proposal_id=data["proposal_id"],
            recipients=_recipients(data["recipients"]),
            executor_hash=bytes.fromhex(data["executor_hash"]),
        )


@dataclass(frozen=True)
class SpendRequest:
    operation: ClassVar[str] = "spend"

    vault_id: str
    recipients: Tuple[PayoutRecipient, ...]
    memo: str = ""

    @property
    def target(self) -> str:
        return self.vault_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SpendRequest":
        return cls(
            vault_id=data["vault_id"],
            recipients=_recipients(data["recipients"]),
            memo=data.get("memo", ""),
        )


@dataclass(frozen=True)
class UnlockRequest:
    operation: ClassVar[str] = "unlock"

    schedule_id: str
    executor_hash: bytes

    @property
    def target(self) -> str:
        return self.schedule_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UnlockRequest":
        return cls(schedule_id=data["schedule_id"], executor_hash=bytes.fromhex(data["executor_hash"]))


@dataclass(frozen=True)
class ClaimVestingRequest:
    operation: ClassVar[str] = "claim_vesting"

    schedule_id: str

    @property
    def target(self) -> str:
        return self.schedule_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClaimVestingRequest":
        return cls(schedule_id=data["schedule_id"])


@dataclass(frozen=True)
class ClaimCampaignRequest:
    operation: ClassVar[str] = "claim_campaign"

    campaign_id: str
    claimer_hash: bytes

    @property
    def target(self) -> str:
        return self.campaign_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClaimCampaignRequest":
        return cls(campaign_id=data["campaign_id"], claimer_hash=bytes.fromhex(data["claimer_hash"]))


@dataclass(frozen=True)
class ControlRequest:
    """Pause, resume or cancel a covenant entity."""
    operation: str
    entity_id: str
    kind: CovenantKind
    signer: str = ""

    @property
    def target(self) -> str:
        return self.entity_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ControlRequest":
        return cls(
            operation=data["operation"],
            entity_id=data["entity_id"],
            kind=CovenantKind(data["kind"]),
            signer=data.get("signer", ""),
        )


@dataclass(frozen=True)
class VoteRequest:
    operation: ClassVar[str] = "vote"

    tally_id: str
    voter_hash: bytes
    choice: VoteChoice
    stake: WalletUTXO
    lock_redeem_script: bytes
    fee_utxos: Tuple[WalletUTXO, ...] = field(default_factory=tuple)

    @property
    def target(self) -> str:
        return self.tally_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VoteRequest":
        return cls(
            tally_id=data["tally_id"],
            voter_hash=bytes.fromhex(data["voter_hash"]),
            choice=VoteChoice[data["choice"].upper()],
            stake=WalletUTXO.from_dict(data["stake"]),
            lock_redeem_script=bytes.fromhex(data["lock_redeem_script"]),
            fee_utxos=tuple(WalletUTXO.from_dict(u) for u in data.get("fee_utxos", [])),
        )


@dataclass(frozen=True)
class ReclaimRequest:
    operation: ClassVar[str] = "reclaim"

    vote_id: str

    @property
    def target(self) -> str:
        return self.vote_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReclaimRequest":
        return cls(vote_id=data["vote_id"])


@dataclass(frozen=True)
class FinalizeTallyRequest:
    operation: ClassVar[str] = "tally"

    tally_id: str

    @property
    def target(self) -> str:
        return self.tally_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FinalizeTallyRequest":
        return cls(tally_id=data["tally_id"])


CreateRequest = Union[
    CreateVaultRequest,
    CreateProposalRequest,
    CreateScheduleRequest,
    CreateCampaignRequest,
    CreateTallyRequest,
]

OperationRequest = Union[
    CreateRequest,
    ApproveRequest,
    ExecuteRequest,
    SpendRequest,
    UnlockRequest,
    ClaimVestingRequest,
    ClaimCampaignRequest,
    ControlRequest,
    VoteRequest,
    ReclaimRequest,
    FinalizeTallyRequest,
]

REQUEST_TYPES: Dict[str, Type[Any]] = {
    "create_vault": CreateVaultRequest,
    "create_proposal": CreateProposalRequest,
    "create_schedule": CreateScheduleRequest,
    "create_campaign": CreateCampaignRequest,
    "create_tally": CreateTallyRequest,
    "approve": ApproveRequest,
    "execute": ExecuteRequest,
    "spend": SpendRequest,
    "unlock": UnlockRequest,
    "claim_vesting": ClaimVestingRequest,
    "claim_campaign": ClaimCampaignRequest,
    "pause": ControlRequest,
    "resume": ControlRequest,
    "cancel": ControlRequest,
    "vote": VoteRequest,
    "reclaim": ReclaimRequest,
    "tally": FinalizeTallyRequest,
}


def is_create(request: Any) -> bool:
    return request.operation.startswith("create_")


def parse_request(data: Any, limits: Optional[LimitsConfig] = None) -> OperationRequest:
    """Validate an inbound request body and convert it to its typed form."""
    if not isinstance(data, Mapping):
        raise RequestValidationError("request body must be an object", field="operation")
    operation = data.get("operation")
    if operation not in REQUEST_TYPES:
        raise RequestValidationError(f"unknown operation {operation!r}", field="operation")

    errors = validate_against_schema(dict(data), f"requests.schema.json#/$defs/{operation}")
    if errors:
        raise RequestValidationError("; ".join(errors), field=errors[0].split(":", 1)[0])

    limits = limits or get_config().limits
    recipients = data.get("recipients")
    if recipients is not None and len(recipients) > limits.max_recipients.get():
        raise RequestValidationError(
            f"{len(recipients)} recipients exceeds limit {limits.max_recipients.get()}",
            field="recipients",
        )
    return REQUEST_TYPES[operation].from_dict(data)
