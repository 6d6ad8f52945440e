"""
FlowGuard Transaction Builder

Turns a typed operation request plus the covenant UTXO it spends into an
unsigned transaction descriptor whose outputs are a byte-exact match for
what the covenant script verifies.

For every operation the builder:

    1. checks the supplied UTXO is still the latest indexed state
    2. applies the pure state transition to the decoded commitment
    3. writes the successor commitment to a continuing covenant output,
       or omits it when the operation retires the covenant
    4. adds payout, fee and change outputs
    5. sets locktime and input sequences the covenant requires

Descriptors come in three modes:

    WALLET   one party signs in their own wallet and broadcasts
    SESSION  M-of-N treasury signers, collected by a signing session
    READY    fully unlocked here (no signatures, or claim-authority
             signatures the engine holds); the engine broadcasts

Output layout conventions the covenants rely on:
    - a continuing covenant output is always output 0
    - payouts follow in request order
    - executor fees and change come last
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from flowguard.abi import (
    AbiFunction,
    CovenantDeployment,
    DeploymentRegistry,
    order_args,
    standard_artifact,
)
from flowguard.codec import (
    CampaignFlag,
    CampaignState,
    CampaignStatus,
    CovenantKind,
    CovenantState,
    ProposalState,
    ProposalStatus,
    ScheduleState,
    ScheduleType,
    SignerRole,
    TallyState,
    VaultState,
    VaultStatus,
    VoteState,
    encode_state,
)
from flowguard.config import FlowGuardConfig, get_config
from flowguard.errors import (
    AbiMismatch,
    BuildError,
    InsufficientFunds,
    InvalidTransition,
    RequestValidationError,
    SessionError,
    StaleState,
    UnauthorizedSigner,
)
from flowguard.guardrails import GuardrailValidator, PeriodState, apply_payout, period_state_for
from flowguard.hardening import CryptoUtils, sat_sub
from flowguard.identifiers import (
    PayoutRecipient,
    campaign_id,
    p2pkh_locking_bytecode,
    payout_hash,
    proposal_id,
    proposal_id_prefix,
    stream_id,
    tally_id,
    vault_id,
    vote_id,
)
from flowguard.keys import SigningKey, load_claim_authority
from flowguard.policy import Signer, TreasuryPolicy
from flowguard.requests import (
    ApproveRequest,
    ClaimCampaignRequest,
    ClaimVestingRequest,
    ControlRequest,
    CovenantFunding,
    CreateCampaignRequest,
    CreateProposalRequest,
    CreateScheduleRequest,
    CreateTallyRequest,
    CreateVaultRequest,
    ExecuteRequest,
    FinalizeTallyRequest,
    ReclaimRequest,
    SpendRequest,
    TokenType,
    UnlockRequest,
    VoteRequest,
    is_create,
)
from flowguard.transaction import (
    SEQUENCE_FINAL,
    SEQUENCE_LOCKTIME_ENABLED,
    NftCapability,
    NftData,
    Outpoint,
    TokenData,
    Transaction,
    TxInput,
    TxOutput,
    signing_digest,
)
from flowguard.transitions import (
    VestingTerms,
    approve,
    campaign_claim,
    cancel_proposal,
    cast_vote,
    check_executable,
    executor_fee,
    finalize_tally,
    recurring_unlock,
    set_campaign_status,
    set_vault_status,
    tally_outcome,
    vault_after_payout,
    vesting_claim,
    vesting_claimable,
)
from flowguard.utxo import CovenantUTXO, WalletUTXO

logger = logging.getLogger(__name__)


# =============================================================================
# DESCRIPTOR
# =============================================================================

class BuildMode(Enum):
    WALLET = "wallet"
    SESSION = "session"
    READY = "ready"


@dataclass(frozen=True)
class SignerSpec:
    identity: str
    pubkey: bytes

    @classmethod
    def from_signer(cls, signer: Signer) -> "SignerSpec":
        return cls(signer.identity, signer.pubkey)

    def to_dict(self) -> Dict[str, str]:
        return {"identity": self.identity, "pubkey": self.pubkey.hex()}


@dataclass(frozen=True)
class SignatureSlot:
    """One (sig, pubkey) parameter pair on the signing input."""
    sig_arg: str
    pubkey_arg: str


@dataclass(frozen=True)
class ContractCall:
    """A covenant function invocation; enough to rebuild unlocking bytecode."""
    deployment: CovenantDeployment
    function: AbiFunction
    args: Mapping[str, Any] = field(default_factory=dict)

    def unlocking_bytecode(self, extra: Optional[Mapping[str, Any]] = None) -> bytes:
        named = dict(self.args)
        named.update(extra or {})
        return self.deployment.unlocking_bytecode(self.function, order_args(self.function, named))


@dataclass(frozen=True)
class SourceOutput:
    """The output an input spends, described for signers."""
    outpoint: Outpoint
    locking_bytecode: bytes
    value_satoshis: int
    token: Optional[TokenData] = None
    contract: Optional[ContractCall] = None

    def to_dict(self, tx_input: TxInput) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "outpointTransactionHash": self.outpoint.txid,
            "outpointIndex": self.outpoint.vout,
            "sequenceNumber": tx_input.sequence,
            "unlockingBytecode": tx_input.unlocking_bytecode.hex(),
            "lockingBytecode": self.locking_bytecode.hex(),
            "valueSatoshis": str(self.value_satoshis),
        }
        if self.token is not None:
            d["token"] = self.token.to_dict()
        if self.contract is not None:
            d["contract"] = {
                "artifact": self.contract.deployment.artifact.contract_name,
                "abiFunction": self.contract.function.to_dict(),
                "redeemScript": self.contract.deployment.redeem_script.hex(),
            }
        return d


@dataclass(frozen=True)
class CreatedEntity:
    """A covenant instance that comes into existence with this transaction."""
    entity_id: str
    deployment: CovenantDeployment
    output_index: int


@dataclass(frozen=True)
class Reservation:
    """A one-per-actor record the engine takes once the transaction is broadcast or confirmed."""
    kind: str
    scope: str
    actor: str


@dataclass(frozen=True)
class UnsignedTxDescriptor:
    operation: str
    entity_id: str
    kind: CovenantKind
    transaction: Transaction
    source_outputs: Tuple[SourceOutput, ...]
    mode: BuildMode
    user_prompt: str
    signers: Tuple[SignerSpec, ...] = ()
    threshold: int = 0
    signature_slots: Tuple[SignatureSlot, ...] = ()
    signing_input: int = 0
    successor: Optional[TxOutput] = None
    successor_state: Optional[CovenantState] = None
    successor_entity: str = ""
    spent: Tuple[CovenantUTXO, ...] = ()
    retired: Tuple[str, ...] = ()
    created: Tuple[CreatedEntity, ...] = ()
    reservations: Tuple[Reservation, ...] = ()
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def broadcast(self) -> bool:
        """Whether the signing wallet should broadcast after signing."""
        return self.mode is BuildMode.WALLET

    @property
    def txid(self) -> str:
        return self.transaction.txid

    @property
    def continuing_entity(self) -> str:
        """Entity whose covenant output 0 continues, if any."""
        if self.successor_state is None:
            return ""
        return self.successor_entity or self.entity_id

    def signing_digest(self) -> bytes:
        """SIGHASH_ALL|FORKID digest every session signer signs."""
        source = self.source_outputs[self.signing_input]
        if source.contract is None:
            raise BuildError("signing input is not a covenant input", field="signing_input")
        return signing_digest(
            self.transaction,
            self.signing_input,
            source.value_satoshis,
            source.contract.deployment.redeem_script,
            source.token,
        )

    def assemble(self, signatures: Mapping[str, bytes]) -> Transaction:
        """
        Place collected signatures into the signing input.

        Slots are filled by the descriptor's signer order, never by the
        order signatures arrived in, so any threshold-sized subset of the
        same signers yields the same transaction.
        """
        chosen = [s for s in self.signers if s.identity in signatures][: self.threshold]
        if len(chosen) < self.threshold:
            raise SessionError(
                f"{len(chosen)} of {self.threshold} signatures collected",
                field="signatures",
            )
        extra: Dict[str, Any] = {}
        for slot, signer in zip(self.signature_slots, chosen):
            extra[slot.sig_arg] = signatures[signer.identity]
            extra[slot.pubkey_arg] = signer.pubkey
        call = self.source_outputs[self.signing_input].contract
        return self.transaction.with_unlocking(self.signing_input, call.unlocking_bytecode(extra))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction.to_hex(),
            "sourceOutputs": [
                source.to_dict(tx_input)
                for source, tx_input in zip(self.source_outputs, self.transaction.inputs)
            ],
            "broadcast": self.broadcast,
            "userPrompt": self.user_prompt,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "entity_id": self.entity_id,
            "mode": self.mode.value,
            "txid": self.txid,
            "inputs": len(self.transaction.inputs),
            "outputs": len(self.transaction.outputs),
            "threshold": self.threshold,
            **{k: v for k, v in self.details.items() if isinstance(v, (int, str))},
        }


# =============================================================================
# BUILDER
# =============================================================================

class TransactionBuilder:
    """
    Builds descriptors for every covenant operation.

    The builder reads from the state store (latest UTXOs, one-per-actor
    records, escrowed claim authorities) but never writes to it.
    """

    def __init__(
        self,
        store,
        deployments: DeploymentRegistry,
        config: Optional[FlowGuardConfig] = None,
    ):
        self.store = store
        self.deployments = deployments
        self._config = config

    @property
    def config(self) -> FlowGuardConfig:
        return self._config or get_config()

    @property
    def dust(self) -> int:
        return self.config.transaction.dust_limit.get()

    @property
    def fee_reserve(self) -> int:
        return self.config.transaction.fee_reserve.get()

    @property
    def token_sats(self) -> int:
        return self.config.transaction.token_output_satoshis.get()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def build(self, request: Any, utxo: Optional[CovenantUTXO], now: int) -> UnsignedTxDescriptor:
        if is_create(request):
            handler = getattr(self, f"_build_{request.operation}")
            return handler(request, now)

        if utxo is None:
            raise StaleState(request.target, message=f"no live UTXO for {request.target}")
        if utxo.entity_id != request.target:
            raise RequestValidationError(
                f"UTXO belongs to {utxo.entity_id}, request targets {request.target}",
                field="utxo",
            )
        self._check_fresh(utxo)

        handler = getattr(self, f"_build_{request.operation}")
        descriptor = handler(request, utxo, now)
        logger.debug("Built %s for %s: %s", request.operation, utxo.entity_id, descriptor.txid)
        return descriptor

    def _check_fresh(self, utxo: CovenantUTXO) -> None:
        latest = self.store.get_latest_utxo(utxo.entity_id)
        if latest is None:
            raise StaleState(utxo.entity_id, expected_sequence=utxo.sequence, actual_sequence=None)
        if latest.sequence != utxo.sequence or latest.outpoint != utxo.outpoint:
            raise StaleState(utxo.entity_id, expected_sequence=utxo.sequence, actual_sequence=latest.sequence)

    # -------------------------------------------------------------------------
    # Shared pieces
    # -------------------------------------------------------------------------

    def _call(self, utxo: CovenantUTXO, operation: str, **args: Any) -> ContractCall:
        deployment = self.deployments.for_entity(utxo.entity_id)
        if deployment.kind is not utxo.kind:
            raise AbiMismatch(
                f"{utxo.entity_id} is registered as {deployment.kind.value}, UTXO is {utxo.kind.value}",
                field="kind",
            )
        if deployment.locking_bytecode != utxo.locking_bytecode:
            raise AbiMismatch(f"UTXO for {utxo.entity_id} is not at its covenant address", field="locking_bytecode")
        return ContractCall(deployment, deployment.function_for(operation), args)

    @staticmethod
    def _covenant_input(
        utxo: CovenantUTXO,
        call: ContractCall,
        sequence: int = SEQUENCE_FINAL,
    ) -> Tuple[TxInput, SourceOutput]:
        tx_input = TxInput(utxo.outpoint, call.unlocking_bytecode(), sequence)
        source = SourceOutput(utxo.outpoint, utxo.locking_bytecode, utxo.value_satoshis, utxo.token, call)
        return tx_input, source

    @staticmethod
    def _wallet_input(wallet_utxo: WalletUTXO, sequence: int = SEQUENCE_FINAL) -> Tuple[TxInput, SourceOutput]:
        return (
            TxInput(wallet_utxo.outpoint, b"", sequence),
            SourceOutput(
                wallet_utxo.outpoint,
                wallet_utxo.locking_bytecode,
                wallet_utxo.value_satoshis,
                wallet_utxo.token,
            ),
        )

    @staticmethod
    def _state_output(
        utxo: CovenantUTXO,
        state: CovenantState,
        value: int,
        capability: Optional[NftCapability] = None,
        token_amount: Optional[int] = None,
    ) -> TxOutput:
        nft = NftData(utxo.capability if capability is None else capability, encode_state(state))
        amount = utxo.token.amount if token_amount is None else token_amount
        return TxOutput(utxo.locking_bytecode, value, TokenData(utxo.category, amount, nft))

    @staticmethod
    def _pay(pubkey_hash: bytes, value: int, token: Optional[TokenData] = None) -> TxOutput:
        return TxOutput(p2pkh_locking_bytecode(pubkey_hash), value, token)

    def _pay_tokens(self, pubkey_hash: bytes, utxo: CovenantUTXO, amount: int, value: int = 0) -> TxOutput:
        """Fungible tokens of the covenant's category, on a token-carrier output."""
        return self._pay(pubkey_hash, value or self.token_sats, TokenData(utxo.category, amount))

    def _fee_inputs(self, utxos: Sequence[WalletUTXO], field: str) -> List[Tuple[TxInput, SourceOutput]]:
        """Wallet inputs that only pay fees; any tokens on them would be burned."""
        for index, u in enumerate(utxos):
            _reject_tokens(u, f"{field}[{index}]")
        return [self._wallet_input(u) for u in utxos]

    def _token_funded(self, utxo: CovenantUTXO) -> bool:
        token_type = self.deployments.for_entity(utxo.entity_id).parameters.get("token_type", TokenType.BCH.value)
        return token_type == TokenType.FUNGIBLE_TOKEN.value

    def _remaining(self, available: int, spend: int, field: str) -> int:
        """What is left of ``available`` after ``spend``; must stay above dust."""
        remaining = available - spend
        if remaining < self.dust:
            raise InsufficientFunds(required=spend + self.dust, available=available, field=field)
        return remaining

    def _check_payouts(self, recipients: Sequence[PayoutRecipient]) -> None:
        for index, r in enumerate(recipients):
            if r.amount < self.dust:
                raise RequestValidationError(
                    f"amount {r.amount} is below the dust limit {self.dust}",
                    field=f"recipients[{index}].amount",
                )

    def _policy(self, vault: str) -> TreasuryPolicy:
        return self.deployments.for_entity(vault).param("policy")

    def _vault_of(self, entity: str) -> str:
        return self.deployments.for_entity(entity).param("vault_id")

    @staticmethod
    def _policy_signer(policy: TreasuryPolicy, identity: str, *roles: SignerRole) -> Signer:
        signer = policy.multisig.signer(identity)
        if signer is None:
            raise UnauthorizedSigner(f"{identity} is not a treasury signer", field="signer")
        if roles and not any(signer.has_role(r) for r in roles):
            raise UnauthorizedSigner(
                f"{identity} lacks role {' or '.join(r.name for r in roles)}",
                field="signer",
            )
        return signer

    @staticmethod
    def _wallet_slots(call: ContractCall) -> Tuple[SignatureSlot, ...]:
        params = call.function.inputs
        return tuple(SignatureSlot(params[s].name, params[p].name) for s, p in call.function.signature_pairs())

    def _authority_sign(self, tx: Transaction, source: SourceOutput, authority: SigningKey) -> Transaction:
        """Fill the claim-authority (sig, pubkey) pair on input 0."""
        call = source.contract
        (sig_index, key_index), = call.function.signature_pairs()
        digest = signing_digest(tx, 0, source.value_satoshis, call.deployment.redeem_script, source.token)
        extra = {
            call.function.inputs[sig_index].name: authority.sign(digest),
            call.function.inputs[key_index].name: authority.pubkey,
        }
        return tx.with_unlocking(0, call.unlocking_bytecode(extra))

    def _authority(self, utxo: CovenantUTXO) -> SigningKey:
        authority_hash = self.deployments.for_entity(utxo.entity_id).param("authority_hash")
        authority = load_claim_authority(self.store, authority_hash)
        if authority is None:
            raise BuildError(
                f"no escrowed claim authority for {utxo.entity_id}",
                field="authority_hash",
            )
        return authority

    def _descriptor(
        self,
        request: Any,
        utxo: CovenantUTXO,
        inputs: List[Tuple[TxInput, SourceOutput]],
        outputs: List[TxOutput],
        mode: BuildMode,
        prompt: str,
        locktime: int = 0,
        successor_state: Optional[CovenantState] = None,
        **kwargs: Any,
    ) -> UnsignedTxDescriptor:
        tx = Transaction(inputs=[i for i, _ in inputs], outputs=outputs, locktime=locktime)
        successor = outputs[0] if successor_state is not None else None
        retired = kwargs.pop("retired", () if successor_state is not None else (utxo.entity_id,))
        return UnsignedTxDescriptor(
            operation=request.operation,
            entity_id=utxo.entity_id,
            kind=utxo.kind,
            transaction=tx,
            source_outputs=tuple(s for _, s in inputs),
            mode=mode,
            user_prompt=prompt,
            successor=successor,
            successor_state=successor_state,
            spent=kwargs.pop("spent", (utxo,)),
            retired=tuple(retired),
            **kwargs,
        )

    # =========================================================================
    # CREATION
    # =========================================================================

    def _genesis(
        self,
        request: Any,
        entity: bytes,
        state: CovenantState,
        parameters: Dict[str, Any],
        prompt: str,
        capability: NftCapability = NftCapability.MUTABLE,
        require_baton: bool = False,
        token_category: str = "",
        token_amount: int = 0,
    ) -> UnsignedTxDescriptor:
        """
        Mint the covenant's state NFT into a new covenant output.

        The category is either a fresh genesis from the first funding input
        (which must spend an output 0) or, when that input carries a
        minting NFT, the baton's own category; the baton goes back to the
        funder's change address.

        With ``token_amount`` the covenant output also locks that many
        fungible tokens of ``token_category``. The state NFT shares the
        output's category, so the baton of that category must lead the
        funding inputs; the other inputs may carry its fungible tokens,
        and what is not locked returns to the funder on the baton output.
        """
        funding: CovenantFunding = request.funding
        kind = request.kind
        deployment = CovenantDeployment(kind, standard_artifact(kind), funding.redeem_script, parameters)

        first = funding.utxos[0]
        baton = first.token if first.token and first.token.nft and first.token.nft.capability is NftCapability.MINTING else None
        if (require_baton or token_amount) and baton is None:
            raise RequestValidationError(
                f"{kind.value} creation needs the category's minting NFT as the first funding input",
                field="funding.utxos[0].token",
            )
        if token_amount and baton.category != token_category:
            raise RequestValidationError(
                f"minting NFT is for category {baton.category}, not {token_category}",
                field="token_category",
            )
        if baton is None and first.outpoint.vout != 0:
            raise RequestValidationError(
                "token genesis must spend an output with index 0",
                field="funding.utxos[0].vout",
            )
        category = baton.category if baton is not None else first.outpoint.txid

        held = 0
        for index, u in enumerate(funding.utxos):
            if index == 0 and baton is not None:
                held += baton.amount
            elif token_amount and u.token is not None and u.token.category == category and u.token.nft is None:
                held += u.token.amount
            else:
                _reject_tokens(u, f"funding.utxos[{index}]")
        if held < token_amount:
            raise InsufficientFunds(required=token_amount, available=held, field="funding.utxos")

        outputs = [
            TxOutput(
                deployment.locking_bytecode,
                funding.value_satoshis,
                TokenData(category, token_amount, NftData(capability, encode_state(state))),
            )
        ]
        required = funding.value_satoshis + self.fee_reserve
        if baton is not None:
            returned = TokenData(category, held - token_amount, baton.nft)
            outputs.append(self._pay(funding.change_hash, self.token_sats, returned))
            required += outputs[-1].value_satoshis
        if funding.value_satoshis < self.dust:
            raise InsufficientFunds(required=self.dust, available=funding.value_satoshis, field="funding.value_satoshis")
        available = funding.available
        if available < required:
            raise InsufficientFunds(required=required, available=available, field="funding.utxos")
        change = available - required
        if change >= self.dust:
            outputs.append(self._pay(funding.change_hash, change))

        inputs = [self._wallet_input(u) for u in funding.utxos]
        entity_id = entity.hex()
        tx = Transaction(inputs=[i for i, _ in inputs], outputs=outputs)
        return UnsignedTxDescriptor(
            operation=request.operation,
            entity_id=entity_id,
            kind=kind,
            transaction=tx,
            source_outputs=tuple(s for _, s in inputs),
            mode=BuildMode.WALLET,
            user_prompt=prompt,
            successor=outputs[0],
            successor_state=state,
            created=(CreatedEntity(entity_id, deployment, 0),),
            details={"category": category, "value_satoshis": funding.value_satoshis, "token_amount": token_amount},
        )

    def _build_create_vault(self, request: CreateVaultRequest, now: int) -> UnsignedTxDescriptor:
        policy = request.policy
        entity = vault_id(request.creator_hash, policy.policy_hash, request.timestamp)
        state = VaultState(
            status=VaultStatus.ACTIVE,
            roles_mask=policy.roles_mask,
            current_period_id=policy.periods.period_index(now),
            last_update_timestamp=now,
        )
        return self._genesis(
            request, entity, state,
            {"policy": policy, "policy_hash": policy.policy_hash, "signer_set_hash": policy.multisig.signer_set_hash},
            f"Create treasury vault ({policy.multisig.required_approvals}-of-{policy.multisig.total_signers})",
        )

    def _build_create_proposal(self, request: CreateProposalRequest, now: int) -> UnsignedTxDescriptor:
        policy = self._policy(request.vault_id)
        proposer = self._policy_signer(policy, request.proposer)
        self._check_payouts(request.recipients)

        vault_utxo = self.store.get_latest_utxo(request.vault_id)
        if vault_utxo is None:
            raise InvalidTransition(f"vault {request.vault_id} has no live UTXO", field="vault_id")
        vault_state: VaultState = vault_utxo.state
        period = period_state_for(
            vault_state, policy, now,
            self.store.category_spent(request.vault_id, vault_state.current_period_id),
        )
        GuardrailValidator(policy).check(request.recipients, period)

        entity = proposal_id(bytes.fromhex(request.vault_id), proposer.pubkey_hash, request.timestamp)
        state = ProposalState(
            status=ProposalStatus.SUBMITTED,
            required_approvals=policy.multisig.required_approvals,
            voting_end_timestamp=now + policy.governance.voting_period,
            payout_total=request.payout_total,
            payout_hash=payout_hash(request.recipients),
        )
        return self._genesis(
            request, entity, state,
            {"vault_id": request.vault_id, "proposer_hash": proposer.pubkey_hash, "recipients": request.recipients},
            f"Submit payout proposal for {request.payout_total} sats to {len(request.recipients)} recipient(s)",
        )

    def _token_lock(self, request: Any) -> Tuple[str, int]:
        """(category, amount) of fungible tokens a schedule or campaign locks."""
        if request.token_type is not TokenType.FUNGIBLE_TOKEN:
            return "", 0
        if not request.token_category or request.token_amount <= 0:
            raise RequestValidationError(
                "fungible-token funding needs a token category and amount",
                field="token_amount",
            )
        return request.token_category, request.token_amount

    def _build_create_schedule(self, request: CreateScheduleRequest, now: int) -> UnsignedTxDescriptor:
        self.deployments.for_entity(request.vault_id)
        category, locked = self._token_lock(request)
        # Token schedules count in token units; carrier outputs hold the sats.
        smallest = 1 if locked else self.dust
        available = locked or request.funding.value_satoshis
        if request.schedule_type is ScheduleType.RECURRING:
            if request.interval_seconds == 0 or request.amount_per_interval < smallest:
                raise RequestValidationError(
                    "recurring schedules need an interval and a per-interval amount above dust",
                    field="interval_seconds",
                )
            first_unlock = request.start_timestamp + request.interval_seconds
        else:
            if request.total_amount == 0 or request.end_timestamp <= request.start_timestamp:
                raise RequestValidationError(
                    "vesting schedules need a total amount and an end after the start",
                    field="end_timestamp",
                )
            if request.schedule_type is ScheduleType.STEP_VESTING and (
                request.interval_seconds == 0 or request.amount_per_interval == 0
            ):
                raise RequestValidationError("step vesting needs an interval and a step amount", field="interval_seconds")
            if available < request.total_amount:
                raise InsufficientFunds(
                    required=request.total_amount,
                    available=available,
                    field="token_amount" if locked else "funding.value_satoshis",
                )
            first_unlock = request.start_timestamp

        entity = stream_id(bytes.fromhex(request.vault_id), request.recipient_hash, request.start_timestamp)
        state = ScheduleState(
            schedule_type=request.schedule_type,
            interval_seconds=request.interval_seconds,
            next_unlock_timestamp=first_unlock,
            amount_per_interval=request.amount_per_interval,
            cliff_timestamp=request.cliff_timestamp,
        )
        parameters = {
            "vault_id": request.vault_id,
            "recipient_hash": request.recipient_hash,
            "authority_hash": request.authority_hash,
            "refund_hash": request.refund_hash or request.authority_hash,
            "total_amount": request.total_amount,
            "start_timestamp": request.start_timestamp,
            "end_timestamp": request.end_timestamp,
            "token_type": request.token_type.value,
        }
        return self._genesis(
            request, entity, state, parameters,
            f"Fund {request.schedule_type.name.lower().replace('_', ' ')} schedule "
            f"with {_amount_text(locked or request.funding.value_satoshis, locked)}",
            token_category=category,
            token_amount=locked,
        )

    def _build_create_campaign(self, request: CreateCampaignRequest, now: int) -> UnsignedTxDescriptor:
        self.deployments.for_entity(request.vault_id)
        authority_hash = CryptoUtils.hash160(request.authority_pubkey)
        if load_claim_authority(self.store, authority_hash) is None:
            raise RequestValidationError(
                "claim authority key was not generated by this engine",
                field="authority_pubkey",
            )
        category, locked = self._token_lock(request)
        if locked and locked < request.amount_per_claim:
            raise InsufficientFunds(required=request.amount_per_claim, available=locked, field="token_amount")
        entity = campaign_id(bytes.fromhex(request.vault_id), authority_hash, request.timestamp, request.merkle_root)
        state = CampaignState(status=CampaignStatus.ACTIVE, flags=request.flags)
        parameters = {
            "vault_id": request.vault_id,
            "authority_hash": authority_hash,
            "amount_per_claim": request.amount_per_claim,
            "refund_hash": request.refund_hash or request.funding.change_hash,
            "token_type": request.token_type.value,
        }
        return self._genesis(
            request, entity, state, parameters,
            f"Fund airdrop campaign with {_amount_text(locked or request.funding.value_satoshis, locked)}",
            token_category=category,
            token_amount=locked,
        )

    def _build_create_tally(self, request: CreateTallyRequest, now: int) -> UnsignedTxDescriptor:
        proposal = bytes.fromhex(request.proposal_id)
        state = TallyState(
            proposal_id_prefix=proposal_id_prefix(proposal),
            quorum_threshold=request.quorum_threshold,
        )
        parameters = {
            "proposal_id": request.proposal_id,
            "voting_end_timestamp": request.voting_end_timestamp,
        }
        return self._genesis(
            request, tally_id(proposal), state, parameters,
            "Open vote tally",
            capability=NftCapability.MINTING,
            require_baton=True,
        )

    # =========================================================================
    # PROPOSALS AND VAULT PAYOUTS
    # =========================================================================

    def _build_approve(self, request: ApproveRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        policy = self._policy(self._vault_of(utxo.entity_id))
        signer = self._policy_signer(policy, request.signer, SignerRole.APPROVER)
        if self.store.has_approved(utxo.entity_id, signer.identity):
            raise InvalidTransition(f"{signer.identity} already approved this proposal", field="signer")

        state = approve(utxo.state, now, policy.governance.execution_delay)
        value = self._remaining(utxo.value_satoshis, self.fee_reserve, "value_satoshis")
        call = self._call(utxo, "approve")
        prompt = f"Approve proposal ({state.approval_count}/{state.required_approvals})"
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call)],
            [self._state_output(utxo, state, value)],
            BuildMode.WALLET, prompt,
            successor_state=state,
            signers=(SignerSpec.from_signer(signer),),
            threshold=1,
            signature_slots=self._wallet_slots(call),
            reservations=(Reservation("approval", utxo.entity_id, signer.identity),),
            details={"approval_count": state.approval_count, "status": state.status.name},
        )

    def _build_execute(self, request: ExecuteRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        proposal: ProposalState = utxo.state
        vault = self._vault_of(utxo.entity_id)
        policy = self._policy(vault)
        check_executable(proposal, now)

        total = sum(r.amount for r in request.recipients)
        if not CryptoUtils.secure_compare(payout_hash(request.recipients), proposal.payout_hash):
            raise InvalidTransition("recipients do not match the approved payout", field="payout_hash")
        if total != proposal.payout_total:
            raise InvalidTransition(
                f"recipients total {total}, approved {proposal.payout_total}",
                field="payout_total",
            )
        self._check_payouts(request.recipients)

        vault_utxo = self.store.get_latest_utxo(vault)
        if vault_utxo is None:
            raise InvalidTransition(f"vault {vault} has no live UTXO", field="vault_id")
        vault_state: VaultState = vault_utxo.state
        period = period_state_for(
            vault_state, policy, now,
            self.store.category_spent(vault, vault_state.current_period_id),
        )
        GuardrailValidator(policy).check(request.recipients, period)
        new_vault = vault_after_payout(vault_state, period, total, now)

        fee = executor_fee(total, self.config.transaction)
        if utxo.value_satoshis < fee + self.fee_reserve:
            raise InsufficientFunds(
                required=fee + self.fee_reserve,
                available=utxo.value_satoshis,
                field="proposal.value_satoshis",
            )
        # The proposal deposit, less fees, folds back into the vault.
        leftover = sat_sub(utxo.value_satoshis, fee + self.fee_reserve)
        vault_value = self._remaining(vault_utxo.value_satoshis, total, "vault.value_satoshis") + leftover

        vault_call = self._call(
            vault_utxo, "execute",
            proposalId=bytes.fromhex(utxo.entity_id),
            newPeriodId=new_vault.current_period_id,
            newSpent=new_vault.spent_this_period,
        )
        inputs = [
            self._covenant_input(vault_utxo, vault_call, SEQUENCE_LOCKTIME_ENABLED),
            self._covenant_input(utxo, self._call(utxo, "execute"), SEQUENCE_LOCKTIME_ENABLED),
        ]
        outputs = [self._state_output(vault_utxo, new_vault, vault_value)]
        outputs += [self._pay(r.recipient_hash, r.amount) for r in request.recipients]
        outputs.append(self._pay(request.executor_hash, fee))

        return self._descriptor(
            request, utxo, inputs, outputs, BuildMode.READY,
            f"Execute proposal paying {total} sats",
            locktime=proposal.execution_timelock,
            successor_state=new_vault,
            successor_entity=vault,
            spent=(vault_utxo, utxo),
            retired=(utxo.entity_id,),
            details={
                "vault_id": vault,
                "payout_total": total,
                "executor_fee": fee,
                "period_id": period.period_id,
                "category_spend": apply_payout(PeriodState(period.period_id, 0), request.recipients).category_spent,
            },
        )

    def _build_spend(self, request: SpendRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        policy = self._policy(utxo.entity_id)
        self._check_payouts(request.recipients)
        vault_state: VaultState = utxo.state
        period = period_state_for(
            vault_state, policy, now,
            self.store.category_spent(utxo.entity_id, vault_state.current_period_id),
        )
        GuardrailValidator(policy).check(request.recipients, period)
        total = sum(r.amount for r in request.recipients)
        new_vault = vault_after_payout(vault_state, period, total, now)
        value = self._remaining(utxo.value_satoshis, total + self.fee_reserve, "value_satoshis")

        call = self._call(
            utxo, "spend",
            payoutHash=payout_hash(request.recipients),
            payoutTotal=total,
            newPeriodId=new_vault.current_period_id,
            newSpent=new_vault.spent_this_period,
        )
        slots = self._wallet_slots(call)
        if len(slots) != policy.multisig.required_approvals:
            raise AbiMismatch(
                f"spend takes {len(slots)} signatures, policy requires {policy.multisig.required_approvals}",
                field="abi",
            )
        signers = tuple(SignerSpec.from_signer(s) for s in policy.multisig.with_role(SignerRole.APPROVER))

        outputs = [self._state_output(utxo, new_vault, value)]
        outputs += [self._pay(r.recipient_hash, r.amount) for r in request.recipients]
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call)], outputs, BuildMode.SESSION,
            request.memo or f"Treasury spend of {total} sats to {len(request.recipients)} recipient(s)",
            successor_state=new_vault,
            signers=signers,
            threshold=len(slots),
            signature_slots=slots,
            details={
                "vault_id": utxo.entity_id,
                "payout_total": total,
                "period_id": period.period_id,
                "category_spend": apply_payout(PeriodState(period.period_id, 0), request.recipients).category_spent,
            },
        )

    # =========================================================================
    # SCHEDULES
    # =========================================================================

    def _build_unlock(self, request: UnlockRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        state: ScheduleState = utxo.state
        recipient = self.deployments.for_entity(utxo.entity_id).param("recipient_hash")
        successor = recurring_unlock(state, now)
        tokens = self._token_funded(utxo)
        # Token payouts have no sats value to take a share of; the minimum fee applies.
        fee = executor_fee(0 if tokens else state.amount_per_interval, self.config.transaction)
        overhead = fee + self.fee_reserve
        balance = utxo.token.amount

        if tokens:
            amount = min(state.amount_per_interval, balance)
            value = self.token_sats
            remaining = utxo.value_satoshis - value - overhead
            final = amount == balance or remaining < self.dust
        else:
            amount = value = state.amount_per_interval
            remaining = utxo.value_satoshis - amount - overhead
            final = remaining < self.dust
        if final:
            value = utxo.value_satoshis - overhead
            if value < self.dust:
                raise InsufficientFunds(required=overhead + self.dust, available=utxo.value_satoshis)
            amount = balance if tokens else value

        outputs = [] if final else [
            self._state_output(utxo, successor, remaining, token_amount=balance - amount if tokens else None)
        ]
        payout = self._pay_tokens(recipient, utxo, amount, value) if tokens else self._pay(recipient, amount)
        outputs += [payout, self._pay(request.executor_hash, fee)]
        call = self._call(utxo, "unlock")
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call, SEQUENCE_LOCKTIME_ENABLED)], outputs,
            BuildMode.READY,
            f"Release {_amount_text(amount, tokens)} from recurring schedule" + (" (final)" if final else ""),
            locktime=state.next_unlock_timestamp,
            successor_state=None if final else successor,
            details={"amount": amount, "executor_fee": fee, "final": int(final)},
        )

    def _terms(self, utxo: CovenantUTXO) -> VestingTerms:
        deployment = self.deployments.for_entity(utxo.entity_id)
        return VestingTerms(
            total_amount=deployment.param("total_amount"),
            start_timestamp=deployment.param("start_timestamp"),
            end_timestamp=deployment.param("end_timestamp"),
        )

    def _build_claim_vesting(self, request: ClaimVestingRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        """
        Release what has vested since the last claim.

        The claim that completes the schedule retires the covenant. The
        recipient gets only the vested remainder; anything the covenant
        holds beyond ``total_amount`` returns to the refund address, unless
        it is too small for an output of its own.
        """
        state: ScheduleState = utxo.state
        terms = self._terms(utxo)
        deployment = self.deployments.for_entity(utxo.entity_id)
        recipient = deployment.param("recipient_hash")
        tokens = self._token_funded(utxo)
        successor, amount = vesting_claim(state, terms, now)
        smallest = 1 if tokens else self.dust
        if amount < smallest:
            raise InvalidTransition(
                f"claimable {amount} is below the minimum payout {smallest}",
                field="claimable",
                claimable=amount,
            )

        balance = utxo.token.amount
        if tokens:
            amount = min(amount, balance)
            remaining = utxo.value_satoshis - self.token_sats - self.fee_reserve
            exhausted = amount == balance or remaining < self.dust
        else:
            remaining = utxo.value_satoshis - amount - self.fee_reserve
            exhausted = remaining < self.dust
        vested_all = successor.total_released >= terms.total_amount
        final = vested_all or exhausted

        call = self._call(utxo, "claim")
        if not final:
            outputs = [self._state_output(utxo, successor, remaining, token_amount=balance - amount if tokens else None)]
            outputs.append(self._pay_tokens(recipient, utxo, amount) if tokens else self._pay(recipient, amount))
            excess = 0
        else:
            outputs, amount, excess = self._final_vesting_outputs(utxo, deployment, amount, vested_all, tokens)

        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call, SEQUENCE_LOCKTIME_ENABLED)], outputs,
            BuildMode.WALLET,
            f"Claim {_amount_text(amount, tokens)} vested",
            locktime=now,
            successor_state=None if final else successor,
            signature_slots=self._wallet_slots(call),
            threshold=1,
            details={"claimable": amount, "final": int(final), "refunded": excess},
        )

    def _final_vesting_outputs(
        self,
        utxo: CovenantUTXO,
        deployment: CovenantDeployment,
        amount: int,
        vested_all: bool,
        tokens: bool,
    ) -> Tuple[List[TxOutput], int, int]:
        recipient = deployment.param("recipient_hash")
        left = utxo.value_satoshis - self.fee_reserve
        if tokens:
            # An underfunded schedule hands over everything it still holds.
            excess = utxo.token.amount - amount if vested_all else 0
            amount = utxo.token.amount - excess
            value = left - (self.token_sats if excess else 0)
        else:
            excess = left - amount if vested_all else 0
            if excess < self.dust:
                amount, excess = left, 0
            value = amount
        if value < self.dust:
            raise InsufficientFunds(required=utxo.value_satoshis - value + self.dust, available=utxo.value_satoshis)

        outputs = [self._pay_tokens(recipient, utxo, amount, value) if tokens else self._pay(recipient, amount)]
        if excess:
            refund = deployment.param("refund_hash")
            outputs.append(self._pay_tokens(refund, utxo, excess) if tokens else self._pay(refund, excess))
        return outputs, amount, excess

    def claimable(self, utxo: CovenantUTXO, now: int) -> int:
        """Vested but unreleased amount at ``now`` (0 before the cliff)."""
        return vesting_claimable(utxo.state, self._terms(utxo), now)

    # =========================================================================
    # CAMPAIGNS
    # =========================================================================

    def _build_claim_campaign(
        self, request: ClaimCampaignRequest, utxo: CovenantUTXO, now: int
    ) -> UnsignedTxDescriptor:
        claimer = request.claimer_hash.hex()
        if self.store.has_claimed(utxo.entity_id, claimer):
            raise InvalidTransition(f"{claimer} already claimed from this campaign", field="claimer_hash")
        amount = self.deployments.for_entity(utxo.entity_id).param("amount_per_claim")
        state = campaign_claim(utxo.state, amount, now)
        tokens = self._token_funded(utxo)
        if tokens:
            balance = utxo.token.amount
            if balance < amount:
                raise InsufficientFunds(required=amount, available=balance, field="token.amount")
            remaining = self._remaining(utxo.value_satoshis, self.token_sats + self.fee_reserve, "value_satoshis")
            left = balance - amount
            if left < amount or remaining < self.token_sats + self.fee_reserve + self.dust:
                state = set_campaign_status(state, CampaignStatus.COMPLETED)
            successor = self._state_output(utxo, state, remaining, token_amount=left)
            payout = self._pay_tokens(request.claimer_hash, utxo, amount)
        else:
            remaining = self._remaining(utxo.value_satoshis, amount + self.fee_reserve, "value_satoshis")
            if remaining < amount + self.fee_reserve + self.dust:
                state = set_campaign_status(state, CampaignStatus.COMPLETED)
            successor = self._state_output(utxo, state, remaining)
            payout = self._pay(request.claimer_hash, amount)

        call = self._call(utxo, "claim", claimerHash=request.claimer_hash)
        source = self._covenant_input(utxo, call)
        outputs = [successor, payout]
        descriptor = self._descriptor(
            request, utxo, [source], outputs, BuildMode.READY,
            f"Airdrop claim of {_amount_text(amount, tokens)}",
            successor_state=state,
            reservations=(Reservation("claim", utxo.entity_id, claimer),),
            details={"amount": amount, "claims_count": state.claims_count},
        )
        signed = self._authority_sign(descriptor.transaction, source[1], self._authority(utxo))
        return _with_transaction(descriptor, signed)

    # =========================================================================
    # PAUSE / RESUME / CANCEL
    # =========================================================================

    def _build_pause(self, request: ControlRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        return self._toggle(request, utxo, now, pause=True)

    def _build_resume(self, request: ControlRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        return self._toggle(request, utxo, now, pause=False)

    def _toggle(self, request: ControlRequest, utxo: CovenantUTXO, now: int, pause: bool) -> UnsignedTxDescriptor:
        verb = "Pause" if pause else "Resume"
        fee = self.config.transaction.control_fee_reserve.get()
        value = self._remaining(utxo.value_satoshis, fee, "value_satoshis")

        if utxo.kind is CovenantKind.VAULT:
            policy = self._policy(utxo.entity_id)
            signer = self._policy_signer(policy, request.signer, SignerRole.PAUSER, SignerRole.GUARDIAN)
            state = set_vault_status(utxo.state, VaultStatus.PAUSED if pause else VaultStatus.ACTIVE, now)
            call = self._call(utxo, request.operation)
            return self._descriptor(
                request, utxo, [self._covenant_input(utxo, call)],
                [self._state_output(utxo, state, value)],
                BuildMode.WALLET, f"{verb} treasury vault",
                successor_state=state,
                signers=(SignerSpec.from_signer(signer),),
                threshold=1,
                signature_slots=self._wallet_slots(call),
            )

        if utxo.kind is CovenantKind.CAMPAIGN:
            campaign: CampaignState = utxo.state
            if not campaign.has_flag(CampaignFlag.PAUSABLE):
                raise InvalidTransition("campaign was created without the pausable flag", field="flags")
            state = set_campaign_status(campaign, CampaignStatus.PAUSED if pause else CampaignStatus.ACTIVE)
            call = self._call(utxo, request.operation)
            source = self._covenant_input(utxo, call)
            descriptor = self._descriptor(
                request, utxo, [source], [self._state_output(utxo, state, value)],
                BuildMode.READY, f"{verb} airdrop campaign",
                successor_state=state,
            )
            return _with_transaction(
                descriptor, self._authority_sign(descriptor.transaction, source[1], self._authority(utxo))
            )

        raise InvalidTransition(f"{utxo.kind.value} covenants cannot be paused or resumed", field="kind")

    def _build_cancel(self, request: ControlRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        if utxo.kind is CovenantKind.PROPOSAL:
            return self._cancel_proposal(request, utxo)
        if utxo.kind is CovenantKind.SCHEDULE:
            return self._cancel_schedule(request, utxo, now)
        if utxo.kind is CovenantKind.CAMPAIGN:
            return self._cancel_campaign(request, utxo)
        raise InvalidTransition(f"{utxo.kind.value} covenants cannot be cancelled", field="kind")

    def _cancel_proposal(self, request: ControlRequest, utxo: CovenantUTXO) -> UnsignedTxDescriptor:
        deployment = self.deployments.for_entity(utxo.entity_id)
        policy = self._policy(deployment.param("vault_id"))
        signer = self._policy_signer(policy, request.signer, SignerRole.APPROVER, SignerRole.GUARDIAN)
        cancel_proposal(utxo.state)
        refund = utxo.value_satoshis - self.fee_reserve
        if refund < self.dust:
            raise InsufficientFunds(required=self.fee_reserve + self.dust, available=utxo.value_satoshis)
        call = self._call(utxo, "cancel")
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call)],
            [self._pay(deployment.param("proposer_hash"), refund)],
            BuildMode.WALLET, "Cancel proposal and refund its deposit",
            signers=(SignerSpec.from_signer(signer),),
            threshold=1,
            signature_slots=self._wallet_slots(call),
        )

    def _cancel_schedule(self, request: ControlRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        deployment = self.deployments.for_entity(utxo.entity_id)
        state: ScheduleState = utxo.state
        tokens = self._token_funded(utxo)
        available = utxo.value_satoshis - self.fee_reserve

        vested = 0
        if state.schedule_type.is_vesting:
            vested = vesting_claimable(state, self._terms(utxo), now)
            if not tokens and 0 < vested < self.dust:
                raise InvalidTransition(
                    f"vested {vested} is below dust; wait before cancelling",
                    field="claimable",
                )

        outputs = []
        if tokens:
            vested = min(vested, utxo.token.amount)
            unvested = utxo.token.amount - vested
            value = available - (self.token_sats if vested and unvested else 0)
            if value < self.dust:
                raise InsufficientFunds(required=utxo.value_satoshis - value + self.dust, available=utxo.value_satoshis)
            # The vested share rides on a carrier output; the refund keeps the sats.
            if vested:
                outputs.append(self._pay_tokens(
                    deployment.param("recipient_hash"), utxo, vested, self.token_sats if unvested else value,
                ))
            if unvested:
                outputs.append(self._pay_tokens(deployment.param("refund_hash"), utxo, unvested, value))
        else:
            unvested = available - vested
            if unvested < 0 or (unvested and unvested < self.dust):
                raise InsufficientFunds(required=vested + self.fee_reserve + self.dust, available=utxo.value_satoshis)
            if vested:
                outputs.append(self._pay(deployment.param("recipient_hash"), vested))
            if unvested:
                outputs.append(self._pay(deployment.param("refund_hash"), unvested))

        call = self._call(utxo, "cancel")
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call, SEQUENCE_LOCKTIME_ENABLED)], outputs,
            BuildMode.WALLET, f"Cancel schedule and return {_amount_text(unvested, tokens)}",
            locktime=now,
            signature_slots=self._wallet_slots(call),
            threshold=1,
            details={"vested": vested, "unvested": unvested},
        )

    def _cancel_campaign(self, request: ControlRequest, utxo: CovenantUTXO) -> UnsignedTxDescriptor:
        campaign: CampaignState = utxo.state
        if not campaign.has_flag(CampaignFlag.CANCELABLE):
            raise InvalidTransition("campaign was created without the cancelable flag", field="flags")
        set_campaign_status(campaign, CampaignStatus.CANCELLED)
        refund = utxo.value_satoshis - self.fee_reserve
        if refund < self.dust:
            raise InsufficientFunds(required=self.fee_reserve + self.dust, available=utxo.value_satoshis)
        refund_hash = self.deployments.for_entity(utxo.entity_id).param("refund_hash")
        unclaimed = utxo.token.amount if self._token_funded(utxo) else 0
        token = TokenData(utxo.category, unclaimed) if unclaimed else None
        call = self._call(utxo, "cancel")
        source = self._covenant_input(utxo, call)
        prompt = f"Cancel airdrop campaign and refund {refund} sats"
        if unclaimed:
            prompt += f" and {unclaimed} tokens"
        descriptor = self._descriptor(
            request, utxo, [source], [self._pay(refund_hash, refund, token)],
            BuildMode.READY, prompt,
            details={"refund": refund, "refunded_tokens": unclaimed},
        )
        return _with_transaction(
            descriptor, self._authority_sign(descriptor.transaction, source[1], self._authority(utxo))
        )

    # =========================================================================
    # VOTING
    # =========================================================================

    def _build_vote(self, request: VoteRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        tally: TallyState = utxo.state
        deployment = self.deployments.for_entity(utxo.entity_id)
        voting_end = deployment.param("voting_end_timestamp")
        if now >= voting_end:
            raise InvalidTransition(f"voting ended at {voting_end}", field="voting_end_timestamp")

        voter = request.voter_hash.hex()
        if self.store.has_voted(utxo.entity_id, voter):
            raise InvalidTransition(f"{voter} already voted", field="voter_hash")
        limit = self.config.limits.max_votes_per_tally.get()
        if self.store.vote_count(utxo.entity_id) >= limit:
            raise InvalidTransition(f"tally already holds {limit} votes", field="votes")

        stake = request.stake
        if stake.owner_hash != request.voter_hash:
            raise RequestValidationError("stake is not owned by the voter", field="stake.owner_hash")
        if stake.token is None or stake.token.category != utxo.category or stake.token.amount == 0:
            raise RequestValidationError(
                "stake must carry governance tokens of the tally's category",
                field="stake.token",
            )
        if stake.token.nft is not None:
            raise RequestValidationError("stake must not carry an NFT", field="stake.token")

        prefix = proposal_id_prefix(bytes.fromhex(deployment.param("proposal_id")))
        weight = stake.token.amount
        new_tally = cast_vote(tally, prefix, request.choice, weight)
        vote_state = VoteState(
            proposal_id_prefix=prefix,
            vote_choice=request.choice,
            lock_timestamp=now,
            unlock_timestamp=voting_end,
        )

        entity = vote_id(bytes.fromhex(utxo.entity_id), request.voter_hash).hex()
        lock = CovenantDeployment(
            CovenantKind.VOTE_LOCK,
            standard_artifact(CovenantKind.VOTE_LOCK),
            request.lock_redeem_script,
            {"tally_id": utxo.entity_id, "voter_hash": request.voter_hash, "unlock_timestamp": voting_end},
        )
        # Vote locks prepay their own reclaim fee.
        lock_value = self.config.transaction.token_output_satoshis.get() + self.fee_reserve

        inputs = [self._covenant_input(utxo, self._call(
            utxo, "vote", proposalPrefix=prefix, choice=int(request.choice), weight=weight,
        ))]
        inputs.append(self._wallet_input(stake))
        inputs += self._fee_inputs(request.fee_utxos, "fee_utxos")

        available = stake.value_satoshis + sum(u.value_satoshis for u in request.fee_utxos)
        required = lock_value + self.fee_reserve
        if available < required:
            raise InsufficientFunds(required=required, available=available, field="fee_utxos")
        outputs = [
            self._state_output(utxo, new_tally, utxo.value_satoshis),
            TxOutput(
                lock.locking_bytecode,
                lock_value,
                TokenData(utxo.category, weight, NftData(NftCapability.NONE, encode_state(vote_state))),
            ),
        ]
        change = available - required
        if change >= self.dust:
            outputs.append(self._pay(request.voter_hash, change))

        return self._descriptor(
            request, utxo, inputs, outputs, BuildMode.WALLET,
            f"Vote {request.choice.name} with {weight} tokens",
            successor_state=new_tally,
            created=(CreatedEntity(entity, lock, 1),),
            reservations=(Reservation("vote", utxo.entity_id, voter),),
            details={"vote_id": entity, "weight": weight, "choice": request.choice.name},
        )

    def _build_reclaim(self, request: ReclaimRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        vote: VoteState = utxo.state
        if now < vote.unlock_timestamp:
            raise InvalidTransition(f"tokens locked until {vote.unlock_timestamp}", field="unlock_timestamp")
        voter = self.deployments.for_entity(utxo.entity_id).param("voter_hash")
        value = self._remaining(utxo.value_satoshis, self.fee_reserve, "value_satoshis")
        call = self._call(utxo, "reclaim")
        outputs = [self._pay(voter, value, TokenData(utxo.category, utxo.token.amount))]
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call, SEQUENCE_LOCKTIME_ENABLED)], outputs,
            BuildMode.WALLET, f"Reclaim {utxo.token.amount} governance tokens",
            locktime=vote.unlock_timestamp,
            signature_slots=self._wallet_slots(call),
            threshold=1,
        )

    def _build_tally(self, request: FinalizeTallyRequest, utxo: CovenantUTXO, now: int) -> UnsignedTxDescriptor:
        deployment = self.deployments.for_entity(utxo.entity_id)
        voting_end = deployment.param("voting_end_timestamp")
        if now < voting_end:
            raise InvalidTransition(f"voting open until {voting_end}", field="voting_end_timestamp")
        state = finalize_tally(utxo.state, now)
        value = self._remaining(utxo.value_satoshis, self.fee_reserve, "value_satoshis")
        call = self._call(utxo, "tally")
        outcome = tally_outcome(state, self._majority(deployment.param("proposal_id")))
        return self._descriptor(
            request, utxo, [self._covenant_input(utxo, call, SEQUENCE_LOCKTIME_ENABLED)],
            [self._state_output(utxo, state, value, NftCapability.NONE)],
            BuildMode.READY, f"Finalize tally: {outcome.value}",
            locktime=voting_end,
            successor_state=state,
            details={"outcome": outcome.value, "total_votes": state.total_votes},
        )

    def _majority(self, proposal: str) -> int:
        try:
            return self._policy(self._vault_of(proposal)).governance.majority_threshold
        except AbiMismatch:
            return 50


def _amount_text(amount: int, tokens: bool) -> str:
    return f"{amount} {'tokens' if tokens else 'sats'}"


def _reject_tokens(utxo: WalletUTXO, field: str) -> None:
    if utxo.token is not None:
        raise RequestValidationError(
            "input carries tokens with no matching output; they would be burned",
            field=f"{field}.token",
        )


def _with_transaction(descriptor: UnsignedTxDescriptor, tx: Transaction) -> UnsignedTxDescriptor:
    successor = tx.outputs[0] if descriptor.successor is not None else None
    return replace(descriptor, transaction=tx, successor=successor)
