"""
FlowGuard: off-chain engine for CashTokens covenant treasuries.

Module Index
────────────

    codec.py         NFT commitment layouts for every covenant family
    identifiers.py   Deterministic 32-byte ids, payout and signer hashes
    policy.py        Treasury policy: signers, guardrails, periods
    guardrails.py    Payout checks with on-chain integer semantics
    transitions.py   Pure state transitions per covenant family
    transaction.py   Transaction serialization and signing digests
    abi.py           Covenant artifacts and unlocking bytecode
    builder.py       Unsigned transaction descriptors per operation
    sessions.py      M-of-N signature collection and single broadcast
    supervisor.py    Lifecycle status mirror and audit trail
    engine.py        Wiring: soft locks, retries, dispatch by mode
    store.py         State store contract and in-memory store
    config.py        YAML / environment configuration
    observability.py Structured logging and audit hash chain
    cli.py           Operator command line

Everything is importable from the package root, lazily.
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy import FlowGuard modules on first access."""

    if name in ("VaultState", "ProposalState", "ScheduleState", "VoteState", "TallyState",
                "CampaignState", "VaultStatus", "ProposalStatus", "ScheduleType", "VoteChoice",
                "CampaignStatus", "CampaignFlag", "SignerRole", "CovenantKind",
                "encode_state", "decode_commitment"):
        from flowguard import codec
        return getattr(codec, name)

    if name in ("PayoutRecipient", "vault_id", "proposal_id", "stream_id", "campaign_id",
                "tally_id", "vote_id", "payout_hash", "signer_set_hash"):
        from flowguard import identifiers
        return getattr(identifiers, name)

    if name in ("TreasuryPolicy", "Signer", "MultisigConfig", "Guardrails", "CategoryBudget"):
        from flowguard import policy
        return getattr(policy, name)

    if name in ("GuardrailValidator", "GuardrailKind", "GuardrailResult", "PeriodState"):
        from flowguard import guardrails
        return getattr(guardrails, name)

    if name in ("TransactionBuilder", "UnsignedTxDescriptor", "BuildMode"):
        from flowguard import builder
        return getattr(builder, name)

    if name in ("SessionCoordinator", "SubmissionResult", "SessionStatus"):
        from flowguard import sessions
        return getattr(sessions, name)

    if name in ("StateSupervisor", "EntityKind", "EntityStatus"):
        from flowguard import supervisor
        return getattr(supervisor, name)

    if name in ("FlowGuardEngine", "EngineResult"):
        from flowguard import engine
        return getattr(engine, name)

    if name in ("InMemoryStateStore", "StateStore", "UtxoLockRegistry"):
        from flowguard import store
        return getattr(store, name)

    if name in ("parse_request",):
        from flowguard import requests
        return getattr(requests, name)

    if name in ("get_config", "get_config_manager", "FlowGuardConfig"):
        from flowguard import config
        return getattr(config, name)

    if name in ("FlowGuardError", "MalformedCommitment", "RequestValidationError", "BuildError",
                "StaleState", "GuardrailViolation", "InvalidTransition", "InsufficientFunds",
                "SessionError", "UnknownSession", "SessionExpired", "UnauthorizedSigner",
                "InvalidSignature", "BroadcastRejected", "AbiMismatch", "UtxoBusy"):
        from flowguard import errors
        return getattr(errors, name)

    raise AttributeError(f"module 'flowguard' has no attribute {name!r}")
