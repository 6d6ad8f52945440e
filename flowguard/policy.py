"""
FlowGuard Treasury Policy

The off-chain body of a treasury's rules. Only its hash is committed on
chain (as a covenant constructor argument), so the canonical encoding
below must be stable: any change to it changes every policy hash.

Canonical policy preimage:

    u8   required_approvals
    u8   signer count
    32B  signer_set_hash
    u64  period_cap
    u64  recipient_cap
    u64  period_duration
    u64  period_start
    u8   allowlist enabled
    32B  sha256(sorted allowlist entries)
    32B  sha256(sorted denylist entries)
    u8   category count
    per category, ascending id: u32 category_id, u64 budget_per_period

A cap or budget of 0 means "no limit".
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml

from flowguard.codec import SignerRole
from flowguard.config import LimitsConfig, get_config
from flowguard.errors import RequestValidationError
from flowguard.hardening import CryptoUtils, ValidationError, ValidationErrors, Validators
from flowguard.identifiers import signer_set_hash
from flowguard.schema import validate_against_schema

NO_LIMIT = 0

_ROLE_NAMES = {role.name.lower(): role for role in SignerRole}


@dataclass(frozen=True)
class Signer:
    identity: str
    pubkey: bytes
    roles: FrozenSet[SignerRole] = frozenset({SignerRole.APPROVER})

    def __post_init__(self):
        Validators.validate_signer_id(self.identity, "identity").raise_if_invalid()

    @property
    def pubkey_hash(self) -> bytes:
        return CryptoUtils.hash160(self.pubkey)

    def has_role(self, role: SignerRole) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class MultisigConfig:
    required_approvals: int
    signers: Tuple[Signer, ...]

    @property
    def total_signers(self) -> int:
        return len(self.signers)

    @property
    def signer_set_hash(self) -> bytes:
        return signer_set_hash(s.pubkey for s in self.signers)

    def signer(self, identity: str) -> Optional[Signer]:
        for s in self.signers:
            if s.identity == identity:
                return s
        return None

    def with_role(self, role: SignerRole) -> List[Signer]:
        return [s for s in self.signers if s.has_role(role)]


@dataclass(frozen=True)
class CategoryBudget:
    category_id: int
    budget_per_period: int
    label: str = ""


@dataclass(frozen=True)
class Guardrails:
    period_cap: int = NO_LIMIT
    recipient_cap: int = NO_LIMIT
    allowlist_enabled: bool = False
    allowlist: FrozenSet[bytes] = frozenset()
    denylist: FrozenSet[bytes] = frozenset()
    category_budgets: Tuple[CategoryBudget, ...] = ()

    def budget_for(self, category_id: int) -> Optional[CategoryBudget]:
        for budget in self.category_budgets:
            if budget.category_id == category_id:
                return budget
        return None


@dataclass(frozen=True)
class GovernanceRules:
    voting_period: int
    execution_delay: int
    quorum_threshold: int = 0
    majority_threshold: int = 50


@dataclass(frozen=True)
class PeriodConfig:
    period_duration: int
    start_timestamp: int = 0

    def period_index(self, timestamp: int) -> int:
        if timestamp <= self.start_timestamp:
            return 0
        return (timestamp - self.start_timestamp) // self.period_duration

    def period_start(self, period_id: int) -> int:
        return self.start_timestamp + period_id * self.period_duration


@dataclass(frozen=True)
class TreasuryPolicy:
    multisig: MultisigConfig
    guardrails: Guardrails = field(default_factory=Guardrails)
    governance: Optional[GovernanceRules] = None
    periods: Optional[PeriodConfig] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        cfg = get_config().governance
        if self.governance is None:
            object.__setattr__(self, "governance", GovernanceRules(
                voting_period=cfg.voting_period_seconds.get(),
                execution_delay=cfg.execution_delay_seconds.get(),
            ))
        if self.periods is None:
            object.__setattr__(self, "periods", PeriodConfig(period_duration=cfg.period_duration_seconds.get()))

    @property
    def roles_mask(self) -> int:
        mask = 0
        for signer in self.multisig.signers:
            for role in signer.roles:
                mask |= 1 << role
        return mask

    def canonical_bytes(self) -> bytes:
        g = self.guardrails
        parts = [
            struct.pack("<BB", self.multisig.required_approvals, self.multisig.total_signers),
            self.multisig.signer_set_hash,
            struct.pack("<QQQQ", g.period_cap, g.recipient_cap,
                        self.periods.period_duration, self.periods.start_timestamp),
            struct.pack("<B", 1 if g.allowlist_enabled else 0),
            CryptoUtils.sha256(b"".join(sorted(g.allowlist))),
            CryptoUtils.sha256(b"".join(sorted(g.denylist))),
            struct.pack("<B", len(g.category_budgets)),
        ]
        for budget in sorted(g.category_budgets, key=lambda b: b.category_id):
            parts.append(struct.pack("<IQ", budget.category_id, budget.budget_per_period))
        return b"".join(parts)

    @property
    def policy_hash(self) -> bytes:
        return CryptoUtils.sha256(self.canonical_bytes())

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], limits: Optional[LimitsConfig] = None) -> "TreasuryPolicy":
        """Build a policy from its JSON/YAML form, validating shape and limits."""
        errors = validate_against_schema(data, "policy.schema.json")
        if errors:
            raise RequestValidationError("; ".join(errors), field="policy")

        ms = data["multisig"]
        signers = tuple(
            Signer(
                identity=s["identity"],
                pubkey=bytes.fromhex(s["pubkey"]),
                roles=frozenset(_ROLE_NAMES[r] for r in s.get("roles", ["approver"])),
            )
            for s in ms["signers"]
        )
        g = data.get("guardrails", {})
        guardrails = Guardrails(
            period_cap=g.get("period_cap", NO_LIMIT),
            recipient_cap=g.get("recipient_cap", NO_LIMIT),
            allowlist_enabled=g.get("allowlist", {}).get("enabled", False),
            allowlist=frozenset(bytes.fromhex(h) for h in g.get("allowlist", {}).get("entries", [])),
            denylist=frozenset(bytes.fromhex(h) for h in g.get("denylist", {}).get("entries", [])),
            category_budgets=tuple(
                CategoryBudget(b["category_id"], b["budget_per_period"], b.get("label", ""))
                for b in g.get("category_budgets", [])
            ),
        )

        cfg = get_config().governance
        gov = data.get("governance", {})
        governance = GovernanceRules(
            voting_period=gov.get("voting_period", cfg.voting_period_seconds.get()),
            execution_delay=gov.get("execution_delay", cfg.execution_delay_seconds.get()),
            quorum_threshold=gov.get("quorum_threshold", 0),
            majority_threshold=gov.get("majority_threshold", 50),
        )
        per = data.get("periods", {})
        periods = PeriodConfig(
            period_duration=per.get("period_duration", cfg.period_duration_seconds.get()),
            start_timestamp=per.get("start_timestamp", 0),
        )

        policy = cls(
            multisig=MultisigConfig(ms["required_approvals"], signers),
            guardrails=guardrails,
            governance=governance,
            periods=periods,
            metadata=dict(data.get("metadata", {})),
        )
        policy.check_limits(limits).raise_if_invalid()
        return policy

    @classmethod
    def from_yaml(cls, text: str, limits: Optional[LimitsConfig] = None) -> "TreasuryPolicy":
        data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise RequestValidationError("policy document must be a mapping", field="policy")
        return cls.from_dict(data, limits)

    def check_limits(self, limits: Optional[LimitsConfig] = None):
        """Semantic checks beyond the schema, against configured limits."""
        from flowguard.hardening import ValidationResult

        limits = limits or get_config().limits
        errors: List[ValidationError] = []
        ms = self.multisig
        if ms.total_signers > limits.max_signers.get():
            errors.append(ValidationError(
                "multisig.signers", f"{ms.total_signers} signers exceeds limit {limits.max_signers.get()}"))
        if ms.required_approvals > ms.total_signers:
            errors.append(ValidationError(
                "multisig.required_approvals",
                f"requires {ms.required_approvals} of only {ms.total_signers} signers"))
        identities = [s.identity for s in ms.signers]
        if len(set(identities)) != len(identities):
            errors.append(ValidationError("multisig.signers", "duplicate signer identity"))
        if len({s.pubkey for s in ms.signers}) != len(ms.signers):
            errors.append(ValidationError("multisig.signers", "duplicate signer public key"))
        g = self.guardrails
        if len(g.allowlist) > limits.max_allowlist_entries.get():
            errors.append(ValidationError("guardrails.allowlist", "too many allowlist entries"))
        if len(g.denylist) > limits.max_allowlist_entries.get():
            errors.append(ValidationError("guardrails.denylist", "too many denylist entries"))
        if len(g.category_budgets) > limits.max_categories.get():
            errors.append(ValidationError("guardrails.category_budgets", "too many categories"))
        if len({b.category_id for b in g.category_budgets}) != len(g.category_budgets):
            errors.append(ValidationError("guardrails.category_budgets", "duplicate category id"))
        if g.allowlist & g.denylist:
            errors.append(ValidationError("guardrails", "an address is both allowed and denied"))
        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(self)


__all__ = [
    "NO_LIMIT",
    "Signer",
    "MultisigConfig",
    "CategoryBudget",
    "Guardrails",
    "GovernanceRules",
    "PeriodConfig",
    "TreasuryPolicy",
    "ValidationErrors",
]
