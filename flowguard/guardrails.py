"""
FlowGuard Guardrail Validator

Evaluates a proposed payout against a treasury policy and the vault's
current period, using the same unsigned 64-bit saturating arithmetic the
covenant performs, so that a payout accepted here is accepted on chain
and one rejected here is rejected on chain.

Checks run in a fixed order and the first violation wins:

    1. PERIOD_CAP        total <= period_cap - spent_this_period
    2. RECIPIENT_CAP     every amount <= recipient_cap
    3. ALLOWLIST         every recipient listed (when enabled)
    4. DENYLIST          no recipient listed
    5. CATEGORY_BUDGET   category spend <= remaining category budget

A cap or budget of 0 is the "no limit" sentinel.

Validation is pure and safe to call from any number of threads.
"""

from __future__ import annotations

from dataclasses import dataclass, field as dc_field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from flowguard.codec import VaultState
from flowguard.errors import GuardrailViolation
from flowguard.hardening import sat_add, sat_sub
from flowguard.identifiers import PayoutRecipient
from flowguard.policy import NO_LIMIT, TreasuryPolicy


class GuardrailKind(Enum):
    PERIOD_CAP = "period_cap"
    RECIPIENT_CAP = "recipient_cap"
    ALLOWLIST = "allowlist"
    DENYLIST = "denylist"
    CATEGORY_BUDGET = "category_budget"


@dataclass(frozen=True)
class PeriodState:
    """Spend accounting for the vault's current period."""
    period_id: int
    spent: int
    category_spent: Mapping[int, int] = dc_field(default_factory=dict)
    rolled_over: bool = False

    def category(self, category_id: int) -> int:
        return self.category_spent.get(category_id, 0)


def period_state_for(
    vault: VaultState,
    policy: TreasuryPolicy,
    now: int,
    category_spent: Optional[Mapping[int, int]] = None,
) -> PeriodState:
    """
    Period accounting as the covenant will see it at ``now``.

    When one or more whole periods have elapsed since the vault's current
    period started, the period id advances and every spend counter resets.
    """
    index = policy.periods.period_index(now)
    if index > vault.current_period_id:
        return PeriodState(period_id=index, spent=0, category_spent={}, rolled_over=True)
    return PeriodState(
        period_id=vault.current_period_id,
        spent=vault.spent_this_period,
        category_spent=dict(category_spent or {}),
    )


@dataclass(frozen=True)
class GuardrailResult:
    """Outcome of a guardrail check."""
    violation: Optional[GuardrailKind] = None
    field: str = ""
    message: str = ""
    details: Dict[str, Any] = dc_field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.violation is None

    def raise_if_violated(self) -> None:
        if self.violation is not None:
            raise GuardrailViolation(self.violation, self.field, self.message, **self.details)

    @classmethod
    def passed(cls) -> "GuardrailResult":
        return cls()


class GuardrailValidator:
    """Applies a policy's guardrails to proposed payouts."""

    def __init__(self, policy: TreasuryPolicy):
        self.policy = policy

    def validate(self, recipients: Sequence[PayoutRecipient], period: PeriodState) -> GuardrailResult:
        g = self.policy.guardrails

        total = 0
        for r in recipients:
            total = sat_add(total, r.amount)

        if g.period_cap != NO_LIMIT:
            remaining = sat_sub(g.period_cap, period.spent)
            if total > remaining:
                return GuardrailResult(
                    GuardrailKind.PERIOD_CAP,
                    "payout_total",
                    f"payout of {total} exceeds remaining period cap {remaining}",
                    {"total": total, "remaining": remaining, "period_id": period.period_id},
                )

        if g.recipient_cap != NO_LIMIT:
            for index, r in enumerate(recipients):
                if r.amount > g.recipient_cap:
                    return GuardrailResult(
                        GuardrailKind.RECIPIENT_CAP,
                        f"recipients[{index}].amount",
                        f"amount {r.amount} exceeds recipient cap {g.recipient_cap}",
                        {"amount": r.amount, "cap": g.recipient_cap},
                    )

        if g.allowlist_enabled:
            for index, r in enumerate(recipients):
                if r.recipient_hash not in g.allowlist:
                    return GuardrailResult(
                        GuardrailKind.ALLOWLIST,
                        f"recipients[{index}].recipient_hash",
                        f"recipient {r.recipient_hash.hex()} is not on the allowlist",
                    )

        if g.denylist:
            for index, r in enumerate(recipients):
                if r.recipient_hash in g.denylist:
                    return GuardrailResult(
                        GuardrailKind.DENYLIST,
                        f"recipients[{index}].recipient_hash",
                        f"recipient {r.recipient_hash.hex()} is on the denylist",
                    )

        by_category: Dict[int, int] = {}
        for r in recipients:
            by_category[r.category_id] = sat_add(by_category.get(r.category_id, 0), r.amount)
        for category_id in sorted(by_category):
            budget = g.budget_for(category_id)
            if budget is None or budget.budget_per_period == NO_LIMIT:
                continue
            remaining = sat_sub(budget.budget_per_period, period.category(category_id))
            if by_category[category_id] > remaining:
                return GuardrailResult(
                    GuardrailKind.CATEGORY_BUDGET,
                    f"category[{category_id}]",
                    f"category {budget.label or category_id} spend {by_category[category_id]} "
                    f"exceeds remaining budget {remaining}",
                    {"category_id": category_id, "amount": by_category[category_id], "remaining": remaining},
                )

        return GuardrailResult.passed()

    def check(self, recipients: Sequence[PayoutRecipient], period: PeriodState) -> None:
        """Validate and raise GuardrailViolation on the first failure."""
        self.validate(recipients, period).raise_if_violated()


def apply_payout(period: PeriodState, recipients: Sequence[PayoutRecipient]) -> PeriodState:
    """Period accounting after ``recipients`` have been paid."""
    spent = period.spent
    categories = dict(period.category_spent)
    for r in recipients:
        spent = sat_add(spent, r.amount)
        categories[r.category_id] = sat_add(categories.get(r.category_id, 0), r.amount)
    return replace(period, spent=spent, category_spent=categories)


def validate(
    recipients: Sequence[PayoutRecipient],
    policy: TreasuryPolicy,
    period: PeriodState,
) -> GuardrailResult:
    return GuardrailValidator(policy).validate(recipients, period)
