"""
Treasury Policy Test Suite

Loading, limit checks and the canonical policy hash.

Run with: pytest tests/test_policy.py -v
"""

import pytest

from conftest import PERIOD, SIGNERS, hash20, key_for, make_policy
from flowguard.codec import SignerRole
from flowguard.config import get_config_manager
from flowguard.errors import RequestValidationError
from flowguard.policy import CategoryBudget, Guardrails, MultisigConfig, Signer, TreasuryPolicy


def policy_doc(**overrides):
    doc = {
        "multisig": {
            "required_approvals": 2,
            "signers": [
                {"identity": name, "pubkey": key_for(name).pubkey.hex(), "roles": ["approver"]}
                for name in SIGNERS
            ],
        },
        "guardrails": {
            "period_cap": 100_000_000,
            "recipient_cap": 10_000_000,
            "allowlist": {"enabled": False, "entries": []},
            "denylist": {"entries": [hash20("mallory").hex()]},
            "category_budgets": [{"category_id": 1, "budget_per_period": 5_000_000, "label": "grants"}],
        },
        "governance": {"voting_period": 86_400, "execution_delay": 3600},
        "periods": {"period_duration": PERIOD, "start_timestamp": 0},
    }
    doc.update(overrides)
    return doc


# =============================================================================
# LOADING
# =============================================================================

class TestPolicyLoading:
    """Tests for building a policy from its document form."""

    def test_from_dict(self):
        policy = TreasuryPolicy.from_dict(policy_doc())
        assert policy.multisig.required_approvals == 2
        assert policy.multisig.total_signers == 3
        assert policy.guardrails.recipient_cap == 10_000_000
        assert hash20("mallory") in policy.guardrails.denylist
        assert policy.guardrails.budget_for(1).label == "grants"
        assert policy.guardrails.budget_for(2) is None
        assert policy.governance.execution_delay == 3600
        assert policy.governance.majority_threshold == 50

    def test_roles_default_to_approver(self):
        doc = policy_doc()
        for signer in doc["multisig"]["signers"]:
            signer.pop("roles")
        policy = TreasuryPolicy.from_dict(doc)
        assert all(s.roles == frozenset({SignerRole.APPROVER}) for s in policy.multisig.signers)

    def test_from_yaml(self):
        text = (
            "multisig:\n"
            "  required_approvals: 1\n"
            "  signers:\n"
            f"    - identity: alice\n"
            f"      pubkey: '{key_for('alice').pubkey.hex()}'\n"
            "      roles: [approver, pauser]\n"
            "guardrails:\n"
            "  period_cap: 5000\n"
        )
        policy = TreasuryPolicy.from_yaml(text)
        assert policy.multisig.signer("alice").has_role(SignerRole.PAUSER)
        assert policy.guardrails.period_cap == 5000

    def test_yaml_root_must_be_mapping(self):
        with pytest.raises(RequestValidationError):
            TreasuryPolicy.from_yaml("- just\n- a list\n")

    def test_missing_governance_uses_config_defaults(self):
        doc = policy_doc()
        del doc["governance"]
        del doc["periods"]
        policy = TreasuryPolicy.from_dict(doc)
        assert policy.governance.voting_period == 7 * 86_400
        assert policy.periods.period_duration == 30 * 86_400

    @pytest.mark.parametrize("mutate", [
        lambda d: d["multisig"]["signers"][0].update(pubkey="04" + "00" * 32),
        lambda d: d["multisig"].update(required_approvals=0),
        lambda d: d["guardrails"].update(period_cap=-1),
        lambda d: d["multisig"]["signers"][0].update(roles=["admin"]),
        lambda d: d.update(unexpected=True),
    ])
    def test_schema_rejections(self, mutate):
        doc = policy_doc()
        mutate(doc)
        with pytest.raises(RequestValidationError) as exc_info:
            TreasuryPolicy.from_dict(doc)
        assert exc_info.value.field == "policy"


# =============================================================================
# LIMITS
# =============================================================================

class TestPolicyLimits:
    """Tests for semantic checks against configured limits."""

    def test_required_exceeds_signers(self):
        doc = policy_doc()
        doc["multisig"]["required_approvals"] = 4
        with pytest.raises(RequestValidationError) as exc_info:
            TreasuryPolicy.from_dict(doc)
        assert exc_info.value.field == "multisig.required_approvals"

    def test_signer_limit_is_configurable(self):
        get_config_manager().set("limits.max_signers", 2)
        with pytest.raises(RequestValidationError) as exc_info:
            TreasuryPolicy.from_dict(policy_doc())
        assert exc_info.value.field == "multisig.signers"

    def test_duplicate_identity(self):
        doc = policy_doc()
        doc["multisig"]["signers"][1]["identity"] = "alice"
        with pytest.raises(RequestValidationError):
            TreasuryPolicy.from_dict(doc)

    def test_duplicate_pubkey(self):
        doc = policy_doc()
        doc["multisig"]["signers"][1]["pubkey"] = doc["multisig"]["signers"][0]["pubkey"]
        with pytest.raises(RequestValidationError):
            TreasuryPolicy.from_dict(doc)

    def test_duplicate_category(self):
        result = make_policy(category_budgets=(CategoryBudget(1, 10), CategoryBudget(1, 20))).check_limits()
        assert not result.is_valid
        assert result.errors[0].field == "guardrails.category_budgets"

    def test_allowed_and_denied(self):
        h = hash20("both")
        result = make_policy(allowlist=frozenset({h}), denylist=frozenset({h})).check_limits()
        assert not result.is_valid

    def test_valid_policy_passes(self, policy):
        assert policy.check_limits().is_valid


# =============================================================================
# CANONICAL HASH
# =============================================================================

class TestPolicyHash:
    """Tests for the committed policy hash."""

    def test_stable(self):
        assert make_policy().policy_hash == make_policy().policy_hash
        assert len(make_policy().policy_hash) == 32

    def test_metadata_not_committed(self):
        a = TreasuryPolicy.from_dict(policy_doc(metadata={"name": "a"}))
        b = TreasuryPolicy.from_dict(policy_doc(metadata={"name": "b"}))
        assert a.policy_hash == b.policy_hash

    def test_list_order_not_committed(self):
        x, y = hash20("x"), hash20("y")
        a = make_policy(denylist=frozenset({x, y}))
        b = make_policy(denylist=frozenset({y, x}))
        assert a.policy_hash == b.policy_hash

    @pytest.mark.parametrize("kwargs", [
        {"required": 3},
        {"period_cap": 1},
        {"recipient_cap": 1},
        {"allowlist_enabled": True},
        {"category_budgets": (CategoryBudget(7, 100),)},
    ])
    def test_rule_changes_change_hash(self, kwargs):
        assert make_policy(**kwargs).policy_hash != make_policy().policy_hash

    def test_roles_mask(self, policy):
        mask = policy.roles_mask
        assert mask & (1 << SignerRole.APPROVER)
        assert mask & (1 << SignerRole.EXECUTOR)
        assert mask & (1 << SignerRole.PAUSER)
        assert not mask & (1 << SignerRole.GUARDIAN)

    def test_signer_lookup(self, policy):
        assert policy.multisig.signer("bob").pubkey == key_for("bob").pubkey
        assert policy.multisig.signer("mallory") is None
        pausers = policy.multisig.with_role(SignerRole.PAUSER)
        assert [s.identity for s in pausers] == ["carol"]

    def test_default_guardrails_are_unlimited(self):
        policy = TreasuryPolicy(MultisigConfig(1, (Signer("solo", key_for("solo").pubkey),)))
        assert policy.guardrails == Guardrails()
