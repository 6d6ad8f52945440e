"""
Covenant ABI Test Suite

Bundled artifacts, argument ordering and unlocking bytecode.

Run with: pytest tests/test_abi.py -v
"""

import pytest

from conftest import entity_hex
from flowguard.abi import (
    PLACEHOLDER_PUBKEY,
    PLACEHOLDER_SIGNATURE,
    REQUIRED_FUNCTIONS,
    CovenantArtifact,
    CovenantDeployment,
    DeploymentRegistry,
    order_args,
    standard_artifact,
)
from flowguard.codec import CovenantKind
from flowguard.errors import AbiMismatch
from flowguard.identifiers import p2sh32_locking_bytecode
from flowguard.transaction import push_data, push_int


# =============================================================================
# ARTIFACTS
# =============================================================================

class TestArtifacts:
    """Tests for loading and checking artifacts."""

    @pytest.mark.parametrize("kind", list(CovenantKind))
    def test_standard_artifacts_cover_family(self, kind):
        artifact = standard_artifact(kind)
        for name in REQUIRED_FUNCTIONS[kind].values():
            assert artifact.function(name).name == name

    def test_function_indices_follow_declaration(self):
        artifact = standard_artifact(CovenantKind.VAULT)
        assert [fn.index for fn in artifact.functions] == list(range(len(artifact.functions)))
        assert artifact.function("spend").index == 0

    def test_signature_pairs(self):
        spend = standard_artifact(CovenantKind.VAULT).function("spend")
        assert spend.signature_pairs() == [(4, 5), (6, 7)]

    def test_unknown_function(self):
        with pytest.raises(AbiMismatch):
            standard_artifact(CovenantKind.PROPOSAL).function("spend")

    def test_schema_rejects_bad_artifact(self):
        with pytest.raises(AbiMismatch) as exc_info:
            CovenantArtifact.from_dict({"contractName": "X", "abi": [{"name": "f", "inputs": [{"name": "a", "type": "u256"}]}]})
        assert exc_info.value.field == "artifact"

    def test_family_drift_detected(self):
        """An artifact missing a required function fails the family check."""
        artifact = CovenantArtifact.from_dict({
            "contractName": "ProposalCovenant",
            "abi": [{"name": "approve", "inputs": []}, {"name": "execute", "inputs": []}],
        })
        with pytest.raises(AbiMismatch) as exc_info:
            artifact.check_family(CovenantKind.PROPOSAL)
        assert "cancel" in exc_info.value.message


# =============================================================================
# ARGUMENT ORDERING
# =============================================================================

class TestOrderArgs:
    """Tests for ordering named arguments by declaration."""

    SPEND = standard_artifact(CovenantKind.VAULT).function("spend")

    def test_placeholders_for_signatures(self):
        args = order_args(self.SPEND, {
            "payoutHash": bytes(28), "payoutTotal": 5, "newPeriodId": 655, "newSpent": 5,
        })
        assert args[:4] == [bytes(28), 5, 655, 5]
        assert args[4:] == [PLACEHOLDER_SIGNATURE, PLACEHOLDER_PUBKEY, PLACEHOLDER_SIGNATURE, PLACEHOLDER_PUBKEY]

    def test_unknown_argument(self):
        with pytest.raises(AbiMismatch) as exc_info:
            order_args(self.SPEND, {"payoutHash": bytes(28), "payoutTotal": 5, "newPeriodId": 1,
                                    "newSpent": 5, "memo": b"x"})
        assert exc_info.value.field == "memo"

    def test_missing_data_argument(self):
        with pytest.raises(AbiMismatch) as exc_info:
            order_args(self.SPEND, {"payoutHash": bytes(28), "payoutTotal": 5, "newPeriodId": 1})
        assert exc_info.value.field == "newSpent"

    @pytest.mark.parametrize("name,value", [
        ("payoutHash", bytes(32)),
        ("payoutTotal", b"\x05"),
        ("payoutTotal", True),
        ("s0", bytes(10)),
        ("pk0", bytes(32)),
    ])
    def test_type_checks(self, name, value):
        named = {"payoutHash": bytes(28), "payoutTotal": 5, "newPeriodId": 1, "newSpent": 5}
        named[name] = value
        with pytest.raises(AbiMismatch) as exc_info:
            order_args(self.SPEND, named)
        assert exc_info.value.field == name


# =============================================================================
# DEPLOYMENTS
# =============================================================================

class TestDeployment:
    """Tests for locking and unlocking bytecode."""

    def deployment(self, kind):
        return CovenantDeployment(kind, standard_artifact(kind), b"\xc0\x01", {"vault_id": "00"})

    def test_locking_bytecode_is_p2sh32(self):
        assert self.deployment(CovenantKind.VAULT).locking_bytecode == p2sh32_locking_bytecode(b"\xc0\x01")

    def test_unlocking_pushes_reversed_args_then_selector(self):
        d = self.deployment(CovenantKind.PROPOSAL)
        fn = d.function_for("approve")
        script = d.unlocking_bytecode(fn, [b"\x11" * 65, b"\x02" * 33])
        assert script == push_data(b"\x02" * 33) + push_data(b"\x11" * 65) + push_int(0) + push_data(b"\xc0\x01")

    def test_single_function_has_no_selector(self):
        d = self.deployment(CovenantKind.VOTE_LOCK)
        fn = d.function_for("reclaim")
        script = d.unlocking_bytecode(fn, [b"\x11" * 65, b"\x02" * 33])
        assert script == push_data(b"\x02" * 33) + push_data(b"\x11" * 65) + push_data(b"\xc0\x01")

    def test_arity_checked(self):
        d = self.deployment(CovenantKind.PROPOSAL)
        with pytest.raises(AbiMismatch):
            d.unlocking_bytecode(d.function_for("approve"), [b"\x11" * 65])

    def test_operation_not_in_family(self):
        with pytest.raises(AbiMismatch) as exc_info:
            self.deployment(CovenantKind.TALLY).function_for("spend")
        assert exc_info.value.field == "operation"

    def test_missing_parameter(self):
        d = self.deployment(CovenantKind.PROPOSAL)
        assert d.param("vault_id") == "00"
        with pytest.raises(AbiMismatch) as exc_info:
            d.param("recipients")
        assert exc_info.value.field == "recipients"

    def test_registry_lookup(self):
        registry = DeploymentRegistry()
        d = self.deployment(CovenantKind.VAULT)
        entity = entity_hex("vault")
        registry.register(entity, d)
        assert registry.for_entity(entity) is d
        assert registry.for_locking_bytecode(d.locking_bytecode) is d
        assert registry.for_locking_bytecode(b"\x51") is None
        with pytest.raises(AbiMismatch):
            registry.for_entity(entity_hex("other"))
