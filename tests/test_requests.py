"""
Operation Request Boundary Test Suite

Run with: pytest tests/test_requests.py -v
"""

import pytest

from conftest import SIGNERS, TREASURY_CATEGORY, entity_hex, hash20, key_for, txid_for
from flowguard.codec import CampaignFlag, CovenantKind, ScheduleType, VoteChoice
from flowguard.config import get_config_manager
from flowguard.errors import RequestValidationError
from flowguard.requests import (
    ApproveRequest,
    ControlRequest,
    CreateCampaignRequest,
    CreateScheduleRequest,
    CreateVaultRequest,
    ExecuteRequest,
    FinalizeTallyRequest,
    SpendRequest,
    TokenType,
    VoteRequest,
    is_create,
    parse_request,
)

PROPOSAL = entity_hex("proposal")
VAULT = entity_hex("vault")


def funding():
    return {
        "redeem_script": "c0ffee",
        "value_satoshis": 50_000,
        "utxos": [{
            "txid": txid_for("fund"),
            "vout": 0,
            "value_satoshis": 60_000,
            "owner_hash": hash20("funder").hex(),
        }],
        "change_hash": hash20("funder").hex(),
    }


def recipients(*amounts):
    return [{"recipient_hash": hash20(f"r{i}").hex(), "amount": a} for i, a in enumerate(amounts)]


def schedule_body(**extra):
    body = {
        "operation": "create_schedule",
        "vault_id": VAULT,
        "recipient_hash": hash20("payee").hex(),
        "authority_hash": hash20("dao").hex(),
        "schedule_type": "linear_vesting",
        "interval_seconds": 0,
        "amount_per_interval": 0,
        "start_timestamp": 100,
        "end_timestamp": 200,
        "total_amount": 40_000,
        "funding": funding(),
    }
    body.update(extra)
    return body


# =============================================================================
# PARSING
# =============================================================================

class TestParseRequest:
    """Tests for typed conversion of valid bodies."""

    def test_approve(self):
        req = parse_request({"operation": "approve", "proposal_id": PROPOSAL, "signer": "alice"})
        assert req == ApproveRequest(PROPOSAL, "alice")
        assert req.target == PROPOSAL
        assert not is_create(req)

    def test_spend(self):
        req = parse_request({"operation": "spend", "vault_id": VAULT, "recipients": recipients(1000, 2000)})
        assert isinstance(req, SpendRequest)
        assert [r.amount for r in req.recipients] == [1000, 2000]
        assert req.recipients[0].recipient_hash == hash20("r0")

    def test_execute(self):
        req = parse_request({
            "operation": "execute",
            "proposal_id": PROPOSAL,
            "recipients": recipients(600),
            "executor_hash": hash20("bot").hex(),
        })
        assert isinstance(req, ExecuteRequest)
        assert req.executor_hash == hash20("bot")

    def test_create_vault(self):
        body = {
            "operation": "create_vault",
            "creator_hash": hash20("creator").hex(),
            "policy": {
                "multisig": {
                    "required_approvals": 2,
                    "signers": [{"identity": n, "pubkey": key_for(n).pubkey.hex()} for n in SIGNERS],
                },
            },
            "funding": funding(),
            "timestamp": 1_700_000_000,
        }
        req = parse_request(body)
        assert isinstance(req, CreateVaultRequest)
        assert is_create(req)
        assert req.kind is CovenantKind.VAULT
        assert req.funding.available == 60_000
        assert req.funding.redeem_script == b"\xc0\xff\xee"
        assert req.policy.multisig.required_approvals == 2

    def test_create_schedule(self):
        req = parse_request(schedule_body())
        assert isinstance(req, CreateScheduleRequest)
        assert req.schedule_type is ScheduleType.LINEAR_VESTING
        assert req.refund_hash == b""
        assert req.token_type is TokenType.BCH

    def test_create_schedule_in_tokens(self):
        req = parse_request(schedule_body(token_type="FUNGIBLE_TOKEN", token_category="cd" * 32, token_amount=40_000))
        assert req.token_type is TokenType.FUNGIBLE_TOKEN
        assert req.token_category == "cd" * 32
        assert req.token_amount == 40_000

    def test_create_campaign_flags(self):
        req = parse_request({
            "operation": "create_campaign",
            "vault_id": VAULT,
            "authority_pubkey": key_for("authority").pubkey.hex(),
            "amount_per_claim": 1000,
            "flags": ["pausable", "cancelable"],
            "funding": funding(),
            "timestamp": 1,
        })
        assert isinstance(req, CreateCampaignRequest)
        assert req.flags == CampaignFlag.PAUSABLE | CampaignFlag.CANCELABLE

    def test_control(self):
        req = parse_request({"operation": "pause", "entity_id": VAULT, "kind": "vault", "signer": "carol"})
        assert req == ControlRequest("pause", VAULT, CovenantKind.VAULT, "carol")

    def test_vote(self):
        req = parse_request({
            "operation": "vote",
            "tally_id": entity_hex("tally"),
            "voter_hash": hash20("voter").hex(),
            "choice": "for",
            "stake": {
                "txid": txid_for("stake"),
                "vout": 1,
                "value_satoshis": 3000,
                "owner_hash": hash20("voter").hex(),
                "token": {"category": TREASURY_CATEGORY, "amount": 25},
            },
            "lock_redeem_script": "c1",
        })
        assert isinstance(req, VoteRequest)
        assert req.choice is VoteChoice.FOR
        assert req.stake.token.amount == 25
        assert req.fee_utxos == ()

    def test_tally_operation_tag(self):
        req = parse_request({"operation": "tally", "tally_id": entity_hex("tally")})
        assert isinstance(req, FinalizeTallyRequest)
        assert req.operation == "tally"


# =============================================================================
# REJECTIONS
# =============================================================================

class TestRequestRejections:
    """Tests for bodies refused at the boundary."""

    def test_unknown_operation(self):
        with pytest.raises(RequestValidationError) as exc_info:
            parse_request({"operation": "mint"})
        assert exc_info.value.field == "operation"

    def test_not_a_mapping(self):
        with pytest.raises(RequestValidationError):
            parse_request(["approve"])

    @pytest.mark.parametrize("body", [
        {"operation": "approve", "proposal_id": PROPOSAL},
        {"operation": "approve", "proposal_id": PROPOSAL[:-2], "signer": "alice"},
        {"operation": "approve", "proposal_id": PROPOSAL.upper(), "signer": "alice"},
        {"operation": "approve", "proposal_id": PROPOSAL, "signer": "alice", "extra": 1},
        {"operation": "spend", "vault_id": VAULT, "recipients": []},
        {"operation": "spend", "vault_id": VAULT, "recipients": recipients(0)},
        {"operation": "pause", "entity_id": VAULT, "kind": "tally"},
        {"operation": "cancel", "entity_id": VAULT, "kind": "vault", "signer": "bad signer!"},
        schedule_body(token_type="FUNGIBLE_TOKEN"),
        schedule_body(token_type="FUNGIBLE_TOKEN", token_category="cd" * 32, token_amount=0),
        schedule_body(token_type="ERC20"),
    ])
    def test_schema_violations(self, body):
        with pytest.raises(RequestValidationError):
            parse_request(body)

    def test_recipient_limit(self):
        get_config_manager().set("limits.max_recipients", 2)
        with pytest.raises(RequestValidationError) as exc_info:
            parse_request({"operation": "spend", "vault_id": VAULT, "recipients": recipients(600, 600, 600)})
        assert exc_info.value.field == "recipients"

    def test_invalid_policy_in_create_vault(self):
        body = {
            "operation": "create_vault",
            "creator_hash": hash20("creator").hex(),
            "policy": {
                "multisig": {
                    "required_approvals": 3,
                    "signers": [{"identity": "solo", "pubkey": key_for("solo").pubkey.hex()}],
                },
            },
            "funding": funding(),
            "timestamp": 1,
        }
        with pytest.raises(RequestValidationError):
            parse_request(body)
