"""
CLI Test Suite

Run with: pytest tests/test_cli.py -v
"""

import json

import pytest
import yaml

from conftest import entity_hex, hash20
from flowguard.cli import CLIError, FlowGuardCLI, main, parse_recipient
from flowguard.codec import VaultState, encode_state
from flowguard.identifiers import PayoutRecipient, payout_hash, proposal_id

from test_policy import policy_doc


def run(capsys, *argv):
    rc = main(list(argv))
    out, err = capsys.readouterr()
    return rc, out, err


@pytest.fixture
def policy_file(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(yaml.safe_dump(policy_doc()))
    return path


class TestRecipientParsing:
    """Tests for HASH:AMOUNT[:CATEGORY] arguments."""

    def test_with_and_without_category(self):
        h = hash20("r").hex()
        assert parse_recipient(f"{h}:1000") == PayoutRecipient(hash20("r"), 1000)
        assert parse_recipient(f"{h}:1000:2").category_id == 2

    @pytest.mark.parametrize("text", ["abc", "zz:10", f"{'00' * 20}:ten", f"{'00' * 20}:1:2:3"])
    def test_bad_recipient(self, text):
        with pytest.raises(CLIError):
            parse_recipient(text)


class TestCommands:
    """Tests for individual commands."""

    def test_no_command_prints_help(self, capsys):
        rc, out, _ = run(capsys)
        assert rc == 0
        assert "flowguard" in out

    def test_decode(self, capsys):
        commitment = encode_state(VaultState(current_period_id=655, spent_this_period=12)).hex()
        rc, out, _ = run(capsys, "decode", "vault", commitment)
        assert rc == 0
        data = json.loads(out)
        assert data["state"]["status"] == "ACTIVE"
        assert data["state"]["current_period_id"] == 655

    def test_decode_malformed(self, capsys):
        rc, _, err = run(capsys, "decode", "vault", "00" * 31)
        assert rc == 2
        assert json.loads(err)["error"]["kind"] == "malformed_commitment"

    def test_encode_proposal_id(self, capsys):
        vault = entity_hex("vault")
        proposer = hash20("alice").hex()
        rc, out, _ = run(capsys, "encode-id", "proposal", "--vault", vault, "--proposer", proposer, "-t", "100")
        assert rc == 0
        expected = proposal_id(bytes.fromhex(vault), hash20("alice"), 100).hex()
        assert json.loads(out)["proposal_id"] == expected

    def test_encode_vault_id_from_policy_file(self, capsys, policy_file):
        rc, out, _ = run(capsys, "encode-id", "vault", "--creator", hash20("c").hex(),
                         "--policy", str(policy_file), "-t", "1")
        assert rc == 0
        assert len(json.loads(out)["vault_id"]) == 64

    def test_encode_vault_id_needs_policy(self, capsys):
        rc, _, err = run(capsys, "encode-id", "vault", "--creator", hash20("c").hex(), "-t", "1")
        assert rc == 1
        assert err.startswith("Error:")

    def test_payout_hash(self, capsys):
        recipients = [PayoutRecipient(hash20("a"), 600), PayoutRecipient(hash20("b"), 700)]
        rc, out, _ = run(capsys, "payout-hash", f"{hash20('a').hex()}:600", f"{hash20('b').hex()}:700")
        assert rc == 0
        data = json.loads(out)
        assert data == {"payout_hash": payout_hash(recipients).hex(), "payout_total": 1300}

    def test_validate_payout_ok(self, capsys, policy_file):
        rc, out, _ = run(capsys, "validate-payout", "-p", str(policy_file), f"{hash20('a').hex()}:5000000")
        assert rc == 0
        assert json.loads(out)["ok"] is True

    def test_validate_payout_over_period_cap(self, capsys, policy_file):
        rc, out, _ = run(capsys, "validate-payout", "-p", str(policy_file), "--spent", "96000000",
                         f"{hash20('a').hex()}:5000000")
        assert rc == 0
        data = json.loads(out)
        assert data["ok"] is False
        assert data["violation"] == "period_cap"

    def test_validate_request(self, capsys, tmp_path):
        path = tmp_path / "approve.json"
        path.write_text(json.dumps({"operation": "approve", "proposal_id": entity_hex("p"), "signer": "alice"}))
        rc, out, _ = run(capsys, "validate-request", str(path))
        assert rc == 0
        assert json.loads(out) == {"valid": True, "operation": "approve"}

    def test_validate_request_rejected(self, capsys, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"operation": "approve", "signer": "alice"}))
        rc, _, err = run(capsys, "validate-request", str(path))
        assert rc == 2
        assert json.loads(err)["error"]["kind"] == "invalid_request"

    def test_quiet_suppresses_errors(self, capsys, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("not json")
        rc, _, err = run(capsys, "--quiet", "validate-request", str(path))
        assert rc == 1
        assert "Error" not in err


class TestConfigCommands:
    """Tests for configuration subcommands."""

    def test_get(self, capsys):
        rc, out, _ = run(capsys, "config", "get", "transaction.dust_limit")
        assert rc == 0
        assert json.loads(out) == {"path": "transaction.dust_limit", "value": 546}

    def test_show_yaml(self, capsys):
        rc, out, _ = run(capsys, "--format", "yaml", "config", "show")
        assert rc == 0
        assert yaml.safe_load(out)["transaction"]["fee_reserve"] == 1500

    def test_config_file(self, capsys, tmp_path):
        path = tmp_path / "flowguard.yaml"
        path.write_text("transaction:\n  dust_limit: 800\n")
        rc, out, _ = run(capsys, "--config", str(path), "config", "get", "transaction.dust_limit")
        assert rc == 0
        assert json.loads(out)["value"] == 800

    def test_validate(self, capsys):
        rc, out, _ = run(capsys, "config", "validate")
        assert rc == 0
        assert json.loads(out) == {"valid": True, "errors": []}

    def test_unknown_subcommand_handler(self):
        cli = FlowGuardCLI()
        with pytest.raises(CLIError):
            cli._dispatch(cli.parser.parse_args(["config"]))
