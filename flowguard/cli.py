#!/usr/bin/env python3
"""
FlowGuard CLI

Offline tooling for operators: inspect commitments, derive identifiers,
dry-run guardrails and manage configuration.

Usage:
    flowguard <command> [subcommand] [options]

Commands:
    decode            Decode an NFT commitment
    encode-id         Derive a covenant identifier
    payout-hash       Hash a recipient list
    validate-payout   Check a payout against a policy's guardrails
    validate-request  Check an operation request body
    config            Configuration management
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence

import yaml

from flowguard.codec import CovenantKind, VaultState, decode_commitment
from flowguard.config import get_config_manager
from flowguard.errors import FlowGuardError
from flowguard.guardrails import GuardrailValidator, period_state_for
from flowguard.identifiers import (
    PayoutRecipient,
    campaign_id,
    payout_hash,
    proposal_id,
    stream_id,
    vault_id,
)
from flowguard.observability import configure_logging
from flowguard.policy import TreasuryPolicy
from flowguard.requests import parse_request

__version__ = "0.3.0"


class OutputFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if is_dataclass(value) and not isinstance(value, type):
        return {k: _plain(v) for k, v in asdict(value).items()}
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    if fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    if isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def parse_recipient(text: str) -> PayoutRecipient:
    """``<hash160 hex>:<amount>[:<category>]``"""
    parts = text.split(":")
    if len(parts) not in (2, 3):
        raise CLIError(f"bad recipient {text!r}; expected HASH:AMOUNT[:CATEGORY]")
    try:
        return PayoutRecipient(
            recipient_hash=bytes.fromhex(parts[0]),
            amount=int(parts[1]),
            category_id=int(parts[2]) if len(parts) == 3 else 0,
        )
    except ValueError as e:
        raise CLIError(f"bad recipient {text!r}: {e}")


def _read(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, encoding="utf-8") as f:
        return f.read()


class FlowGuardCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="flowguard",
            description="FlowGuard covenant treasury tooling",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument("--version", "-V", action="version", version=f"flowguard {__version__}")
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--quiet", "-q", action="store_true", help="Suppress error output")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        kinds = [k.value for k in CovenantKind]

        decode = self.subparsers.add_parser("decode", help="Decode an NFT commitment")
        decode.add_argument("kind", choices=kinds, help="Covenant kind")
        decode.add_argument("commitment", help="Commitment hex")

        encode_id = self.subparsers.add_parser("encode-id", help="Derive a covenant identifier")
        id_sub = encode_id.add_subparsers(dest="subcommand")

        vault = id_sub.add_parser("vault", help="Vault id")
        vault.add_argument("--creator", required=True, help="Creator pubkey hash (hex)")
        vault.add_argument("--policy-hash", help="Policy hash (hex)")
        vault.add_argument("--policy", help="Policy YAML file (hashed if --policy-hash absent)")
        vault.add_argument("--timestamp", "-t", type=int, required=True)

        proposal = id_sub.add_parser("proposal", help="Proposal id")
        proposal.add_argument("--vault", required=True, help="Vault id (hex)")
        proposal.add_argument("--proposer", required=True, help="Proposer pubkey hash (hex)")
        proposal.add_argument("--timestamp", "-t", type=int, required=True)

        stream = id_sub.add_parser("stream", help="Schedule id")
        stream.add_argument("--vault", required=True, help="Vault id (hex)")
        stream.add_argument("--recipient", required=True, help="Recipient pubkey hash (hex)")
        stream.add_argument("--timestamp", "-t", type=int, required=True, help="Schedule start")

        campaign = id_sub.add_parser("campaign", help="Campaign id")
        campaign.add_argument("--vault", required=True, help="Vault id (hex)")
        campaign.add_argument("--authority", required=True, help="Claim authority pubkey hash (hex)")
        campaign.add_argument("--timestamp", "-t", type=int, required=True)
        campaign.add_argument("--merkle-root", default="", help="Eligibility merkle root (hex)")

        ph = self.subparsers.add_parser("payout-hash", help="Hash a recipient list")
        ph.add_argument("recipients", nargs="+", help="HASH:AMOUNT[:CATEGORY]")

        vp = self.subparsers.add_parser("validate-payout", help="Check a payout against guardrails")
        vp.add_argument("--policy", "-p", required=True, help="Policy YAML file")
        vp.add_argument("--spent", type=int, default=0, help="Spent this period")
        vp.add_argument("--period-id", type=int, default=0, help="Vault's current period id")
        vp.add_argument("--now", type=int, help="Timestamp for period rollover")
        vp.add_argument("recipients", nargs="+", help="HASH:AMOUNT[:CATEGORY]")

        vr = self.subparsers.add_parser("validate-request", help="Check an operation request body")
        vr.add_argument("file", help="JSON request file, or - for stdin")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., transaction.dust_limit)")
        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")
        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[Sequence[str]] = None) -> int:
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            mgr = get_config_manager()
            if parsed.config:
                mgr.load_from_file(parsed.config)
            else:
                mgr.load_defaults()
            obs = mgr.config.observability
            configure_logging(obs.log_level.get(), obs.log_format.get())

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)
            if result is not None:
                print(format_output(result, fmt))
            return 0
        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code
        except FlowGuardError as e:
            if not parsed.quiet:
                print(format_output({"error": e.to_dict()}, OutputFormat.JSON), file=sys.stderr)
            return 2

    def _dispatch(self, args: argparse.Namespace) -> Any:
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)
        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)
        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")
        return handler(args)

    # Codec and identifiers

    def _handle_decode(self, args: argparse.Namespace) -> Any:
        try:
            data = bytes.fromhex(args.commitment)
        except ValueError as e:
            raise CLIError(f"commitment is not hex: {e}")
        state = decode_commitment(CovenantKind(args.kind), data)
        return {"kind": args.kind, "state": _plain(state)}

    @staticmethod
    def _hex(value: str, name: str) -> bytes:
        try:
            return bytes.fromhex(value)
        except ValueError as e:
            raise CLIError(f"--{name} is not hex: {e}")

    def _handle_encode_id_vault(self, args: argparse.Namespace) -> Any:
        if args.policy_hash:
            policy_hash = self._hex(args.policy_hash, "policy-hash")
        elif args.policy:
            policy_hash = TreasuryPolicy.from_yaml(_read(args.policy)).policy_hash
        else:
            raise CLIError("one of --policy-hash or --policy is required")
        ident = vault_id(self._hex(args.creator, "creator"), policy_hash, args.timestamp)
        return {"vault_id": ident.hex(), "policy_hash": policy_hash.hex()}

    def _handle_encode_id_proposal(self, args: argparse.Namespace) -> Any:
        ident = proposal_id(self._hex(args.vault, "vault"), self._hex(args.proposer, "proposer"), args.timestamp)
        return {"proposal_id": ident.hex()}

    def _handle_encode_id_stream(self, args: argparse.Namespace) -> Any:
        ident = stream_id(self._hex(args.vault, "vault"), self._hex(args.recipient, "recipient"), args.timestamp)
        return {"stream_id": ident.hex()}

    def _handle_encode_id_campaign(self, args: argparse.Namespace) -> Any:
        ident = campaign_id(
            self._hex(args.vault, "vault"),
            self._hex(args.authority, "authority"),
            args.timestamp,
            self._hex(args.merkle_root, "merkle-root"),
        )
        return {"campaign_id": ident.hex()}

    def _handle_payout_hash(self, args: argparse.Namespace) -> Any:
        recipients = [parse_recipient(r) for r in args.recipients]
        return {
            "payout_hash": payout_hash(recipients).hex(),
            "payout_total": sum(r.amount for r in recipients),
        }

    # Guardrails and requests

    def _handle_validate_payout(self, args: argparse.Namespace) -> Any:
        policy = TreasuryPolicy.from_yaml(_read(args.policy))
        recipients = [parse_recipient(r) for r in args.recipients]
        vault = VaultState(current_period_id=args.period_id, spent_this_period=args.spent)
        now = args.now if args.now is not None else policy.periods.period_start(args.period_id)
        period = period_state_for(vault, policy, now)
        result = GuardrailValidator(policy).validate(recipients, period)
        out = {
            "ok": result.ok,
            "period_id": period.period_id,
            "spent": period.spent,
            "payout_total": sum(r.amount for r in recipients),
        }
        if not result.ok:
            out.update(violation=result.violation.value, field=result.field, message=result.message)
        return out

    def _handle_validate_request(self, args: argparse.Namespace) -> Any:
        try:
            body = json.loads(_read(args.file))
        except json.JSONDecodeError as e:
            raise CLIError(f"request is not JSON: {e}")
        request = parse_request(body)
        return {"valid": True, "operation": request.operation}

    # Config

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        get_config_manager().set(args.path, args.value)
        return {"path": args.path, "value": args.value, "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}


def main(argv: Optional[List[str]] = None) -> int:
    return FlowGuardCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
