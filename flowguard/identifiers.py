"""
FlowGuard Identifier Deriver

Deterministic identifiers and commitments. Every derivation concatenates
fixed-width binary encodings of its inputs, applies hash160 and
right-aligns the 20-byte digest into a 32-byte buffer, which is exactly
what a covenant can recompute with OP_HASH160 and a 12-byte zero pad.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Union

from flowguard.codec import PAYOUT_HASH_SIZE, PROPOSAL_PREFIX_SIZE
from flowguard.hardening import CryptoUtils, U64_MAX, Validators

ID_SIZE = 32
HASH160_SIZE = 20
_PAD = bytes(ID_SIZE - HASH160_SIZE)

Part = Union[bytes, int]


def u64le(value: int) -> bytes:
    """Fixed-width little-endian u64 encoding."""
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"value {value} does not fit u64")
    return struct.pack("<Q", value)


def _encode_part(part: Part) -> bytes:
    if isinstance(part, bool):
        raise TypeError("booleans are not identifier inputs")
    if isinstance(part, int):
        return u64le(part)
    if isinstance(part, (bytes, bytearray)):
        return bytes(part)
    raise TypeError(f"unsupported identifier input {type(part).__name__}")


def derive_identifier(*parts: Part) -> bytes:
    """
    Derive a 32-byte identifier from fixed-width inputs.

    Byte strings are taken as-is (callers pass 32-byte ids and 20-byte
    hashes); integers are encoded as u64 little-endian.
    """
    preimage = b"".join(_encode_part(p) for p in parts)
    return _PAD + CryptoUtils.hash160(preimage)


def _require(value: bytes, size: int, name: str) -> bytes:
    Validators.validate_fixed_bytes(value, name, size).raise_if_invalid()
    return bytes(value)


def vault_id(creator_hash: bytes, policy_hash: bytes, timestamp: int) -> bytes:
    return derive_identifier(
        _require(creator_hash, HASH160_SIZE, "creator_hash"),
        _require(policy_hash, ID_SIZE, "policy_hash"),
        timestamp,
    )


def proposal_id(vault: bytes, proposer_hash: bytes, timestamp: int) -> bytes:
    return derive_identifier(
        _require(vault, ID_SIZE, "vault_id"),
        _require(proposer_hash, HASH160_SIZE, "proposer_hash"),
        timestamp,
    )


def stream_id(vault: bytes, recipient_hash: bytes, start_timestamp: int) -> bytes:
    return derive_identifier(
        _require(vault, ID_SIZE, "vault_id"),
        _require(recipient_hash, HASH160_SIZE, "recipient_hash"),
        start_timestamp,
    )


def campaign_id(
    vault: bytes,
    authority_hash: bytes,
    timestamp: int,
    merkle_root: bytes = b"",
) -> bytes:
    """Airdrop campaign id; ``merkle_root`` binds an optional eligibility list."""
    parts: List[Part] = [
        _require(vault, ID_SIZE, "vault_id"),
        _require(authority_hash, HASH160_SIZE, "authority_hash"),
        timestamp,
    ]
    if merkle_root:
        parts.append(_require(merkle_root, ID_SIZE, "merkle_root"))
    return derive_identifier(*parts)


def tally_id(proposal: bytes) -> bytes:
    return derive_identifier(_require(proposal, ID_SIZE, "proposal_id"), b"tally")


def vote_id(tally: bytes, voter_hash: bytes) -> bytes:
    """One vote lock per voter per tally."""
    return derive_identifier(
        _require(tally, ID_SIZE, "tally_id"),
        _require(voter_hash, HASH160_SIZE, "voter_hash"),
    )


def proposal_id_prefix(identifier: bytes) -> bytes:
    """First four bytes of the hash160 portion, as bound into vote commitments."""
    _require(identifier, ID_SIZE, "proposal_id")
    return identifier[ID_SIZE - HASH160_SIZE:ID_SIZE - HASH160_SIZE + PROPOSAL_PREFIX_SIZE]


# =============================================================================
# COMMITMENT HASHES
# =============================================================================

@dataclass(frozen=True)
class PayoutRecipient:
    """One payout leg: who (hash160 of the receiving key) and how much."""
    recipient_hash: bytes
    amount: int
    category_id: int = 0

    def __post_init__(self):
        _require(self.recipient_hash, HASH160_SIZE, "recipient_hash")
        Validators.validate_u64(self.amount, "amount").raise_if_invalid()


def payout_hash(recipients: Sequence[PayoutRecipient]) -> bytes:
    """SHA256 over (hash160 || amount u64 LE) per recipient, truncated to 28 bytes."""
    preimage = b"".join(r.recipient_hash + u64le(r.amount) for r in recipients)
    return CryptoUtils.sha256(preimage)[:PAYOUT_HASH_SIZE]


def signer_set_hash(pubkeys: Iterable[bytes]) -> bytes:
    """SHA256 over the concatenated compressed public keys, in signer order."""
    keys = [_require(pk, 33, "pubkey") for pk in pubkeys]
    return CryptoUtils.sha256(b"".join(keys))


# =============================================================================
# LOCKING BYTECODE
# =============================================================================

OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_HASH256 = 0xAA
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC


def p2pkh_locking_bytecode(pubkey_hash: bytes) -> bytes:
    _require(pubkey_hash, HASH160_SIZE, "pubkey_hash")
    return bytes([OP_DUP, OP_HASH160, HASH160_SIZE]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh32_locking_bytecode(redeem_script: bytes) -> bytes:
    """OP_HASH256 <hash256(redeem)> OP_EQUAL."""
    return bytes([OP_HASH256, 32]) + CryptoUtils.hash256(redeem_script) + bytes([OP_EQUAL])


def p2pkh_hash(locking_bytecode: bytes) -> bytes:
    """Extract the pubkey hash from a P2PKH locking script, or b"" if it is not one."""
    if (
        len(locking_bytecode) == 25
        and locking_bytecode[:3] == bytes([OP_DUP, OP_HASH160, HASH160_SIZE])
        and locking_bytecode[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return locking_bytecode[3:23]
    return b""
