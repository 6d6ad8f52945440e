"""
FlowGuard Transaction Wire Format

Bitcoin Cash transaction serialization with CashTokens output prefixes,
minimal script pushes, and the SIGHASH_ALL|FORKID signing digest.

Byte order conventions:
    Transaction ids and token category ids are held in display order
    (as shown by explorers and RPC) and reversed on the wire.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence

from flowguard.hardening import CryptoUtils

TX_VERSION = 2
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME_ENABLED = 0xFFFFFFFE

SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
SIGHASH_ALL_FORKID = SIGHASH_ALL | SIGHASH_FORKID

PREFIX_TOKEN = 0xEF
_HAS_AMOUNT = 0x10
_HAS_NFT = 0x20
_HAS_COMMITMENT_LENGTH = 0x40

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51


# =============================================================================
# PRIMITIVE ENCODINGS
# =============================================================================

def compact_size(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def script_number(n: int) -> bytes:
    """Minimally-encoded script number (little-endian, sign bit in the top byte)."""
    if n == 0:
        return b""
    negative = n < 0
    magnitude = -n if negative else n
    out = bytearray()
    while magnitude:
        out.append(magnitude & 0xFF)
        magnitude >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if negative else 0x00)
    elif negative:
        out[-1] |= 0x80
    return bytes(out)


def push_data(data: bytes) -> bytes:
    """Minimal push of ``data``, using OP_0/OP_1..OP_16/OP_1NEGATE where they apply."""
    n = len(data)
    if n == 0:
        return bytes([OP_0])
    if n == 1 and 1 <= data[0] <= 16:
        return bytes([OP_1 + data[0] - 1])
    if n == 1 and data[0] == 0x81:
        return bytes([OP_1NEGATE])
    if n <= 75:
        return bytes([n]) + data
    if n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def push_int(n: int) -> bytes:
    return push_data(script_number(n))


# =============================================================================
# OUTPOINTS AND TOKENS
# =============================================================================

class NftCapability(IntEnum):
    NONE = 0
    MUTABLE = 1
    MINTING = 2

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Outpoint:
    txid: str
    vout: int

    def serialize(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class NftData:
    capability: NftCapability = NftCapability.NONE
    commitment: bytes = b""


@dataclass(frozen=True)
class TokenData:
    """CashTokens data on an output. ``category`` is display-order hex."""
    category: str
    amount: int = 0
    nft: Optional[NftData] = None

    def serialize_prefix(self) -> bytes:
        bitfield = 0
        body = b""
        if self.nft is not None:
            bitfield |= _HAS_NFT | int(self.nft.capability)
            if self.nft.commitment:
                bitfield |= _HAS_COMMITMENT_LENGTH
                body += compact_size(len(self.nft.commitment)) + self.nft.commitment
        if self.amount:
            bitfield |= _HAS_AMOUNT
            body += compact_size(self.amount)
        return bytes([PREFIX_TOKEN]) + bytes.fromhex(self.category)[::-1] + bytes([bitfield]) + body

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"category": self.category, "amount": str(self.amount)}
        if self.nft is not None:
            d["nft"] = {
                "capability": self.nft.capability.label,
                "commitment": self.nft.commitment.hex(),
            }
        return d


# =============================================================================
# TRANSACTION
# =============================================================================

@dataclass(frozen=True)
class TxInput:
    outpoint: Outpoint
    unlocking_bytecode: bytes = b""
    sequence: int = SEQUENCE_FINAL

    def serialize(self) -> bytes:
        return (
            self.outpoint.serialize()
            + compact_size(len(self.unlocking_bytecode))
            + self.unlocking_bytecode
            + struct.pack("<I", self.sequence)
        )


@dataclass(frozen=True)
class TxOutput:
    locking_bytecode: bytes
    value_satoshis: int
    token: Optional[TokenData] = None

    def serialize(self) -> bytes:
        script = (self.token.serialize_prefix() if self.token else b"") + self.locking_bytecode
        return struct.pack("<Q", self.value_satoshis) + compact_size(len(script)) + script


@dataclass(frozen=True)
class Transaction:
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    locktime: int = 0
    version: int = TX_VERSION

    def serialize(self) -> bytes:
        return b"".join([
            struct.pack("<I", self.version),
            compact_size(len(self.inputs)),
            *(i.serialize() for i in self.inputs),
            compact_size(len(self.outputs)),
            *(o.serialize() for o in self.outputs),
            struct.pack("<I", self.locktime),
        ])

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return CryptoUtils.hash256(self.serialize())[::-1].hex()

    def with_unlocking(self, index: int, unlocking_bytecode: bytes) -> "Transaction":
        inputs = list(self.inputs)
        inputs[index] = replace(inputs[index], unlocking_bytecode=unlocking_bytecode)
        return replace(self, inputs=inputs)

    @property
    def output_total(self) -> int:
        return sum(o.value_satoshis for o in self.outputs)


# =============================================================================
# SIGNING DIGEST
# =============================================================================

def signing_digest(
    tx: Transaction,
    input_index: int,
    spent_value: int,
    script_code: bytes,
    spent_token: Optional[TokenData] = None,
    sighash_type: int = SIGHASH_ALL_FORKID,
) -> bytes:
    """
    BIP143-style digest used by BCH for SIGHASH_ALL|FORKID signatures.

    The spent output's token prefix, when present, precedes the script
    code as required after the CashTokens upgrade. Unlocking bytecode is
    not covered, so signatures stay valid when placeholders are swapped.
    """
    if sighash_type != SIGHASH_ALL_FORKID:
        raise ValueError("only SIGHASH_ALL|FORKID is supported")

    hash_prevouts = CryptoUtils.hash256(b"".join(i.outpoint.serialize() for i in tx.inputs))
    hash_sequence = CryptoUtils.hash256(b"".join(struct.pack("<I", i.sequence) for i in tx.inputs))
    hash_outputs = CryptoUtils.hash256(b"".join(o.serialize() for o in tx.outputs))
    spent_input = tx.inputs[input_index]

    preimage = b"".join([
        struct.pack("<I", tx.version),
        hash_prevouts,
        hash_sequence,
        spent_input.outpoint.serialize(),
        spent_token.serialize_prefix() if spent_token else b"",
        compact_size(len(script_code)),
        script_code,
        struct.pack("<Q", spent_value),
        struct.pack("<I", spent_input.sequence),
        hash_outputs,
        struct.pack("<I", tx.locktime),
        struct.pack("<I", sighash_type),
    ])
    return CryptoUtils.hash256(preimage)


def find_output(
    tx: Transaction,
    locking_bytecode: bytes,
    commitment: Optional[bytes] = None,
    min_value: int = 0,
) -> Optional[int]:
    """Index of the first output paying ``locking_bytecode`` (with ``commitment`` if given)."""
    for index, out in enumerate(tx.outputs):
        if out.locking_bytecode != locking_bytecode or out.value_satoshis < min_value:
            continue
        if commitment is not None:
            if out.token is None or out.token.nft is None or out.token.nft.commitment != commitment:
                continue
        return index
    return None


def verify_outputs(tx: Transaction, expected: Sequence[TxOutput]) -> List[str]:
    """
    Check that every expected output is present in ``tx``.

    Returns a list of human-readable problems, empty when all match.
    """
    problems = []
    for out in expected:
        commitment = out.token.nft.commitment if out.token and out.token.nft else None
        if find_output(tx, out.locking_bytecode, commitment, out.value_satoshis) is None:
            problems.append(
                f"missing output {out.locking_bytecode.hex()} "
                f"({out.value_satoshis} sats, commitment={commitment.hex() if commitment else '-'})"
            )
    return problems
