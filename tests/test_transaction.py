"""
Transaction Wire Format Test Suite

Run with: pytest tests/test_transaction.py -v
"""

import pytest

from conftest import TREASURY_CATEGORY, hash20, txid_for
from flowguard.hardening import CryptoUtils
from flowguard.identifiers import p2pkh_locking_bytecode
from flowguard.transaction import (
    NftCapability,
    NftData,
    Outpoint,
    TokenData,
    Transaction,
    TxInput,
    TxOutput,
    compact_size,
    find_output,
    push_data,
    push_int,
    script_number,
    signing_digest,
    verify_outputs,
)


def simple_tx(value=5_000, locktime=0):
    return Transaction(
        inputs=[TxInput(Outpoint(txid_for("funding"), 1))],
        outputs=[TxOutput(p2pkh_locking_bytecode(hash20("payee")), value)],
        locktime=locktime,
    )


# =============================================================================
# PRIMITIVES
# =============================================================================

class TestPrimitives:
    """Tests for varints, script numbers and pushes."""

    @pytest.mark.parametrize("n,encoded", [
        (0, "00"),
        (252, "fc"),
        (253, "fdfd00"),
        (0xFFFF, "fdffff"),
        (0x10000, "fe00000100"),
        (1 << 32, "ff0000000001000000"),
    ])
    def test_compact_size(self, n, encoded):
        assert compact_size(n).hex() == encoded

    @pytest.mark.parametrize("n,encoded", [
        (0, ""),
        (1, "01"),
        (127, "7f"),
        (128, "8000"),
        (255, "ff00"),
        (-1, "81"),
        (-128, "8080"),
        (1_700_000_000, "00f15365"),
    ])
    def test_script_number(self, n, encoded):
        assert script_number(n).hex() == encoded

    def test_small_int_pushes_use_opcodes(self):
        assert push_int(0) == b"\x00"
        assert push_int(1) == b"\x51"
        assert push_int(16) == b"\x60"
        assert push_int(-1) == b"\x4f"
        assert push_int(17) == b"\x01\x11"

    def test_push_lengths(self):
        assert push_data(bytes(75))[:1] == b"\x4b"
        assert push_data(bytes(76))[:2] == b"\x4c\x4c"
        assert push_data(bytes(300))[:3] == b"\x4d\x2c\x01"


# =============================================================================
# TOKENS
# =============================================================================

class TestTokenPrefix:
    """Tests for the CashTokens output prefix."""

    def test_mutable_nft_with_commitment(self):
        token = TokenData(TREASURY_CATEGORY, 0, NftData(NftCapability.MUTABLE, b"\x01\x02"))
        prefix = token.serialize_prefix()
        assert prefix[0] == 0xEF
        assert prefix[1:33] == bytes.fromhex(TREASURY_CATEGORY)[::-1]
        assert prefix[33] == 0x20 | 0x40 | 0x01
        assert prefix[34:] == b"\x02\x01\x02"

    def test_fungible_only(self):
        prefix = TokenData(TREASURY_CATEGORY, 1000).serialize_prefix()
        assert prefix[33] == 0x10
        assert prefix[34:] == compact_size(1000)

    def test_minting_without_commitment(self):
        prefix = TokenData(TREASURY_CATEGORY, 0, NftData(NftCapability.MINTING)).serialize_prefix()
        assert prefix[33] == 0x22
        assert len(prefix) == 34

    def test_to_dict(self):
        token = TokenData(TREASURY_CATEGORY, 7, NftData(NftCapability.MUTABLE, b"\xaa"))
        assert token.to_dict() == {
            "category": TREASURY_CATEGORY,
            "amount": "7",
            "nft": {"capability": "mutable", "commitment": "aa"},
        }


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TestTransaction:
    """Tests for serialization, txid and output matching."""

    def test_serialization_layout(self):
        tx = simple_tx()
        raw = tx.serialize()
        assert raw[:4] == b"\x02\x00\x00\x00"
        assert raw[4] == 1
        assert raw[5:37] == bytes.fromhex(txid_for("funding"))[::-1]
        assert raw[37:41] == b"\x01\x00\x00\x00"
        assert raw[-4:] == b"\x00\x00\x00\x00"

    def test_txid_is_reversed_hash256(self):
        tx = simple_tx()
        assert tx.txid == CryptoUtils.hash256(tx.serialize())[::-1].hex()
        assert tx.to_hex() == tx.serialize().hex()

    def test_with_unlocking_changes_txid(self):
        tx = simple_tx()
        signed = tx.with_unlocking(0, b"\x51")
        assert signed.inputs[0].unlocking_bytecode == b"\x51"
        assert tx.inputs[0].unlocking_bytecode == b""
        assert signed.txid != tx.txid

    def test_output_total(self):
        assert simple_tx(1234).output_total == 1234

    def test_find_and_verify_outputs(self):
        tx = simple_tx(5_000)
        script = p2pkh_locking_bytecode(hash20("payee"))
        assert find_output(tx, script) == 0
        assert find_output(tx, script, min_value=5_001) is None
        assert verify_outputs(tx, [TxOutput(script, 5_000)]) == []
        problems = verify_outputs(tx, [TxOutput(p2pkh_locking_bytecode(hash20("other")), 1)])
        assert len(problems) == 1

    def test_find_output_matches_commitment(self):
        script = b"\xaa" * 3
        tx = Transaction(outputs=[
            TxOutput(script, 1000, TokenData(TREASURY_CATEGORY, 0, NftData(NftCapability.MUTABLE, b"\x01"))),
        ])
        assert find_output(tx, script, commitment=b"\x01") == 0
        assert find_output(tx, script, commitment=b"\x02") is None


# =============================================================================
# SIGNING DIGEST
# =============================================================================

class TestSigningDigest:
    """Tests for the SIGHASH_ALL|FORKID digest."""

    def test_digest_ignores_unlocking_bytecode(self):
        tx = simple_tx()
        script = b"\x51"
        assert signing_digest(tx, 0, 10_000, script) == signing_digest(tx.with_unlocking(0, b"\x00"), 0, 10_000, script)

    def test_digest_covers_outputs_value_and_locktime(self):
        base = signing_digest(simple_tx(), 0, 10_000, b"\x51")
        assert signing_digest(simple_tx(4_999), 0, 10_000, b"\x51") != base
        assert signing_digest(simple_tx(), 0, 10_001, b"\x51") != base
        assert signing_digest(simple_tx(locktime=1), 0, 10_000, b"\x51") != base

    def test_digest_covers_spent_token(self):
        tx = simple_tx()
        token = TokenData(TREASURY_CATEGORY, 0, NftData(NftCapability.MUTABLE, b"\x01"))
        assert signing_digest(tx, 0, 10_000, b"\x51", token) != signing_digest(tx, 0, 10_000, b"\x51")

    def test_other_sighash_types_refused(self):
        with pytest.raises(ValueError):
            signing_digest(simple_tx(), 0, 10_000, b"\x51", sighash_type=0x01)
