"""
Identifier Deriver Test Suite

Run with: pytest tests/test_identifiers.py -v
"""

import hashlib

import pytest

from conftest import hash20
from flowguard.errors import RequestValidationError
from flowguard.hardening import CryptoUtils
from flowguard.identifiers import (
    PayoutRecipient,
    campaign_id,
    derive_identifier,
    p2pkh_hash,
    p2pkh_locking_bytecode,
    p2sh32_locking_bytecode,
    payout_hash,
    proposal_id,
    proposal_id_prefix,
    signer_set_hash,
    stream_id,
    tally_id,
    u64le,
    vault_id,
    vote_id,
)


CREATOR = hash20("creator")
POLICY = hashlib.sha256(b"policy").digest()
TS = 1_700_000_000


# =============================================================================
# IDENTIFIERS
# =============================================================================

class TestDeriveIdentifier:
    """Tests for the hash160 + zero pad construction."""

    def test_layout_is_pad_plus_hash160(self):
        """Identifiers are 12 zero bytes then hash160 of the preimage."""
        ident = vault_id(CREATOR, POLICY, TS)
        assert len(ident) == 32
        assert ident[:12] == bytes(12)
        assert ident[12:] == CryptoUtils.hash160(CREATOR + POLICY + u64le(TS))

    def test_deterministic(self):
        assert vault_id(CREATOR, POLICY, TS) == vault_id(CREATOR, POLICY, TS)

    @pytest.mark.parametrize("changed", ["creator", "policy", "timestamp"])
    def test_every_input_matters(self, changed):
        """Changing any single input changes the vault id."""
        base = vault_id(CREATOR, POLICY, TS)
        args = {
            "creator": (hash20("other"), POLICY, TS),
            "policy": (CREATOR, hashlib.sha256(b"other").digest(), TS),
            "timestamp": (CREATOR, POLICY, TS + 1),
        }[changed]
        assert vault_id(*args) != base

    def test_integers_are_u64_le(self):
        assert derive_identifier(1) == derive_identifier(b"\x01" + bytes(7))

    def test_booleans_rejected(self):
        with pytest.raises(TypeError):
            derive_identifier(True)

    def test_strings_rejected(self):
        with pytest.raises(TypeError):
            derive_identifier("vault")

    def test_wrong_size_input_rejected(self):
        """A 19-byte creator hash is a request error, not a silent pad."""
        with pytest.raises(RequestValidationError) as exc_info:
            vault_id(CREATOR[:19], POLICY, TS)
        assert exc_info.value.field == "creator_hash"

    def test_child_ids_bind_parent(self):
        """Proposal, stream and campaign ids differ for different vaults."""
        v1 = vault_id(CREATOR, POLICY, TS)
        v2 = vault_id(CREATOR, POLICY, TS + 1)
        who = hash20("who")
        assert proposal_id(v1, who, TS) != proposal_id(v2, who, TS)
        assert stream_id(v1, who, TS) != stream_id(v2, who, TS)
        assert campaign_id(v1, who, TS) != campaign_id(v2, who, TS)

    def test_proposal_and_stream_ids_share_preimage_shape(self):
        """Both hash (vault, hash20, ts); same inputs give the same digest."""
        v = vault_id(CREATOR, POLICY, TS)
        who = hash20("who")
        assert proposal_id(v, who, TS) == stream_id(v, who, TS)

    def test_campaign_merkle_root_is_optional(self):
        v = vault_id(CREATOR, POLICY, TS)
        authority = hash20("authority")
        root = hashlib.sha256(b"eligible").digest()
        assert campaign_id(v, authority, TS) != campaign_id(v, authority, TS, root)

    def test_tally_and_vote_ids(self):
        p = proposal_id(vault_id(CREATOR, POLICY, TS), hash20("p"), TS)
        t = tally_id(p)
        assert t != p
        assert vote_id(t, hash20("v1")) != vote_id(t, hash20("v2"))

    def test_proposal_prefix(self):
        """The vote prefix is the first four bytes after the zero pad."""
        p = proposal_id(vault_id(CREATOR, POLICY, TS), hash20("p"), TS)
        assert proposal_id_prefix(p) == p[12:16]


# =============================================================================
# COMMITMENT HASHES
# =============================================================================

class TestPayoutHash:
    """Tests for the 28-byte payout commitment."""

    def test_matches_manual_construction(self):
        recipients = [PayoutRecipient(hash20("a"), 1000), PayoutRecipient(hash20("b"), 2000)]
        preimage = hash20("a") + u64le(1000) + hash20("b") + u64le(2000)
        assert payout_hash(recipients) == hashlib.sha256(preimage).digest()[:28]

    def test_order_sensitive(self):
        a = PayoutRecipient(hash20("a"), 1000)
        b = PayoutRecipient(hash20("b"), 2000)
        assert payout_hash([a, b]) != payout_hash([b, a])

    def test_category_not_committed(self):
        """Category ids are accounting only; the hash covers who and how much."""
        assert payout_hash([PayoutRecipient(hash20("a"), 5, 1)]) == payout_hash([PayoutRecipient(hash20("a"), 5, 2)])

    def test_recipient_validation(self):
        with pytest.raises(RequestValidationError):
            PayoutRecipient(b"\x00" * 19, 5)
        with pytest.raises(RequestValidationError):
            PayoutRecipient(hash20("a"), -1)

    def test_signer_set_hash(self, keys):
        pubkeys = [keys[n].pubkey for n in ("alice", "bob")]
        assert signer_set_hash(pubkeys) == hashlib.sha256(b"".join(pubkeys)).digest()
        assert signer_set_hash(pubkeys) != signer_set_hash(list(reversed(pubkeys)))


# =============================================================================
# LOCKING BYTECODE
# =============================================================================

class TestLockingBytecode:
    """Tests for P2PKH and P2SH32 templates."""

    def test_p2pkh_template(self):
        h = hash20("owner")
        script = p2pkh_locking_bytecode(h)
        assert script == bytes.fromhex("76a914") + h + bytes.fromhex("88ac")
        assert p2pkh_hash(script) == h

    def test_p2pkh_hash_of_other_script(self):
        assert p2pkh_hash(p2sh32_locking_bytecode(b"\x51")) == b""

    def test_p2sh32_template(self):
        script = p2sh32_locking_bytecode(b"\x51")
        assert len(script) == 35
        assert script[:2] == bytes([0xAA, 32])
        assert script[2:34] == CryptoUtils.hash256(b"\x51")
        assert script[-1] == 0x87
