"""
FlowGuard Keys

secp256k1 ECDSA over transaction signing digests, via ``cryptography``.

The engine verifies signatures that wallets return, and holds exactly one
kind of private key itself: the per-campaign claim authority that
co-signs airdrop claims. Claim-authority secrets never live in memory
longer than one signing call; they are escrowed in the state store and
loaded on demand.

Signature format (as pushed in unlocking bytecode):

    DER(r, s) with low-S  ||  sighash type byte (0x41)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)

from flowguard.errors import InvalidSignature
from flowguard.hardening import CryptoUtils
from flowguard.transaction import SIGHASH_ALL_FORKID

logger = logging.getLogger(__name__)

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_HALF_ORDER = SECP256K1_ORDER // 2

_ECDSA = ec.ECDSA(Prehashed(hashes.SHA256()))

CLAIM_AUTHORITY_PREFIX = "claim-authority:"


def _low_s(der: bytes) -> bytes:
    r, s = decode_dss_signature(der)
    if s > _HALF_ORDER:
        s = SECP256K1_ORDER - s
    return encode_dss_signature(r, s)


def load_public_key(pubkey: bytes) -> ec.EllipticCurvePublicKey:
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), pubkey)
    except ValueError as e:
        raise InvalidSignature(f"not a valid secp256k1 public key: {e}", field="pubkey") from e


def verify_signature(pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    """
    Check a transaction signature (DER + sighash byte) over ``digest``.

    Returns False for a well-formed signature that does not verify and
    raises InvalidSignature for malformed input.
    """
    if len(signature) < 9:
        raise InvalidSignature(f"signature of {len(signature)} bytes is too short", field="signature")
    if signature[-1] != SIGHASH_ALL_FORKID:
        raise InvalidSignature(
            f"sighash type 0x{signature[-1]:02x}, expected 0x{SIGHASH_ALL_FORKID:02x}",
            field="signature",
        )
    der = signature[:-1]
    try:
        r, s = decode_dss_signature(der)
    except ValueError as e:
        raise InvalidSignature(f"signature is not DER encoded: {e}", field="signature") from e
    if s > _HALF_ORDER:
        return False
    try:
        load_public_key(pubkey).verify(encode_dss_signature(r, s), digest, _ECDSA)
    except _CryptoInvalidSignature:
        return False
    return True


@dataclass(frozen=True)
class SigningKey:
    """A secp256k1 private key with BCH-style signing."""
    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "SigningKey":
        return cls(ec.generate_private_key(ec.SECP256K1()))

    @classmethod
    def from_secret(cls, secret: bytes) -> "SigningKey":
        if len(secret) != 32:
            raise ValueError("secret must be 32 bytes")
        value = int.from_bytes(secret, "big")
        if not 0 < value < SECP256K1_ORDER:
            raise ValueError("secret out of range for secp256k1")
        return cls(ec.derive_private_key(value, ec.SECP256K1()))

    @property
    def secret(self) -> bytes:
        return self.private_key.private_numbers().private_value.to_bytes(32, "big")

    @property
    def pubkey(self) -> bytes:
        """33-byte compressed public key."""
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    @property
    def pubkey_hash(self) -> bytes:
        return CryptoUtils.hash160(self.pubkey)

    def sign(self, digest: bytes) -> bytes:
        """Sign a 32-byte sighash digest; returns DER (low-S) plus the sighash byte."""
        der = self.private_key.sign(digest, _ECDSA)
        return _low_s(der) + bytes([SIGHASH_ALL_FORKID])


# =============================================================================
# CLAIM AUTHORITY
# =============================================================================

def claim_authority_key(pubkey_hash: bytes) -> str:
    return f"{CLAIM_AUTHORITY_PREFIX}{pubkey_hash.hex()}"


def generate_claim_authority(store) -> SigningKey:
    """Create a fresh claim-authority key and escrow its secret in ``store``."""
    key = SigningKey.generate()
    store.escrow_secret(claim_authority_key(key.pubkey_hash), key.secret)
    logger.info("Generated claim authority %s", key.pubkey_hash.hex())
    return key


def load_claim_authority(store, pubkey_hash: bytes) -> Optional[SigningKey]:
    secret = store.load_secret(claim_authority_key(pubkey_hash))
    if secret is None:
        return None
    return SigningKey.from_secret(secret)
