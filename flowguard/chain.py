"""
FlowGuard Chain Interfaces

Contracts for the two external collaborators that touch the network or
key custody, plus mock implementations for tests and local runs:

    WalletSigner   request_signature(digest, signer) -> signature bytes
    BroadcastSink  broadcast(tx_hex) -> txid, or raise BroadcastRejected

The engine never sees wallet key material; it hands a digest to the
wallet and receives a signature back.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from flowguard.errors import BroadcastRejected, UnauthorizedSigner
from flowguard.hardening import CryptoUtils
from flowguard.keys import SigningKey


class WalletSigner(Protocol):
    """Protocol for wallets that sign digests on behalf of a signer identity."""

    def request_signature(self, digest: bytes, signer: str) -> bytes:
        """
        Ask ``signer``'s wallet to sign ``digest``.

        Returns DER signature bytes with the sighash type appended.
        """
        ...


class BroadcastSink(Protocol):
    """Protocol for transaction relay (node RPC, Electrum, Fulcrum...)."""

    def broadcast(self, tx_hex: str) -> str:
        """
        Submit a signed transaction.

        Returns the txid; raises BroadcastRejected with the node's reason.
        """
        ...


# =============================================================================
# MOCK IMPLEMENTATIONS
# =============================================================================

class MockWallet:
    """
    Mock wallet for testing.

    Holds a key per signer identity and signs whatever it is asked to.
    """

    def __init__(self, keys: Optional[Dict[str, SigningKey]] = None):
        self._keys: Dict[str, SigningKey] = dict(keys or {})
        self.requests: List[str] = []

    def add(self, signer: str, key: Optional[SigningKey] = None) -> SigningKey:
        key = key or SigningKey.generate()
        self._keys[signer] = key
        return key

    def key(self, signer: str) -> SigningKey:
        return self._keys[signer]

    def request_signature(self, digest: bytes, signer: str) -> bytes:
        key = self._keys.get(signer)
        if key is None:
            raise UnauthorizedSigner(f"wallet holds no key for {signer}", field="signer")
        self.requests.append(signer)
        return key.sign(digest)


@dataclass
class BroadcastRecord:
    txid: str
    tx_hex: str


@dataclass
class MockBroadcastSink:
    """
    Mock broadcast sink.

    Accepts everything unless ``reject_reason`` is set or ``validator``
    returns a reason string for the transaction.
    """
    reject_reason: str = ""
    validator: Optional[Callable[[str], Optional[str]]] = None
    broadcasts: List[BroadcastRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def broadcast(self, tx_hex: str) -> str:
        txid = CryptoUtils.hash256(bytes.fromhex(tx_hex))[::-1].hex()
        reason = self.reject_reason or (self.validator(tx_hex) if self.validator else None)
        if reason:
            raise BroadcastRejected(reason, txid=txid)
        with self._lock:
            self.broadcasts.append(BroadcastRecord(txid=txid, tx_hex=tx_hex))
        return txid

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.broadcasts)
