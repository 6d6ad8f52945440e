"""
Indexed UTXO records.

A CovenantUTXO is the off-chain mirror of one confirmed covenant output.
It is immutable: a spend produces a new record with a higher ``sequence``
rather than mutating this one. ``sequence`` is assigned by the state
store and is what optimistic concurrency compares.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from flowguard.codec import CovenantKind, CovenantState, decode_commitment
from flowguard.errors import MalformedCommitment
from flowguard.hardening import Validators
from flowguard.identifiers import p2pkh_locking_bytecode
from flowguard.transaction import NftCapability, NftData, Outpoint, TokenData


@dataclass(frozen=True)
class CovenantUTXO:
    entity_id: str
    kind: CovenantKind
    outpoint: Outpoint
    locking_bytecode: bytes
    value_satoshis: int
    token: TokenData
    block_height: int = 0
    block_timestamp: int = 0
    sequence: int = 0

    def __post_init__(self):
        if self.token.nft is None:
            raise MalformedCommitment("covenant output carries no NFT", field="token")
        # Decode eagerly so a bad commitment never enters the mirror.
        object.__setattr__(self, "_state", decode_commitment(self.kind, self.token.nft.commitment))

    @property
    def state(self) -> CovenantState:
        return self._state  # type: ignore[attr-defined]

    @property
    def commitment(self) -> bytes:
        return self.token.nft.commitment  # type: ignore[union-attr]

    @property
    def capability(self) -> NftCapability:
        return self.token.nft.capability  # type: ignore[union-attr]

    @property
    def category(self) -> str:
        return self.token.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "outpoint": str(self.outpoint),
            "locking_bytecode": self.locking_bytecode.hex(),
            "value_satoshis": self.value_satoshis,
            "token": self.token.to_dict(),
            "block_height": self.block_height,
            "block_timestamp": self.block_timestamp,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class WalletUTXO:
    """A P2PKH output owned by a wallet, used to fund fees or carry tokens."""
    outpoint: Outpoint
    value_satoshis: int
    owner_hash: bytes
    token: Optional[TokenData] = None

    def __post_init__(self):
        Validators.validate_hash160(self.owner_hash, "owner_hash").raise_if_invalid()

    @property
    def locking_bytecode(self) -> bytes:
        return p2pkh_locking_bytecode(self.owner_hash)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletUTXO":
        token = None
        if data.get("token"):
            raw = data["token"]
            nft = None
            if raw.get("nft"):
                nft = NftData(
                    capability=NftCapability[raw["nft"]["capability"].upper()],
                    commitment=bytes.fromhex(raw["nft"].get("commitment", "")),
                )
            token = TokenData(category=raw["category"], amount=raw.get("amount", 0), nft=nft)
        return cls(
            outpoint=Outpoint(data["txid"], data["vout"]),
            value_satoshis=data["value_satoshis"],
            owner_hash=bytes.fromhex(data["owner_hash"]),
            token=token,
        )
