"""
FlowGuard Covenant ABI

The versioned contract between this engine and the deployed covenant
bytecode: for every covenant family, which functions exist and the exact
ordered parameters each one takes as unlocking data.

Artifacts are CashScript-style JSON documents validated against
``artifact.schema.json``. A ``CovenantDeployment`` pairs an artifact with
the instantiated redeem script (constructor arguments already applied)
and produces the P2SH32 locking bytecode and unlocking bytecode.

Unlocking bytecode layout:

    <arg_n> ... <arg_1> [<function index>] <redeem script>

Arguments are pushed in reverse declaration order; the function index is
only present when the artifact declares more than one function.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from flowguard.codec import CovenantKind
from flowguard.errors import AbiMismatch
from flowguard.identifiers import p2sh32_locking_bytecode
from flowguard.schema import validate_against_schema
from flowguard.transaction import push_data, push_int

ARTIFACTS_DIR = Path(__file__).resolve().parent / "artifacts"

PLACEHOLDER_SIGNATURE = bytes(65)
PLACEHOLDER_PUBKEY = bytes(33)

ArgValue = Union[bytes, int, bool]

_FIXED_BYTES = {"bytes4": 4, "bytes20": 20, "bytes28": 28, "bytes32": 32, "pubkey": 33}

# Functions each covenant family must expose, keyed by builder operation.
REQUIRED_FUNCTIONS: Dict[CovenantKind, Dict[str, str]] = {
    CovenantKind.VAULT: {
        "spend": "spend",
        "execute": "executeProposal",
        "pause": "pause",
        "resume": "resume",
    },
    CovenantKind.PROPOSAL: {"approve": "approve", "execute": "execute", "cancel": "cancel"},
    CovenantKind.SCHEDULE: {"unlock": "unlock", "claim": "claim", "cancel": "cancel"},
    CovenantKind.CAMPAIGN: {"claim": "claim", "pause": "pause", "resume": "resume", "cancel": "cancel"},
    CovenantKind.TALLY: {"vote": "castVote", "tally": "finalize"},
    CovenantKind.VOTE_LOCK: {"reclaim": "reclaim"},
}

STANDARD_ARTIFACTS: Dict[CovenantKind, str] = {
    CovenantKind.VAULT: "VaultCovenant.json",
    CovenantKind.PROPOSAL: "ProposalCovenant.json",
    CovenantKind.SCHEDULE: "ScheduleCovenant.json",
    CovenantKind.CAMPAIGN: "CampaignCovenant.json",
    CovenantKind.TALLY: "TallyCovenant.json",
    CovenantKind.VOTE_LOCK: "VoteLockCovenant.json",
}


@dataclass(frozen=True)
class AbiInput:
    name: str
    type: str


@dataclass(frozen=True)
class AbiFunction:
    name: str
    inputs: Tuple[AbiInput, ...]
    index: int

    def signature_pairs(self) -> List[Tuple[int, int]]:
        """Positions of (sig, pubkey) parameter pairs, in declaration order."""
        sigs = [i for i, p in enumerate(self.inputs) if p.type == "sig"]
        keys = [i for i, p in enumerate(self.inputs) if p.type == "pubkey"]
        return list(zip(sigs, keys))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "inputs": [{"name": p.name, "type": p.type} for p in self.inputs],
        }


@dataclass(frozen=True)
class CovenantArtifact:
    contract_name: str
    functions: Tuple[AbiFunction, ...]
    version: str = ""
    source: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CovenantArtifact":
        errors = validate_against_schema(data, "artifact.schema.json")
        if errors:
            raise AbiMismatch("; ".join(errors), field="artifact")
        functions = tuple(
            AbiFunction(
                name=fn["name"],
                inputs=tuple(AbiInput(p["name"], p["type"]) for p in fn["inputs"]),
                index=index,
            )
            for index, fn in enumerate(data["abi"])
        )
        return cls(
            contract_name=data["contractName"],
            functions=functions,
            version=str(data.get("version", "")),
            source=dict(data),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CovenantArtifact":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def function(self, name: str) -> AbiFunction:
        for fn in self.functions:
            if fn.name == name:
                return fn
        raise AbiMismatch(f"{self.contract_name} has no function {name}", field="abi")

    def check_family(self, kind: CovenantKind) -> None:
        """Raise AbiMismatch unless every function ``kind`` needs is declared."""
        missing = [
            name for name in REQUIRED_FUNCTIONS[kind].values()
            if name not in {fn.name for fn in self.functions}
        ]
        if missing:
            raise AbiMismatch(
                f"{self.contract_name} is missing {', '.join(missing)} for {kind.value}",
                field="abi",
            )


@lru_cache(maxsize=None)
def standard_artifact(kind: CovenantKind) -> CovenantArtifact:
    """The artifact bundled with this release for a covenant family."""
    artifact = CovenantArtifact.load(ARTIFACTS_DIR / STANDARD_ARTIFACTS[kind])
    artifact.check_family(kind)
    return artifact


# =============================================================================
# ARGUMENT ENCODING
# =============================================================================

def _check_arg(param: AbiInput, value: Any) -> ArgValue:
    if param.type == "int":
        if not isinstance(value, int) or isinstance(value, bool):
            raise AbiMismatch(f"expected int, got {type(value).__name__}", field=param.name)
        return value
    if param.type == "bool":
        if not isinstance(value, bool):
            raise AbiMismatch(f"expected bool, got {type(value).__name__}", field=param.name)
        return value
    if not isinstance(value, (bytes, bytearray)):
        raise AbiMismatch(f"expected bytes, got {type(value).__name__}", field=param.name)
    size = _FIXED_BYTES.get(param.type)
    if size is not None and len(value) != size:
        raise AbiMismatch(f"expected {size} bytes, got {len(value)}", field=param.name)
    if param.type == "sig" and not 64 <= len(value) <= 73:
        raise AbiMismatch(f"signature length {len(value)} out of range", field=param.name)
    return bytes(value)


def order_args(fn: AbiFunction, named: Mapping[str, Any]) -> List[ArgValue]:
    """
    Order named arguments by the ABI declaration.

    Signature and public-key parameters that are not supplied become
    placeholders to be filled by signers; any other missing or unknown
    name is an ABI mismatch.
    """
    declared = {p.name for p in fn.inputs}
    unknown = sorted(set(named) - declared)
    if unknown:
        raise AbiMismatch(f"{fn.name} takes no parameter {', '.join(unknown)}", field=unknown[0])

    ordered: List[ArgValue] = []
    for param in fn.inputs:
        if param.name in named:
            ordered.append(_check_arg(param, named[param.name]))
        elif param.type == "sig":
            ordered.append(PLACEHOLDER_SIGNATURE)
        elif param.type == "pubkey":
            ordered.append(PLACEHOLDER_PUBKEY)
        else:
            raise AbiMismatch(f"missing argument for {fn.name}", field=param.name)
    return ordered


def _push_arg(value: ArgValue) -> bytes:
    if isinstance(value, bool):
        return push_int(1 if value else 0)
    if isinstance(value, int):
        return push_int(value)
    return push_data(value)


@dataclass(frozen=True)
class CovenantDeployment:
    """
    An artifact instantiated with constructor arguments.

    ``parameters`` holds the constructor terms the builder needs but
    cannot read back from the commitment (vesting totals, refund
    addresses, claim amounts), keyed by snake_case name.
    """
    kind: CovenantKind
    artifact: CovenantArtifact
    redeem_script: bytes
    parameters: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def locking_bytecode(self) -> bytes:
        return p2sh32_locking_bytecode(self.redeem_script)

    def param(self, name: str) -> Any:
        if name not in self.parameters:
            raise AbiMismatch(f"{self.artifact.contract_name} deployment lacks {name}", field=name)
        return self.parameters[name]

    def function_for(self, operation: str) -> AbiFunction:
        name = REQUIRED_FUNCTIONS[self.kind].get(operation)
        if name is None:
            raise AbiMismatch(f"{self.kind.value} covenant has no {operation} operation", field="operation")
        return self.artifact.function(name)

    def unlocking_bytecode(self, fn: AbiFunction, args: Sequence[ArgValue]) -> bytes:
        if len(args) != len(fn.inputs):
            raise AbiMismatch(
                f"{fn.name} takes {len(fn.inputs)} arguments, got {len(args)}",
                field="args",
            )
        script = b"".join(_push_arg(a) for a in reversed(args))
        if len(self.artifact.functions) > 1:
            script += push_int(fn.index)
        return script + push_data(self.redeem_script)


class DeploymentRegistry:
    """Deployed covenant instances, by entity id and by locking bytecode."""

    def __init__(self) -> None:
        self._by_entity: Dict[str, CovenantDeployment] = {}
        self._by_locking: Dict[bytes, CovenantDeployment] = {}
        self._lock = threading.Lock()

    def register(self, entity_id: str, deployment: CovenantDeployment) -> None:
        with self._lock:
            self._by_entity[entity_id] = deployment
            self._by_locking[deployment.locking_bytecode] = deployment

    def for_entity(self, entity_id: str) -> CovenantDeployment:
        with self._lock:
            deployment = self._by_entity.get(entity_id)
        if deployment is None:
            raise AbiMismatch(f"no covenant deployment registered for {entity_id}", field="entity_id")
        return deployment

    def for_locking_bytecode(self, locking_bytecode: bytes) -> Optional[CovenantDeployment]:
        with self._lock:
            return self._by_locking.get(locking_bytecode)
