import hashlib
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import flowguard`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from flowguard.abi import CovenantDeployment, DeploymentRegistry, standard_artifact  # noqa: E402
from flowguard.chain import MockBroadcastSink, MockWallet  # noqa: E402
from flowguard.codec import CovenantKind, SignerRole, encode_state  # noqa: E402
from flowguard.config import get_config_manager  # noqa: E402
from flowguard.keys import SigningKey  # noqa: E402
from flowguard.policy import (  # noqa: E402
    GovernanceRules,
    Guardrails,
    MultisigConfig,
    PeriodConfig,
    Signer,
    TreasuryPolicy,
)
from flowguard.store import InMemoryStateStore  # noqa: E402
from flowguard.transaction import NftCapability, NftData, Outpoint, TokenData  # noqa: E402
from flowguard.utxo import CovenantUTXO, WalletUTXO  # noqa: E402


NOW = 1_700_000_000
PERIOD = 30 * 86_400
TREASURY_CATEGORY = "ab" * 32
SIGNERS = ("alice", "bob", "carol")


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: concurrency and timing tests (skipped unless FLOWGUARD_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('FLOWGUARD_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set FLOWGUARD_RUN_SLOW=1 to enable'))


# =============================================================================
# HELPERS
# =============================================================================

def key_for(name: str) -> SigningKey:
    """Deterministic test key per signer name."""
    return SigningKey.from_secret(hashlib.sha256(name.encode()).digest())


def hash20(label: str) -> bytes:
    return hashlib.new("ripemd160", label.encode()).digest()


def txid_for(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


def entity_hex(label: str) -> str:
    return bytes(12).hex() + hash20(label).hex()


def wallet_utxo(label: str, value: int, vout: int = 0, owner: bytes = b"", token=None) -> WalletUTXO:
    return WalletUTXO(Outpoint(txid_for(label), vout), value, owner or hash20("funder"), token)


def make_policy(
    required: int = 2,
    period_cap: int = 100_000_000,
    recipient_cap: int = 0,
    execution_delay: int = 3600,
    **guardrails,
) -> TreasuryPolicy:
    roles = {
        "alice": frozenset({SignerRole.APPROVER, SignerRole.EXECUTOR}),
        "bob": frozenset({SignerRole.APPROVER}),
        "carol": frozenset({SignerRole.APPROVER, SignerRole.PAUSER}),
    }
    signers = tuple(Signer(name, key_for(name).pubkey, roles[name]) for name in SIGNERS)
    return TreasuryPolicy(
        multisig=MultisigConfig(required, signers),
        guardrails=Guardrails(period_cap=period_cap, recipient_cap=recipient_cap, **guardrails),
        governance=GovernanceRules(voting_period=7 * 86_400, execution_delay=execution_delay),
        periods=PeriodConfig(period_duration=PERIOD, start_timestamp=0),
    )


class CovenantFactory:
    """Registers covenant deployments and indexes their UTXOs into a store."""

    def __init__(self, store, deployments: DeploymentRegistry):
        self.store = store
        self.deployments = deployments
        self._counter = 0

    def deploy(self, kind: CovenantKind, entity_id: str, parameters=None) -> CovenantDeployment:
        deployment = CovenantDeployment(
            kind,
            standard_artifact(kind),
            b"\xc0" + bytes.fromhex(entity_id),
            dict(parameters or {}),
        )
        self.deployments.register(entity_id, deployment)
        return deployment

    def utxo(
        self,
        entity_id: str,
        state,
        value: int,
        capability: NftCapability = NftCapability.MUTABLE,
        amount: int = 0,
        index: bool = True,
    ) -> CovenantUTXO:
        """A confirmed covenant output for an already deployed entity."""
        self._counter += 1
        deployment = self.deployments.for_entity(entity_id)
        utxo = CovenantUTXO(
            entity_id=entity_id,
            kind=deployment.kind,
            outpoint=Outpoint(txid_for(f"{entity_id}:{self._counter}"), 0),
            locking_bytecode=deployment.locking_bytecode,
            value_satoshis=value,
            token=TokenData(TREASURY_CATEGORY, amount, NftData(capability, encode_state(state))),
            block_height=800_000 + self._counter,
            block_timestamp=NOW - 600,
        )
        if index:
            return self.store.put_utxo(utxo)
        return utxo


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Every test starts from default configuration."""
    for name in list(os.environ):
        if name.startswith("FLOWGUARD_") and name != "FLOWGUARD_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture
def keys():
    return {name: key_for(name) for name in SIGNERS}


@pytest.fixture
def policy():
    return make_policy()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def deployments():
    return DeploymentRegistry()


@pytest.fixture
def covenants(store, deployments):
    return CovenantFactory(store, deployments)


@pytest.fixture
def sink():
    return MockBroadcastSink()


@pytest.fixture
def wallet(keys):
    return MockWallet(dict(keys))
