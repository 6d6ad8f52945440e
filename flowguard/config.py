"""
Engine settings: fee constants, protocol limits, governance defaults,
signing sessions and logging.

A setting resolves from its FLOWGUARD_* environment variable first, then
from a runtime override or a loaded YAML file (./flowguard.yaml or
~/.flowguard/config.yaml), then from its default.

Several protocol limits (signers, recipients, votes per tally) were
never validated against the deployed scripts; they live here as
configuration so a deployment can pin the values its bytecode enforces.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from flowguard.errors import FlowGuardError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECONDS_PER_DAY = 86_400


class ConfigError(FlowGuardError):
    """A config file or path the engine cannot use."""

    kind = "config_error"


class ConfigValidationError(ConfigError):

    kind = "config_invalid"


@dataclass
class ConfigValue(Generic[T]):
    """One setting. ``env_var``, when set in the environment, overrides everything else."""
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Environment and CLI values arrive as text."""
        if isinstance(self.default, bool):
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        if isinstance(self.default, int):
            return int(value)  # type: ignore
        return value  # type: ignore


@dataclass
class LimitsConfig:
    """Protocol size limits. Defaults are placeholders, not verified script limits."""
    max_signers: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="FLOWGUARD_MAX_SIGNERS",
        description="Maximum signers in a treasury multisig",
        validator=lambda x: 1 <= x <= 20,
    ))
    max_recipients: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=50,
        env_var="FLOWGUARD_MAX_RECIPIENTS",
        description="Maximum recipients in one payout",
        validator=lambda x: x > 0,
    ))
    max_allowlist_entries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="FLOWGUARD_MAX_ALLOWLIST",
        description="Maximum entries in an allow or deny list",
        validator=lambda x: x >= 0,
    ))
    max_categories: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="FLOWGUARD_MAX_CATEGORIES",
        description="Maximum budget categories per policy",
        validator=lambda x: x >= 0,
    ))
    max_votes_per_tally: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=20,
        env_var="FLOWGUARD_MAX_VOTES_PER_TALLY",
        description="Maximum vote locks aggregated by one tally transaction",
        validator=lambda x: x > 0,
    ))


@dataclass
class TransactionConfig:
    """Fee and output-size constants used by the builder."""
    dust_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=546,
        env_var="FLOWGUARD_DUST_LIMIT",
        description="Minimum satoshis for any output",
        validator=lambda x: x > 0,
    ))
    fee_reserve: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1500,
        env_var="FLOWGUARD_FEE_RESERVE",
        description="Miner fee reserved from covenant value for state-changing spends",
        validator=lambda x: x >= 0,
    ))
    control_fee_reserve: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=900,
        env_var="FLOWGUARD_CONTROL_FEE_RESERVE",
        description="Miner fee for pause/resume spends",
        validator=lambda x: x >= 0,
    ))
    executor_fee_min: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=546,
        env_var="FLOWGUARD_EXECUTOR_FEE_MIN",
        description="Minimum executor fee in satoshis",
        validator=lambda x: x >= 0,
    ))
    executor_fee_max: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="FLOWGUARD_EXECUTOR_FEE_MAX",
        description="Maximum executor fee in satoshis",
        validator=lambda x: x >= 0,
    ))
    executor_fee_per_mille: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="FLOWGUARD_EXECUTOR_FEE_PER_MILLE",
        description="Executor fee as parts per thousand of the payout",
        validator=lambda x: 0 <= x <= 1000,
    ))
    token_output_satoshis: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="FLOWGUARD_TOKEN_OUTPUT_SATS",
        description="Satoshis carried by outputs that deliver fungible tokens",
        validator=lambda x: x > 0,
    ))


@dataclass
class GovernanceConfig:
    """Defaults applied when a policy omits governance rules."""
    voting_period_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=7 * SECONDS_PER_DAY,
        env_var="FLOWGUARD_VOTING_PERIOD",
        description="Default voting period",
        validator=lambda x: x > 0,
    ))
    execution_delay_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2 * SECONDS_PER_DAY,
        env_var="FLOWGUARD_EXECUTION_DELAY",
        description="Default timelock between approval and execution",
        validator=lambda x: x >= 0,
    ))
    period_duration_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=30 * SECONDS_PER_DAY,
        env_var="FLOWGUARD_PERIOD_DURATION",
        description="Default spending period",
        validator=lambda x: x > 0,
    ))


@dataclass
class SessionConfig:
    """Signing session behaviour."""
    ttl_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=24 * 3600,
        env_var="FLOWGUARD_SESSION_TTL",
        description="Seconds before an unfinished signing session expires",
        validator=lambda x: x > 0,
    ))
    verify_signatures: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="FLOWGUARD_VERIFY_SIGNATURES",
        description="Verify submitted signatures against signer public keys",
    ))
    stale_retry_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="FLOWGUARD_STALE_RETRIES",
        description="Automatic rebuilds after a StaleState conflict",
        validator=lambda x: 0 <= x <= 5,
    ))


@dataclass
class ObservabilityConfig:
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="FLOWGUARD_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="FLOWGUARD_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class FlowGuardConfig:
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    governance: GovernanceConfig = field(default_factory=GovernanceConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Effective values, nested by section."""
        def resolve(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            if hasattr(obj, "__dataclass_fields__"):
                return {k: resolve(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return resolve(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """Process-wide holder of the active FlowGuardConfig."""

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = FlowGuardConfig()
        self._initialized = True

    @property
    def config(self) -> FlowGuardConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        self._apply_dict(data)
        logger.info("Loaded configuration from %s", path)

    def load_defaults(self) -> None:
        """Load ./flowguard.yaml and ~/.flowguard/config.yaml where present."""
        for path in (Path("flowguard.yaml"), Path.home() / ".flowguard" / "config.yaml"):
            if path.exists():
                try:
                    self.load_from_file(path)
                except (ConfigError, yaml.YAMLError) as e:
                    logger.warning("Skipping unreadable config %s: %s", path, e)

    def _apply_dict(self, data: Dict[str, Any], section: Any = None, prefix: str = "") -> None:
        section = self._config if section is None else section
        for key, value in data.items():
            if not hasattr(section, key):
                raise ConfigError(f"Unknown config key: {prefix}{key}")
            attr = getattr(section, key)
            if isinstance(attr, ConfigValue):
                attr.set(value)
            elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                self._apply_dict(value, attr, f"{prefix}{key}.")

    def set(self, path: str, value: Any) -> None:
        """Runtime override by dotted path, e.g. ``limits.max_signers``."""
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def reset(self) -> None:
        """Drop runtime overrides and loaded files, returning to defaults."""
        self._config = FlowGuardConfig()

    def validate(self) -> List[str]:
        """Every failing setting as ``path: reason``; empty when the config is usable."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                except ValueError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)

        tx = self._config.transaction
        if tx.executor_fee_min.get() > tx.executor_fee_max.get():
            errors.append("transaction.executor_fee_min: exceeds executor_fee_max")
        return errors


def get_config() -> FlowGuardConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
