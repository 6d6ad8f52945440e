"""
FlowGuard Validation and Hardening Utilities

Input validation, hashing primitives, unsigned 64-bit arithmetic and
thread-safety helpers shared by every engine component.

Security Model:
    - All inputs are untrusted until validated
    - Digest comparisons are constant time
    - Satoshi and timestamp arithmetic never leaves the u64 domain
    - Per-entity mutation is serialized through keyed locks
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Set

from flowguard.errors import InvalidTransition, RequestValidationError


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """A single field failed validation."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(RequestValidationError):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        first = errors[0].field if errors else ""
        super().__init__(f"Validation failed: {messages}", field=first)


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


# =============================================================================
# UNSIGNED 64-BIT ARITHMETIC
# =============================================================================

U64_MAX = (1 << 64) - 1


def sat_add(a: int, b: int) -> int:
    """Add two u64 values, clamping at U64_MAX."""
    return min(a + b, U64_MAX)


def sat_sub(a: int, b: int) -> int:
    """Subtract two u64 values, clamping at zero."""
    return a - b if a > b else 0


def is_u64(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= U64_MAX


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX_PATTERN = re.compile(r"^(?:[0-9a-f]{2})*$")
    SIGNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9:._-]{1,128}$")

    # Limits

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = 65536,
    ) -> ValidationResult:
        """Validate raw bytes or a lowercase hex string."""
        if isinstance(value, str):
            text = value.lower()
            if text.startswith("0x"):
                text = text[2:]
            if not cls.HEX_PATTERN.match(text):
                return ValidationResult.failure([
                    ValidationError(field_name, "Invalid hex string", value)
                ])
            value = bytes.fromhex(text)

        if not isinstance(value, (bytes, bytearray)):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value)
            ])

        errors = []
        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} bytes)", value))
        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} bytes)", value))
        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(bytes(value))

    @classmethod
    def validate_fixed_bytes(cls, value: Any, field_name: str, length: int) -> ValidationResult:
        return cls.validate_bytes(value, field_name, min_length=length, max_length=length)

    @classmethod
    def validate_hash160(cls, value: Any, field_name: str = "hash160") -> ValidationResult:
        """Validate a 20-byte public key or script hash."""
        return cls.validate_fixed_bytes(value, field_name, 20)

    @classmethod
    def validate_u64(cls, value: Any, field_name: str) -> ValidationResult:
        if not is_u64(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be an integer in [0, 2^64-1]", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_signer_id(cls, value: Any, field_name: str = "signer") -> ValidationResult:
        if not isinstance(value, str) or not cls.SIGNER_ID_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Invalid signer identity", value)
            ])
        return ValidationResult.success(value)


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Hash functions used by the covenant scripts."""

    @staticmethod
    def sha256(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    @staticmethod
    def hash256(data: bytes) -> bytes:
        """Double SHA256, used for txids, sighashes and P2SH32."""
        return hashlib.sha256(hashlib.sha256(data).digest()).digest()

    @staticmethod
    def hash160(data: bytes) -> bytes:
        """RIPEMD160(SHA256(data)), the address-hash function."""
        return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()

    @staticmethod
    def secure_compare(a: bytes, b: bytes) -> bool:
        """Constant-time comparison to prevent timing attacks."""
        return hmac.compare_digest(a, b)

    @staticmethod
    def secure_random_hex(n_bytes: int = 16) -> str:
        return secrets.token_hex(n_bytes)


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value


class KeyedLocks:
    """
    Arena of locks keyed by entity id.

    Gives each entity (UTXO, session, mirrored status) its own lock so
    unrelated entities never contend.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._locks


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Mapping[Enum, Set[Enum]],
        field_name: str = "status",
    ) -> None:
        """Verify a status transition is in the table."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvalidTransition(
                f"Invalid state transition: {current_state.name} -> {target_state.name}. "
                f"Valid targets: {sorted(s.name for s in valid_targets)}",
                field=field_name,
                current=current_state.name,
                target=target_state.name,
            )

    @staticmethod
    def check_monotonic_increase(field_name: str, old_value: int, new_value: int) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvalidTransition(
                f"{field_name} must be monotonically non-decreasing: "
                f"cannot go from {old_value} to {new_value}",
                field=field_name,
            )
