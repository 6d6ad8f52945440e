"""
FlowGuard Error Taxonomy

Every failure the engine can surface to a caller. Errors carry a stable
``kind`` string and the offending ``field`` so that an outer layer can
render a precise message without parsing exception text.

    FlowGuardError
    ├── MalformedCommitment          codec
    ├── RequestValidationError       request boundary
    ├── BuildError                   transaction builder
    │   ├── StaleState               recoverable: rebuild against latest state
    │   ├── GuardrailViolation       policy
    │   ├── InvalidTransition        status machine
    │   ├── InsufficientFunds
    │   ├── AbiMismatch              covenant ABI drift
    │   └── UtxoBusy                 outpoint soft-locked by another operation
    ├── SessionError                 signing sessions
    │   ├── UnknownSession
    │   ├── SessionExpired
    │   ├── UnauthorizedSigner
    │   └── InvalidSignature
    └── BroadcastRejected            network / consensus rejection

An M-of-N session that has not reached its threshold is not an error; it
is reported through ``SubmissionResult`` in ``flowguard.sessions``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class FlowGuardError(Exception):
    """Base class for all engine errors."""

    kind = "error"

    def __init__(self, message: str, field: str = "", **details: Any):
        self.message = message
        self.field = field
        self.details = details
        super().__init__(f"{field}: {message}" if field else message)

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for API responses and logs."""
        d: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.field:
            d["field"] = self.field
        if self.details:
            d["details"] = {
                k: (v.value if isinstance(v, Enum) else v)
                for k, v in self.details.items()
            }
        return d


class MalformedCommitment(FlowGuardError):
    """An NFT commitment does not decode to a valid covenant state."""

    kind = "malformed_commitment"


class RequestValidationError(FlowGuardError):
    """An inbound operation request failed schema or semantic validation."""

    kind = "invalid_request"


# =============================================================================
# BUILD ERRORS
# =============================================================================

class BuildError(FlowGuardError):
    """Transaction could not be built."""

    kind = "build_error"


class StaleState(BuildError):
    """The supplied UTXO is no longer the latest indexed state."""

    kind = "stale_state"

    def __init__(
        self,
        entity_id: str,
        expected_sequence: Optional[int] = None,
        actual_sequence: Optional[int] = None,
        message: str = "",
    ):
        self.entity_id = entity_id
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence
        super().__init__(
            message or (
                f"UTXO for {entity_id} is stale "
                f"(have sequence {expected_sequence}, latest {actual_sequence})"
            ),
            field="utxo",
            entity_id=entity_id,
            expected_sequence=expected_sequence,
            actual_sequence=actual_sequence,
        )


class GuardrailViolation(BuildError):
    """A proposed payout breaks a treasury guardrail."""

    kind = "guardrail_violation"

    def __init__(self, violation: Enum, field: str, message: str, **details: Any):
        self.violation = violation
        super().__init__(message, field=field, violation=violation, **details)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["violation"] = self.violation.value
        return d


class InvalidTransition(BuildError):
    """Requested operation is not legal from the current status."""

    kind = "invalid_transition"


class InsufficientFunds(BuildError):
    """Inputs cannot cover outputs, fees and dust limits."""

    kind = "insufficient_funds"

    def __init__(self, required: int, available: int, field: str = "value_satoshis"):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: need {required} sats, have {available}",
            field=field,
            required=required,
            available=available,
        )


# =============================================================================
# SESSION ERRORS
# =============================================================================

class SessionError(FlowGuardError):
    """Signing session failure."""

    kind = "session_error"


class UnknownSession(SessionError):
    kind = "unknown_session"


class SessionExpired(SessionError):
    kind = "session_expired"


class UnauthorizedSigner(SessionError):
    kind = "unauthorized_signer"


class InvalidSignature(SessionError):
    kind = "invalid_signature"


class BroadcastRejected(FlowGuardError):
    """The network refused a signed transaction. Never retried automatically."""

    kind = "broadcast_rejected"

    def __init__(self, reason: str, txid: str = ""):
        self.reason = reason
        self.txid = txid
        super().__init__(reason, field="transaction", txid=txid)


class AbiMismatch(BuildError):
    """Supplied unlocking data does not match the covenant's ABI."""

    kind = "abi_mismatch"


class UtxoBusy(BuildError):
    """An unfinished operation holds the soft lock on this outpoint."""

    kind = "utxo_busy"

    def __init__(self, outpoint: str, holder: str, expires_at: int):
        self.outpoint = outpoint
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(
            f"{outpoint} is held by {holder} until {expires_at}",
            field="utxo",
            holder=holder,
            expires_at=expires_at,
        )
