"""Stable error taxonomy for the Sentinel agent.

This module defines machine-readable error codes and the exception types used
across the codec, session, orchestrator, and scheduler.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `retryable` flag telling the scheduler whether the next cycle may succeed.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Type


# Codec
SENTINEL_E_DECODE_TRUNCATED = "SENTINEL_E_DECODE_TRUNCATED"
SENTINEL_E_DECODE_UTF8 = "SENTINEL_E_DECODE_UTF8"
SENTINEL_E_ENCODE_RANGE = "SENTINEL_E_ENCODE_RANGE"

# Address derivation
SENTINEL_E_SEED_TOO_LONG = "SENTINEL_E_SEED_TOO_LONG"
SENTINEL_E_NO_VIABLE_BUMP = "SENTINEL_E_NO_VIABLE_BUMP"

# Session / keys
SENTINEL_E_KEY_UNAVAILABLE = "SENTINEL_E_KEY_UNAVAILABLE"
SENTINEL_E_KEY_INVALID = "SENTINEL_E_KEY_INVALID"
SENTINEL_E_NONCE_REUSED = "SENTINEL_E_NONCE_REUSED"

# Submission / lifecycle
SENTINEL_E_SUBMISSION_REJECTED = "SENTINEL_E_SUBMISSION_REJECTED"
SENTINEL_E_SIMULATION_FAILED = "SENTINEL_E_SIMULATION_FAILED"

# Scheduler
SENTINEL_E_CYCLE = "SENTINEL_E_CYCLE"
SENTINEL_E_ENTITY_CHECK = "SENTINEL_E_ENTITY_CHECK"

# Startup
SENTINEL_E_CONFIG = "SENTINEL_E_CONFIG"
SENTINEL_E_WALLET = "SENTINEL_E_WALLET"


@dataclass
class SentinelError(Exception):
    """Base Sentinel exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class DecodeError(SentinelError):
    """Malformed bytes. Recovered locally; the record or event is skipped."""


class DerivationError(SentinelError):
    """No off-curve address exists for a seed tuple. Treated as fatal."""


class KeyUnavailable(SentinelError):
    """The encryption session cannot be established. Fatal at startup."""


class SubmissionFailure(SentinelError):
    """A transaction was rejected. Transient; the entity is retried next cycle."""


class CycleError(SentinelError):
    """Raised inside a monitoring cycle and caught at the entity/cycle boundary."""


class ConfigError(SentinelError):
    """Invalid or missing configuration. Fatal at startup."""


class WalletError(SentinelError):
    """The signing credential could not be loaded. Fatal at startup."""


def sentinel_error(
    cls: Type[SentinelError],
    code: str,
    message: str,
    *,
    retryable: bool = False,
    **details: Any,
) -> SentinelError:
    return cls(code=code, message=message, retryable=retryable, details=details)
