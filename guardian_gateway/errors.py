"""Stable error taxonomy for the guardian gateway.

This module defines machine-readable error codes and a single exception type
used across the gate, the escalation store and the HTTP surface.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Configuration
GA_E_CONFIG_INVALID = "GA_E_CONFIG_INVALID"

# Escalation store
GA_E_STORE_IO = "GA_E_STORE_IO"
GA_E_LOCKDOWN_ACTIVE = "GA_E_LOCKDOWN_ACTIVE"

# Approval
GA_E_NONCE_NOT_FOUND = "GA_E_NONCE_NOT_FOUND"
GA_E_NONCE_EXPIRED = "GA_E_NONCE_EXPIRED"

# Transport / auth
GA_E_AUTH_REQUIRED = "GA_E_AUTH_REQUIRED"
GA_E_RATE_LIMITED = "GA_E_RATE_LIMITED"
GA_E_BAD_REQUEST = "GA_E_BAD_REQUEST"
GA_E_INTERNAL = "GA_E_INTERNAL"

# Short names used in approval results and denial messages.
APPROVAL_ERROR_NAMES: Dict[str, str] = {
    GA_E_NONCE_NOT_FOUND: "NotFound",
    GA_E_NONCE_EXPIRED: "Expired",
}


@dataclass
class GuardianError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class StoreIOError(GuardianError):
    """Raised when escalation state cannot be persisted."""

    def __init__(self, message: str, **details: Any):
        super().__init__(code=GA_E_STORE_IO, message=message, retryable=True, http_status=503, details=details)


class StoreLockdownError(GuardianError):
    """Raised while the store is in LOCKDOWN due to degraded storage."""

    def __init__(self, message: str = "LOCKDOWN_ACTIVE"):
        super().__init__(code=GA_E_LOCKDOWN_ACTIVE, message=message, retryable=True, http_status=503)


def guardian_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> GuardianError:
    return GuardianError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def not_found(nonce: str) -> GuardianError:
    return guardian_error(GA_E_NONCE_NOT_FOUND, "Nonce not found or already used", http_status=404, nonce=nonce)


def expired(nonce: str) -> GuardianError:
    return guardian_error(
        GA_E_NONCE_EXPIRED,
        "Escalation expired. Please retry the original action.",
        http_status=410,
        nonce=nonce,
    )
