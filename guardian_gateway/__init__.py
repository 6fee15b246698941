"""Guardian Gateway: a last-line authorization gate for agent tool calls.

Every tool call is classified as allow, block or escalate. Escalations get a
single-use nonce; approving it grants a short, one-time approval bound to the
exact tool name and parameters that were escalated.

Convenience imports
-------------------
Nothing heavy happens at import time. These names are loaded lazily:

    from guardian_gateway import GuardianGate, GuardConfig, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Version from a repo-local pyproject.toml (dev/test checkouts)."""
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "GuardianGate",
    "GuardConfig",
    "GuardianError",
    "approve_escalation",
    "ApprovalTool",
    "create_app",
    "register",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "GuardianGate": ("guardian_gateway.gate", "GuardianGate"),
    "GuardConfig": ("guardian_gateway.config", "GuardConfig"),
    "GuardianError": ("guardian_gateway.errors", "GuardianError"),
    "approve_escalation": ("guardian_gateway.approval", "approve_escalation"),
    "ApprovalTool": ("guardian_gateway.approval", "ApprovalTool"),
    "create_app": ("guardian_gateway.server", "create_app"),
    "register": ("guardian_gateway.plugin", "register"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'guardian_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
