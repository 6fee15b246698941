"""Gate configuration.

Settings can come from a mapping (the host's plugin config block), from a JSON
file, or from environment variables:

- GA_ENABLED (default: 1)
- GA_LOG_LEVEL (debug|info|warn|error, default: info)
- GA_ESCALATION_THRESHOLD (1..100, default: 36)
- GA_PENDING_TIMEOUT_MS (60000..600000, default: 300000)
- GA_APPROVAL_WINDOW_MS (10000..120000, default: 30000)
- GA_STORE_PATH (default: .ga-state.json, or .ga-state.db for sqlite)
- GA_STORE_BACKEND (json|sqlite, default: json)
- GA_ALWAYS_BLOCK / GA_NEVER_BLOCK (comma-separated tool names)
- GA_CLASSIFIER (builtin|http), GA_CLASSIFIER_URL, GA_CLASSIFIER_TIMEOUT_SECONDS

Invalid values never disable checks: each one is replaced by its default,
logged, and recorded in ``GuardConfig.issues``. Pass ``strict=True`` to raise
instead.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import GA_E_CONFIG_INVALID, guardian_error

logger = logging.getLogger("guardian_gateway")

# Hook priority. Lower = runs later. -10000 ensures we run last.
GA_PRIORITY = -10000

DEFAULT_ESCALATION_THRESHOLD = 36
DEFAULT_PENDING_TIMEOUT_MS = 300_000
DEFAULT_APPROVAL_WINDOW_MS = 30_000
DEFAULT_STORE_PATH = ".ga-state.json"
DEFAULT_SQLITE_STORE_PATH = ".ga-state.db"

THRESHOLD_RANGE = (1, 100)
PENDING_TIMEOUT_RANGE = (60_000, 600_000)
APPROVAL_WINDOW_RANGE = (10_000, 120_000)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Read-only tools exempt from evaluation by default.
DEFAULT_NEVER_BLOCK: Tuple[str, ...] = (
    "memory_search",
    "memory_get",
    "session_status",
    "Read",
    "web_search",
    "web_fetch",
    "image",
    "sessions_list",
    "sessions_history",
    "agents_list",
)

# camelCase keys used by the host's plugin config -> field names
_KEY_ALIASES = {
    "logLevel": "log_level",
    "escalationThreshold": "escalation_threshold",
    "pendingTimeoutMs": "pending_timeout_ms",
    "approvalWindowMs": "approval_window_ms",
    "storePath": "store_path",
    "storeBackend": "store_backend",
    "alwaysBlock": "always_block",
    "neverBlock": "never_block",
    "classifierUrl": "classifier_url",
    "classifierTimeoutSeconds": "classifier_timeout_seconds",
}

_ENV_NAMES = {
    "enabled": "GA_ENABLED",
    "log_level": "GA_LOG_LEVEL",
    "escalation_threshold": "GA_ESCALATION_THRESHOLD",
    "pending_timeout_ms": "GA_PENDING_TIMEOUT_MS",
    "approval_window_ms": "GA_APPROVAL_WINDOW_MS",
    "store_path": "GA_STORE_PATH",
    "store_backend": "GA_STORE_BACKEND",
    "always_block": "GA_ALWAYS_BLOCK",
    "never_block": "GA_NEVER_BLOCK",
    "classifier": "GA_CLASSIFIER",
    "classifier_url": "GA_CLASSIFIER_URL",
    "classifier_timeout_seconds": "GA_CLASSIFIER_TIMEOUT_SECONDS",
}


@dataclass(frozen=True)
class GuardConfig:
    enabled: bool = True
    log_level: str = "info"
    escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD
    pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS
    approval_window_ms: int = DEFAULT_APPROVAL_WINDOW_MS
    store_path: str = ""
    store_backend: str = "json"
    always_block: Tuple[str, ...] = ()
    never_block: Tuple[str, ...] = DEFAULT_NEVER_BLOCK
    classifier: str = "builtin"
    classifier_url: str = ""
    classifier_timeout_seconds: float = 5.0
    issues: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def resolved_store_path(self) -> str:
        if self.store_path:
            return self.store_path
        return DEFAULT_SQLITE_STORE_PATH if self.store_backend == "sqlite" else DEFAULT_STORE_PATH

    @property
    def log_level_value(self) -> int:
        return LOG_LEVELS.get(self.log_level, logging.INFO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "logLevel": self.log_level,
            "escalationThreshold": self.escalation_threshold,
            "pendingTimeoutMs": self.pending_timeout_ms,
            "approvalWindowMs": self.approval_window_ms,
            "storePath": self.resolved_store_path,
            "storeBackend": self.store_backend,
            "alwaysBlock": list(self.always_block),
            "neverBlock": list(self.never_block),
            "classifier": self.classifier,
            "classifierUrl": self.classifier_url,
            "classifierTimeoutSeconds": self.classifier_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]], *, strict: bool = False) -> "GuardConfig":
        """Build a config from a plugin config mapping (camelCase or snake_case keys)."""
        raw: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            raw[_KEY_ALIASES.get(str(key), str(key))] = value
        return cls._build(raw, strict=strict)

    @classmethod
    def from_env(cls, *, strict: bool = False) -> "GuardConfig":
        raw: Dict[str, Any] = {}
        for name, env_name in _ENV_NAMES.items():
            value = os.getenv(env_name)
            if value is None or not value.strip():
                continue
            if name in ("always_block", "never_block"):
                raw[name] = [part.strip() for part in value.split(",") if part.strip()]
            else:
                raw[name] = value.strip()
        return cls._build(raw, strict=strict)

    @classmethod
    def from_file(cls, path: Path, *, strict: bool = False) -> "GuardConfig":
        """Load a JSON config file. A missing file yields the defaults."""
        path = Path(path)
        if not path.exists():
            return cls._build({}, strict=strict)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise guardian_error(
                GA_E_CONFIG_INVALID, f"Invalid JSON in config file '{path}': {e}", path=str(path)
            ) from e
        except OSError as e:
            raise guardian_error(
                GA_E_CONFIG_INVALID, f"Failed to read config file '{path}': {e}", path=str(path)
            ) from e
        if not isinstance(data, dict):
            raise guardian_error(GA_E_CONFIG_INVALID, "Config file must contain a JSON object", path=str(path))
        # Allow the host's nesting: {"guardian-angel": {...}}
        nested = data.get("guardian-angel")
        if isinstance(nested, dict):
            data = nested
        return cls.from_dict(data, strict=strict)

    @classmethod
    def _build(cls, raw: Dict[str, Any], *, strict: bool) -> "GuardConfig":
        issues = []

        def _reject(name: str, value: Any, why: str) -> None:
            msg = f"{name}={value!r} {why}; using default"
            if strict:
                raise guardian_error(GA_E_CONFIG_INVALID, msg, setting=name)
            logger.warning("[GA] config: %s", msg)
            issues.append(msg)

        def _bool(name: str, default: bool) -> bool:
            if name not in raw:
                return default
            value = raw[name]
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
            _reject(name, value, "is not a boolean")
            return default

        def _int_in(name: str, default: int, bounds: Tuple[int, int]) -> int:
            if name not in raw:
                return default
            value = raw[name]
            if isinstance(value, bool):
                _reject(name, value, "is not an integer")
                return default
            try:
                number = int(str(value).strip()) if not isinstance(value, int) else value
            except ValueError:
                _reject(name, value, "is not an integer")
                return default
            lo, hi = bounds
            if number < lo or number > hi:
                _reject(name, value, f"is outside [{lo}, {hi}]")
                return default
            return number

        def _choice(name: str, default: str, choices) -> str:
            if name not in raw:
                return default
            value = str(raw[name]).strip().lower()
            if value not in choices:
                _reject(name, raw[name], f"must be one of {sorted(choices)}")
                return default
            return value

        def _names(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
            if name not in raw:
                return default
            value = raw[name]
            if isinstance(value, str):
                value = [part.strip() for part in value.split(",") if part.strip()]
            if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                _reject(name, value, "must be a list of tool names")
                return default
            return tuple(value)

        def _float_pos(name: str, default: float) -> float:
            if name not in raw:
                return default
            try:
                number = float(raw[name])
            except (TypeError, ValueError):
                _reject(name, raw[name], "is not a number")
                return default
            if number <= 0:
                _reject(name, raw[name], "must be positive")
                return default
            return number

        store_path = raw.get("store_path", "")
        if not isinstance(store_path, str):
            _reject("store_path", store_path, "must be a string")
            store_path = ""

        classifier = _choice("classifier", "builtin", {"builtin", "http"})
        classifier_url = str(raw.get("classifier_url", "") or "").strip()
        if classifier == "http" and not classifier_url:
            # Keep the http classifier: it fails closed to ESCALATE without a URL.
            msg = "classifier='http' without classifier_url; every evaluation will escalate"
            if strict:
                raise guardian_error(GA_E_CONFIG_INVALID, msg, setting="classifier_url")
            logger.warning("[GA] config: %s", msg)
            issues.append(msg)

        cfg = cls(
            enabled=_bool("enabled", True),
            log_level=_choice("log_level", "info", set(LOG_LEVELS)),
            escalation_threshold=_int_in("escalation_threshold", DEFAULT_ESCALATION_THRESHOLD, THRESHOLD_RANGE),
            pending_timeout_ms=_int_in("pending_timeout_ms", DEFAULT_PENDING_TIMEOUT_MS, PENDING_TIMEOUT_RANGE),
            approval_window_ms=_int_in("approval_window_ms", DEFAULT_APPROVAL_WINDOW_MS, APPROVAL_WINDOW_RANGE),
            store_path=store_path,
            store_backend=_choice("store_backend", "json", {"json", "sqlite"}),
            always_block=_names("always_block", ()),
            never_block=_names("never_block", DEFAULT_NEVER_BLOCK),
            classifier=classifier,
            classifier_url=classifier_url,
            classifier_timeout_seconds=_float_pos("classifier_timeout_seconds", 5.0),
            issues=tuple(issues),
        )
        return cfg
