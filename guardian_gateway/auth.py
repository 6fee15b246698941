"""API-key authentication for the HTTP surface.

When a key mapping is configured, every /v1 endpoint except health requires ``X-Api-Key``
and the caller identity recorded with approvals comes from the mapping, not
from the request. With no mapping configured the endpoints are open (local
sidecar use).

Env vars:
  - GA_API_KEYS_JSON: JSON object mapping api_key -> caller name
  - GA_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger("guardian_gateway.server")

ENV_API_KEYS_JSON = "GA_API_KEYS_JSON"
ENV_API_KEYS_FILE = "GA_API_KEYS_FILE"


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity."""

    caller: Optional[str]
    authenticated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    api_key_to_caller: Dict[str, str] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the key mapping.

        A mapping that is present but malformed yields ``config_error`` so
        every request is rejected rather than served unauthenticated.
        """
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()

        try:
            if raw_json:
                data = json.loads(raw_json)
                source = ENV_API_KEYS_JSON
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                source = ENV_API_KEYS_FILE
            if not isinstance(data, dict):
                raise ValueError(f"{source} must contain a JSON object")
        except (OSError, ValueError) as e:
            logger.error("[GA] API key configuration invalid: %s", e)
            return cls(configured=True, config_error="API_KEY_CONFIG_INVALID")

        mapping = {str(k): str(v) for k, v in data.items()}
        return cls(api_key_to_caller=mapping, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve(self, api_key: Optional[str]) -> AuthContext:
        if self.config_error:
            return AuthContext(caller=None, authenticated=False, error=self.config_error)
        if not self.enabled():
            return AuthContext(caller=None, authenticated=False)
        if not api_key:
            return AuthContext(caller=None, authenticated=False, error="API_KEY_REQUIRED")
        for key, caller in self.api_key_to_caller.items():
            if hmac.compare_digest(key.encode("utf-8"), api_key.encode("utf-8")):
                return AuthContext(caller=caller, authenticated=True)
        return AuthContext(caller=None, authenticated=False, error="API_KEY_INVALID")
