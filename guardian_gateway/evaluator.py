"""Evaluator: classifies a tool call as allow, block or escalate.

The gate talks to a ``Classifier``. Two implementations ship:

* ``HeuristicClassifier``: intrinsic-evil detection, then clarity x stakes
  scoring against the escalation threshold.
* ``HttpClassifier``: delegates scoring to an external detector service.

HTTP request body (OPA-compatible):
    {"input": {"toolName": <str>, "params": <object>}}

Response body:
    * either a decision object directly: {"decision": "allow|block|escalate", "reason": <str>}
    * or OPA-style: {"result": <decision object>}

Fail-closed behavior:
    Any HTTP/network/parse/schema problem returns an escalate decision, so a
    broken detector routes every call through human approval. The built-in
    intrinsic-evil check always runs before the remote call; a remote detector
    cannot turn an unconditional block into anything else.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol

from .config import DEFAULT_ESCALATION_THRESHOLD, GuardConfig
from .heuristics import assess_risk, build_escalation_reason, check_intrinsic_evil

logger = logging.getLogger("guardian_gateway")


class Decision(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class EvaluationResult:
    decision: Decision
    reason: str = ""
    clarity: Optional[int] = None
    stakes: Optional[int] = None

    @property
    def score(self) -> Optional[int]:
        if self.clarity is None or self.stakes is None:
            return None
        return self.clarity * self.stakes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "clarity": self.clarity,
            "stakes": self.stakes,
            "score": self.score,
        }


class Classifier(Protocol):
    """A minimal classifier interface."""

    def evaluate(self, tool_name: str, params: Mapping[str, Any]) -> EvaluationResult:
        ...


@dataclass
class HeuristicClassifier:
    """Keyword/regex classifier; no learned model."""

    threshold: int = DEFAULT_ESCALATION_THRESHOLD

    def evaluate(self, tool_name: str, params: Mapping[str, Any]) -> EvaluationResult:
        params = params or {}

        # Intrinsic evil: unconditional, no approval path.
        reason = check_intrinsic_evil(tool_name, params)
        if reason:
            return EvaluationResult(Decision.BLOCK, reason)

        risk = assess_risk(tool_name, params)
        logger.debug(
            "[GA] %s: clarity=%d stakes=%d score=%d threshold=%d",
            tool_name, risk.clarity, risk.stakes, risk.score, self.threshold,
        )
        if risk.score >= self.threshold:
            return EvaluationResult(
                Decision.ESCALATE,
                build_escalation_reason(tool_name, risk),
                clarity=risk.clarity,
                stakes=risk.stakes,
            )
        return EvaluationResult(Decision.ALLOW, clarity=risk.clarity, stakes=risk.stakes)


def _fail_closed(reason: str) -> EvaluationResult:
    return EvaluationResult(Decision.ESCALATE, reason)


@dataclass
class HttpClassifier:
    """HTTP-based classifier client."""

    url: str
    timeout_seconds: float = 5.0
    input_mode: str = "opa"  # 'opa' or 'raw'

    def evaluate(self, tool_name: str, params: Mapping[str, Any]) -> EvaluationResult:
        params = params or {}
        reason = check_intrinsic_evil(tool_name, params)
        if reason:
            return EvaluationResult(Decision.BLOCK, reason)

        if not self.url:
            return _fail_closed("CLASSIFIER_HTTP_ERROR: no classifier URL configured")

        request_obj: Dict[str, Any] = {"toolName": tool_name, "params": dict(params)}
        if (self.input_mode or "opa").strip().lower() != "raw":
            request_obj = {"input": request_obj}

        try:
            body = json.dumps(request_obj, default=str).encode("utf-8")
            req = urllib.request.Request(
                self.url,
                data=body,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                decoded = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            logger.warning("[GA] classifier HTTP %s for %s", getattr(e, "code", "???"), tool_name)
            return _fail_closed(f"CLASSIFIER_HTTP_ERROR: HTTP {getattr(e, 'code', '???')}")
        except Exception as e:
            logger.warning("[GA] classifier unavailable for %s: %s", tool_name, e)
            return _fail_closed(f"CLASSIFIER_HTTP_ERROR: {type(e).__name__}: {e}")

        decision = decoded
        if isinstance(decoded, dict) and "result" in decoded:
            decision = decoded.get("result")
        if not isinstance(decision, dict):
            return _fail_closed("CLASSIFIER_INVALID_RESPONSE: expected decision object")

        verdict = decision.get("decision")
        try:
            verdict = Decision(str(verdict).strip().lower())
        except ValueError:
            return _fail_closed("CLASSIFIER_INVALID_RESPONSE: missing or unknown decision")

        reason = decision.get("reason") or ""
        if not isinstance(reason, str):
            return _fail_closed("CLASSIFIER_INVALID_RESPONSE: reason must be a string")
        if verdict != Decision.ALLOW and not reason:
            reason = f"External classifier returned {verdict.value} for {tool_name}"

        clarity = decision.get("clarity")
        stakes = decision.get("stakes")
        return EvaluationResult(
            verdict,
            reason,
            clarity=clarity if isinstance(clarity, int) else None,
            stakes=stakes if isinstance(stakes, int) else None,
        )


def build_classifier(config: GuardConfig) -> Classifier:
    """Build the classifier named by the configuration."""
    if config.classifier == "http":
        return HttpClassifier(url=config.classifier_url, timeout_seconds=config.classifier_timeout_seconds)
    return HeuristicClassifier(threshold=config.escalation_threshold)
