"""Gate controller: the last check before a tool call executes.

Pipeline, first match wins:

1. gate disabled                       -> allow, no side effects
2. tool in ``never_block``             -> allow, nothing else runs
3. live approval for this fingerprint  -> allow, approval consumed
4. tool in ``always_block``            -> escalate with a fixed reason
5. classifier verdict                  -> allow / block / escalate

Denials are returned to the host as ``{"block": True, "blockReason": ...}``
with one of the machine-parseable reasons::

    GUARDIAN_ANGEL_BLOCK|<reason>
    GUARDIAN_ANGEL_ESCALATE|<nonce>|<reason>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from . import metrics
from .config import GuardConfig
from .errors import GuardianError
from .evaluator import Classifier, Decision, build_classifier
from .ops_stats import OPS_STATS
from .store import EscalationStore, build_store

logger = logging.getLogger("guardian_gateway")

BLOCK_PREFIX = "GUARDIAN_ANGEL_BLOCK"
ESCALATE_PREFIX = "GUARDIAN_ANGEL_ESCALATE"

ESCALATION_NOT_RECORDED = "Escalation could not be recorded; action blocked"
DEFAULT_ESCALATION_REASON = "High-stakes action requires approval"


def format_block_reason(reason: str) -> str:
    return f"{BLOCK_PREFIX}|{reason}"


def format_escalate_reason(nonce: str, reason: str) -> str:
    return f"{ESCALATE_PREFIX}|{nonce}|{reason}"


def parse_block_reason(text: str) -> Optional[Tuple[str, Optional[str], str]]:
    """Split a denial string into ``(kind, nonce, reason)``.

    kind is "block" or "escalate"; nonce is None for blocks. Returns None for
    strings this gate did not produce. Reasons may themselves contain "|".
    """
    if not isinstance(text, str):
        return None
    if text.startswith(BLOCK_PREFIX + "|"):
        return "block", None, text[len(BLOCK_PREFIX) + 1:]
    if text.startswith(ESCALATE_PREFIX + "|"):
        rest = text[len(ESCALATE_PREFIX) + 1:]
        nonce, sep, reason = rest.partition("|")
        if not sep or not nonce:
            return None
        return "escalate", nonce, reason
    return None


@dataclass(frozen=True)
class GateDecision:
    """Outcome of one pass through the pipeline.

    ``via`` names the pipeline step that decided: disabled, exempt, approval,
    always_block, classifier or store_error.
    """

    decision: Decision
    reason: str = ""
    nonce: Optional[str] = None
    via: str = "classifier"

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW

    @property
    def block_reason(self) -> Optional[str]:
        if self.decision == Decision.BLOCK:
            return format_block_reason(self.reason)
        if self.decision == Decision.ESCALATE:
            return format_escalate_reason(self.nonce or "", self.reason)
        return None

    def to_hook_result(self) -> Optional[Dict[str, Any]]:
        """Host hook result: None means allow."""
        if self.allowed:
            return None
        return {"block": True, "blockReason": self.block_reason}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "nonce": self.nonce,
            "via": self.via,
            "blockReason": self.block_reason,
        }


class GuardianGate:
    """Orchestrates exemptions, approvals, forced approval and the classifier."""

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        store: Optional[EscalationStore] = None,
        classifier: Optional[Classifier] = None,
    ):
        self.config = config or GuardConfig()
        self.store = store if store is not None else build_store(self.config)
        self.classifier = classifier if classifier is not None else build_classifier(self.config)
        self._never_block = frozenset(self.config.never_block)
        self._always_block = frozenset(self.config.always_block)

    def before_tool_call(self, event: Mapping[str, Any], ctx: Any = None) -> Optional[Dict[str, Any]]:
        """Host hook: ``event`` carries ``toolName`` and ``params``."""
        tool_name = str(event.get("toolName") or "")
        params = event.get("params") or {}
        return self.decide(tool_name, params).to_hook_result()

    def decide(self, tool_name: str, params: Optional[Mapping[str, Any]] = None) -> GateDecision:
        result = self._decide(tool_name, params if params is not None else {})
        if result.via == "disabled":
            return result
        OPS_STATS.record_decision(tool_name, result.decision.value)
        metrics.record_decision(result.decision.value)
        return result

    def _decide(self, tool_name: str, params: Mapping[str, Any]) -> GateDecision:
        if not self.config.enabled:
            return GateDecision(Decision.ALLOW, via="disabled")

        if tool_name in self._never_block:
            logger.debug("[GA] %s: exempt, allowing", tool_name)
            return GateDecision(Decision.ALLOW, via="exempt")

        try:
            fingerprint = self.store.fingerprint(tool_name, params)
        except ValueError as e:
            return self._block(tool_name, f"Parameters could not be fingerprinted: {e}")

        try:
            consumed = self.store.consume_approval(fingerprint)
        except GuardianError as e:
            # No approval is ever granted from a store we could not update.
            logger.warning("[GA] %s: approval lookup failed (%s); evaluating normally", tool_name, e)
            OPS_STATS.record_store_error()
            metrics.record_store_error("consume_approval")
            consumed = None
        if consumed:
            return self._approved(tool_name, consumed)

        if tool_name in self._always_block:
            return self._escalate(
                tool_name,
                params,
                fingerprint,
                f"Tool '{tool_name}' requires explicit approval per configuration",
                via="always_block",
            )

        verdict = self.classifier.evaluate(tool_name, params)
        if verdict.reason.startswith("CLASSIFIER_"):
            OPS_STATS.record_classifier_error()

        if verdict.decision == Decision.ALLOW:
            logger.debug("[GA] %s: allowing (score=%s)", tool_name, verdict.score)
            return GateDecision(Decision.ALLOW)
        if verdict.decision == Decision.BLOCK:
            return self._block(tool_name, verdict.reason)
        return self._escalate(tool_name, params, fingerprint, verdict.reason or DEFAULT_ESCALATION_REASON)

    def _block(self, tool_name: str, reason: str, via: str = "classifier") -> GateDecision:
        logger.warning("[GA] %s: BLOCKED (%s)", tool_name, reason)
        return GateDecision(Decision.BLOCK, reason, via=via)

    def _escalate(
        self,
        tool_name: str,
        params: Mapping[str, Any],
        fingerprint: str,
        reason: str,
        via: str = "classifier",
    ) -> GateDecision:
        try:
            consumed, nonce = self.store.escalate_or_consume(fingerprint, tool_name, params)
        except GuardianError as e:
            OPS_STATS.record_store_error()
            metrics.record_store_error("escalate")
            return self._block(tool_name, f"{ESCALATION_NOT_RECORDED} ({e.code}): {reason}", via="store_error")
        if consumed:
            # Approved while this call was being evaluated.
            return self._approved(tool_name, nonce)
        logger.info("[GA] %s: escalating (nonce: %s): %s", tool_name, nonce, reason)
        return GateDecision(Decision.ESCALATE, reason, nonce=nonce, via=via)

    def _approved(self, tool_name: str, nonce: str) -> GateDecision:
        logger.info("[GA] %s: approved via nonce %s", tool_name, nonce)
        OPS_STATS.record_consumed()
        return GateDecision(Decision.ALLOW, nonce=nonce, via="approval")
