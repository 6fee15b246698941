"""Approval operation and the ``ga_approve`` tool exposed to the host.

Approving converts a pending escalation into a short, one-time approval bound
to the exact tool call that was escalated. It never runs the original action:
the agent must resubmit the identical call within the returned window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from . import metrics
from .errors import APPROVAL_ERROR_NAMES, GuardianError, not_found
from .ops_stats import OPS_STATS
from .store import NONCE_PATTERN, EscalationStore

logger = logging.getLogger("guardian_gateway")

APPROVE_TOOL_NAME = "ga_approve"

APPROVE_TOOL_DESCRIPTION = (
    "Approve a Guardian Angel escalation. Use this after the user confirms they want to "
    "proceed with a blocked action. The nonce comes from the GUARDIAN_ANGEL_ESCALATE block "
    "reason. After approval, immediately retry the original tool call."
)

APPROVE_TOOL_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "nonce": {
            "type": "string",
            "description": "The escalation nonce from the block reason (e.g., 'a7f3c21b')",
        },
        "reason": {
            "type": "string",
            "description": "Optional: user's reason for approving",
        },
    },
    "required": ["nonce"],
}


@dataclass(frozen=True)
class ApprovalResult:
    ok: bool
    nonce: str
    window_seconds: Optional[int] = None
    error: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "nonce": self.nonce, "windowSeconds": self.window_seconds}
        return {"ok": False, "nonce": self.nonce, "error": self.error, "message": self.message}

    def to_text(self) -> str:
        if self.ok:
            return f"Approved. You may now retry the action. Approval expires in {self.window_seconds}s."
        return f"Approval failed ({self.error}): {self.message}"


def _failed(nonce: str, err: GuardianError) -> ApprovalResult:
    name = APPROVAL_ERROR_NAMES[err.code]
    logger.warning("[GA] Approval failed for nonce %s: %s", nonce, name)
    OPS_STATS.record_approval(name)
    metrics.record_approval(name)
    return ApprovalResult(ok=False, nonce=nonce, error=name, message=err.message)


def approve_escalation(store: EscalationStore, nonce: str, reason: Optional[str] = None) -> ApprovalResult:
    """Approve a pending escalation by nonce.

    NotFound and Expired come back as a failed ApprovalResult. Any other
    store failure (e.g. StoreIOError) propagates: an approval that could not
    be persisted is never reported as granted.
    """
    nonce = (nonce or "").strip().lower()
    try:
        if not NONCE_PATTERN.match(nonce):
            # Malformed tokens can never name a pending record.
            raise not_found(nonce)
        grant = store.approve(nonce)
    except GuardianError as e:
        if e.code in APPROVAL_ERROR_NAMES:
            return _failed(nonce, e)
        OPS_STATS.record_store_error()
        metrics.record_store_error("approve")
        raise

    if reason:
        logger.info("[GA] Approved nonce %s for %s (reason: %s)", nonce, grant.tool_name, reason)
    else:
        logger.info("[GA] Approved nonce %s for %s", nonce, grant.tool_name)
    OPS_STATS.record_approval("approved")
    metrics.record_approval("approved")
    return ApprovalResult(ok=True, nonce=nonce, window_seconds=grant.window_seconds)


class ApprovalTool:
    """The ``ga_approve`` tool as the host registers it."""

    name = APPROVE_TOOL_NAME
    description = APPROVE_TOOL_DESCRIPTION
    parameters = APPROVE_TOOL_PARAMETERS

    def __init__(self, store: EscalationStore):
        self.store = store

    def definition(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}

    def execute(self, params: Mapping[str, Any], tool_call_id: Optional[str] = None) -> Dict[str, Any]:
        nonce = params.get("nonce")
        reason = params.get("reason")
        try:
            result = approve_escalation(
                self.store,
                nonce if isinstance(nonce, str) else "",
                reason if isinstance(reason, str) else None,
            )
            text = result.to_text()
        except GuardianError as e:
            text = f"Approval failed ({e.code}): {e.message}"
        return {"content": [{"type": "text", "text": text}]}
