"""Startup diagnostics.

The gate must be the last ``before_tool_call`` interceptor to run; a hook
registered below ``GA_PRIORITY`` could override its decision. Hosts do not
expose their hook registry, so this ordering cannot be checked here. It is
logged as a residual risk for the operator to verify.
"""

from __future__ import annotations

import logging
from typing import List

from .config import GA_PRIORITY, GuardConfig

logger = logging.getLogger("guardian_gateway")

PRIORITY_NOTICE = (
    "Cannot verify hook priority ordering (host exposes no hook registry). "
    f"Interceptors registered with priority < {GA_PRIORITY} could override gate decisions."
)


def apply_log_level(config: GuardConfig) -> None:
    """Set the package logger level from ``config.log_level``."""
    logging.getLogger("guardian_gateway").setLevel(config.log_level_value)


def run_startup_diagnostics(config: GuardConfig) -> List[str]:
    """Log the effective configuration and known residual risks.

    Returns the list of warnings raised, for callers that surface them.
    """
    apply_log_level(config)
    warnings: List[str] = []

    logger.info("[GA] Running startup diagnostics...")
    if not config.enabled:
        logger.info("[GA] Guardian Angel is disabled via configuration")
        return warnings

    logger.info("[GA] Registered at priority %d", GA_PRIORITY)
    logger.info(
        "[GA] threshold=%d pending_timeout_ms=%d approval_window_ms=%d store=%s (%s) classifier=%s",
        config.escalation_threshold,
        config.pending_timeout_ms,
        config.approval_window_ms,
        config.resolved_store_path,
        config.store_backend,
        config.classifier,
    )
    logger.info("[GA] Note: %s", PRIORITY_NOTICE)

    overlap = sorted(set(config.always_block) & set(config.never_block))
    if overlap:
        # never_block is checked first, so these tools are never escalated.
        msg = f"tools in both alwaysBlock and neverBlock are exempt: {', '.join(overlap)}"
        logger.warning("[GA] %s", msg)
        warnings.append(msg)

    for issue in config.issues:
        warnings.append(issue)

    logger.info("[GA] Diagnostics complete. Guardian Angel is active.")
    return warnings
