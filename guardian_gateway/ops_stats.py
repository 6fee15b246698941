"""Operational statistics for the gate.

Lightweight in-memory counters and a snapshot for the stats endpoint and the
CLI. Counters reset on process restart; they are not an audit trail.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    decisions_total: int = 0
    decisions_by_outcome: Dict[str, int] = field(default_factory=dict)
    decisions_by_tool: Dict[str, int] = field(default_factory=dict)

    approvals_total: int = 0
    approvals_by_result: Dict[str, int] = field(default_factory=dict)
    approvals_consumed_total: int = 0

    # Fail-closed signals
    store_errors_total: int = 0
    classifier_errors_total: int = 0
    rate_limited_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_decision(self, tool_name: str, outcome: str) -> None:
        with self._lock:
            self._c.decisions_total += 1
            self._inc_map(self._c.decisions_by_outcome, outcome or "unknown")
            self._inc_map(self._c.decisions_by_tool, tool_name or "unknown")

    def record_approval(self, result: str) -> None:
        with self._lock:
            self._c.approvals_total += 1
            self._inc_map(self._c.approvals_by_result, result or "unknown")

    def record_consumed(self) -> None:
        with self._lock:
            self._c.approvals_consumed_total += 1

    def record_store_error(self) -> None:
        with self._lock:
            self._c.store_errors_total += 1

    def record_classifier_error(self) -> None:
        with self._lock:
            self._c.classifier_errors_total += 1

    def record_rate_limited(self) -> None:
        with self._lock:
            self._c.rate_limited_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "decisions_total": c.decisions_total,
                "decisions_by_outcome": dict(c.decisions_by_outcome),
                "decisions_by_tool": dict(c.decisions_by_tool),
                "approvals_total": c.approvals_total,
                "approvals_by_result": dict(c.approvals_by_result),
                "approvals_consumed_total": c.approvals_consumed_total,
                "store_errors_total": c.store_errors_total,
                "classifier_errors_total": c.classifier_errors_total,
                "rate_limited_total": c.rate_limited_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
