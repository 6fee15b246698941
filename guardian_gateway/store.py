"""Escalation store: pending escalations and approved actions.

Per request identity there are three states:

    UNDECIDED --escalate--> PENDING --approve--> APPROVED --consume--> (gone)

- ``escalate`` creates a PendingEscalation keyed by a fresh 8-hex-char nonce.
- ``approve`` converts a live PendingEscalation into an ApprovedAction keyed by
  the request fingerprint; an expired one is deleted and reported as Expired.
- ``consume_approval`` deletes a live ApprovedAction and returns its nonce.
  Expired approvals are deleted and reported as absent.
- ``cleanup`` removes every record whose deadline has passed.

At most one live record exists per fingerprint across both tables: escalating
or approving a fingerprint discards any other record for it.

Every operation runs as one read-modify-write transaction under the backend's
lock. Backends only implement ``_transaction``; the state machine lives here.
Expiry is evaluated lazily at access time, there is no background eviction.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import secrets
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterator, Mapping, Optional, Tuple

from .config import DEFAULT_APPROVAL_WINDOW_MS, DEFAULT_PENDING_TIMEOUT_MS, GuardConfig
from .errors import GuardianError, StoreIOError, expired, not_found
from .fingerprint import params_fingerprint
from .locking import FileLock

logger = logging.getLogger("guardian_gateway.store")

NONCE_BYTES = 4
NONCE_PATTERN = re.compile(r"^[0-9a-f]{8}$")
_NONCE_ATTEMPTS = 32


def _now_ms() -> int:
    return int(time.time() * 1000)


def _json_snapshot(params: Mapping[str, Any]) -> Dict[str, Any]:
    # Deep, JSON-safe copy: later mutation by the caller cannot alter the record.
    return json.loads(json.dumps(dict(params or {}), default=str))


@dataclass
class PendingEscalation:
    nonce: str
    fingerprint: str
    tool_name: str
    params: Dict[str, Any]
    created_at: int
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "fingerprint": self.fingerprint,
            "toolName": self.tool_name,
            "params": self.params,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PendingEscalation":
        params = data.get("params", {})
        if not isinstance(params, dict):
            raise ValueError("params must be an object")
        return cls(
            nonce=str(data["nonce"]),
            fingerprint=str(data["fingerprint"]),
            tool_name=str(data["toolName"]),
            params=params,
            created_at=int(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
        )


@dataclass
class ApprovedAction:
    fingerprint: str
    nonce: str
    tool_name: str
    approved_at: int
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "nonce": self.nonce,
            "toolName": self.tool_name,
            "approvedAt": self.approved_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApprovedAction":
        return cls(
            fingerprint=str(data["fingerprint"]),
            nonce=str(data["nonce"]),
            tool_name=str(data["toolName"]),
            approved_at=int(data["approvedAt"]),
            expires_at=int(data["expiresAt"]),
        )


@dataclass
class StoreState:
    """pending keyed by nonce, approved keyed by fingerprint."""

    pending: Dict[str, PendingEscalation] = field(default_factory=dict)
    approved: Dict[str, ApprovedAction] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending": {k: v.to_dict() for k, v in self.pending.items()},
            "approved": {k: v.to_dict() for k, v in self.approved.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StoreState":
        """Parse a persisted document. Malformed entries are dropped."""
        state = cls()
        if not isinstance(data, dict):
            return state
        pending = data.get("pending")
        if isinstance(pending, dict):
            for key, raw in pending.items():
                try:
                    rec = PendingEscalation.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    logger.warning("[GA] dropping malformed pending record %r", key)
                    continue
                if rec.nonce == key:
                    state.pending[key] = rec
        approved = data.get("approved")
        if isinstance(approved, dict):
            for key, raw in approved.items():
                try:
                    rec = ApprovedAction.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    logger.warning("[GA] dropping malformed approved record %r", key)
                    continue
                if rec.fingerprint == key:
                    state.approved[key] = rec
        return state

    def purge_expired(self, now: int) -> int:
        removed = 0
        for nonce in [n for n, rec in self.pending.items() if now > rec.expires_at]:
            del self.pending[nonce]
            removed += 1
        for fp in [f for f, rec in self.approved.items() if now > rec.expires_at]:
            del self.approved[fp]
            removed += 1
        return removed

    def discard_fingerprint(self, fingerprint: str) -> None:
        """Drop every record bound to a fingerprint, in both tables."""
        for nonce in [n for n, rec in self.pending.items() if rec.fingerprint == fingerprint]:
            del self.pending[nonce]
        self.approved.pop(fingerprint, None)


@dataclass(frozen=True)
class ApprovalGrant:
    nonce: str
    fingerprint: str
    tool_name: str
    window_seconds: int
    expires_at: int


class EscalationStore(ABC):
    """Persisted escalation state machine."""

    def __init__(
        self,
        pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS,
        approval_window_ms: int = DEFAULT_APPROVAL_WINDOW_MS,
    ):
        if pending_timeout_ms <= 0 or approval_window_ms <= 0:
            raise ValueError("pending_timeout_ms and approval_window_ms must be positive")
        self.pending_timeout_ms = int(pending_timeout_ms)
        self.approval_window_ms = int(approval_window_ms)
        self.removed_at_startup = 0

    @abstractmethod
    def _transaction(self) -> ContextManager[StoreState]:
        """Yield the full state under exclusive access; persist it on clean exit."""

    @staticmethod
    def fingerprint(tool_name: str, params: Mapping[str, Any]) -> str:
        return params_fingerprint(tool_name, params)

    @staticmethod
    def _new_nonce(state: StoreState) -> str:
        for _ in range(_NONCE_ATTEMPTS):
            nonce = secrets.token_hex(NONCE_BYTES)
            if nonce not in state.pending:
                return nonce
        raise StoreIOError("could not allocate a unique nonce")

    def escalate(self, fingerprint: str, tool_name: str, params: Mapping[str, Any]) -> str:
        """UNDECIDED -> PENDING. Returns the new nonce."""
        snapshot = _json_snapshot(params)
        now = _now_ms()
        with self._transaction() as state:
            nonce = self._open_pending(state, now, fingerprint, tool_name, snapshot)
        return nonce

    def escalate_or_consume(
        self, fingerprint: str, tool_name: str, params: Mapping[str, Any]
    ) -> Tuple[bool, str]:
        """Consume a live approval for the fingerprint, else escalate.

        Both happen in one transaction, so an approval committed after the
        caller last looked is honored instead of being discarded by the new
        escalation. Returns (True, approval nonce) or (False, new pending nonce).
        """
        snapshot = _json_snapshot(params)
        now = _now_ms()
        with self._transaction() as state:
            approved = state.approved.get(fingerprint)
            if approved is not None and now <= approved.expires_at:
                del state.approved[fingerprint]
                return True, approved.nonce
            nonce = self._open_pending(state, now, fingerprint, tool_name, snapshot)
        return False, nonce

    def _open_pending(
        self, state: StoreState, now: int, fingerprint: str, tool_name: str, snapshot: Dict[str, Any]
    ) -> str:
        # Escalation is the only path that adds records; keep the document bounded.
        state.purge_expired(now)
        state.discard_fingerprint(fingerprint)
        nonce = self._new_nonce(state)
        state.pending[nonce] = PendingEscalation(
            nonce=nonce,
            fingerprint=fingerprint,
            tool_name=tool_name,
            params=snapshot,
            created_at=now,
            expires_at=now + self.pending_timeout_ms,
        )
        return nonce

    def approve(self, nonce: str) -> ApprovalGrant:
        """PENDING -> APPROVED.

        Raises GuardianError with GA_E_NONCE_NOT_FOUND or GA_E_NONCE_EXPIRED.
        """
        now = _now_ms()
        error: Optional[GuardianError] = None
        grant: Optional[ApprovalGrant] = None

        # Do not raise from inside the transaction: the deletion of an expired
        # record must be committed before the error propagates.
        with self._transaction() as state:
            pending = state.pending.get(nonce)
            if pending is None:
                error = not_found(nonce)
            elif now > pending.expires_at:
                del state.pending[nonce]
                error = expired(nonce)
            else:
                del state.pending[nonce]
                state.discard_fingerprint(pending.fingerprint)
                approved = ApprovedAction(
                    fingerprint=pending.fingerprint,
                    nonce=nonce,
                    tool_name=pending.tool_name,
                    approved_at=now,
                    expires_at=now + self.approval_window_ms,
                )
                state.approved[pending.fingerprint] = approved
                grant = ApprovalGrant(
                    nonce=nonce,
                    fingerprint=approved.fingerprint,
                    tool_name=approved.tool_name,
                    window_seconds=int(round(self.approval_window_ms / 1000)),
                    expires_at=approved.expires_at,
                )

        if error is not None:
            raise error
        assert grant is not None
        return grant

    def consume_approval(self, fingerprint: str) -> Optional[str]:
        """APPROVED -> consumed. Returns the approval nonce, or None."""
        now = _now_ms()
        consumed: Optional[str] = None
        with self._transaction() as state:
            approved = state.approved.get(fingerprint)
            if approved is not None:
                del state.approved[fingerprint]
                if now <= approved.expires_at:
                    consumed = approved.nonce
        return consumed

    def cleanup(self) -> int:
        """Remove all expired records. Returns the number removed."""
        now = _now_ms()
        with self._transaction() as state:
            removed = state.purge_expired(now)
        if removed:
            logger.debug("[GA] cleanup removed %d expired record(s)", removed)
        return removed

    def snapshot(self) -> StoreState:
        """Consistent copy of the current state (read-only use)."""
        with self._transaction() as state:
            copied = copy.deepcopy(state)
        return copied


class JsonFileEscalationStore(EscalationStore):
    """Single JSON document, rewritten in full on every mutation.

    An absent or unreadable file reads as an empty document (fail open on
    read: no approval can be fabricated from a corrupt file). A failed write
    raises StoreIOError.
    """

    def __init__(
        self,
        path: str,
        pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS,
        approval_window_ms: int = DEFAULT_APPROVAL_WINDOW_MS,
        lock: Optional[ContextManager[Any]] = None,
    ):
        super().__init__(pending_timeout_ms, approval_window_ms)
        self.path = str(path)
        self._lock = lock if lock is not None else FileLock(self.path)
        self.removed_at_startup = self.cleanup()

    def _load(self) -> StoreState:
        p = Path(self.path)
        if not p.exists():
            return StoreState()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("[GA] unreadable state file %s (%s); treating as empty", self.path, e)
            return StoreState()
        return StoreState.from_dict(data)

    def _save(self, state: StoreState) -> None:
        p = Path(self.path)
        tmp_path: Optional[Path] = None
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f"{p.name}.", suffix=".tmp", dir=str(p.parent))
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(state.to_dict(), indent=2, ensure_ascii=False) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            tmp_path.replace(p)
            tmp_path = None
        except OSError as e:
            logger.error("[GA] failed to save state to %s: %s", self.path, e)
            raise StoreIOError(f"failed to save escalation state: {e}", path=self.path) from e
        finally:
            if tmp_path is not None and tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass

    @contextmanager
    def _transaction(self) -> Iterator[StoreState]:
        with self._lock:
            state = self._load()
            before = state.to_dict()
            yield state
            if state.to_dict() != before:
                self._save(state)


class MemoryEscalationStore(EscalationStore):
    """Process-local store (tests, embedding). Not durable across restarts."""

    def __init__(
        self,
        pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS,
        approval_window_ms: int = DEFAULT_APPROVAL_WINDOW_MS,
    ):
        super().__init__(pending_timeout_ms, approval_window_ms)
        self._lock = threading.RLock()
        self._state = StoreState()

    @contextmanager
    def _transaction(self) -> Iterator[StoreState]:
        with self._lock:
            working = copy.deepcopy(self._state)
            yield working
            self._state = working


def build_store(config: GuardConfig) -> EscalationStore:
    """Create the store named by the configuration."""
    if config.store_backend == "sqlite":
        from .sqlite_store import SqliteEscalationStore

        return SqliteEscalationStore(
            config.resolved_store_path,
            pending_timeout_ms=config.pending_timeout_ms,
            approval_window_ms=config.approval_window_ms,
        )
    return JsonFileEscalationStore(
        config.resolved_store_path,
        pending_timeout_ms=config.pending_timeout_ms,
        approval_window_ms=config.approval_window_ms,
    )
