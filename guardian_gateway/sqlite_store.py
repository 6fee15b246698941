"""SQLite-backed escalation store for state shared across processes.

Each logical operation runs inside one ``BEGIN IMMEDIATE`` transaction, so
two processes can never both read and delete the same pending or approved
record. The store is wrapped in a small circuit breaker: if storage becomes
slow, locked, or unresponsive it trips into LOCKDOWN and every operation fails
closed (StoreLockdownError) for the lockdown window.

Env:
- GA_DB_LATENCY_THRESHOLD_MS: trip immediately on ops slower than this (default: 250)
- GA_DB_FAILURE_THRESHOLD: number of failures required to trip (default: 2)
- GA_DB_LOCKDOWN_SECONDS: duration of lockdown window (default: 30)
- GA_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect timeout (default: 5)
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .config import DEFAULT_APPROVAL_WINDOW_MS, DEFAULT_PENDING_TIMEOUT_MS
from .errors import StoreIOError, StoreLockdownError
from .store import ApprovedAction, EscalationStore, PendingEscalation, StoreState

logger = logging.getLogger("guardian_gateway.store")


@dataclass
class CircuitBreakerConfig:
    latency_threshold_ms: int = 250
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        latency = _get_int("GA_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        failures = _get_int("GA_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _get_int("GA_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _get_float("GA_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)

        # Clamp
        if latency < 0:
            latency = cls.latency_threshold_ms
        return cls(
            latency_threshold_ms=latency,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class StoreCircuitBreaker:
    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failure_count = 0
        self._lockdown_until_monotonic = 0.0

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until_monotonic

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StoreLockdownError()

    def _trip(self) -> None:
        self._lockdown_until_monotonic = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        logger.error("[GA] escalation store entering LOCKDOWN for %ss", self.config.lockdown_seconds)

    def record_success(self) -> None:
        if self._failure_count > 0:
            self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            self._failure_count += 1
            self._trip()

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._trip()


class SqliteEscalationStore(EscalationStore):
    """Two tables (pending, approved) behind BEGIN IMMEDIATE transactions."""

    def __init__(
        self,
        db_path: str,
        pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS,
        approval_window_ms: int = DEFAULT_APPROVAL_WINDOW_MS,
        circuit: Optional[StoreCircuitBreaker] = None,
    ):
        super().__init__(pending_timeout_ms, approval_window_ms)
        self.db_path = str(db_path)
        self.circuit = circuit or StoreCircuitBreaker()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        self.removed_at_startup = self.cleanup()

    @contextmanager
    def _db(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """Connection wrapper with circuit breaker (fail-closed).

        Autocommit mode: the caller opens the transaction explicitly so reads
        and writes share one write lock.
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            self.circuit.record_failure()
            logger.error("[GA] sqlite %s failed: %s", op_name, e)
            raise StoreIOError(f"escalation store {op_name} failed: {e}", path=self.db_path) from e
        elapsed_ms = (time.monotonic() - start) * 1000.0
        if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
            self.circuit.record_latency(elapsed_ms)
        else:
            self.circuit.record_success()

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS pending (
                nonce TEXT PRIMARY KEY,
                fingerprint TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                params_json TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL
            )
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS approved (
                fingerprint TEXT PRIMARY KEY,
                nonce TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                approved_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL
            )
            """)

    @staticmethod
    def _read_state(conn: sqlite3.Connection) -> StoreState:
        state = StoreState()
        for nonce, fp, tool, params_json, created, expires in conn.execute(
            "SELECT nonce, fingerprint, tool_name, params_json, created_at, expires_at FROM pending"
        ):
            try:
                params = json.loads(params_json)
            except json.JSONDecodeError:
                params = {}
            state.pending[nonce] = PendingEscalation(nonce, fp, tool, params, int(created), int(expires))
        for fp, nonce, tool, approved_at, expires in conn.execute(
            "SELECT fingerprint, nonce, tool_name, approved_at, expires_at FROM approved"
        ):
            state.approved[fp] = ApprovedAction(fp, nonce, tool, int(approved_at), int(expires))
        return state

    @staticmethod
    def _write_changes(conn: sqlite3.Connection, before: StoreState, after: StoreState) -> None:
        for nonce in before.pending.keys() - after.pending.keys():
            conn.execute("DELETE FROM pending WHERE nonce = ?", (nonce,))
        for nonce, rec in after.pending.items():
            if before.pending.get(nonce) != rec:
                conn.execute(
                    "INSERT OR REPLACE INTO pending (nonce, fingerprint, tool_name, params_json, created_at, expires_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (nonce, rec.fingerprint, rec.tool_name, json.dumps(rec.params, sort_keys=True), rec.created_at, rec.expires_at),
                )
        for fp in before.approved.keys() - after.approved.keys():
            conn.execute("DELETE FROM approved WHERE fingerprint = ?", (fp,))
        for fp, rec in after.approved.items():
            if before.approved.get(fp) != rec:
                conn.execute(
                    "INSERT OR REPLACE INTO approved (fingerprint, nonce, tool_name, approved_at, expires_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (fp, rec.nonce, rec.tool_name, rec.approved_at, rec.expires_at),
                )

    @contextmanager
    def _transaction(self) -> Iterator[StoreState]:
        with self._db("transaction") as conn:
            conn.execute("BEGIN IMMEDIATE")
            before = self._read_state(conn)
            after = copy.deepcopy(before)
            yield after
            self._write_changes(conn, before, after)
