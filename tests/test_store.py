import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

import guardian_gateway.store as store_mod
from guardian_gateway.errors import (
    GA_E_NONCE_EXPIRED,
    GA_E_NONCE_NOT_FOUND,
    GA_E_STORE_IO,
    GuardianError,
    StoreIOError,
)
from guardian_gateway.fingerprint import params_fingerprint
from guardian_gateway.store import NONCE_PATTERN, JsonFileEscalationStore, MemoryEscalationStore

PENDING_MS = 300_000
WINDOW_MS = 30_000
T0 = 1_700_000_000_000


class _Clock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock(monkeypatch):
    c = _Clock(T0)
    monkeypatch.setattr(store_mod, "_now_ms", c)
    return c


@pytest.fixture
def store(tmp_path, clock):
    return JsonFileEscalationStore(str(tmp_path / "ga-state.json"), PENDING_MS, WINDOW_MS)


def _escalate(store, tool="exec", params=None):
    params = params if params is not None else {"command": "rm -rf ./build"}
    fp = params_fingerprint(tool, params)
    return fp, store.escalate(fp, tool, params)


def test_escalate_creates_pending_record_with_fresh_nonce(store, tmp_path):
    fp, nonce = _escalate(store)
    assert NONCE_PATTERN.match(nonce)

    doc = json.loads((tmp_path / "ga-state.json").read_text(encoding="utf-8"))
    assert set(doc) == {"pending", "approved"}
    rec = doc["pending"][nonce]
    assert rec["fingerprint"] == fp
    assert rec["toolName"] == "exec"
    assert rec["params"] == {"command": "rm -rf ./build"}
    assert rec["createdAt"] == T0
    assert rec["expiresAt"] == T0 + PENDING_MS


def test_params_snapshot_is_independent_of_caller(store):
    params = {"command": "rm -rf ./build", "env": {"A": "1"}}
    _, nonce = _escalate(store, params=params)
    params["env"]["A"] = "changed"
    assert store.snapshot().pending[nonce].params["env"] == {"A": "1"}


def test_approve_then_consume_exactly_once(store, clock):
    fp, nonce = _escalate(store)

    clock.now += 10_000
    grant = store.approve(nonce)
    assert grant.window_seconds == 30
    assert grant.fingerprint == fp
    assert grant.expires_at == clock.now + WINDOW_MS

    state = store.snapshot()
    assert state.pending == {}
    assert state.approved[fp].nonce == nonce

    assert store.consume_approval(fp) == nonce
    assert store.consume_approval(fp) is None
    assert store.snapshot().approved == {}


def test_approving_twice_fails_with_not_found(store):
    _, nonce = _escalate(store)
    store.approve(nonce)
    with pytest.raises(GuardianError) as ei:
        store.approve(nonce)
    assert ei.value.code == GA_E_NONCE_NOT_FOUND
    assert ei.value.http_status == 404


def test_unknown_nonce_is_not_found(store):
    with pytest.raises(GuardianError) as ei:
        store.approve("deadbeef")
    assert ei.value.code == GA_E_NONCE_NOT_FOUND


def test_expired_pending_fails_with_expired_and_is_removed(store, clock):
    _, nonce = _escalate(store)

    clock.now += PENDING_MS  # exactly at the deadline: still live
    assert nonce in store.snapshot().pending

    clock.now += 1
    with pytest.raises(GuardianError) as ei:
        store.approve(nonce)
    assert ei.value.code == GA_E_NONCE_EXPIRED
    assert store.snapshot().pending == {}

    with pytest.raises(GuardianError) as ei:
        store.approve(nonce)
    assert ei.value.code == GA_E_NONCE_NOT_FOUND


def test_expired_approval_is_treated_as_absent_and_removed(store, clock):
    fp, nonce = _escalate(store)
    store.approve(nonce)

    clock.now += WINDOW_MS + 1
    assert store.consume_approval(fp) is None
    assert store.snapshot().approved == {}


def test_approval_only_matches_its_own_fingerprint(store):
    fp, nonce = _escalate(store, params={"command": "rm -rf ./build"})
    store.approve(nonce)
    other = params_fingerprint("exec", {"command": "rm -rf ./dist"})
    assert store.consume_approval(other) is None
    assert store.consume_approval(fp) == nonce


def test_at_most_one_live_record_per_fingerprint(store):
    fp, first = _escalate(store)
    _, second = _escalate(store)
    assert first != second

    state = store.snapshot()
    assert list(state.pending) == [second]
    with pytest.raises(GuardianError):
        store.approve(first)

    store.approve(second)
    # Escalating again drops the outstanding approval.
    _, third = _escalate(store)
    state = store.snapshot()
    assert state.approved == {}
    assert list(state.pending) == [third]
    assert store.consume_approval(fp) is None


def test_escalate_or_consume_honors_a_live_approval(store, clock):
    fp, nonce = _escalate(store)
    store.approve(nonce)

    assert store.escalate_or_consume(fp, "exec", {"command": "rm -rf ./build"}) == (True, nonce)
    state = store.snapshot()
    assert state.approved == {}
    assert state.pending == {}


def test_escalate_or_consume_escalates_without_a_live_approval(store, clock):
    fp, nonce = _escalate(store)
    store.approve(nonce)
    clock.now += WINDOW_MS + 1

    consumed, fresh = store.escalate_or_consume(fp, "exec", {"command": "rm -rf ./build"})
    assert consumed is False
    assert fresh != nonce
    state = store.snapshot()
    assert state.approved == {}
    assert list(state.pending) == [fresh]


def test_cleanup_removes_only_expired_records(store, clock):
    _, old = _escalate(store, params={"command": "a"})
    fp_b, approved = _escalate(store, params={"command": "b"})
    store.approve(approved)

    clock.now += 20_000
    _, fresh = _escalate(store, params={"command": "c"})

    clock.now += 10_001  # approval window of b has passed
    assert store.cleanup() == 1
    state = store.snapshot()
    assert set(state.pending) == {old, fresh}
    assert fp_b not in state.approved

    clock.now += PENDING_MS - 30_000  # old is past its deadline, fresh is not
    assert store.cleanup() == 1
    assert set(store.snapshot().pending) == {fresh}


def test_state_survives_restart(tmp_path, clock):
    path = str(tmp_path / "ga-state.json")
    fp, nonce = _escalate(JsonFileEscalationStore(path, PENDING_MS, WINDOW_MS))

    reopened = JsonFileEscalationStore(path, PENDING_MS, WINDOW_MS)
    reopened.approve(nonce)

    again = JsonFileEscalationStore(path, PENDING_MS, WINDOW_MS)
    assert again.consume_approval(fp) == nonce


def test_startup_sweeps_expired_records(tmp_path, clock):
    path = str(tmp_path / "ga-state.json")
    _escalate(JsonFileEscalationStore(path, PENDING_MS, WINDOW_MS))

    clock.now += PENDING_MS + 1
    reopened = JsonFileEscalationStore(path, PENDING_MS, WINDOW_MS)
    assert reopened.removed_at_startup == 1
    doc = json.loads((tmp_path / "ga-state.json").read_text(encoding="utf-8"))
    assert doc["pending"] == {}


def test_corrupt_state_file_reads_as_empty(tmp_path, clock, caplog):
    path = tmp_path / "ga-state.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonFileEscalationStore(str(path), PENDING_MS, WINDOW_MS)
    assert "unreadable state file" in caplog.text
    assert store.snapshot().pending == {}

    _, nonce = _escalate(store)
    assert nonce in json.loads(path.read_text(encoding="utf-8"))["pending"]


def test_malformed_records_are_dropped(tmp_path, clock):
    path = tmp_path / "ga-state.json"
    path.write_text(
        json.dumps(
            {
                "pending": {"abcd1234": {"nonce": "abcd1234"}},
                "approved": {"fp": {"fingerprint": "other", "nonce": "n", "toolName": "t", "approvedAt": 1, "expiresAt": 2}},
            }
        ),
        encoding="utf-8",
    )
    store = JsonFileEscalationStore(str(path), PENDING_MS, WINDOW_MS)
    state = store.snapshot()
    assert state.pending == {}
    assert state.approved == {}


def test_failed_write_raises_store_io_error(tmp_path, clock):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = JsonFileEscalationStore(str(blocker / "ga-state.json"), PENDING_MS, WINDOW_MS, lock=threading.RLock())

    with pytest.raises(StoreIOError) as ei:
        _escalate(store)
    assert ei.value.code == GA_E_STORE_IO
    assert ei.value.retryable is True


def test_timeouts_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        MemoryEscalationStore(pending_timeout_ms=0)


def test_concurrent_escalations_are_not_lost(tmp_path, clock):
    path = str(tmp_path / "ga-state.json")
    # Two store objects on one file: serialized by the file lock, not just the thread lock.
    stores = [JsonFileEscalationStore(path, PENDING_MS, WINDOW_MS) for _ in range(2)]

    def work(i):
        return _escalate(stores[i % 2], params={"command": f"job {i}"})[1]

    with ThreadPoolExecutor(max_workers=8) as pool:
        nonces = list(pool.map(work, range(40)))

    assert len(set(nonces)) == 40
    assert set(stores[0].snapshot().pending) == set(nonces)


@pytest.mark.parametrize("backend", ["json", "memory"])
def test_concurrent_consumers_get_one_approval(tmp_path, clock, backend):
    if backend == "json":
        store = JsonFileEscalationStore(str(tmp_path / "ga-state.json"), PENDING_MS, WINDOW_MS)
    else:
        store = MemoryEscalationStore(PENDING_MS, WINDOW_MS)
    fp, nonce = _escalate(store)
    store.approve(nonce)

    barrier = threading.Barrier(10)

    def consume(_):
        barrier.wait()
        return store.consume_approval(fp)

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(consume, range(10)))

    assert results.count(nonce) == 1
    assert results.count(None) == 9


def test_concurrent_approvals_of_one_nonce_succeed_once(store):
    _, nonce = _escalate(store)
    barrier = threading.Barrier(6)

    def approve(_):
        barrier.wait()
        try:
            store.approve(nonce)
            return "ok"
        except GuardianError as e:
            return e.code

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(approve, range(6)))

    assert results.count("ok") == 1
    assert results.count(GA_E_NONCE_NOT_FOUND) == 5
