import pytest

from guardian_gateway.fingerprint import canonical_json_dumps, params_fingerprint


def test_fingerprint_ignores_key_order():
    a = params_fingerprint("exec", {"command": "ls", "cwd": "/tmp", "env": {"A": "1", "B": "2"}})
    b = params_fingerprint("exec", {"env": {"B": "2", "A": "1"}, "cwd": "/tmp", "command": "ls"})
    assert a == b
    assert len(a) == 64
    int(a, 16)


def test_any_single_param_change_changes_fingerprint():
    base = {"command": "ls -la", "timeout": 30, "flags": ["a", "b"]}
    fp = params_fingerprint("exec", base)

    assert params_fingerprint("exec", {**base, "command": "ls -l"}) != fp
    assert params_fingerprint("exec", {**base, "timeout": 31}) != fp
    assert params_fingerprint("exec", {**base, "flags": ["b", "a"]}) != fp
    assert params_fingerprint("exec", {**base, "extra": None}) != fp


def test_tool_name_is_part_of_identity():
    params = {"path": "notes.txt", "content": "hi"}
    assert params_fingerprint("Write", params) != params_fingerprint("Edit", params)


def test_missing_params_equal_empty_params():
    assert params_fingerprint("session_status", None) == params_fingerprint("session_status", {})


def test_integral_floats_match_ints():
    assert params_fingerprint("exec", {"timeout": 30.0}) == params_fingerprint("exec", {"timeout": 30})
    assert params_fingerprint("exec", {"timeout": 30.5}) != params_fingerprint("exec", {"timeout": 30})


def test_unicode_is_nfc_normalized():
    composed = {"text": "caf\u00e9"}
    decomposed = {"text": "cafe\u0301"}
    assert params_fingerprint("message", composed) == params_fingerprint("message", decomposed)


def test_keys_colliding_after_normalization_are_rejected():
    with pytest.raises(ValueError):
        params_fingerprint("exec", {"caf\u00e9": 1, "cafe\u0301": 2})


def test_excessive_nesting_is_rejected():
    deep = {}
    cur = deep
    for _ in range(100):
        cur["x"] = {}
        cur = cur["x"]
    with pytest.raises(ValueError):
        params_fingerprint("exec", deep)


def test_canonical_json_has_no_whitespace_and_keeps_non_ascii():
    assert canonical_json_dumps({"b": 1, "a": "ü"}) == '{"a":"ü","b":1}'


def test_non_finite_floats_are_stable():
    assert canonical_json_dumps({"x": float("nan")}) == '{"x":"nan"}'
    assert params_fingerprint("exec", {"x": float("inf")}) == params_fingerprint("exec", {"x": float("inf")})
