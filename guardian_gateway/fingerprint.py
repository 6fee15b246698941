"""Canonical JSON and request fingerprints.

A fingerprint binds an approval to the exact content of a tool call. It is a
SHA-256 over the canonical JSON of ``{"toolName": ..., "params": ...}``:

- sort_keys at every nesting level: field order never changes the digest
- separators without whitespace
- ensure_ascii=False and NFC-normalized strings (and keys): visually identical
  but byte-distinct unicode does not produce two identities
- bounded nesting depth

Fingerprints are identity keys, never secrets.
"""

from __future__ import annotations

import hashlib
import json
import math
import unicodedata
from typing import Any, Mapping

_MAX_DEPTH = 64
_UNICODE_NORM = "NFC"


def _canonicalize(obj: Any, _depth: int = 0) -> Any:
    if _depth > _MAX_DEPTH:
        raise ValueError("max nesting depth exceeded")

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_UNICODE_NORM, obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            # Keep determinism without emitting invalid JSON.
            return repr(obj)
        if obj.is_integer():
            # 1.0 and 1 are the same logical parameter value.
            return int(obj)
        return obj
    if isinstance(obj, Mapping):
        out = {}
        for k, v in obj.items():
            key = unicodedata.normalize(_UNICODE_NORM, str(k))
            if key in out:
                # Two distinct keys would hash as one request.
                raise ValueError(f"key collision after normalization: {key!r}")
            out[key] = _canonicalize(v, _depth + 1)
        return out
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _depth + 1) for v in obj]
    # Unknown types (datetimes, Paths, ...) are stringified deterministically.
    return unicodedata.normalize(_UNICODE_NORM, str(obj))


def canonical_json_dumps(obj: Any) -> str:
    return json.dumps(
        _canonicalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def params_fingerprint(tool_name: str, params: Mapping[str, Any] | None) -> str:
    """Deterministic SHA-256 hex digest of a tool call."""
    payload = canonical_json_dumps({"toolName": str(tool_name), "params": dict(params or {})})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
