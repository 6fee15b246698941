import importlib

import pytest


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import guardian_gateway

    # Access via attribute (lazy import)
    assert hasattr(guardian_gateway, "GuardianGate")
    assert hasattr(guardian_gateway, "create_app")
    assert "register" in dir(guardian_gateway)

    from guardian_gateway import ApprovalTool, GuardConfig, GuardianError, approve_escalation, register  # noqa: F401

    importlib.reload(guardian_gateway)


def test_unknown_attribute_raises():
    import guardian_gateway

    with pytest.raises(AttributeError, match="NoSuchThing"):
        guardian_gateway.NoSuchThing  # noqa: B018


def test_version_export_matches_pyproject():
    import guardian_gateway

    assert guardian_gateway.__version__ == _read_pyproject_version()
