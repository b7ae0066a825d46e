import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import sentinel_agent

    # Access via attribute (lazy import)
    assert hasattr(sentinel_agent, "SentinelAgent")
    assert hasattr(sentinel_agent, "create_app")

    from sentinel_agent import AgentConfig, Orchestrator, SentinelAgent, build_context  # noqa: F401
    from sentinel_agent import Address, EncryptionSession, WalletSigner, derive_address  # noqa: F401

    importlib.reload(sentinel_agent)


def test_unknown_attribute_raises():
    import pytest

    import sentinel_agent

    with pytest.raises(AttributeError):
        sentinel_agent.NotAThing  # noqa: B018


def test_version_export_matches_pyproject():
    import sentinel_agent

    assert sentinel_agent.__version__ == _read_pyproject_version()
