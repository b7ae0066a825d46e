"""Sentinel agent package.

A client-side agent that submits encrypted position health checks to an MPC
network anchored to a ledger program, and reacts to the results the program
emits as log events:

- Binary codec for entity records, events, and instruction data
- Program-derived address computation
- X25519 encryption session with nonce freshness
- Queue-based event dispatch
- Per-entity computation lifecycle and the periodic monitoring loop

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from sentinel_agent import AgentConfig, SentinelAgent, build_context
    from sentinel_agent import Orchestrator, MonitoringScheduler, EventDispatcher
    from sentinel_agent import create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "AgentConfig",
    "SentinelAgent",
    "build_context",
    "Orchestrator",
    "MonitoringScheduler",
    "EventDispatcher",
    "EncryptionSession",
    "WalletSigner",
    "Address",
    "derive_address",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AgentConfig": ("sentinel_agent.config", "AgentConfig"),
    "SentinelAgent": ("sentinel_agent.agent", "SentinelAgent"),
    "build_context": ("sentinel_agent.agent", "build_context"),
    "Orchestrator": ("sentinel_agent.orchestrator", "Orchestrator"),
    "MonitoringScheduler": ("sentinel_agent.scheduler", "MonitoringScheduler"),
    "EventDispatcher": ("sentinel_agent.events", "EventDispatcher"),
    "EncryptionSession": ("sentinel_agent.session", "EncryptionSession"),
    "WalletSigner": ("sentinel_agent.signing", "WalletSigner"),
    "Address": ("sentinel_agent.addresses", "Address"),
    "derive_address": ("sentinel_agent.addresses", "derive_address"),
    "create_app": ("sentinel_agent.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'sentinel_agent' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
