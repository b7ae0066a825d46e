"""Agent configuration.

`AgentConfig.from_env()` reads the process environment. Unparseable or
out-of-range numeric values fall back to their defaults; malformed program ids
raise ConfigError because the agent cannot do anything useful without them.

Environment variables:
- SOLANA_RPC_URL: ledger RPC endpoint handed to the transport factory.
- PROGRAM_ID: the monitored program (base58).
- ARCIUM_PROGRAM_ID: the MPC network program (base58).
- ARCIUM_CLUSTER_OFFSET: MPC cluster offset (default 456).
- CHECK_INTERVAL_MS: pause between monitoring cycles (default 30000).
- WALLET_PATH: JSON keypair file (default ~/.config/solana/id.json).
- TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID: optional alert delivery.
- SENTINEL_SETTLE_DELAY_MS: wait before submitting a reveal (default 5000).
- SENTINEL_KEY_FETCH_ATTEMPTS / SENTINEL_KEY_FETCH_DELAY_MS: network key retry.
- SENTINEL_ALERT_MIN_INTERVAL_MS: alert rate limit (default 10000).
- SENTINEL_REQUEST_TIMEOUT_SECONDS: age after which an unanswered request is
  abandoned (default 120).
- SENTINEL_ENCRYPTION_KEY_MESSAGE: domain message for session key derivation.
- SENTINEL_TRANSPORT_FACTORY / SENTINEL_CIPHER_FACTORY: "module:callable".
- SENTINEL_STATUS_PORT: status server port, 0 disables it.
- SENTINEL_SIMULATED_SOL_BALANCE: balance used by the simulated position source.
"""

from __future__ import annotations

import importlib
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .addresses import Address
from .errors import SENTINEL_E_CONFIG, ConfigError, SentinelError, sentinel_error
from .session import DEFAULT_DOMAIN_MESSAGE, RetryPolicy

DEFAULT_PROGRAM_ID = "ABDZr3DvUSnugBNrAj8vaAhKt3tHafA82MDja812QbJC"
DEFAULT_NETWORK_PROGRAM_ID = "BKck65TgoKRokMjQM3datB9oRwJ8rAj2jxPXvHXUvcL6"
DEFAULT_RPC_URL = "https://api.devnet.solana.com"
DEFAULT_WALLET_PATH = "~/.config/solana/id.json"


@dataclass
class AgentConfig:
    rpc_url: str = DEFAULT_RPC_URL
    program_id: str = DEFAULT_PROGRAM_ID
    network_program_id: str = DEFAULT_NETWORK_PROGRAM_ID
    cluster_offset: int = 456
    check_interval_ms: int = 30000
    wallet_path: str = DEFAULT_WALLET_PATH
    telegram_bot_token: str = field(default="", repr=False)
    telegram_chat_id: str = ""
    settle_delay_ms: int = 5000
    key_fetch_attempts: int = 10
    key_fetch_delay_ms: int = 2000
    alert_min_interval_ms: int = 10000
    request_timeout_seconds: int = 120
    encryption_key_message: str = DEFAULT_DOMAIN_MESSAGE
    transport_factory: str = ""
    cipher_factory: str = ""
    status_port: int = 0
    simulated_sol_balance: float = 1.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        env = os.environ if environ is None else environ

        def _get_str(name: str, default: str) -> str:
            v = env.get(name)
            return v.strip() if v and v.strip() else default

        def _get_int(name: str, default: int) -> int:
            try:
                return int(str(env.get(name, default)).strip())
            except Exception:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(str(env.get(name, default)).strip())
            except Exception:
                return default

        interval = _get_int("CHECK_INTERVAL_MS", cls.check_interval_ms)
        offset = _get_int("ARCIUM_CLUSTER_OFFSET", cls.cluster_offset)
        settle = _get_int("SENTINEL_SETTLE_DELAY_MS", cls.settle_delay_ms)
        attempts = _get_int("SENTINEL_KEY_FETCH_ATTEMPTS", cls.key_fetch_attempts)
        fetch_delay = _get_int("SENTINEL_KEY_FETCH_DELAY_MS", cls.key_fetch_delay_ms)
        alert_interval = _get_int("SENTINEL_ALERT_MIN_INTERVAL_MS", cls.alert_min_interval_ms)
        timeout = _get_int("SENTINEL_REQUEST_TIMEOUT_SECONDS", cls.request_timeout_seconds)
        port = _get_int("SENTINEL_STATUS_PORT", cls.status_port)
        balance = _get_float("SENTINEL_SIMULATED_SOL_BALANCE", cls.simulated_sol_balance)

        # Clamp
        if interval < 1000:
            interval = cls.check_interval_ms
        if not 0 <= offset <= 0xFFFFFFFF:
            offset = cls.cluster_offset
        if settle < 0:
            settle = cls.settle_delay_ms
        attempts = max(1, min(attempts, 100))
        if fetch_delay < 0:
            fetch_delay = cls.key_fetch_delay_ms
        if alert_interval < 0:
            alert_interval = cls.alert_min_interval_ms
        if timeout < 1:
            timeout = cls.request_timeout_seconds
        if not 0 <= port <= 65535:
            port = cls.status_port
        if balance < 0:
            balance = cls.simulated_sol_balance

        cfg = cls(
            rpc_url=_get_str("SOLANA_RPC_URL", cls.rpc_url),
            program_id=_get_str("PROGRAM_ID", cls.program_id),
            network_program_id=_get_str("ARCIUM_PROGRAM_ID", cls.network_program_id),
            cluster_offset=offset,
            check_interval_ms=interval,
            wallet_path=_get_str("WALLET_PATH", cls.wallet_path),
            telegram_bot_token=_get_str("TELEGRAM_BOT_TOKEN", ""),
            telegram_chat_id=_get_str("TELEGRAM_CHAT_ID", ""),
            settle_delay_ms=settle,
            key_fetch_attempts=attempts,
            key_fetch_delay_ms=fetch_delay,
            alert_min_interval_ms=alert_interval,
            request_timeout_seconds=timeout,
            encryption_key_message=_get_str("SENTINEL_ENCRYPTION_KEY_MESSAGE", cls.encryption_key_message),
            transport_factory=_get_str("SENTINEL_TRANSPORT_FACTORY", ""),
            cipher_factory=_get_str("SENTINEL_CIPHER_FACTORY", ""),
            status_port=port,
            simulated_sol_balance=balance,
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        for name in ("program_id", "network_program_id"):
            try:
                Address.from_string(getattr(self, name))
            except SentinelError as e:
                raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, f"invalid {name}: {e.message}") from e

    @property
    def program(self) -> Address:
        return Address.from_string(self.program_id)

    @property
    def network_program(self) -> Address:
        return Address.from_string(self.network_program_id)

    @property
    def interval_s(self) -> float:
        return self.check_interval_ms / 1000.0

    @property
    def settle_delay_s(self) -> float:
        return self.settle_delay_ms / 1000.0

    @property
    def alert_min_interval_s(self) -> float:
        return self.alert_min_interval_ms / 1000.0

    def key_retry_policy(self) -> RetryPolicy:
        return RetryPolicy.fixed(self.key_fetch_attempts, self.key_fetch_delay_ms / 1000.0)


def load_factory(spec: str) -> Callable[..., Any]:
    """Resolve a "package.module:callable" import path."""
    module_name, sep, attr = (spec or "").partition(":")
    if not sep or not module_name or not attr:
        raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, f"factory must look like 'module:callable', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, f"cannot import {module_name}: {e}") from e
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, f"{module_name} has no attribute {attr}")
    if not callable(target):
        raise sentinel_error(ConfigError, SENTINEL_E_CONFIG, f"{spec} is not callable")
    return target
