"""Outbound alerting.

Alerts are always written to the log. When a Telegram bot token and chat id
are configured, they are also delivered through the Bot API.

Contract:
- At most one alert per `min_interval_s` (default 10s). Faster alerts are
  logged as rate-limited and dropped.
- `send_alert` never raises; delivery failures are logged.
- Safe to call concurrently from the scheduler and the event consumer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional, Protocol, runtime_checkable

from .ratelimit import MinIntervalLimiter

logger = logging.getLogger("sentinel_agent")

TELEGRAM_API = "https://api.telegram.org"
HISTORY_SIZE = 100


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    ACTION = "ACTION"
    WARNING = "WARNING"
    INFO = "INFO"


_EMOJI = {
    Severity.CRITICAL: "\U0001F6A8",
    Severity.ACTION: "⚡",
    Severity.WARNING: "⚠️",
    Severity.INFO: "ℹ️",
}


@runtime_checkable
class AlertSink(Protocol):
    async def send_alert(self, severity: Severity, message: str) -> None: ...


def format_alert(severity: Severity, message: str) -> str:
    emoji = _EMOJI.get(severity, "\U0001F514")
    return f"{emoji} *Sentinel Alert - {severity.value}*\n\n{message}\n\n_Privacy preserved via MPC_"


@dataclass(frozen=True)
class AlertRecord:
    severity: Severity
    message: str
    delivered: bool


class AlertService:
    """Rate-limited alert delivery."""

    def __init__(
        self,
        bot_token: str = "",
        chat_id: str = "",
        *,
        min_interval_s: float = 10.0,
        timeout_s: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
        on_record: Optional[Callable[[AlertRecord], None]] = None,
        history_size: int = HISTORY_SIZE,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_s = float(timeout_s)
        self._limiter = MinIntervalLimiter(min_interval_s, clock=clock or time.monotonic)
        self._on_record = on_record
        self._lock = threading.Lock()
        # Most recent alerts only.
        self.history: Deque[AlertRecord] = deque(maxlen=max(1, int(history_size)))

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def _record(self, rec: AlertRecord) -> None:
        with self._lock:
            self.history.append(rec)
        if self._on_record is not None:
            try:
                self._on_record(rec)
            except Exception as e:
                logger.warning("Alert record hook failed: %s", e)

    async def send_alert(self, severity: Severity | str, message: str) -> None:
        try:
            sev = Severity(str(getattr(severity, "value", severity)).upper())
        except ValueError:
            sev = Severity.INFO
        if not self._limiter.allow():
            logger.info("[Alert rate-limited] %s: %s", sev.value, message)
            self._record(AlertRecord(sev, message, delivered=False))
            return

        logger.warning("ALERT [%s]: %s", sev.value, message)
        self._record(AlertRecord(sev, message, delivered=True))

        if self.telegram_enabled:
            try:
                await asyncio.to_thread(self._post_telegram, format_alert(sev, message))
            except Exception as e:
                logger.error("Failed to send Telegram alert: %s", e)

    def _post_telegram(self, text: str) -> None:
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        payload = json.dumps({"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"}).encode("utf-8")
        req = urllib.request.Request(
            url, data=payload, headers={"Content-Type": "application/json"}, method="POST"
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                if 200 <= status <= 299:
                    logger.info("Telegram alert sent")
                else:
                    body = resp.read().decode("utf-8", errors="replace")
                    logger.error("Telegram send failed: HTTP %s %s", status, body[:200])
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", errors="replace")
            except Exception:
                body = ""
            logger.error("Telegram send failed: HTTP %s %s", e.code, body[:200])
