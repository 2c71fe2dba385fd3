"""Alerting helpers for webhook notifications about failed trades and aborted runs."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


class AlertService:
    """
    Send notifications for events an operator has to act on.

    A failed trade can leave cash parked between a sell and a buy, so every
    failure is surfaced here. Identical alerts within `dedupe_seconds` are
    suppressed; trade workers call in concurrently, so history is lock-guarded.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not config.webhook_url and not config.dry_run:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._last_sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)

        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(
                raw_config.get("min_severity", "warning"),
                default=AlertSeverity.WARNING,
            ),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send an alert unless disabled, below threshold, or deduped.

        Returns:
            True if the alert was dispatched (or logged in dry-run mode)
        """
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = time.monotonic()
        with self._lock:
            last = self._last_sent.get(fingerprint)
            if last is not None and now - last < self._config.dedupe_seconds:
                logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
                return False
            self._last_sent[fingerprint] = now

        self._send_alert(severity, title, message, context)
        return True

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        self._config.webhook_url,
                        response.status,
                        body,
                        response.headers,
                        None,
                    )
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
