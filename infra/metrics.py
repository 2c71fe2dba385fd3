"""Prometheus-backed metrics hooks for rebalance runs and trade execution."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    status: str  # "completed" | "partial" | "aborted" | "no_trade"
    planned: int
    completed: int
    failed: int
    in_flight: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose rebalance stats via Prometheus.

    Singleton pattern so repeated construction (loop mode, tests) never
    registers the same collectors twice.
    """
    _instance: Optional["MetricsRecorder"] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return
        self.__class__._initialized = True

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self._lock = threading.Lock()
        self._last_run_stats: Optional[RunStats] = None
        self._trade_outcomes: Dict[str, int] = {}
        self._placement_attempts: Dict[str, int] = {}

        self.registry = CollectorRegistry()
        self._run_summary = Summary(
            "rotator_run_duration_seconds",
            "Duration of a full rebalance run (planning + execution)",
            registry=self.registry,
        )
        self._run_counter = Counter(
            "rotator_runs_total",
            "Rebalance runs by terminal status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._trades_counter = Counter(
            "rotator_trades_total",
            "Trades by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._placement_counter = Counter(
            "rotator_order_placement_attempts_total",
            "Order placement attempts by leg kind and result",
            labelnames=("kind", "result"),
            registry=self.registry,
        )
        self._planned_gauge = Gauge(
            "rotator_planned_trades",
            "Trades planned by the most recent run",
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_run(self, stats: RunStats) -> None:
        self._run_summary.observe(stats.duration_seconds)
        self._run_counter.labels(status=stats.status).inc()
        self._planned_gauge.set(stats.planned)
        self._last_run_stats = stats

    def record_trade_outcome(self, outcome: str) -> None:
        key = outcome.lower()
        self._trades_counter.labels(outcome=key).inc()
        with self._lock:
            self._trade_outcomes[key] = self._trade_outcomes.get(key, 0) + 1

    def record_placement_attempt(self, kind: str, success: bool) -> None:
        result = "success" if success else "failure"
        self._placement_counter.labels(kind=kind, result=result).inc()
        with self._lock:
            key = f"{kind}:{result}"
            self._placement_attempts[key] = self._placement_attempts.get(key, 0) + 1

    @property
    def last_run(self) -> Optional[RunStats]:
        return self._last_run_stats

    def trade_outcome_snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._trade_outcomes)

    def placement_snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._placement_attempts)
