"""
Rotator Runner: Main Loop

Orchestrates one rebalance per hold period.

Flow:
1. Validate config, set up logging, take the single-instance lock
2. Plan (single session): account -> ranking -> translation -> reconciliation
3. Execute every trade concurrently and join with a deadline
4. Report outcomes (log summary, alerts, metrics) and exit code

Exit codes: 0 all trades completed (or nothing to do), 1 some trade not
completed, 2 planning aborted before any order.
"""

import calendar
import signal
import threading
import time
import yaml
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from core.broker_avanza import AvanzaBroker
from core.exceptions import ConfigurationError
from core.execution import ExecutionConfig, ExecutionEngine, TradeOutcome
from core.order_state import TradeStateMachine
from core.rebalance_cycle import RebalancePipeline, RebalancePlan
from core.universe import HoldPeriodType, Universe
from infra.alerting import AlertService, AlertSeverity
from infra.instance_lock import check_single_instance
from infra.metrics import MetricsRecorder, RunStats

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_ABORTED = 2


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_rebalance_time(last: datetime, hold_period: int, unit: HoldPeriodType) -> datetime:
    if hold_period <= 0:
        raise ValueError(f"hold_period must be positive, got {hold_period}")
    if unit == HoldPeriodType.DAY:
        return last + timedelta(days=hold_period)
    if unit == HoldPeriodType.WEEK:
        return last + timedelta(weeks=hold_period)
    return add_months(last, hold_period)


class RebalanceRunner:
    """
    Rebalance orchestrator.

    Responsibilities:
    - Load and validate config
    - Plan once, execute all trades concurrently, wait for all of them
    - Output structured summaries, alerts and metrics
    - Stop placement retries on SIGINT/SIGTERM
    """

    def __init__(self, config_dir: str = "config", mode: Optional[str] = None,
                 broker=None, alerts: Optional[AlertService] = None,
                 metrics: Optional[MetricsRecorder] = None):
        """
        Args:
            config_dir: Directory holding app.yaml and strategy.yaml
            mode: Override app.mode (e.g. "DRY_RUN" from the CLI)
            broker: Pre-built broker (tests); built from config otherwise
            alerts: Pre-built AlertService; built from config otherwise
            metrics: Pre-built MetricsRecorder; built from config otherwise
        """
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ConfigurationError(
                f"Invalid configuration: {len(validation_errors)} error(s) found: "
                + "; ".join(str(e).splitlines()[0] for e in validation_errors if str(e))
            )

        self.app_config = self._load_yaml("app.yaml")
        app_section = self.app_config.get("app", {}) or {}
        broker_cfg = self.app_config.get("broker", {}) or {}
        execution_cfg = self.app_config.get("execution", {}) or {}

        self.mode = (mode or app_section.get("mode", "DRY_RUN")).upper()
        if self.mode not in {"DRY_RUN", "LIVE"}:
            raise ConfigurationError(f"Invalid mode: {self.mode}")
        # Broker read_only: True unless explicitly false in LIVE mode
        self.read_only = (self.mode != "LIVE") or bool(broker_cfg.get("read_only", True))

        self._setup_logging(self.app_config.get("logging", {}) or {})
        logger.info(f"Starting rotator in mode={self.mode}, read_only={self.read_only}")

        self.instance_lock = check_single_instance("rotator", lock_dir=app_section.get("lock_dir", "data"))
        if not self.instance_lock:
            raise RuntimeError("Another rotator instance is already running")

        self.universe = Universe.from_config(self._load_yaml("strategy.yaml"))
        self.account_url_id = str(app_section["account_url_id"])
        self.execution_config = ExecutionConfig.from_dict(self.mode, execution_cfg)
        self.max_concurrent_trades = int(execution_cfg.get("max_concurrent_trades", 8))
        self.trade_timeout_seconds = float(execution_cfg.get("trade_timeout_seconds", 432000))

        self.broker = broker or AvanzaBroker(
            timeout=float(broker_cfg.get("timeout_seconds", 20.0)),
            read_only=self.read_only,
        )
        self.pipeline = RebalancePipeline(
            self.universe,
            self.broker,
            self.account_url_id,
            cash_buffer=float(execution_cfg.get("cash_buffer", 0.95)),
            instrument_sub_type=broker_cfg.get("instrument_sub_type", "mini_future"),
            search_limit=int(broker_cfg.get("search_limit", 20)),
        )

        self.alerts = alerts or AlertService.from_config(self.app_config.get("alerts"))
        metrics_cfg = self.app_config.get("metrics", {}) or {}
        self.metrics = metrics or MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )
        self.metrics.start()

        # Process-wide shutdown vs. per-run retry cancellation
        self._shutdown = threading.Event()
        self.stop_event = threading.Event()
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized RebalanceRunner in {self.mode} mode")

    def _load_yaml(self, filename: str) -> dict:
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _setup_logging(log_cfg: Dict[str, Any]) -> None:
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))

        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _handle_stop(self, *_):
        """Stop placement retries and the loop; in-flight orders keep being tracked."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - no further placement retries")
        logger.warning("=" * 80)
        self._shutdown.set()
        self.stop_event.set()

    # ===== One rebalance =====

    def run_once(self, now: Optional[datetime] = None) -> int:
        started = time.monotonic()
        plan = self.pipeline.plan(now)

        if not plan.success:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Rebalance aborted",
                plan.error or plan.no_trade_reason or "planning failed",
                {"reason": plan.no_trade_reason, "account": self.account_url_id},
            )
            self._observe(plan, [], "aborted", started)
            return EXIT_ABORTED

        logger.info(f"Upcoming holdings: {plan.upcoming_holdings}")
        if not plan.trades:
            self._observe(plan, [], "no_trade", started)
            return EXIT_OK

        outcomes = self.execute_trades(plan)
        self._report(outcomes)

        all_done = all(o.success for o in outcomes)
        self._observe(plan, outcomes, "completed" if all_done else "partial", started)
        return EXIT_OK if all_done else EXIT_INCOMPLETE

    def execute_trades(self, plan: RebalancePlan) -> List[TradeOutcome]:
        """
        Run every trade on its own worker and wait for all of them.

        Trades still running at `trade_timeout_seconds` are reported IN_FLIGHT
        and the stop event is set so they place no further retries.
        """
        self.stop_event = threading.Event()
        if self._shutdown.is_set():
            self.stop_event.set()
        state_machine = TradeStateMachine()
        engine = ExecutionEngine(
            self.broker,
            plan.account_id,
            self.universe.backup_asset,
            config=self.execution_config,
            stop_event=self.stop_event,
            state_machine=state_machine,
            metrics=self.metrics,
        )

        run_id = plan.timestamp.strftime("%Y%m%dT%H%M%S")
        trade_ids = [f"{run_id}-{idx}" for idx in range(1, len(plan.trades) + 1)]
        outcomes: List[Optional[TradeOutcome]] = [None] * len(plan.trades)

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_concurrent_trades, len(plan.trades)),
            thread_name_prefix="trade",
        )
        try:
            futures = {
                executor.submit(engine.execute, trade, trade_id): idx
                for idx, (trade, trade_id) in enumerate(zip(plan.trades, trade_ids))
            }
            done, not_done = wait(futures, timeout=self.trade_timeout_seconds)

            for future in done:
                idx = futures[future]
                exc = future.exception()
                if exc is not None:
                    logger.error(f"Trade {trade_ids[idx]} worker crashed: {exc}")
                    outcomes[idx] = TradeOutcome(
                        trade=plan.trades[idx], status="FAILED",
                        state=state_machine.get_trade(trade_ids[idx]), error=str(exc),
                    )
                else:
                    outcomes[idx] = future.result()

            if not_done:
                logger.error(
                    f"{len(not_done)} trade(s) still running after {self.trade_timeout_seconds:.0f}s; "
                    f"stopping further retries"
                )
                self.stop_event.set()

            for future in not_done:
                idx = futures[future]
                if future.cancel():
                    outcomes[idx] = TradeOutcome(
                        trade=plan.trades[idx], status="FAILED",
                        error="not started before join deadline",
                    )
                else:
                    outcomes[idx] = TradeOutcome(
                        trade=plan.trades[idx], status="IN_FLIGHT",
                        state=state_machine.get_trade(trade_ids[idx]),
                        error="still running at join deadline",
                    )
        finally:
            executor.shutdown(wait=False)

        logger.info(f"Trade summary: {state_machine.get_summary()}")
        return [o for o in outcomes if o is not None]

    def _report(self, outcomes: List[TradeOutcome]) -> None:
        for outcome in outcomes:
            trade = outcome.trade
            self.metrics.record_trade_outcome(outcome.status)
            label = f"{trade.sell_asset} -> {trade.buy_asset}"
            context = outcome.state.to_dict() if outcome.state else {"sell": trade.sell_asset, "buy": trade.buy_asset}

            if outcome.status == "COMPLETED":
                logger.info(f"  ✓ {label}: COMPLETED")
            elif outcome.status == "IN_FLIGHT":
                logger.warning(f"  … {label}: IN_FLIGHT ({outcome.error})")
                self.alerts.notify(AlertSeverity.WARNING, "Trade still in flight", label, context)
            else:
                stuck = outcome.state.stuck_leg() if outcome.state else None
                logger.error(f"  ✗ {label}: FAILED ({outcome.error})" + (f" [{stuck}]" if stuck else ""))
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Trade failed",
                    f"{label}: {outcome.error}" + (f" ({stuck})" if stuck else ""),
                    context,
                )

    def _observe(self, plan: RebalancePlan, outcomes: List[TradeOutcome], status: str, started: float) -> None:
        duration = time.monotonic() - started
        stats = RunStats(
            status=status,
            planned=len(plan.trades),
            completed=sum(1 for o in outcomes if o.status == "COMPLETED"),
            failed=sum(1 for o in outcomes if o.status == "FAILED"),
            in_flight=sum(1 for o in outcomes if o.status == "IN_FLIGHT"),
            duration_seconds=duration,
        )
        self.metrics.observe_run(stats)
        logger.info(
            f"Rebalance {status}: planned={stats.planned} completed={stats.completed} "
            f"failed={stats.failed} in_flight={stats.in_flight} ({duration:.1f}s)"
        )

    # ===== Loop =====

    def run_forever(self) -> int:
        """Rebalance now, then once per hold period until stopped."""
        settings = self.universe.settings
        logger.info(
            f"Starting rebalance loop (every {settings.hold_period} {settings.hold_period_type.value.lower()}(s))"
        )

        exit_code = EXIT_OK
        while not self._shutdown.is_set():
            run_started = datetime.now()
            exit_code = self.run_once(run_started)
            next_run = next_rebalance_time(run_started, settings.hold_period, settings.hold_period_type)
            logger.info(f"Next rebalance at {next_run.isoformat(timespec='seconds')}")

            # Wake on the stop event so a signal ends the wait immediately
            while datetime.now() < next_run:
                remaining = (next_run - datetime.now()).total_seconds()
                if self._shutdown.wait(min(max(remaining, 0.0), 3600.0)):
                    break

        logger.info("Rebalance loop stopped cleanly.")
        return exit_code

    def close(self) -> None:
        if self.instance_lock:
            self.instance_lock.release()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Momentum warrant rotator")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--once", action="store_true", help="Run one rebalance and exit (default)")
    group.add_argument("--loop", action="store_true", help="Rebalance every hold period until stopped")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--dry-run", action="store_true", help="Force DRY_RUN regardless of app.yaml")

    args = parser.parse_args(argv)

    try:
        runner = RebalanceRunner(config_dir=args.config_dir, mode="DRY_RUN" if args.dry_run else None)
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_ABORTED
    except RuntimeError as e:
        logger.error(str(e))
        return EXIT_ABORTED

    try:
        if args.loop:
            return runner.run_forever()
        return runner.run_once()
    finally:
        runner.close()


if __name__ == "__main__":
    import sys

    sys.exit(main())
