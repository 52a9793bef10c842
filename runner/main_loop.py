"""
Exit Engine Runner: Main Loop

Wires the exit engine to its collaborators and runs it on one asyncio loop.

Tasks:
1. Arbitration tick (ExitEngine.run_tick)
2. Pattern confirmation guard scan
3. Concentration guard scan
4. Heartbeat ping and PnL report (optional)

Guards publish to the signal bus; only the tick touches the position store.
On shutdown the guards stop first so a guard blocked on a full bus is always
drained by the still-running tick.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.collapse import CollapseDetector
from core.concentration_guard import ConcentrationGuard, ConcentrationGuardConfig
from core.exceptions import ConfigurationError
from core.exit_engine import ExitEngine, ExitPolicy, TickResult
from core.interfaces import CandleSource, ConcentrationSource, PriceOracle, SellBroker
from core.pattern_guard import PatternConfirmationGuard, PatternGuardConfig
from core.position_report import PositionReporter
from core.signal_table import GuardContext, SignalBus
from core.trailing import TrailingStopTracker
from infra.alerting import AlertService, AlertSeverity
from infra.healthcheck import HealthServer, engine_health_status
from infra.heartbeat import Heartbeat
from infra.http_sources import BirdeyeCandleSource, HttpPriceOracle, HttpSellBroker, RpcConcentrationSource
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.scheduler import PeriodicTask
from infra.state_store import create_position_store_from_config
from tools.config_validator import load_validated_configs

logger = logging.getLogger(__name__)


class ExitEngineRunner:
    """
    Exit engine process orchestrator.

    Responsibilities:
    - Load and validate config
    - Build adapters, guards and the engine
    - Run periodic tasks until stopped
    - Report health, metrics and lifecycle alerts
    """

    def __init__(
        self,
        config_dir: str = "config",
        oracle: Optional[PriceOracle] = None,
        candle_source: Optional[CandleSource] = None,
        concentration_source: Optional[ConcentrationSource] = None,
        broker: Optional[SellBroker] = None,
        configure_logging: bool = True,
    ):
        self.config_dir = Path(config_dir)
        errors, self.app_config, self.policy_config = load_validated_configs(str(self.config_dir))
        if errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ConfigurationError(errors)

        if configure_logging:
            self._configure_logging(self.app_config["logging"])

        self.name = self.app_config["app"]["name"]
        self.mode = self.app_config["app"]["mode"]
        policy = self.policy_config
        monitoring_cfg = self.app_config["monitoring"]
        endpoints = self.app_config["endpoints"]

        self.metrics = MetricsRecorder(enabled=monitoring_cfg["metrics_enabled"], port=monitoring_cfg["metrics_port"])
        self.alerts = AlertService.from_config(monitoring_cfg["alerts_enabled"], monitoring_cfg["alerts"])
        self.notifier = self.alerts.as_sink(AlertSeverity.INFO, title=self.name)

        state_cfg = self.app_config["state"]
        self.store = create_position_store_from_config(state_cfg)
        self.lock = SingleInstanceLock(self.name, lock_dir=state_cfg["lock_dir"])
        self.heartbeat = Heartbeat(self.alerts, state_dir=state_cfg["lock_dir"])

        self.oracle = oracle or HttpPriceOracle.from_config(endpoints["price"])
        self.broker = broker or HttpSellBroker.from_config(endpoints["broker"])

        self.bus = SignalBus(policy["loop"]["signal_bus_size"])
        self.context = GuardContext()
        self.engine = ExitEngine(
            store=self.store,
            oracle=self.oracle,
            broker=self.broker,
            notifier=self.notifier,
            policy=ExitPolicy.from_config(policy),
            trailing=TrailingStopTracker.from_config(policy["trailing"]),
            collapse=CollapseDetector.from_config(policy["collapse"]),
            bus=self.bus,
            context=self.context,
            metrics=self.metrics,
            alerts=self.alerts,
        )

        self.pattern_guard: Optional[PatternConfirmationGuard] = None
        if policy["pattern_guard"]["enabled"]:
            self.pattern_guard = PatternConfirmationGuard(
                candle_source=candle_source or BirdeyeCandleSource.from_config(endpoints["candles"]),
                bus=self.bus,
                context=self.context,
                positions_provider=self.engine.load_positions,
                config=PatternGuardConfig.from_config(policy["pattern_guard"]),
            )

        self.concentration_guard: Optional[ConcentrationGuard] = None
        if policy["concentration_guard"]["enabled"]:
            self.concentration_guard = ConcentrationGuard(
                concentration_source=concentration_source or RpcConcentrationSource.from_config(endpoints["rpc"]),
                price_oracle=self.oracle,
                bus=self.bus,
                context=self.context,
                positions_provider=self.engine.load_positions,
                config=ConcentrationGuardConfig.from_config(policy["concentration_guard"]),
            )

        self.reporter: Optional[PositionReporter] = None
        if policy["report"]["enabled"]:
            self.reporter = PositionReporter(
                oracle=self.oracle,
                notifier=self.notifier,
                positions_provider=self.engine.load_positions,
                max_concurrency=policy["report"]["max_concurrency"],
            )

        self.health_server: Optional[HealthServer] = None
        if monitoring_cfg["health_enabled"]:
            self.health_server = HealthServer(monitoring_cfg["health_port"], self._health_status_snapshot)

        self.tasks: List[PeriodicTask] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_reason = "stopped"

        logger.info(f"Initialized ExitEngineRunner in {self.mode} mode (store={self.store.describe()})")

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))

        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _health_status_snapshot(self) -> Dict[str, Any]:
        last: Optional[TickResult] = self.engine.last_result
        open_positions = None
        if last is not None:
            open_positions = last.positions_seen - last.sells_confirmed
        payload = engine_health_status(
            last.to_dict() if last else None,
            self.tasks,
            open_positions,
            stale_after_seconds=self.app_config["monitoring"]["health_stale_seconds"],
        )
        payload["mode"] = self.mode
        payload["pending_signals"] = self.bus.pending
        return payload

    def _build_tasks(self, tick_seconds: Optional[float] = None) -> List[PeriodicTask]:
        loop_cfg = self.policy_config["loop"]
        jitter = loop_cfg["jitter_pct"]
        on_error = self.heartbeat.report_error
        tasks: List[PeriodicTask] = []

        # Guards first: they are started first and stopped first
        if self.pattern_guard is not None:
            tasks.append(PeriodicTask(
                "pattern_guard", loop_cfg["pattern_scan_seconds"], self.pattern_guard.scan,
                jitter_pct=jitter, metrics=self.metrics, on_error=on_error,
            ))
        if self.concentration_guard is not None:
            tasks.append(PeriodicTask(
                "concentration_guard", loop_cfg["concentration_scan_seconds"], self.concentration_guard.scan,
                jitter_pct=jitter, metrics=self.metrics, on_error=on_error,
            ))
        if self.reporter is not None:
            tasks.append(PeriodicTask(
                "pnl_report", self.policy_config["report"]["interval_minutes"] * 60.0, self.reporter.send_report,
                run_immediately=False, metrics=self.metrics, on_error=on_error,
            ))
        if self.policy_config["heartbeat"]["enabled"]:
            tasks.append(PeriodicTask(
                "heartbeat", self.policy_config["heartbeat"]["interval_minutes"] * 60.0, self.heartbeat.ping,
                metrics=self.metrics, on_error=on_error,
            ))
        tasks.append(PeriodicTask(
            "exit_tick", tick_seconds or loop_cfg["tick_seconds"], self._run_tick,
            jitter_pct=jitter, metrics=self.metrics, on_error=on_error,
        ))
        return tasks

    async def _run_tick(self) -> TickResult:
        result = await self.engine.run_tick()
        if result.sells_attempted or result.status != "ok":
            logger.info(
                f"Tick: status={result.status} positions={result.positions_seen} "
                f"attempted={result.sells_attempted} confirmed={result.sells_confirmed} "
                f"skipped={len(result.skipped)} ({result.duration_seconds:.2f}s)"
            )
        return result

    async def run_once(self) -> TickResult:
        """Single arbitration tick (no guards); pending bus signals are still honoured."""
        return await self._run_tick()

    def _handle_stop(self, reason: str = "signal") -> None:
        logger.warning("=" * 80)
        logger.warning(f"SHUTDOWN REQUESTED ({reason}) - stopping after in-flight runs")
        logger.warning("=" * 80)
        self._stop_reason = reason
        if self._stop_event is not None:
            self._stop_event.set()

    def request_stop(self, reason: str = "manual") -> None:
        self._handle_stop(reason)

    async def run_forever(self, tick_seconds: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread or platform without loop signal support
                logger.debug(f"Could not install handler for {sig.name}")

        self.heartbeat.install(loop)
        self.heartbeat.announce_start(self.mode)
        self.metrics.start()
        if self.health_server is not None:
            self.health_server.start()

        self.tasks = self._build_tasks(tick_seconds)
        for task in self.tasks:
            task.start()

        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        for task in self.tasks:
            await task.stop()
        if self.health_server is not None:
            self.health_server.stop()
        self.heartbeat.announce_stop(self._stop_reason)
        logger.info("Exit engine stopped cleanly.")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="Position exit decision engine")
    parser.add_argument("--once", action="store_true", help="Run a single arbitration tick and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (overrides policy.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    try:
        runner = ExitEngineRunner(config_dir=args.config_dir)
    except ConfigurationError as e:
        print(f"{e}", file=sys.stderr)
        return 2

    if not runner.lock.acquire():
        return 1

    try:
        if args.once:
            result = asyncio.run(runner.run_once())
            return 0 if result.status == "ok" else 1
        asyncio.run(runner.run_forever(tick_seconds=args.interval))
        return 0
    finally:
        runner.lock.release()


if __name__ == "__main__":
    sys.exit(main())
