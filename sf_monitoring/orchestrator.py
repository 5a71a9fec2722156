"""One monitoring run: authenticate, monitor, detect, persist, notify."""

from __future__ import annotations

import asyncio
import enum
import time
from typing import Callable

import structlog

from .analysis.anomaly_detector import AnomalyDetector
from .auth.salesforce_auth import AuthProvider, SalesforceAuthProvider
from .config import MonitoringConfig
from .errors import PersistenceFailure, TransientRemoteError
from .models import (
    ErrorSnapshot,
    LimitSnapshot,
    MonitoringResults,
    QualitySnapshot,
    RunResult,
    RunStatus,
)
from .monitors import CodeQualityMonitor, DebugLogMonitor, GovernorLimitMonitor, Monitor
from .notifications.notifier import Notifier, NotifierProtocol
from .retry import RetryExecutor
from .storage.run_store import RunStore

logger = structlog.get_logger(__name__)


class RunState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Orchestrator:
    """Sequences monitoring runs against one store and one auth provider.

    The orchestrator owns the auth provider and the store for its whole
    lifetime and releases both in :meth:`close`.
    """

    def __init__(
        self,
        config: MonitoringConfig,
        store: RunStore,
        auth_provider: AuthProvider,
        notifier: NotifierProtocol,
        monitors: list[Monitor] | None = None,
        detector: AnomalyDetector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.auth_provider = auth_provider
        self.notifier = notifier
        self.monitors = monitors if monitors is not None else self.default_monitors(config)
        self.detector = detector or AnomalyDetector(config.thresholds)
        self.clock = clock
        self.state = RunState.IDLE
        self.last_result: RunResult | None = None
        self._closed = False

    @classmethod
    def from_config(cls, config: MonitoringConfig) -> "Orchestrator":
        """Wire the default components. Opens the store."""
        store = RunStore(config.storage.database).open()
        retry_executor = RetryExecutor(
            max_attempts=config.retry.max_attempts,
            initial_delay=config.retry.initial_delay_seconds,
            retry_on=(TransientRemoteError,),
        )
        auth_provider = SalesforceAuthProvider(config.salesforce, retry_executor)
        return cls(config, store, auth_provider, Notifier(config.notifications))

    @staticmethod
    def default_monitors(config: MonitoringConfig) -> list[Monitor]:
        """Enabled monitors in fixed order: debug logs, governor limits, code quality."""
        enabled = config.monitoring.enabled
        monitors: list[Monitor] = []
        if enabled.debug_logs:
            monitors.append(DebugLogMonitor(config))
        if enabled.governor_limits:
            monitors.append(GovernorLimitMonitor(config))
        if enabled.code_quality:
            monitors.append(CodeQualityMonitor(config))
        return monitors

    def _elapsed_ms(self, start: float) -> int:
        return int(round((self.clock() - start) * 1000))

    def _persist_snapshot(self, run_id: int, results: MonitoringResults, snapshot) -> None:
        if isinstance(snapshot, ErrorSnapshot):
            results.debug_logs = snapshot
            if snapshot.errors:
                self.store.insert_error_records(run_id, snapshot.errors)
        elif isinstance(snapshot, LimitSnapshot):
            results.governor_limits = snapshot
            if snapshot.records:
                self.store.insert_limit_records(run_id, snapshot.records)
        elif isinstance(snapshot, QualitySnapshot):
            results.code_quality = snapshot
            if snapshot.classes:
                self.store.insert_quality_metrics(run_id, snapshot.classes)
        else:
            raise TypeError(f"Unknown snapshot type: {type(snapshot).__name__}")

    async def _notify(self, anomalies, results: MonitoringResults) -> None:
        try:
            await self.notifier.notify(anomalies, results)
        except Exception as e:
            logger.error("Failed to send notifications", error=str(e))

    def _finish(self, run_id: int, status: RunStatus, duration_ms: int) -> None:
        self.store.end_run(run_id, status, duration_ms)
        self.state = RunState.COMPLETED if status is RunStatus.COMPLETED else RunState.FAILED

    def _fail(self, run_id: int | None, start: float, error: BaseException) -> RunResult:
        duration_ms = self._elapsed_ms(start)
        self.state = RunState.FAILED
        if run_id is not None:
            try:
                self.store.end_run(run_id, RunStatus.FAILED, duration_ms)
            except PersistenceFailure as e:
                logger.error("Failed to record run failure", run_id=run_id, error=str(e))

        logger.error("Monitoring run failed",
                     run_id=run_id,
                     duration_ms=duration_ms,
                     error_type=type(error).__name__,
                     error=str(error))
        result = RunResult(success=False, run_id=run_id, duration_ms=duration_ms, error=str(error))
        self.last_result = result
        return result

    async def run(self) -> RunResult:
        """Execute one complete monitoring cycle. Never raises for run-level failures."""
        start = self.clock()

        logger.info("=" * 60)
        logger.info("Starting monitoring run")
        logger.info("=" * 60)

        try:
            run_id = self.store.start_run()
        except PersistenceFailure as e:
            return self._fail(None, start, e)
        self.state = RunState.RUNNING

        results = MonitoringResults()
        try:
            connection = await self.auth_provider.authenticate()

            for monitor in self.monitors:
                snapshot = await monitor.monitor(connection)
                self._persist_snapshot(run_id, results, snapshot)

            anomalies = self.detector.detect(results)
            if anomalies:
                self.store.insert_anomalies(run_id, anomalies)

            await self._notify(anomalies, results)

            duration_ms = self._elapsed_ms(start)
            self._finish(run_id, RunStatus.COMPLETED, duration_ms)
        except asyncio.CancelledError as e:
            self._fail(run_id, start, e)
            raise
        except Exception as e:
            return self._fail(run_id, start, e)

        logger.info("=" * 60)
        logger.info("Monitoring run completed successfully",
                    run_id=run_id,
                    duration_ms=duration_ms,
                    anomalies=len(anomalies))
        logger.info("=" * 60)

        result = RunResult(
            success=True,
            run_id=run_id,
            duration_ms=duration_ms,
            anomalies=anomalies,
            results=results,
        )
        self.last_result = result
        return result

    async def close(self) -> None:
        """Release the remote session and the store exactly once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.auth_provider.close()
        finally:
            self.store.close()
        logger.info("Cleanup complete")
