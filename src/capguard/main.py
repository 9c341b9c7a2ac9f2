"""Main entry point: wires the services together and hosts the periodic jobs."""

from __future__ import annotations

import logging
import signal
import sys
import time
from typing import Any, NoReturn

from capguard.cache import create_snapshot_cache
from capguard.config import Settings, settings
from capguard.db import DatabaseManager
from capguard.detection import (
    ErrorRateDetector,
    PatternConfigStore,
    PatternDetector,
    SpikeConfigStore,
    SpikeDetector,
)
from capguard.environment import EnvironmentPolicy
from capguard.events import SecurityEventLog
from capguard.metering import SqlUsageMeteringService
from capguard.notifications import SideEffectQueue
from capguard.quota import EnforcementEngine, QuotaStore
from capguard.retention import DataPruner
from capguard.scheduler import SchedulerService
from capguard.suspension import SuspensionController
from capguard.sweep import SweepOrchestrator

logger = logging.getLogger(__name__)


class CapGuard:
    """Composes the quota, detection and suspension services."""

    def __init__(self, config: Settings | None = None, db_manager: DatabaseManager | None = None) -> None:
        self.config = config or settings
        self.db_manager = db_manager or DatabaseManager(database_url=self.config.database_url)

        self.side_effects = SideEffectQueue(
            max_workers=self.config.side_effect_workers,
            max_attempts=self.config.side_effect_max_attempts,
            base_delay=self.config.side_effect_retry_base_delay,
            max_delay=self.config.side_effect_retry_max_delay,
        )
        self.environment_policy = EnvironmentPolicy(config=self.config)
        self.cache = create_snapshot_cache(config=self.config)

        self.quota_store = QuotaStore(self.db_manager)
        self.metering = SqlUsageMeteringService(self.db_manager)
        self.events = SecurityEventLog(self.db_manager)
        self.enforcement = EnforcementEngine(self.quota_store, self.metering)

        self.suspensions = SuspensionController(
            self.db_manager,
            side_effects=self.side_effects,
            cache=self.cache,
            environment_policy=self.environment_policy,
            config=self.config,
        )
        self.pattern_configs = PatternConfigStore(self.db_manager, config=self.config)
        self.spike_configs = SpikeConfigStore(self.db_manager, config=self.config)
        self.spike_detector = SpikeDetector(
            self.db_manager, self.metering, config=self.config, config_store=self.spike_configs
        )
        self.error_rate_detector = ErrorRateDetector(self.db_manager, self.metering, config=self.config)
        self.pattern_detector = PatternDetector(
            self.db_manager,
            self.events,
            self.pattern_configs,
            suspension_controller=self.suspensions,
        )

        self.sweep = SweepOrchestrator(
            self.db_manager,
            self.enforcement,
            self.suspensions,
            environment_policy=self.environment_policy,
            spike_detector=self.spike_detector,
            error_rate_detector=self.error_rate_detector,
            pattern_detector=self.pattern_detector,
            config=self.config,
        )
        self.pruner = DataPruner(self.db_manager, retention_days=self.config.detection_retention_days)
        self.scheduler = SchedulerService(
            database_url=self.config.scheduler_database_url,
            max_workers=self.config.scheduler_max_workers,
            timezone=self.config.scheduler_timezone,
        )

    def start(self) -> None:
        """Create tables, register jobs and start the scheduler."""
        logger.info("Starting capguard...")

        self.db_manager.init_db()
        logger.info("Database initialized")

        self.scheduler.add_job(
            job_id="suspension_sweep",
            func="capguard.main:run_sweep",
            interval_minutes=self.config.sweep_interval_minutes,
            run_immediately=True,
        )
        self.scheduler.add_job(
            job_id="side_effect_redelivery",
            func="capguard.main:retry_side_effects",
            interval_minutes=self.config.sweep_interval_minutes,
        )
        self.scheduler.add_job(
            job_id="data_pruning",
            func="capguard.main:run_pruning",
            interval_minutes=self.config.data_pruning_interval,
        )

        self.scheduler.start()

    def stop(self) -> None:
        """Stop all services gracefully."""
        logger.info("Stopping capguard...")
        self.scheduler.shutdown(wait=True)
        self.side_effects.drain(timeout=30)
        self.side_effects.shutdown(wait=True)
        self.db_manager.close()
        logger.info("capguard stopped")


_app: CapGuard | None = None


def get_app() -> CapGuard:
    """Get the process-wide application, creating it on first use."""
    global _app
    if _app is None:
        _app = CapGuard()
    return _app


# Job entry points, referenced by name so the persistent job store can serialize them


def run_sweep() -> dict[str, Any]:
    return get_app().sweep.run()


def retry_side_effects() -> int:
    return get_app().side_effects.retry_dead_letters()


def run_pruning() -> dict[str, int]:
    return get_app().pruner.run_all()


def main() -> NoReturn:
    """Main entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = get_app()

    def signal_handler(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    app.start()
    logger.info("capguard running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        app.stop()

    sys.exit(0)


if __name__ == "__main__":
    main()
