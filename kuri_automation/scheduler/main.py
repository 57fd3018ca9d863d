"""
Main entry point for the automation service.
Runs raffle checks, subscription funding, transaction polling and the
monitoring / reporting jobs, plus the optional dashboard server.
"""

import asyncio
import signal
from typing import List, Optional

import structlog

from kuri_automation.core.config import Settings, get_settings
from kuri_automation.core.exceptions import ConfigurationError
from kuri_automation.core.logging import setup_logging
from kuri_automation.services.automation.context import AutomationContext
from .task_scheduler import TaskScheduler


logger = structlog.get_logger(__name__)

HOUR = 3600
DAY = 24 * HOUR


class SchedulerMain:
    """Main automation service coordinator."""

    def __init__(self, settings: Optional[Settings] = None, context: Optional[AutomationContext] = None):
        self.settings = settings or get_settings()
        self.context = context
        self.task_scheduler: Optional[TaskScheduler] = None
        self.dashboard_server = None
        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._stopped = False

    async def initialize(self):
        """Initialize automation components."""
        try:
            logger.info("Initializing automation service", environment=self.settings.environment)

            if self.context is None:
                self.context = AutomationContext.from_settings(self.settings)

            self.task_scheduler = TaskScheduler()
            self._register_tasks()

            if self.settings.dashboard_enabled:
                from kuri_automation.dashboard.main import build_dashboard_server, create_dashboard_app

                app = create_dashboard_app(self.context, self.task_scheduler, self.settings)
                self.dashboard_server = build_dashboard_server(app, self.settings)

            logger.info("Automation service initialized successfully", tasks=len(self.task_scheduler.tasks))

        except Exception as e:
            logger.error("Failed to initialize automation service", error=str(e))
            raise

    def _register_tasks(self):
        settings = self.settings
        register = self.task_scheduler.register_task

        register(
            "raffle_check",
            self.context.raffles.check_and_execute_raffles,
            interval_seconds=settings.raffle_check_interval,
            cron=settings.raffle_cron
        )
        register(
            "subscription_funding",
            self.context.funding.process_unfunded_subscriptions,
            interval_seconds=settings.subscription_check_interval,
            run_immediately=True,
            cron=settings.subscription_cron
        )
        register(
            "transaction_poll",
            self.context.supervisor.poll_pending,
            interval_seconds=settings.tx_poll_interval
        )
        register(
            "system_health",
            self.context.monitoring.update_system_health,
            interval_seconds=settings.health_check_interval,
            run_immediately=True
        )
        register(
            "metrics_analysis",
            self._analyze_metrics,
            interval_seconds=settings.metrics_analysis_interval
        )
        register("performance_report", self._performance_report, interval_seconds=6 * HOUR)
        register("daily_report", self._daily_report, interval_seconds=DAY)
        register("weekly_report", self._weekly_report, interval_seconds=7 * DAY)
        register("report_cleanup", self._cleanup_reports, interval_seconds=DAY)

    async def start(self):
        """Start the automation service."""
        try:
            logger.info("Starting automation service")
            self.running = True

            self.tasks.append(asyncio.create_task(self.task_scheduler.start()))

            if self.dashboard_server is not None:
                logger.info(
                    "Starting dashboard server",
                    url=f"http://{self.settings.dashboard_host}:{self.settings.dashboard_port}"
                )
                self.tasks.append(asyncio.create_task(self.dashboard_server.serve()))

            self.tasks.append(asyncio.create_task(self._periodic_health_check()))

            logger.info("Automation service started")

            await asyncio.gather(*self.tasks, return_exceptions=True)

        except Exception as e:
            logger.error("Automation service error", error=str(e))
            raise

    async def stop(self):
        """Stop the automation service."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping automation service")
        self.running = False

        if self.task_scheduler:
            await self.task_scheduler.stop()

        if self.dashboard_server is not None:
            self.dashboard_server.should_exit = True

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        if self.context is not None:
            await self.context.close()

        logger.info("Automation service stopped")

    async def stop_raffle_checks(self):
        """Cancel the raffle timer only; funding and polling keep running."""
        await self.task_scheduler.stop_task("raffle_check")

    async def _periodic_health_check(self):
        while self.running:
            try:
                await asyncio.sleep(300)  # 5 minutes

                if not self.running:
                    break

                scheduler_health = await self.task_scheduler.health_check()
                logger.info(
                    "Automation health check",
                    healthy=scheduler_health["healthy"],
                    tasks_with_errors=scheduler_health["tasks_with_errors"],
                    pending_transactions=len(self.context.supervisor.pending()),
                    funded_subscriptions=len(self.context.store)
                )

                if not scheduler_health["healthy"]:
                    logger.warning("Task scheduler unhealthy", tasks=scheduler_health["tasks"])

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))

    # Task implementations
    async def _analyze_metrics(self):
        self.context.monitoring.analyze_metrics()
        self.context.monitoring.cleanup_old_metrics()

    async def _performance_report(self):
        self.context.reporting.generate_performance_report()

    async def _daily_report(self):
        self.context.reporting.generate_daily_report()

    async def _weekly_report(self):
        self.context.reporting.generate_weekly_report()

    async def _cleanup_reports(self):
        removed = self.context.reporting.cleanup_old_reports()
        if removed:
            logger.info("Old reports removed", count=removed)


async def main():
    """Run the automation service until SIGINT / SIGTERM."""
    try:
        settings = get_settings()
    except ConfigurationError as e:
        logger.error("Invalid configuration", errors=e.details.get("errors"))
        raise SystemExit(1) from e
    setup_logging(settings)

    service = SchedulerMain(settings)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        asyncio.get_event_loop().create_task(service.stop())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await service.initialize()
        await service.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error("Automation service failed", error=str(e))
        raise
    finally:
        await service.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
