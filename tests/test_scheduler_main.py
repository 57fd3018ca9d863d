"""
Test the service coordinator wiring with an injected context.
"""

import asyncio

import pytest

from kuri_automation.scheduler.main import SchedulerMain
from kuri_automation.services.automation.context import AutomationContext

from .conftest import MARKET_A, FakeDirectory


@pytest.fixture
def service(settings, chain_reader, chain_writer, clock):
    settings = settings.model_copy(update={"dashboard_enabled": False})
    context = AutomationContext(
        settings,
        indexer=FakeDirectory([MARKET_A]),
        chain_reader=chain_reader,
        chain_writer=chain_writer,
        clock=clock,
    )
    return SchedulerMain(settings, context=context)


@pytest.mark.asyncio
async def test_initialize_registers_every_job(service):
    await service.initialize()

    assert set(service.task_scheduler.tasks) == {
        "raffle_check",
        "subscription_funding",
        "transaction_poll",
        "system_health",
        "metrics_analysis",
        "performance_report",
        "daily_report",
        "weekly_report",
        "report_cleanup",
    }
    assert service.task_scheduler.tasks["subscription_funding"].should_run() is True
    assert service.task_scheduler.tasks["raffle_check"].should_run() is False
    assert service.task_scheduler.tasks["raffle_check"].interval_seconds == 300
    assert service.dashboard_server is None


@pytest.mark.asyncio
async def test_stop_raffle_checks_leaves_other_jobs_running(service):
    await service.initialize()
    runner = asyncio.create_task(service.start())
    await asyncio.sleep(0.05)

    await service.stop_raffle_checks()

    assert service.task_scheduler.is_task_running("raffle_check") is False
    assert service.task_scheduler.is_task_running("transaction_poll") is True

    await service.stop()
    await runner
    assert service.running is False


@pytest.mark.asyncio
async def test_stop_is_idempotent(service):
    await service.initialize()

    await service.stop()
    await service.stop()

    assert service._stopped is True


@pytest.mark.asyncio
async def test_report_jobs_write_files(service, settings):
    await service.initialize()

    await service._daily_report()
    await service._performance_report()

    names = sorted(p.name.split("-report-")[0] for p in service.context.reporting.output_dir.iterdir())
    assert names == ["daily", "performance"]


@pytest.mark.asyncio
async def test_cron_settings_drive_raffle_and_funding_jobs(settings, chain_reader, chain_writer, clock):
    settings = settings.model_copy(update={
        "dashboard_enabled": False,
        "raffle_cron": "*/1 * * * *",
        "subscription_cron": "30 * * * *",
    })
    context = AutomationContext(
        settings,
        indexer=FakeDirectory([MARKET_A]),
        chain_reader=chain_reader,
        chain_writer=chain_writer,
        clock=clock,
    )
    service = SchedulerMain(settings, context=context)

    await service.initialize()

    tasks = service.task_scheduler.tasks
    assert tasks["raffle_check"].cron == "*/1 * * * *"
    assert tasks["subscription_funding"].cron == "30 * * * *"
    assert tasks["transaction_poll"].cron is None
