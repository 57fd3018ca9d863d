"""
Test report generation, lookup and retention.
"""

import json
import os

import pytest

from kuri_automation.services.monitoring_service import MonitoringService
from kuri_automation.services.reporting_service import ReportingService

from .conftest import MARKET_A, MARKET_B


@pytest.fixture
def monitoring(clock):
    service = MonitoringService(clock=clock)
    service.record_transaction("0x01", MARKET_A, "raffle", 100_000, 2.0, True)
    service.record_transaction("0x02", MARKET_A, "raffle", 140_000, 4.0, False)
    service.record_transaction("0x03", MARKET_B, "funding", 60_000, 1.0, True)
    return service


@pytest.fixture
def reporting(monitoring, tmp_path, clock):
    return ReportingService(monitoring, output_dir=tmp_path / "reports", retention_days=30, clock=clock)


def test_performance_report_summarizes_recent_metrics(reporting):
    path = reporting.generate_performance_report()

    report = json.loads(path.read_text())
    assert path.name.startswith("performance-report-")
    assert report["type"] == "performance"
    by_market = {entry["market_address"]: entry["metrics"] for entry in report["performance_metrics"]}
    assert by_market[MARKET_A]["total_transactions"] == 2
    assert by_market[MARKET_A]["failed_transactions"] == 1
    assert by_market[MARKET_A]["average_gas_usage"] == 120_000
    assert by_market[MARKET_A]["average_confirmation_time"] == 3.0
    assert by_market[MARKET_B]["success_rate"] == 1.0


def test_performance_report_skips_markets_without_recent_activity(reporting, clock):
    clock.advance(7 * 3600)

    report = json.loads(reporting.generate_performance_report().read_text())

    assert report["performance_metrics"] == []


def test_daily_and_weekly_reports(reporting):
    daily = json.loads(reporting.generate_daily_report().read_text())
    assert {m["market_address"] for m in daily["markets"]} == {MARKET_A, MARKET_B}

    weekly = json.loads(reporting.generate_weekly_report().read_text())
    assert weekly["daily_reports"] == 1
    assert weekly["summary"]["total_transactions"] == 3
    assert weekly["summary"]["successful_transactions"] == 2
    assert weekly["summary"]["market_performance"][MARKET_A] == {
        "total_transactions": 2,
        "successful_transactions": 1,
    }


def test_incident_report_contents(reporting):
    path = reporting.generate_incident_report(MARKET_A, "raffle_failed", "kuriNarukk reverted twice", "high")

    report = json.loads(path.read_text())
    assert report["market_address"] == MARKET_A
    assert report["incident"]["severity"] == "high"
    assert report["incident"]["description"] == "kuriNarukk reverted twice"
    assert len(report["system_state"]["recent_metrics"]) == 2


def test_incident_report_rejects_unknown_severity(reporting):
    with pytest.raises(ValueError):
        reporting.generate_incident_report(MARKET_A, "x", "y", "critical")


def test_recent_reports_newest_first_within_window(reporting, clock):
    reporting.generate_incident_report(MARKET_A, "first", "older", "low")
    clock.advance(60)
    reporting.generate_incident_report(MARKET_A, "second", "newer", "low")

    reports = reporting.get_recent_reports("incident", days=7)
    assert [r["incident"]["type"] for r in reports] == ["second", "first"]

    clock.advance(8 * 86400)
    assert reporting.get_recent_reports("incident", days=7) == []


def test_recent_reports_unknown_type(reporting):
    with pytest.raises(ValueError):
        reporting.get_recent_reports("hourly", 1)


def test_recent_reports_without_directory(monitoring, tmp_path, clock):
    service = ReportingService(monitoring, output_dir=tmp_path / "nowhere", clock=clock)

    assert service.get_recent_reports("daily", 7) == []
    assert service.cleanup_old_reports() == 0


def test_cleanup_removes_files_past_retention(reporting, clock):
    old = reporting.generate_incident_report(MARKET_A, "old", "old", "low")
    fresh = reporting.generate_daily_report()
    expired = clock.now - 31 * 86400
    os.utime(old, (expired, expired))
    os.utime(fresh, (clock.now, clock.now))

    assert reporting.cleanup_old_reports() == 1
    assert not old.exists()
    assert fresh.exists()
