"""
JSON report files built from monitoring data.

Report types: daily, weekly, performance, incident. Each report is a single
file ``<type>-report-<stamp>.json`` in the reports directory with a unix
``timestamp`` field used for lookups and retention.
"""

import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from kuri_automation.core.exceptions import PersistenceError
from .monitoring_service import MonitoringService, TransactionMetrics, summarize_metrics


logger = structlog.get_logger(__name__)

REPORT_TYPES = ("daily", "weekly", "performance", "incident")
SEVERITIES = ("low", "medium", "high")

HOUR = 3600
DAY = 24 * HOUR


class ReportingService:
    """Writes and reads report files for the metrics held by ``MonitoringService``."""

    def __init__(
        self,
        monitoring: MonitoringService,
        output_dir: Union[str, Path] = "reports",
        retention_days: int = 30,
        clock: Callable[[], float] = time.time
    ):
        self.monitoring = monitoring
        self.output_dir = Path(output_dir)
        self.retention_days = retention_days
        self.clock = clock
        self.logger = logger.bind(service="reporting")

    def _stamp(self, timestamp: float, with_time: bool = True) -> str:
        moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        if not with_time:
            return moment.strftime("%Y-%m-%d")
        return moment.strftime("%Y-%m-%dT%H-%M-%S")

    def _write(self, filename: str, report: Dict[str, Any]) -> Path:
        path = self.output_dir / filename
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as f:
                json.dump(report, f, indent=2, default=str)
        except OSError as e:
            raise PersistenceError(f"Cannot write report {path}: {e}", {"path": str(path)}) from e

        self.logger.info("Report generated", type=report["type"], path=str(path))
        return path

    def _window(self, market_address: str, seconds: float, now: float) -> List[TransactionMetrics]:
        return [
            m for m in self.monitoring.get_market_metrics(market_address)
            if now - m.timestamp < seconds
        ]

    def generate_performance_report(self) -> Path:
        """Per-market performance over the last six hours."""
        now = self.clock()
        performance = []

        for market_address in self.monitoring.tracked_markets():
            recent = self._window(market_address, 6 * HOUR, now)
            if recent:
                performance.append({"market_address": market_address, "metrics": summarize_metrics(recent)})

        report = {
            "type": "performance",
            "timestamp": now,
            "system_health": self.monitoring.get_system_health().to_dict(),
            "performance_metrics": performance,
        }
        return self._write(f"performance-report-{self._stamp(now)}.json", report)

    def generate_daily_report(self) -> Path:
        now = self.clock()
        markets = [
            {
                "market_address": market_address,
                "metrics": summarize_metrics(self._window(market_address, DAY, now)),
                "incidents": [],
            }
            for market_address in self.monitoring.tracked_markets()
        ]

        report = {
            "type": "daily",
            "timestamp": now,
            "system_health": self.monitoring.get_system_health().to_dict(),
            "markets": markets,
        }
        return self._write(f"daily-report-{self._stamp(now, with_time=False)}.json", report)

    def generate_weekly_report(self) -> Path:
        """Aggregate of the daily reports written in the past seven days."""
        now = self.clock()
        daily_reports = self.get_recent_reports("daily", 7)

        total = 0
        failed = 0
        confirmation_times = []
        market_performance: Dict[str, Dict[str, int]] = {}

        for daily in daily_reports:
            for market in daily.get("markets", []):
                metrics = market["metrics"]
                total += metrics["total_transactions"]
                failed += metrics["failed_transactions"]
                if metrics["total_transactions"]:
                    confirmation_times.append(metrics["average_confirmation_time"])

                stats = market_performance.setdefault(
                    market["market_address"],
                    {"total_transactions": 0, "successful_transactions": 0}
                )
                stats["total_transactions"] += metrics["total_transactions"]
                stats["successful_transactions"] += metrics["total_transactions"] - metrics["failed_transactions"]

        report = {
            "type": "weekly",
            "timestamp": now,
            "summary": {
                "total_transactions": total,
                "successful_transactions": total - failed,
                "average_confirmation_time": (
                    sum(confirmation_times) / len(confirmation_times) if confirmation_times else 0.0
                ),
                "market_performance": market_performance,
            },
            "daily_reports": len(daily_reports),
        }
        return self._write(f"weekly-report-{self._stamp(now, with_time=False)}.json", report)

    def generate_incident_report(
        self,
        market_address: str,
        incident_type: str,
        description: str,
        severity: str = "medium",
        timestamp: Optional[float] = None
    ) -> Path:
        if severity not in SEVERITIES:
            raise ValueError(f"Severity must be one of: {list(SEVERITIES)}")

        when = timestamp if timestamp is not None else self.clock()
        report = {
            "type": "incident",
            "timestamp": when,
            "market_address": market_address,
            "incident": {
                "type": incident_type,
                "description": description,
                "severity": severity,
                "timestamp": when,
            },
            "system_state": {
                "health": self.monitoring.get_system_health().to_dict(),
                "recent_metrics": [m.to_dict() for m in self._window(market_address, HOUR, when)],
            },
        }
        return self._write(f"incident-report-{market_address}-{self._stamp(when)}.json", report)

    def get_recent_reports(self, report_type: str, days: int = 7) -> List[Dict[str, Any]]:
        """Reports of ``report_type`` newer than ``days`` days, newest first."""
        if report_type not in REPORT_TYPES:
            raise ValueError(f"Report type must be one of: {list(REPORT_TYPES)}")
        if not self.output_dir.exists():
            return []

        cutoff = self.clock() - days * DAY
        reports = []

        for path in self.output_dir.glob(f"{report_type}-report-*.json"):
            try:
                with path.open("r", encoding="utf-8") as f:
                    report = json.load(f)
            except (OSError, ValueError) as e:
                self.logger.warning("Skipping unreadable report", path=str(path), error=str(e))
                continue

            if report.get("timestamp", 0) > cutoff:
                reports.append(report)

        return sorted(reports, key=lambda r: r["timestamp"], reverse=True)

    def cleanup_old_reports(self) -> int:
        """Delete report files older than the retention period. Returns the count."""
        if not self.output_dir.exists():
            return 0

        cutoff = self.clock() - self.retention_days * DAY
        removed = 0

        for path in self.output_dir.glob("*-report-*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
                    self.logger.info("Deleted old report", file=path.name)
            except OSError as e:
                self.logger.error("Failed to delete report", file=path.name, error=str(e))

        return removed
