"""
Operational monitoring for the automation agent.

Collects per-transaction metrics reported by the supervisor and the funding
orchestrator, samples process and RPC health, and raises threshold alerts.
"""

import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import psutil
import structlog


logger = structlog.get_logger(__name__)

AlertCallback = Callable[[str, str], None]

METRICS_RETENTION_SECONDS = 7 * 24 * 3600
ANALYSIS_WINDOW_SECONDS = 3600


@dataclass
class TransactionMetrics:
    """Outcome of one confirmed or reverted transaction."""
    tx_hash: str
    market_address: str
    operation_type: str  # raffle | funding
    gas_used: int
    confirmation_time: float
    success: bool
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_metrics(metrics: List[TransactionMetrics]) -> Dict[str, Any]:
    total = len(metrics)
    failed = sum(1 for m in metrics if not m.success)
    return {
        "success_rate": (total - failed) / total if total else 0.0,
        "average_gas_usage": sum(m.gas_used for m in metrics) // total if total else 0,
        "average_confirmation_time": sum(m.confirmation_time for m in metrics) / total if total else 0.0,
        "total_transactions": total,
        "failed_transactions": failed,
    }


@dataclass
class SystemHealth:
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    network_latency: float = 0.0
    node_status: str = "healthy"  # healthy | degraded | error
    last_update_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AlertConfig:
    gas_threshold: int = 500_000
    error_rate_threshold: float = 0.1
    confirmation_time_threshold: float = 5.0
    network_latency_threshold: float = 1.0


@dataclass
class Alert:
    message: str
    severity: str
    timestamp: float = field(default_factory=time.time)


class MonitoringService:
    """In-memory metrics store with alerting."""

    def __init__(
        self,
        chain_reader=None,
        alert_config: Optional[AlertConfig] = None,
        clock: Callable[[], float] = time.time,
        max_alerts: int = 100
    ):
        self.chain_reader = chain_reader
        self.alert_config = alert_config or AlertConfig()
        self.clock = clock
        self.max_alerts = max_alerts
        self.logger = logger.bind(service="monitoring")

        self._metrics: Dict[str, List[TransactionMetrics]] = defaultdict(list)
        self._health = SystemHealth()
        self._alert_callbacks: List[AlertCallback] = []
        self.alerts: List[Alert] = []

    def record_transaction(
        self,
        tx_hash: str,
        market_address: str,
        operation_type: str,
        gas_used: int,
        confirmation_time: float,
        success: bool
    ) -> TransactionMetrics:
        metrics = TransactionMetrics(
            tx_hash=tx_hash,
            market_address=market_address,
            operation_type=operation_type,
            gas_used=gas_used,
            confirmation_time=confirmation_time,
            success=success,
            timestamp=self.clock(),
        )
        self._metrics[market_address].append(metrics)
        self._check_thresholds(metrics)
        return metrics

    def _check_thresholds(self, metrics: TransactionMetrics):
        if metrics.gas_used > self.alert_config.gas_threshold:
            self._trigger_alert(
                f"High gas usage for {metrics.operation_type} in market {metrics.market_address}: {metrics.gas_used}",
                "warning"
            )
        if metrics.confirmation_time > self.alert_config.confirmation_time_threshold:
            self._trigger_alert(
                f"Slow confirmation for {metrics.operation_type} in market {metrics.market_address}: "
                f"{metrics.confirmation_time:.1f}s",
                "warning"
            )

    async def update_system_health(self) -> SystemHealth:
        """Sample RPC latency and process resource usage."""
        latency = 0.0
        node_status = "healthy"

        if self.chain_reader is not None:
            started = time.monotonic()
            try:
                await self.chain_reader.get_block_number()
                latency = time.monotonic() - started
                node_status = self._node_status(latency)
            except Exception as e:
                node_status = "error"
                self.logger.error("RPC health probe failed", error=str(e))
                self._trigger_alert("System health update failed: RPC unreachable", "error")

        process = psutil.Process()
        self._health = SystemHealth(
            cpu_percent=process.cpu_percent(interval=None),
            memory_mb=process.memory_info().rss / 1024 / 1024,
            network_latency=latency,
            node_status=node_status,
            last_update_time=self.clock(),
        )

        self.logger.debug("System health updated", **self._health.to_dict())
        return self._health

    def _node_status(self, latency: float) -> str:
        threshold = self.alert_config.network_latency_threshold
        if latency > threshold * 2:
            return "error"
        if latency > threshold:
            return "degraded"
        return "healthy"

    def analyze_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-market summary over the last hour; warns on high failure rates."""
        now = self.clock()
        summary = {}

        for market_address, market_metrics in self._metrics.items():
            recent = [m for m in market_metrics if now - m.timestamp < ANALYSIS_WINDOW_SECONDS]
            if not recent:
                continue

            summary[market_address] = summarize_metrics(recent)
            success_rate = summary[market_address]["success_rate"]

            if success_rate < 1 - self.alert_config.error_rate_threshold:
                self._trigger_alert(
                    f"High failure rate for market {market_address}: {(1 - success_rate) * 100:.1f}%",
                    "warning"
                )

        if summary:
            self.logger.info("Market metrics analysis", markets=len(summary))
        return summary

    def cleanup_old_metrics(self):
        now = self.clock()
        for market_address in list(self._metrics):
            kept = [m for m in self._metrics[market_address] if now - m.timestamp < METRICS_RETENTION_SECONDS]
            if kept:
                self._metrics[market_address] = kept
            else:
                del self._metrics[market_address]

    def register_alert_callback(self, callback: AlertCallback):
        self._alert_callbacks.append(callback)

    def _trigger_alert(self, message: str, severity: str):
        log = self.logger.error if severity == "error" else self.logger.warning
        log("🚨 Alert", message=message, severity=severity)

        self.alerts.append(Alert(message=message, severity=severity, timestamp=self.clock()))
        del self.alerts[:-self.max_alerts]

        for callback in self._alert_callbacks:
            try:
                callback(message, severity)
            except Exception as e:
                self.logger.error("Alert callback failed", error=str(e))

    def get_system_health(self) -> SystemHealth:
        return self._health

    def get_market_metrics(self, market_address: str) -> List[TransactionMetrics]:
        return list(self._metrics.get(market_address, []))

    def tracked_markets(self) -> List[str]:
        return list(self._metrics)

    def update_alert_config(self, **changes):
        for key, value in changes.items():
            if not hasattr(self.alert_config, key):
                raise AttributeError(f"Unknown alert setting: {key}")
            setattr(self.alert_config, key, value)
