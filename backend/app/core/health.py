"""
Health check aggregation — deep health probe for the delivery engine.

Checks:
    • Message store reachability (ping)
    • Retry scheduler loop (running, last sweep)
    • Presence registry (open channels)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings
from backend.app.core.errors import PersistenceError

if TYPE_CHECKING:
    from backend.app.delivery.runtime import DeliveryRuntime

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_message_store(runtime: "DeliveryRuntime") -> ComponentHealth:
    """An unreachable store makes the service unable to accept messages."""
    comp = ComponentHealth(name="message_store")
    start = time.monotonic()
    comp.details = {"backend": type(runtime.store).__name__}
    try:
        await runtime.store.ping()
        comp.message = "Store reachable"
    except PersistenceError as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = e.message
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_retry_scheduler(runtime: "DeliveryRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="retry_scheduler")
    start = time.monotonic()
    scheduler = runtime.scheduler

    comp.details = {
        "enabled": runtime.scheduler_enabled,
        "running": scheduler.running,
        "interval_seconds": scheduler.interval_seconds,
        "ticks": scheduler.ticks,
    }
    if scheduler.last_report is not None:
        comp.details["last_sweep"] = scheduler.last_report.to_dict()

    if runtime.scheduler_enabled and not scheduler.running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler loop not running; queued messages wait for reconnect"
    elif not runtime.scheduler_enabled:
        comp.message = "Scheduler disabled"
    else:
        comp.message = f"{scheduler.ticks} sweep(s) completed"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_presence(runtime: "DeliveryRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="presence")
    start = time.monotonic()
    snapshot = runtime.presence.snapshot()
    comp.details = {
        "recipients": len(snapshot),
        "channels": runtime.presence.channel_count,
    }
    comp.message = f"{len(snapshot)} reachable recipient(s)"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(runtime: "DeliveryRuntime") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_message_store(runtime),
        check_retry_scheduler(runtime),
        check_presence(runtime),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check: %s", report.status.value)
    return report
