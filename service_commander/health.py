"""
Service Commander — Health Monitor
═══════════════════════════════════════════════════
Point-in-time health sampling, derived resource metrics, threshold alerts
and periodic monitoring with a bounded in-memory history per container.

Published topics:
  health-update   {container_id, health, timestamp}            every tick
  metrics-update  {container_id, metrics, timestamp}           when stats were read
  health-alert    {container_id, type, severity, message, timestamp}

History lives in memory only and is lost on restart.
"""

import logging
import platform
import socket
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional

import psutil

from .config import (
    CPU_CRITICAL_PERCENT,
    CPU_WARNING_PERCENT,
    DEFAULT_MONITOR_INTERVAL_MS,
    HEALTH_HISTORY_LIMIT,
    LABEL_PREFIX,
    MEMORY_CRITICAL_PERCENT,
    MEMORY_WARNING_PERCENT,
    MIN_MONITOR_INTERVAL_MS,
    RESTART_WARNING_COUNT,
)
from .events import HEALTH_ALERT, HEALTH_UPDATE, METRICS_UPDATE, EventBus
from .labels import is_managed, managed_filter
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    CpuMetrics,
    DiskMetrics,
    HealthSample,
    HealthStatus,
    MemoryMetrics,
    NetworkMetrics,
    utcnow,
)
from .runtime import RuntimeClient, container_name

logger = logging.getLogger(__name__)

TIME_WINDOWS = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}
DEFAULT_WINDOW = "1h"


# ── Metric Derivation ─────────────────────────────────────

def _host_cpu_count() -> int:
    return psutil.cpu_count(logical=True) or 1


def calculate_metrics(stats: Dict[str, Any]) -> Dict[str, Any]:
    """
    Derive cpu/memory/network/disk metrics from one Docker stats sample.

    CPU% = (cpu delta / system delta) × cores × 100, where the deltas are
    taken between cpu_stats and precpu_stats. A non-positive system delta or
    a negative cpu delta yields 0.
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}

    cpu_delta = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) - \
                (precpu_stats.get("cpu_usage") or {}).get("total_usage", 0)
    system_delta = (cpu_stats.get("system_cpu_usage") or 0) - \
                   (precpu_stats.get("system_cpu_usage") or 0)
    cores = cpu_stats.get("online_cpus") \
        or len((cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or []) \
        or _host_cpu_count()
    cpu_percent = (cpu_delta / system_delta) * cores * 100.0 \
        if system_delta > 0 and cpu_delta >= 0 else 0.0

    memory_stats = stats.get("memory_stats") or {}
    mem_usage = memory_stats.get("usage") or 0
    mem_limit = memory_stats.get("limit") or 0
    mem_percent = (mem_usage / mem_limit) * 100.0 if mem_limit > 0 else 0.0

    networks = list((stats.get("networks") or {}).values())
    rx = sum((n or {}).get("rx_bytes", 0) for n in networks)
    tx = sum((n or {}).get("tx_bytes", 0) for n in networks)

    read = write = 0
    for entry in (stats.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = str((entry or {}).get("op", "")).lower()
        if op == "read":
            read += entry.get("value", 0) or 0
        elif op == "write":
            write += entry.get("value", 0) or 0

    return {
        "cpu": CpuMetrics(percentage=cpu_percent, cores=cores),
        "memory": MemoryMetrics(usage_bytes=mem_usage, limit_bytes=mem_limit, percentage=mem_percent),
        "network": NetworkMetrics(rx_bytes=rx, tx_bytes=tx, total_bytes=rx + tx),
        "disk": DiskMetrics(read_bytes=read, write_bytes=write, total_bytes=read + write),
    }


# ── Health Monitor ────────────────────────────────────────

class HealthMonitor:

    def __init__(
        self,
        runtime: RuntimeClient,
        bus: Optional[EventBus] = None,
        history_limit: int = HEALTH_HISTORY_LIMIT,
        cpu_warning: float = CPU_WARNING_PERCENT,
        cpu_critical: float = CPU_CRITICAL_PERCENT,
        memory_warning: float = MEMORY_WARNING_PERCENT,
        memory_critical: float = MEMORY_CRITICAL_PERCENT,
        restart_warning: int = RESTART_WARNING_COUNT,
        min_interval_ms: int = MIN_MONITOR_INTERVAL_MS,
        label_prefix: str = LABEL_PREFIX,
    ):
        self.runtime = runtime
        self.bus = bus
        self.history_limit = history_limit
        self.cpu_warning = cpu_warning
        self.cpu_critical = cpu_critical
        self.memory_warning = memory_warning
        self.memory_critical = memory_critical
        self.restart_warning = restart_warning
        self.min_interval_ms = min_interval_ms
        self.label_prefix = label_prefix

        self._history: Dict[str, Deque[HealthSample]] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._intervals: Dict[str, int] = {}
        # Bumped on every start/stop; a tick from an older generation never re-arms
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()

    # ── Sampling ──

    def sample_health(self, container_id: str) -> HealthSample:
        """Inspect (+ one stats read if running). Never raises; unmanaged ids are unreachable."""
        try:
            attrs = self.runtime.inspect_container(container_id)
        except Exception as e:
            logger.warning(f"[Health] Inspect failed for {container_id[:12]}: {e}")
            return HealthSample(container_id=container_id, status=HealthStatus.UNREACHABLE, error=str(e))
        if not is_managed((attrs.get("Config") or {}).get("Labels"), self.label_prefix):
            return HealthSample(container_id=container_id, status=HealthStatus.UNREACHABLE, error="not managed")

        state = attrs.get("State") or {}
        running = bool(state.get("Running"))
        sample = HealthSample(
            container_id=container_id,
            status=HealthStatus.UP if running else HealthStatus.DOWN,
            running=running,
            restart_count=attrs.get("RestartCount", 0) or 0,
            exit_code=state.get("ExitCode"),
            started_at=state.get("StartedAt"),
        )
        if not running:
            return sample

        try:
            stats = self.runtime.stats_once(container_id)
            for field, value in calculate_metrics(stats).items():
                setattr(sample, field, value)
            sample.metrics_available = True
        except Exception as e:
            logger.warning(f"[Health] Stats failed for {container_id[:12]}: {e}")
        return sample

    def evaluate_alerts(self, container_id: str, sample: HealthSample) -> List[Alert]:
        """Threshold checks; per metric only the highest crossed level fires."""
        alerts: List[Alert] = []

        def add(alert_type: AlertType, severity: AlertSeverity, message: str):
            alerts.append(Alert(container_id=container_id, type=alert_type, severity=severity, message=message))

        if sample.metrics_available:
            cpu = sample.cpu.percentage
            if cpu > self.cpu_critical:
                add(AlertType.CRITICAL_CPU, AlertSeverity.CRITICAL, f"Critical CPU usage: {cpu:.1f}%")
            elif cpu > self.cpu_warning:
                add(AlertType.HIGH_CPU, AlertSeverity.WARNING, f"High CPU usage: {cpu:.1f}%")

            mem = sample.memory.percentage
            if mem > self.memory_critical:
                add(AlertType.CRITICAL_MEMORY, AlertSeverity.CRITICAL, f"Critical memory usage: {mem:.1f}%")
            elif mem > self.memory_warning:
                add(AlertType.HIGH_MEMORY, AlertSeverity.WARNING, f"High memory usage: {mem:.1f}%")

        if sample.status == HealthStatus.DOWN:
            add(AlertType.CONTAINER_DOWN, AlertSeverity.CRITICAL, "Container is not running")
        elif sample.status == HealthStatus.UNREACHABLE:
            add(AlertType.CONTAINER_UNREACHABLE, AlertSeverity.ERROR, "Container is unreachable")

        if sample.restart_count > self.restart_warning:
            add(AlertType.HIGH_RESTARTS, AlertSeverity.WARNING,
                f"Container has restarted {sample.restart_count} times")
        return alerts

    # ── History ──

    def record(self, sample: HealthSample) -> None:
        with self._lock:
            history = self._history.get(sample.container_id)
            if history is None:
                history = deque(maxlen=self.history_limit)
                self._history[sample.container_id] = history
        history.append(sample)

    def get_history(self, container_id: str) -> List[HealthSample]:
        return list(self._history.get(container_id, ()))

    def get_historical_data(self, container_id: str, window: str = DEFAULT_WINDOW) -> List[Dict]:
        """History entries inside the window (1h, 6h, 24h, 7d; anything else means 1h)."""
        cutoff = utcnow() - TIME_WINDOWS.get(window, TIME_WINDOWS[DEFAULT_WINDOW])
        return [
            s.model_dump(mode="json", exclude={"container_id"})
            for s in self.get_history(container_id)
            if s.timestamp >= cutoff
        ]

    # ── Monitoring Loop ──

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(topic, payload)

    def _publish_alert(self, alert: Alert) -> None:
        self._publish(HEALTH_ALERT, alert.model_dump(mode="json"))

    def check(self, container_id: str) -> HealthSample:
        """One monitoring tick: sample, store, publish updates and alerts."""
        sample = self.sample_health(container_id)
        self.record(sample)
        timestamp = sample.timestamp.isoformat()

        self._publish(HEALTH_UPDATE, {
            "container_id": container_id,
            "health": sample.model_dump(mode="json"),
            "timestamp": timestamp,
        })
        if sample.metrics_available:
            self._publish(METRICS_UPDATE, {
                "container_id": container_id,
                "metrics": sample.metrics(),
                "timestamp": timestamp,
            })
        for alert in self.evaluate_alerts(container_id, sample):
            self._publish_alert(alert)
        return sample

    def _tick(self, container_id: str, generation: int) -> None:
        with self._lock:
            if self._generations.get(container_id) != generation:
                return
        try:
            self.check(container_id)
        except Exception as e:
            logger.error(f"[Health] Monitoring error for {container_id[:12]}: {e}")
            self._publish_alert(Alert(
                container_id=container_id,
                type=AlertType.MONITORING_ERROR,
                severity=AlertSeverity.ERROR,
                message=f"Monitoring error: {e}",
            ))
        with self._lock:
            if self._generations.get(container_id) == generation:
                self._arm(container_id, generation)

    def _arm(self, container_id: str, generation: int) -> None:
        """Caller holds self._lock."""
        timer = threading.Timer(
            self._intervals[container_id] / 1000.0,
            self._tick,
            args=(container_id, generation),
        )
        timer.daemon = True
        self._timers[container_id] = timer
        timer.start()

    def start_monitoring(self, container_id: str, interval_ms: int = DEFAULT_MONITOR_INTERVAL_MS) -> None:
        """Start (or restart with a new interval) periodic checks. At most one timer per container."""
        interval_ms = max(int(interval_ms), self.min_interval_ms)
        with self._lock:
            existing = self._timers.pop(container_id, None)
            if existing:
                existing.cancel()
            generation = self._generations.get(container_id, 0) + 1
            self._generations[container_id] = generation
            self._intervals[container_id] = interval_ms
            self._arm(container_id, generation)
        logger.info(f"[Health] Monitoring {container_id[:12]} every {interval_ms}ms")

    def stop_monitoring(self, container_id: str) -> bool:
        """Idempotent. Returns whether a monitor was active."""
        with self._lock:
            timer = self._timers.pop(container_id, None)
            self._intervals.pop(container_id, None)
            self._generations.pop(container_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info(f"[Health] Stopped monitoring {container_id[:12]}")
        return True

    def is_monitoring(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._timers

    def interval_for(self, container_id: str) -> Optional[int]:
        with self._lock:
            return self._intervals.get(container_id)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.items())
            self._timers.clear()
            self._intervals.clear()
            self._generations.clear()
        for container_id, timer in timers:
            timer.cancel()
        if timers:
            logger.info(f"[Health] Cancelled {len(timers)} monitor(s)")

    # ── Queries ──

    def get_service_health(self, container_id: str) -> HealthSample:
        return self.sample_health(container_id)

    def get_service_metrics(self, container_id: str, window: str = DEFAULT_WINDOW) -> Dict:
        sample = self.sample_health(container_id)
        return {
            "current": sample.metrics(),
            "historical": self.get_historical_data(container_id, window),
            "status": sample.status.value,
            "last_check": sample.timestamp.isoformat(),
            "error": sample.error,
        }

    def get_all_services_health(self) -> List[Dict]:
        """Every managed container (running or stopped) with a fresh sample."""
        results = []
        for attrs in self.runtime.list_containers(labels=managed_filter(self.label_prefix), all=True):
            container_id = attrs.get("Id", "")
            config = attrs.get("Config") or {}
            state = attrs.get("State") or {}
            results.append({
                "id": container_id,
                "name": container_name(attrs),
                "image": config.get("Image", ""),
                "created": attrs.get("Created", ""),
                "state": state.get("Status", "unknown"),
                "labels": config.get("Labels") or {},
                "health": self.sample_health(container_id).model_dump(mode="json"),
            })
        results.sort(key=lambda r: r["name"])
        results.sort(key=lambda r: r["created"], reverse=True)
        return results

    def get_monitoring_status(self) -> Dict[str, Dict]:
        with self._lock:
            intervals = dict(self._intervals)
        return {
            container_id: {
                "is_monitoring": True,
                "interval_ms": interval,
                "history_count": len(self._history.get(container_id, ())),
            }
            for container_id, interval in intervals.items()
        }

    def get_system_metrics(self) -> Dict:
        """Host-level figures for the dashboard's system panel."""
        memory = psutil.virtual_memory()
        try:
            load = list(psutil.getloadavg())
        except (AttributeError, OSError):
            load = []
        interfaces = {
            name: [addr.address for addr in addrs if addr.family == socket.AF_INET]
            for name, addrs in psutil.net_if_addrs().items()
        }
        return {
            "hostname": platform.node(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "uptime": int(time.time() - psutil.boot_time()),
            "loadavg": load,
            "total_memory": memory.total,
            "free_memory": memory.available,
            "used_memory": memory.total - memory.available,
            "memory_usage_percentage": memory.percent,
            "cpu_count": _host_cpu_count(),
            "cpu_percent": psutil.cpu_percent(interval=None),
            "network_interfaces": interfaces,
            "timestamp": utcnow().isoformat(),
        }
