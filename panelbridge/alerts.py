import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple

from panelbridge.config import ALERT_COOLDOWN, MAX_RECENT_ALERTS
from panelbridge.models import StatusSnapshot
from panelbridge.telemetry import TelemetrySnapshot
from panelbridge.utils import log_error


@dataclass(frozen=True)
class Threshold:
    metric: str  # tps | mspt | memory
    severity: str  # warning | critical
    threshold: float
    sustained_seconds: float

    @property
    def key(self) -> str:
        return f"{self.metric}-{self.severity}"

    def is_triggered(self, value: float) -> bool:
        if self.metric == "tps":
            return value < self.threshold
        return value > self.threshold


DEFAULT_THRESHOLDS: Tuple[Threshold, ...] = (
    Threshold("tps", "warning", 18, 30),
    Threshold("tps", "critical", 15, 10),
    Threshold("mspt", "warning", 45, 30),
    Threshold("mspt", "critical", 50, 10),
    Threshold("memory", "warning", 85, 60),
    Threshold("memory", "critical", 95, 30),
)


@dataclass(frozen=True)
class PerformanceAlert:
    server: str
    metric: str
    severity: str
    value: float
    threshold: float
    timestamp: float

    def message(self) -> str:
        direction = "below" if self.metric == "tps" else "above"
        return (
            f"{self.severity.upper()} {self.server}: {self.metric} {self.value:.1f} "
            f"{direction} {self.threshold:g}"
        )


def _metric_value(status: StatusSnapshot, metric: str) -> Optional[float]:
    if metric == "tps":
        return status.tps
    if metric == "mspt":
        return status.mspt
    if metric == "memory":
        return status.memory_percent
    return None


class PerformanceAlerts:
    """Sustained-threshold alerts over a server's status updates."""

    def __init__(
        self,
        server: str,
        thresholds: Tuple[Threshold, ...] = DEFAULT_THRESHOLDS,
        cooldown: float = ALERT_COOLDOWN,
        clock: Callable[[], float] = time.time,
        notify: Optional[Callable[[PerformanceAlert], None]] = None,
    ):
        self.server = server
        self.thresholds = thresholds
        self.cooldown = cooldown
        self.clock = clock
        self.notify = notify
        self.lock = threading.Lock()
        self.violation_started: Dict[str, float] = {}
        self.last_alert: Dict[str, float] = {}
        self.recent: Deque[PerformanceAlert] = deque(maxlen=MAX_RECENT_ALERTS)
        self.last_status: Optional[StatusSnapshot] = None

    def on_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        # only fresh status updates count, not roster or tree changes
        if snapshot.status is None or snapshot.status is self.last_status:
            return
        self.last_status = snapshot.status
        self.check(snapshot.status, snapshot.updated_at)

    def check(self, status: StatusSnapshot, now: Optional[float] = None) -> List[PerformanceAlert]:
        if now is None:
            now = self.clock()
        fired: List[PerformanceAlert] = []
        with self.lock:
            for threshold in self.thresholds:
                value = _metric_value(status, threshold.metric)
                key = threshold.key
                if value is None or not threshold.is_triggered(value):
                    self.violation_started.pop(key, None)
                    continue
                started = self.violation_started.setdefault(key, now)
                if now - started < threshold.sustained_seconds:
                    continue
                last = self.last_alert.get(key)
                if last is not None and now - last < self.cooldown:
                    continue
                self.last_alert[key] = now
                alert = PerformanceAlert(
                    server=self.server,
                    metric=threshold.metric,
                    severity=threshold.severity,
                    value=value,
                    threshold=threshold.threshold,
                    timestamp=now,
                )
                self.recent.append(alert)
                fired.append(alert)

        for alert in fired:
            log_error(alert.message())
            if self.notify is not None:
                try:
                    self.notify(alert)
                except Exception as exc:
                    log_error(f"alert listener failed ({self.server}): {exc}")
        return fired

    def recent_alerts(self) -> List[PerformanceAlert]:
        with self.lock:
            return list(self.recent)
