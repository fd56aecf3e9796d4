import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from panelbridge.config import HISTORY_RETENTION, PROJECTION_GAP


@dataclass(frozen=True)
class Sample:
    timestamp: float
    value: float
    projected: bool = False


class HistorySeries:
    """Time-windowed history of one metric.

    Samples are kept in strictly increasing timestamp order. Anything older
    than ``retention`` seconds behind the newest sample (or behind the clock,
    on query) is evicted; eviction is by age, not by count, since the bridge
    cadence changes at runtime.
    """

    def __init__(
        self,
        name: str,
        retention: float = HISTORY_RETENTION,
        gap_threshold: float = PROJECTION_GAP,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.retention = retention
        self.gap_threshold = gap_threshold
        self.clock = clock
        self.lock = threading.Lock()
        self.samples: Deque[Sample] = deque()
        self.last_timestamp: Optional[float] = None
        self.dropped = 0

    def __len__(self) -> int:
        with self.lock:
            return len(self.samples)

    def append(self, timestamp: float, value: float) -> bool:
        with self.lock:
            if self.last_timestamp is not None and timestamp <= self.last_timestamp:
                self.dropped += 1
                return False
            if timestamp < self.clock() - self.retention:
                self.dropped += 1
                return False
            self.samples.append(Sample(timestamp, float(value)))
            self.last_timestamp = timestamp
            self._evict(timestamp - self.retention)
            return True

    def _evict(self, cutoff: float) -> None:
        while self.samples and self.samples[0].timestamp < cutoff:
            self.samples.popleft()

    def last(self) -> Optional[Sample]:
        with self.lock:
            return self.samples[-1] if self.samples else None

    def query(self, window: float, max_samples: int, now: Optional[float] = None) -> List[Sample]:
        """Real samples in [now - window, now], thinned by uniform stride.

        When the newest sample is older than the gap threshold its value is
        projected to ``now`` as an extra point flagged ``projected``.
        """
        if now is None:
            now = self.clock()
        cutoff = now - window
        with self.lock:
            self._evict(now - self.retention)
            points = [s for s in self.samples if cutoff <= s.timestamp <= now]
            latest = self.samples[-1] if self.samples else None

        project = latest is not None and latest.timestamp <= now and now - latest.timestamp > self.gap_threshold
        budget = max(0, max_samples - 1) if project and max_samples > 1 else max_samples
        points = _downsample(points, budget)
        if project and max_samples > 0 and len(points) < max_samples:
            points.append(Sample(now, latest.value, projected=True))
        return points

    def clear(self) -> None:
        with self.lock:
            self.samples.clear()
            self.last_timestamp = None


def _downsample(points: List[Sample], limit: int) -> List[Sample]:
    count = len(points)
    if limit <= 0:
        return []
    if count <= limit:
        return points
    if limit == 1:
        return [points[-1]]
    step = (count - 1) / (limit - 1)
    return [points[min(count - 1, int(math.floor(i * step + 0.5)))] for i in range(limit)]
