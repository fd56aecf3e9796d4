import threading
from typing import Callable, Dict, Optional, Set

from panelbridge.config import ACTIVITY_DEBOUNCE
from panelbridge.protocol import Cadence
from panelbridge.utils import log_error


class ActivityController:
    """Derives the requested bridge cadence from consumer activity.

    A consumer is active when its surface is visible; it votes high-frequency
    when it renders live charts. Re-evaluation is debounced: any number of
    changes within ``debounce`` seconds collapse into one evaluation, and a
    control command is only sent when the desired cadence differs from the
    one the session last requested.
    """

    def __init__(
        self,
        current: Callable[[str], Optional[Cadence]],
        request: Callable[[str, Cadence], bool],
        debounce: float = ACTIVITY_DEBOUNCE,
    ):
        self.current = current
        self.request = request
        self.debounce = debounce
        self.lock = threading.Lock()
        self.active: Dict[str, Dict[str, bool]] = {}
        self.timers: Dict[str, threading.Timer] = {}

    def set_active(self, server: str, consumer: str, active: bool, high_frequency: bool = False) -> None:
        with self.lock:
            votes = self.active.setdefault(server, {})
            if active:
                votes[consumer] = high_frequency
            else:
                votes.pop(consumer, None)
        self.schedule(server)

    def consumer_released(self, server: str, consumer: str) -> None:
        with self.lock:
            votes = self.active.get(server)
            if not votes or consumer not in votes:
                return
            votes.pop(consumer, None)
        self.schedule(server)

    def active_consumers(self, server: str) -> Set[str]:
        with self.lock:
            return set(self.active.get(server, {}))

    def desired(self, server: str) -> Cadence:
        with self.lock:
            votes = self.active.get(server, {})
            return Cadence.HIGH if any(votes.values()) else Cadence.LOW

    def schedule(self, server: str) -> None:
        if self.debounce <= 0:
            self.evaluate(server)
            return
        with self.lock:
            if server in self.timers:
                return
            timer = threading.Timer(self.debounce, self._fire, args=(server,))
            timer.daemon = True
            self.timers[server] = timer
        timer.start()

    def _fire(self, server: str) -> None:
        with self.lock:
            self.timers.pop(server, None)
        self.evaluate(server)

    def evaluate(self, server: str) -> Optional[Cadence]:
        """Send a cadence request if needed. Returns the cadence sent, if any."""
        desired = self.desired(server)
        current = self.current(server)
        if current == desired:
            return None
        if current is None and desired == Cadence.LOW:
            # bridge starts at its idle rate
            return None
        try:
            sent = self.request(server, desired)
        except Exception as exc:
            log_error(f"cadence request failed ({server}): {exc}")
            return None
        return desired if sent else None

    def flush(self, server: Optional[str] = None) -> None:
        """Run pending debounced evaluations now."""
        with self.lock:
            servers = [server] if server is not None else list(self.timers)
            timers = [self.timers.pop(s) for s in servers if s in self.timers]
        for timer in timers:
            timer.cancel()
        for name in servers:
            self.evaluate(name)

    def forget(self, server: str) -> None:
        with self.lock:
            self.active.pop(server, None)
            timer = self.timers.pop(server, None)
        if timer is not None:
            timer.cancel()

    def close(self) -> None:
        with self.lock:
            timers = list(self.timers.values())
            self.timers.clear()
        for timer in timers:
            timer.cancel()
