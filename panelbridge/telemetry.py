import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from panelbridge.config import HISTORY_RETENTION, PROJECTION_GAP
from panelbridge.frames import EventFrame
from panelbridge.history import HistorySeries, Sample
from panelbridge.models import (
    BridgeHandshake, CommandTree, CompletionList, PlayerRoster, RegistryUpdate, StatusSnapshot,
    SystemInfo
)
from panelbridge.protocol import EventKind
from panelbridge.utils import log_error

SERIES_TPS = "tps"
SERIES_MSPT = "mspt"
SERIES_MEMORY = "memory"
SERIES_CPU = "cpu"
SERIES_SYSTEM_CPU = "system_cpu"
SERIES_PLAYERS = "players"
SERIES_NET_RX = "net.rx"
SERIES_NET_TX = "net.tx"


def core_series(index: int) -> str:
    return f"cpu.core.{index}"


def disk_series(mount: str) -> str:
    return f"disk.{mount}"


@dataclass(frozen=True)
class TelemetrySnapshot:
    version: int = 0
    updated_at: Optional[float] = None
    status: Optional[StatusSnapshot] = None
    players: Optional[PlayerRoster] = None
    system_info: Optional[SystemInfo] = None
    command_tree: Optional[CommandTree] = None
    completions: Optional[CompletionList] = None
    handshake: Optional[BridgeHandshake] = None
    registries: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)


def chart_samples(status: StatusSnapshot) -> Dict[str, float]:
    """Chartable scalars carried by one status update, keyed by series name."""
    values: Dict[str, Optional[float]] = {
        SERIES_TPS: status.tps,
        SERIES_MSPT: status.mspt,
        SERIES_MEMORY: status.memory_percent,
        SERIES_CPU: status.cpu_percent,
        SERIES_SYSTEM_CPU: status.system_cpu_percent,
        SERIES_PLAYERS: float(status.player_count) if status.player_count is not None else None,
    }
    for index, value in enumerate(status.per_core_cpu):
        values[core_series(index)] = value
    for disk in status.disks:
        values[disk_series(disk.mount)] = disk.usage_percent
    if status.network is not None:
        values[SERIES_NET_RX] = status.network.rx_bytes_per_sec
        values[SERIES_NET_TX] = status.network.tx_bytes_per_sec
    return {name: value for name, value in values.items() if value is not None}


class TelemetryStore:
    """Per-server telemetry state.

    Mutations go through ``apply`` and are serialized by ``write_lock``. Each
    mutation builds a new immutable TelemetrySnapshot and swaps the reference,
    so readers on any thread see either the old or the new state in full.
    """

    def __init__(
        self,
        server: str,
        retention: float = HISTORY_RETENTION,
        gap_threshold: float = PROJECTION_GAP,
        clock: Callable[[], float] = time.time,
    ):
        self.server = server
        self.retention = retention
        self.gap_threshold = gap_threshold
        self.clock = clock
        self.write_lock = threading.Lock()
        self.series_lock = threading.Lock()
        self._snapshot = TelemetrySnapshot()
        self._series: Dict[str, HistorySeries] = {}
        self._subscribers: List[Callable[[TelemetrySnapshot], None]] = []

    def snapshot(self) -> TelemetrySnapshot:
        return self._snapshot

    def series(self, name: str) -> HistorySeries:
        with self.series_lock:
            series = self._series.get(name)
            if series is None:
                series = HistorySeries(name, self.retention, self.gap_threshold, self.clock)
                self._series[name] = series
            return series

    def series_names(self) -> List[str]:
        with self.series_lock:
            return sorted(self._series)

    def query(self, name: str, window: float, max_samples: int, now: Optional[float] = None) -> List[Sample]:
        with self.series_lock:
            series = self._series.get(name)
        if series is None:
            return []
        return series.query(window, max_samples, now=now)

    def subscribe(self, callback: Callable[[TelemetrySnapshot], None]) -> Callable[[], None]:
        with self.write_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self.write_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def apply(self, event: EventFrame, timestamp: Optional[float] = None) -> bool:
        """Reduce one event into the store. Returns False for ignored kinds.

        Raises ProtocolError when a known kind carries an invalid payload; the
        store is left untouched in that case.
        """
        kind = event.kind
        if timestamp is None:
            timestamp = self.clock()

        changes: Dict[str, Any] = {}
        reply: Dict[str, Any] = {}
        registry: Optional[RegistryUpdate] = None
        if kind == EventKind.STATUS:
            changes["status"] = StatusSnapshot.from_payload(event.payload)
        elif kind == EventKind.SERVER_STATUS:
            reply = StatusSnapshot.reply_fields(event.payload)
        elif kind == EventKind.PLAYERS:
            changes["players"] = PlayerRoster.from_payload(event.payload)
        elif kind == EventKind.SYSTEM_INFO:
            changes["system_info"] = SystemInfo.from_payload(event.payload)
        elif kind == EventKind.COMMAND_TREE:
            changes["command_tree"] = CommandTree.from_payload(event.payload)
        elif kind == EventKind.COMMAND_COMPLETIONS:
            changes["completions"] = CompletionList.from_payload(event.payload)
        elif kind == EventKind.HANDSHAKE:
            changes["handshake"] = BridgeHandshake.from_payload(event.payload)
        elif kind == EventKind.REGISTRY_UPDATE:
            registry = RegistryUpdate.from_payload(event.payload)
        else:
            return False

        with self.write_lock:
            current = self._snapshot
            samples: Dict[str, float] = {}
            if kind == EventKind.STATUS:
                samples = chart_samples(changes["status"])
            elif kind == EventKind.SERVER_STATUS:
                changes["status"] = replace(current.status or StatusSnapshot(), **reply)
                # chart only what the reply measured, not the carried-over fields
                samples = chart_samples(StatusSnapshot(**reply))
            elif registry is not None:
                registries = dict(current.registries)
                registries[registry.key] = registry.values
                changes["registries"] = registries
            updated = replace(current, version=current.version + 1, updated_at=timestamp, **changes)
            for name, value in samples.items():
                self.series(name).append(timestamp, value)
            self._snapshot = updated
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(updated)
            except Exception as exc:
                log_error(f"telemetry subscriber failed ({self.server}): {exc}")
        return True

    def registry(self, plugin: str, type_name: str) -> Tuple[str, ...]:
        return self._snapshot.registries.get(f"{plugin}:{type_name}", ())

    def reset(self) -> None:
        with self.write_lock:
            self._snapshot = TelemetrySnapshot(version=self._snapshot.version + 1)
            with self.series_lock:
                self._series.clear()
