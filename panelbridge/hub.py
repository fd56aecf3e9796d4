import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from panelbridge.activity import ActivityController
from panelbridge.alerts import PerformanceAlerts
from panelbridge.completion import CompletionEngine
from panelbridge.config import ACTIVITY_DEBOUNCE, TREE_FETCH_MIN_INTERVAL
from panelbridge.console import ConsoleBuffer
from panelbridge.errors import FatalSessionError, ProtocolError, TransportError
from panelbridge.frames import EventFrame, Frame, TextFrame
from panelbridge.models import CommandTree
from panelbridge.protocol import (
    EventKind, completion_request, players_request, status_request, tree_request
)
from panelbridge.session import BridgeSession, SessionMultiplexer, SessionState
from panelbridge.telemetry import TelemetryStore
from panelbridge.transport import ServerProfile, Transport
from panelbridge.utils import log_error


@dataclass
class ServerBridge:
    profile: ServerProfile
    store: TelemetryStore
    completion: CompletionEngine
    console: ConsoleBuffer
    alerts: PerformanceAlerts
    fatal_error: Optional[str] = None
    last_tree_fetch: Optional[float] = None
    ignored_types: set = field(default_factory=set)


class BridgeHub:
    """Per-server wiring of session, telemetry, completion and activity."""

    def __init__(
        self,
        transport: Transport,
        cache_dirs: Optional[Dict[str, str]] = None,
        activity_debounce: float = ACTIVITY_DEBOUNCE,
        tree_fetch_interval: float = TREE_FETCH_MIN_INTERVAL,
        **session_options: Any,
    ):
        self.transport = transport
        self.cache_dirs = cache_dirs or {}
        self.tree_fetch_interval = tree_fetch_interval
        self.lock = threading.Lock()
        self.servers: Dict[str, ServerBridge] = {}
        self.mux = SessionMultiplexer(
            transport,
            on_frame=self._on_frame,
            on_fatal=self._on_fatal,
            log_dir=self.cache_dirs.get("sessions_dir", ""),
            **session_options,
        )
        self.activity = ActivityController(
            current=self.mux.requested_cadence,
            request=self.mux.request_cadence,
            debounce=activity_debounce,
        )

    # ----- registry -----

    def add_server(self, profile: ServerProfile) -> ServerBridge:
        with self.lock:
            bridge = self.servers.get(profile.name)
            if bridge is not None:
                return bridge
            store = TelemetryStore(profile.name)
            alerts = PerformanceAlerts(profile.name)
            store.subscribe(alerts.on_snapshot)
            bridge = ServerBridge(
                profile=profile,
                store=store,
                completion=CompletionEngine(
                    profile.name,
                    cache_dir=self.cache_dirs.get("commands_dir", ""),
                    requester=lambda: self._request_tree(profile.name),
                ),
                console=ConsoleBuffer(profile.name),
                alerts=alerts,
            )
            self.servers[profile.name] = bridge
            return bridge

    def get(self, server: str) -> Optional[ServerBridge]:
        with self.lock:
            return self.servers.get(server)

    def default_server(self) -> Optional[str]:
        with self.lock:
            return next(iter(self.servers), None)

    # ----- consumer operations -----

    def acquire(self, server: str, consumer: str) -> BridgeSession:
        bridge = self._require(server)
        session = self.mux.acquire(bridge.profile, consumer)
        bridge.fatal_error = None
        self.activity.schedule(server)
        return session

    def release(self, server: str, consumer: str) -> bool:
        released = self.mux.release(server, consumer)
        if released:
            session = self.mux.get(server)
            if session is None or consumer not in session.holders:
                self.activity.consumer_released(server, consumer)
        return released

    def set_active(self, server: str, consumer: str, active: bool, high_frequency: bool = False) -> None:
        self._require(server)
        self.activity.set_active(server, consumer, active, high_frequency)

    def send_command(self, server: str, text: str) -> None:
        self.mux.send_command(server, text)

    def request_completions(self, server: str, buffer: str) -> bool:
        return self.mux.send_control(server, completion_request(buffer))

    def request_refresh(self, server: str) -> bool:
        """Ask the bridge to push status and roster now instead of at the next tick."""
        sent = self.mux.send_control(server, status_request())
        return self.mux.send_control(server, players_request()) and sent

    def fetch_tree(self, server: str, from_file: bool = True) -> Dict[str, Any]:
        """Ask for a fresh command tree over the console and, if allowed, the plugin's commands.json."""
        bridge = self._require(server)
        requested = bridge.completion.fetch_tree()
        reading = self.refresh_tree_from_file(server, force=True) if from_file else False
        return {"requested": requested, "file_fetch_started": reading}

    def refresh_tree_from_file(self, server: str, force: bool = False) -> bool:
        bridge = self._require(server)
        now = time.time()
        with self.lock:
            last = bridge.last_tree_fetch
            if not force and last is not None and now - last < self.tree_fetch_interval:
                return False
            bridge.last_tree_fetch = now
        worker = threading.Thread(target=self._read_tree_file, args=(bridge,), daemon=True)
        worker.start()
        return True

    def session_state(self, server: str) -> SessionState:
        return self.mux.state(server)

    def list_sessions(self) -> List[Dict[str, Any]]:
        rows = []
        with self.lock:
            bridges = list(self.servers.values())
        for bridge in bridges:
            session = self.mux.get(bridge.profile.name)
            row = session.info() if session else {
                "server": bridge.profile.name,
                "state": SessionState.DISCONNECTED.value,
                "ref_count": 0,
                "consumers": [],
            }
            row["active_consumers"] = sorted(self.activity.active_consumers(bridge.profile.name))
            row["has_command_tree"] = bridge.completion.has_tree()
            if bridge.fatal_error:
                row["fatal_error"] = bridge.fatal_error
            rows.append(row)
        return rows

    def close(self) -> None:
        self.activity.close()
        self.mux.close_all()
        self.transport.close()

    # ----- frame routing (reader thread) -----

    def _on_frame(self, server: str, frame: Frame) -> None:
        bridge = self.get(server)
        if bridge is None:
            return
        if isinstance(frame, TextFrame):
            bridge.console.append_bytes(frame.data)
            return
        self._on_event(bridge, frame)

    def _on_event(self, bridge: ServerBridge, event: EventFrame) -> None:
        server = bridge.profile.name
        if event.kind is None:
            if event.type_name not in bridge.ignored_types:
                bridge.ignored_types.add(event.type_name)
                log_error(f"ignoring unknown bridge message type '{event.type_name}' ({server})")
            return

        if event.kind == EventKind.COMMANDS_UPDATED:
            self.refresh_tree_from_file(server)
            bridge.completion.fetch_tree()
            return

        try:
            bridge.store.apply(event)
        except ProtocolError as exc:
            log_error(f"dropped {event.type_name} event ({server}): {exc}")
            return

        if event.kind == EventKind.COMMAND_TREE:
            bridge.completion.set_tree(bridge.store.snapshot().command_tree)
        elif event.kind == EventKind.HANDSHAKE:
            self.refresh_tree_from_file(server)

    def _on_fatal(self, server: str, error: FatalSessionError) -> None:
        bridge = self.get(server)
        if bridge is not None:
            bridge.fatal_error = str(error)
        self.activity.forget(server)

    # ----- tree fetch helpers -----

    def _request_tree(self, server: str) -> bool:
        return self.mux.send_control(server, tree_request())

    def _read_tree_file(self, bridge: ServerBridge) -> None:
        profile = bridge.profile
        try:
            raw = self.transport.run_once(profile, f"test -e '{profile.commands_file}' && cat '{profile.commands_file}'")
        except TransportError as exc:
            log_error(f"commands.json fetch failed ({profile.name}): {exc}")
            return
        raw = raw.strip()
        if not raw:
            return
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            log_error(f"commands.json unreadable ({profile.name}): {exc}")
            return
        event = EventFrame(type_name=EventKind.COMMAND_TREE.value, payload=payload, kind=EventKind.COMMAND_TREE)
        try:
            bridge.store.apply(event)
        except ProtocolError as exc:
            log_error(f"commands.json rejected ({profile.name}): {exc}")
            return
        tree: Optional[CommandTree] = bridge.store.snapshot().command_tree
        if tree is not None:
            bridge.completion.set_tree(tree)

    def _require(self, server: str) -> ServerBridge:
        bridge = self.get(server)
        if bridge is None:
            raise KeyError(f"unknown server '{server}'")
        return bridge
