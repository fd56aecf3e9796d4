import os
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from panelbridge.config import (
    BUFFER_SIZE, FIRST_BYTE_TIMEOUT, MAX_FRAME_BYTES, READER_JOIN_TIMEOUT,
    RECONNECT_ATTEMPTS, RECONNECT_DELAY
)
from panelbridge.errors import FatalSessionError, ProtocolError, TransportError
from panelbridge.frames import EventFrame, Frame, FrameDecoder
from panelbridge.models import BridgeHandshake
from panelbridge.protocol import Cadence, EventKind, cadence_request
from panelbridge.transport import Channel, ServerProfile, Transport
from panelbridge.utils import iso_now, json_line, log_error, safe_name


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass
class BridgeSession:
    server: ServerProfile
    log_path: str = ""
    max_frame_bytes: int = MAX_FRAME_BYTES

    state: SessionState = SessionState.DISCONNECTED
    holders: Dict[str, int] = field(default_factory=dict)
    cadence: Optional[Cadence] = None
    last_seen: Optional[float] = None
    detected: bool = False
    protocol_version: Optional[str] = None
    features: FrozenSet[str] = frozenset()
    reconnects: int = 0
    bytes_received: int = 0
    created_at: datetime = field(default_factory=datetime.now)

    channel: Optional[Channel] = None
    reader: Optional[threading.Thread] = None
    open_error: Optional[BaseException] = None
    decoder: FrameDecoder = field(init=False)
    ready: threading.Event = field(default_factory=threading.Event)
    # set while connected or closed, cleared for the length of a reconnect
    usable: threading.Event = field(default_factory=threading.Event)
    stop: threading.Event = field(default_factory=threading.Event)
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    decode_lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self):
        self.decoder = FrameDecoder(max_frame_bytes=self.max_frame_bytes)

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def ref_count(self) -> int:
        return sum(self.holders.values())

    def log(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "server": self.name}
        data.update(payload)
        json_line(self.log_path, data)

    def info(self) -> Dict[str, Any]:
        return {
            "server": self.name,
            "state": self.state.value,
            "ref_count": self.ref_count,
            "consumers": sorted(self.holders),
            "cadence": self.cadence.value if self.cadence else None,
            "last_seen": datetime.fromtimestamp(self.last_seen).isoformat() if self.last_seen else None,
            "bridge_detected": self.detected,
            "protocol_version": self.protocol_version,
            "features": sorted(self.features),
            "reconnects": self.reconnects,
            "bytes_received": self.bytes_received,
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.log_path,
        }


class SessionMultiplexer:
    """Shares one PTY channel per server between named consumers.

    The channel is opened by the first ``acquire`` and closed when the last
    holder releases. A reader thread per session feeds the frame decoder and
    hands frames to ``on_frame`` in arrival order; it is the only thread that
    decodes for its session.
    """

    def __init__(
        self,
        transport: Transport,
        on_frame: Callable[[str, Frame], None],
        on_state: Optional[Callable[[str, SessionState], None]] = None,
        on_fatal: Optional[Callable[[str, FatalSessionError], None]] = None,
        log_dir: str = "",
        first_byte_timeout: float = FIRST_BYTE_TIMEOUT,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ):
        self.transport = transport
        self.on_frame = on_frame
        self.on_state = on_state
        self.on_fatal = on_fatal
        self.log_dir = log_dir
        self.first_byte_timeout = first_byte_timeout
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.max_frame_bytes = max_frame_bytes
        self.lock = threading.Lock()
        self.sessions: Dict[str, BridgeSession] = {}

    def _build_log_path(self, server: ServerProfile) -> str:
        if not self.log_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return os.path.join(self.log_dir, f"{safe_name(server.name)}__{stamp}.log")

    # ----- lookup -----

    def get(self, server: str) -> Optional[BridgeSession]:
        with self.lock:
            return self.sessions.get(server)

    def state(self, server: str) -> SessionState:
        session = self.get(server)
        return session.state if session else SessionState.DISCONNECTED

    def is_open(self, server: str) -> bool:
        session = self.get(server)
        return bool(session and session.channel is not None)

    def requested_cadence(self, server: str) -> Optional[Cadence]:
        session = self.get(server)
        return session.cadence if session else None

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self.lock:
            sessions = list(self.sessions.values())
        return [s.info() for s in sorted(sessions, key=lambda s: s.name)]

    # ----- acquire / release -----

    def acquire(self, server: ServerProfile, consumer: str, timeout: Optional[float] = None) -> BridgeSession:
        """Register ``consumer`` and block until the session is usable.

        Raises TransportError when the channel cannot be opened or produces
        no output before the first-byte timeout; the consumer is not counted
        in that case. A consumer arriving during a reconnect waits for its
        outcome and gets the same error if the session is lost meanwhile.
        """
        with self.lock:
            session = self.sessions.get(server.name)
            if session is None:
                session = BridgeSession(
                    server=server,
                    log_path=self._build_log_path(server),
                    max_frame_bytes=self.max_frame_bytes,
                )
                self.sessions[server.name] = session
            session.holders[consumer] = session.holders.get(consumer, 0) + 1
            opening = session.state == SessionState.DISCONNECTED
            if opening:
                session.state = SessionState.CONNECTING
        session.log("IN", {"event": "acquire", "consumer": consumer, "ref_count": session.ref_count})

        if opening:
            self._notify_state(session)
            try:
                self._open(session)
            except TransportError as exc:
                self._teardown(session, exc)
                raise

        wait_for = self.first_byte_timeout if timeout is None else timeout
        if not session.ready.wait(wait_for):
            error = TransportError(f"no output from {server.name} within {wait_for:.1f}s")
            self._teardown(session, error)
            raise error
        if session.open_error is not None:
            error = session.open_error
            if isinstance(error, TransportError):
                raise error
            raise TransportError(str(error))

        # a reconnect may be under way; wait for it to settle either way
        if not session.usable.wait(self._recovery_window() + wait_for):
            self.release(server.name, consumer)
            raise TransportError(f"session {server.name} is still reconnecting")
        with self.lock:
            state = session.state
        if state != SessionState.CONNECTED:
            raise TransportError(f"session {server.name} closed while acquiring")
        return session

    def release(self, server: str, consumer: str) -> bool:
        """Drop one hold of ``consumer``. Unknown consumers are ignored."""
        with self.lock:
            session = self.sessions.get(server)
            if session is None or consumer not in session.holders:
                return False
            session.holders[consumer] -= 1
            if session.holders[consumer] <= 0:
                del session.holders[consumer]
            last = not session.holders
        session.log("IN", {"event": "release", "consumer": consumer, "ref_count": session.ref_count})
        if last:
            self._teardown(session)
        return True

    def reconnect(self, server: str) -> bool:
        """Force the reader through the reconnect path."""
        session = self.get(server)
        if session is None or session.state != SessionState.CONNECTED or session.channel is None:
            return False
        session.log("IN", {"event": "forced_reconnect"})
        session.channel.close()
        return True

    def close_all(self) -> None:
        with self.lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            self._teardown(session)

    # ----- writing -----

    def send_command(self, server: str, text: str) -> None:
        """Write ``text`` plus newline to the server console."""
        session = self.get(server)
        if session is None or session.state != SessionState.CONNECTED or session.channel is None:
            state = session.state.value if session else SessionState.DISCONNECTED.value
            raise TransportError(f"session {server} is {state}")
        self._write(session, text + "\n")
        session.log("IN", {"event": "command", "text": text})

    def send_control(self, server: str, line: str) -> bool:
        try:
            self.send_command(server, line)
        except TransportError as exc:
            log_error(f"control command not sent ({server}): {exc}")
            return False
        return True

    def request_cadence(self, server: str, cadence: Cadence) -> bool:
        session = self.get(server)
        if session is None or session.state != SessionState.CONNECTED:
            return False
        if not self.send_control(server, cadence_request(cadence)):
            return False
        session.cadence = Cadence(cadence)
        session.log("SYS", {"event": "cadence_requested", "cadence": session.cadence.value})
        return True

    def _write(self, session: BridgeSession, data: str) -> None:
        channel = session.channel
        if channel is None:
            raise TransportError(f"session {session.name} has no channel")
        with session.write_lock:
            channel.send(data.encode("utf-8"))

    # ----- lifecycle internals -----

    def _recovery_window(self) -> float:
        return self.reconnect_attempts * (self.reconnect_delay + self.first_byte_timeout)

    def _notify_state(self, session: BridgeSession) -> None:
        if self.on_state is None:
            return
        try:
            self.on_state(session.name, session.state)
        except Exception as exc:
            log_error(f"state listener failed ({session.name}): {exc}")

    def _open(self, session: BridgeSession) -> None:
        channel = self.transport.open_channel(session.server)
        with self.lock:
            if session.stop.is_set():
                channel.close()
                raise TransportError(f"session {session.name} released while connecting")
            session.channel = channel
        session.log("SYS", {"event": "channel_open", "host": session.server.host, "port": session.server.port})
        thread = threading.Thread(target=self._reader_loop, args=(session, channel), daemon=True)
        session.reader = thread
        thread.start()

    def _reader_loop(self, session: BridgeSession, channel: Channel) -> None:
        session.log("SYS", {"event": "reader_started"})
        while not session.stop.is_set():
            try:
                data = channel.recv(BUFFER_SIZE)
            except socket.timeout:
                continue
            except TransportError as exc:
                error = exc
            except Exception as exc:
                error = TransportError(str(exc))
            else:
                if data:
                    self._on_bytes(session, data)
                    continue
                error = TransportError("channel closed by remote")

            if session.stop.is_set():
                break
            replacement = self._recover(session, channel, error)
            if replacement is None:
                break
            channel = replacement
        session.log("SYS", {"event": "reader_finished", "state": session.state.value})

    def _on_bytes(self, session: BridgeSession, data: bytes) -> None:
        first = False
        with self.lock:
            if session.state == SessionState.CONNECTING:
                session.state = SessionState.CONNECTED
                first = True
            session.last_seen = time.time()
            session.bytes_received += len(data)
        if first:
            session.log("SYS", {"event": "connected", "first_bytes": len(data)})
            self._notify_state(session)
            session.usable.set()
            session.ready.set()
        with session.decode_lock:
            rejected = session.decoder.frames_rejected
            frames = session.decoder.feed(data)
            if session.decoder.frames_rejected != rejected:
                session.log("SYS", {"event": "frames_dropped", "count": session.decoder.frames_rejected - rejected})
            for frame in frames:
                self._dispatch(session, frame)

    def _dispatch(self, session: BridgeSession, frame: Frame) -> None:
        if isinstance(frame, EventFrame):
            if not session.detected:
                session.detected = True
                session.log("SYS", {"event": "bridge_detected", "type": frame.type_name})
            if frame.kind == EventKind.HANDSHAKE:
                try:
                    handshake = BridgeHandshake.from_payload(frame.payload)
                    session.protocol_version = handshake.version
                    session.features = handshake.features
                except ProtocolError:
                    pass
        try:
            self.on_frame(session.name, frame)
        except Exception as exc:
            log_error(f"frame consumer failed ({session.name}): {exc}")

    def _recover(self, session: BridgeSession, channel: Channel, error: TransportError) -> Optional[Channel]:
        with self.lock:
            if session.stop.is_set():
                return None
            before = session.state
            if before != SessionState.CONNECTING:
                session.state = SessionState.DEGRADED
                session.usable.clear()
        channel.close()
        if before == SessionState.CONNECTING:
            session.log("SYS", {"event": "connect_failed", "error": str(error)})
            self._teardown(session, error)
            return None

        session.log("SYS", {"event": "degraded", "error": str(error)})
        log_error(f"session {session.name} degraded: {error}")
        self._notify_state(session)

        for attempt in range(1, self.reconnect_attempts + 1):
            if session.stop.wait(self.reconnect_delay):
                return None
            try:
                replacement = self.transport.open_channel(session.server)
            except TransportError as exc:
                session.log("SYS", {"event": "reconnect_failed", "attempt": attempt, "error": str(exc)})
                continue
            with self.lock:
                if session.stop.is_set():
                    replacement.close()
                    return None
                session.channel = replacement
                session.state = SessionState.CONNECTED
                session.reconnects += 1
                cadence = session.cadence
            with session.decode_lock:
                # the remote re-handshakes; a half-read frame is meaningless now
                session.decoder.reset()
            session.log("SYS", {"event": "reconnected", "attempt": attempt})
            self._notify_state(session)
            if cadence is not None:
                try:
                    self._write(session, cadence_request(cadence) + "\n")
                    session.log("SYS", {"event": "cadence_restored", "cadence": cadence.value})
                except TransportError as exc:
                    log_error(f"cadence restore failed ({session.name}): {exc}")
            session.usable.set()
            return replacement

        fatal = FatalSessionError(
            f"session {session.name} lost after {self.reconnect_attempts} reconnect attempts: {error}",
            server=session.name,
            attempts=self.reconnect_attempts,
        )
        self._teardown(session, fatal)
        return None

    def _teardown(self, session: BridgeSession, error: Optional[BaseException] = None) -> None:
        with self.lock:
            if session.stop.is_set():
                return
            if self.sessions.get(session.name) is session:
                del self.sessions[session.name]
            session.stop.set()
            session.state = SessionState.DISCONNECTED
            session.holders.clear()
            session.usable.set()
            channel = session.channel
            session.channel = None
            if not session.ready.is_set():
                session.open_error = error or TransportError(f"session {session.name} closed before connecting")
                session.ready.set()

        if channel is not None:
            channel.close()
        reader = session.reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(READER_JOIN_TIMEOUT)
        with session.decode_lock:
            for frame in session.decoder.flush():
                self._dispatch(session, frame)

        session.log("SYS", {"event": "closed", "error": str(error) if error else ""})
        self._notify_state(session)
        if isinstance(error, FatalSessionError):
            log_error(str(error))
            if self.on_fatal is not None:
                try:
                    self.on_fatal(session.name, error)
                except Exception as exc:
                    log_error(f"fatal listener failed ({session.name}): {exc}")
