"""
Tests for SessionMultiplexer: shared channels, lifecycle states, ordered frame
delivery and bounded reconnect.
"""

import json
import threading
from itertools import groupby

import pytest

from conftest import FakeTransport, wait_until
from panelbridge.errors import FatalSessionError, TransportError
from panelbridge.frames import EventFrame, TextFrame
from panelbridge.protocol import Cadence, EventKind, decode_request
from panelbridge.session import SessionMultiplexer, SessionState


class Recorder:
    def __init__(self):
        self.lock = threading.Lock()
        self.frames = []
        self.states = []
        self.fatal = []

    def on_frame(self, server, frame):
        with self.lock:
            self.frames.append(frame)

    def on_state(self, server, state):
        self.states.append(state)

    def on_fatal(self, server, error):
        self.fatal.append(error)

    def text(self):
        with self.lock:
            return b"".join(f.data for f in self.frames if isinstance(f, TextFrame))

    def events(self):
        with self.lock:
            return [f for f in self.frames if isinstance(f, EventFrame)]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def mux(transport, recorder):
    mux = SessionMultiplexer(
        transport,
        on_frame=recorder.on_frame,
        on_state=recorder.on_state,
        on_fatal=recorder.on_fatal,
        first_byte_timeout=2.0,
        reconnect_attempts=2,
        reconnect_delay=0.01,
    )
    yield mux
    mux.close_all()


def test_consumers_share_one_channel(mux, transport, profile):
    first = mux.acquire(profile, "console")
    second = mux.acquire(profile, "dashboard")
    assert first is second
    assert transport.opened == 1
    assert first.ref_count == 2
    assert mux.state("survival") == SessionState.CONNECTED


def test_channel_closes_with_last_holder(mux, transport, profile):
    mux.acquire(profile, "console")
    mux.acquire(profile, "dashboard")
    assert mux.release("survival", "console")
    assert not transport.channel.closed
    assert mux.release("survival", "dashboard")
    assert transport.channel.closed
    assert mux.state("survival") == SessionState.DISCONNECTED
    assert mux.get("survival") is None


def test_same_consumer_holds_are_counted(mux, transport, profile):
    mux.acquire(profile, "console")
    mux.acquire(profile, "console")
    mux.release("survival", "console")
    assert mux.is_open("survival")
    mux.release("survival", "console")
    assert not mux.is_open("survival")


def test_release_of_unknown_consumer_is_a_no_op(mux, profile):
    assert mux.release("survival", "ghost") is False
    mux.acquire(profile, "console")
    assert mux.release("survival", "ghost") is False
    assert mux.get("survival").ref_count == 1


def test_states_pass_through_connecting(mux, recorder, profile):
    mux.acquire(profile, "console")
    mux.release("survival", "console")
    assert recorder.states == [SessionState.CONNECTING, SessionState.CONNECTED, SessionState.DISCONNECTED]


def test_open_failure_raises_and_leaves_nothing_behind(mux, transport, profile):
    transport.fail_opens = True
    with pytest.raises(TransportError):
        mux.acquire(profile, "console")
    assert mux.get("survival") is None
    assert mux.state("survival") == SessionState.DISCONNECTED


def test_cold_start_times_out_without_output(recorder, profile):
    transport = FakeTransport(greeting=b"")
    mux = SessionMultiplexer(transport, on_frame=recorder.on_frame, first_byte_timeout=0.2)
    with pytest.raises(TransportError):
        mux.acquire(profile, "console")
    assert mux.get("survival") is None
    assert transport.channel.closed


def test_frames_are_delivered_in_arrival_order(mux, transport, recorder, profile):
    mux.acquire(profile, "console")
    channel = transport.channel
    channel.push(b"[INFO] Done\n")
    channel.push_frame("status", {"tps": 20.0})
    channel.push(b"[INFO] joined\n")
    channel.push_frame("players", {"players": []})

    assert wait_until(lambda: len(recorder.events()) == 2)
    assert wait_until(lambda: recorder.text().endswith(b"[INFO] joined\n"))
    kinds = [k for k, _ in groupby(f.kind if isinstance(f, EventFrame) else "text" for f in recorder.frames)]
    assert kinds == ["text", EventKind.STATUS, "text", EventKind.PLAYERS]
    assert recorder.text() == b"$ [INFO] Done\n[INFO] joined\n"


def test_handshake_is_recorded_on_session(mux, transport, profile):
    session = mux.acquire(profile, "console")
    transport.channel.push_frame("handshake", {"version": "1.4.0", "features": ["status"]})
    assert wait_until(lambda: session.protocol_version == "1.4.0")
    assert session.detected
    assert session.features == frozenset({"status"})


def test_send_command_requires_connected_session(mux, transport, profile):
    with pytest.raises(TransportError):
        mux.send_command("survival", "list")
    mux.acquire(profile, "console")
    mux.send_command("survival", "say hello")
    assert transport.channel.sent == ["say hello"]


def test_send_control_reports_failure_instead_of_raising(mux):
    assert mux.send_control("survival", "mcpanel e30=") is False


def test_request_cadence_writes_control_line(mux, transport, profile):
    mux.acquire(profile, "console")
    assert mux.request_cadence("survival", Cadence.HIGH)
    assert mux.requested_cadence("survival") == Cadence.HIGH
    request = decode_request(transport.channel.sent[-1])
    assert request["type"] == "CADENCE"
    assert request["payload"] == {"rate": "high"}


def test_reconnect_restores_cadence_exactly_once(mux, transport, recorder, profile):
    session = mux.acquire(profile, "console")
    mux.request_cadence("survival", Cadence.HIGH)
    first = transport.channel

    first.push_eof()
    assert wait_until(lambda: transport.opened == 2 and session.state == SessionState.CONNECTED)
    assert wait_until(lambda: len(transport.channel.sent) == 1)
    second = transport.channel
    assert first.closed
    assert decode_request(second.sent[0])["payload"] == {"rate": "high"}
    assert session.reconnects == 1
    assert SessionState.DEGRADED in recorder.states

    # still a single restore after the reader settles
    second.push(b"more output\n")
    assert wait_until(lambda: recorder.text().endswith(b"more output\n"))
    assert len(second.sent) == 1


def test_forced_reconnect_uses_same_path(mux, transport, profile):
    session = mux.acquire(profile, "console")
    assert mux.reconnect("survival")
    assert wait_until(lambda: transport.opened == 2 and session.state == SessionState.CONNECTED)
    assert session.ref_count == 1


def test_reconnect_budget_exhaustion_is_fatal_once(mux, transport, recorder, profile):
    mux.acquire(profile, "console")
    mux.acquire(profile, "dashboard")
    transport.fail_opens = True
    transport.channel.push_eof()

    assert wait_until(lambda: len(recorder.fatal) == 1)
    error = recorder.fatal[0]
    assert isinstance(error, FatalSessionError)
    assert error.attempts == 2
    assert mux.get("survival") is None
    assert mux.state("survival") == SessionState.DISCONNECTED
    mux.close_all()
    assert len(recorder.fatal) == 1


def test_teardown_flushes_partial_frame_as_text(mux, transport, recorder, profile):
    mux.acquire(profile, "console")
    transport.channel.push(b"\x1b]1337;MCPanel:eyJ0")
    assert wait_until(lambda: mux.get("survival").decoder.pending > 0)
    mux.release("survival", "console")
    assert recorder.text().endswith(b"\x1b]1337;MCPanel:eyJ0")


def test_frame_consumer_errors_do_not_stop_reader(transport, profile):
    seen = []

    def on_frame(server, frame):
        seen.append(frame)
        if len(seen) == 1:
            raise RuntimeError("consumer bug")

    mux = SessionMultiplexer(transport, on_frame=on_frame)
    mux.acquire(profile, "console")
    transport.channel.push(b"second\n")
    assert wait_until(lambda: len(seen) == 2)
    mux.close_all()


def test_session_log_records_lifecycle(transport, profile, tmp_path):
    mux = SessionMultiplexer(transport, on_frame=lambda s, f: None, log_dir=str(tmp_path))
    session = mux.acquire(profile, "console")
    mux.send_command("survival", "list")
    mux.release("survival", "console")

    lines = [json.loads(line) for line in open(session.log_path, encoding="utf-8")]
    events = [entry.get("event") for entry in lines]
    for expected in ("acquire", "channel_open", "connected", "command", "release", "closed"):
        assert expected in events
    assert all(entry["server"] == "survival" for entry in lines)


def test_list_sessions_describes_holders(mux, profile):
    mux.acquire(profile, "console")
    rows = mux.list_sessions()
    assert len(rows) == 1
    assert rows[0]["server"] == "survival"
    assert rows[0]["consumers"] == ["console"]
    assert rows[0]["state"] == "connected"


class GatedTransport(FakeTransport):
    """Holds channel opens until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()
        self.gate.set()

    def open_channel(self, server):
        self.gate.wait(5.0)
        return super().open_channel(server)


def _acquire_in_background(mux, profile, consumer):
    result = {}

    def run():
        try:
            result["session"] = mux.acquire(profile, consumer)
            result["state"] = result["session"].state
        except TransportError as exc:
            result["error"] = exc

    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    return worker, result


@pytest.fixture
def gated():
    return GatedTransport()


@pytest.fixture
def gated_mux(gated, recorder):
    mux = SessionMultiplexer(
        gated,
        on_frame=recorder.on_frame,
        on_fatal=recorder.on_fatal,
        first_byte_timeout=2.0,
        reconnect_attempts=2,
        reconnect_delay=0.01,
    )
    yield mux
    gated.gate.set()
    mux.close_all()


def test_acquire_waits_for_reconnect_to_finish(gated_mux, gated, profile):
    session = gated_mux.acquire(profile, "console")
    gated.gate.clear()
    gated.channel.push_eof()
    assert wait_until(lambda: session.state == SessionState.DEGRADED)

    worker, result = _acquire_in_background(gated_mux, profile, "dashboard")
    worker.join(0.2)
    assert worker.is_alive()

    gated.gate.set()
    worker.join(5.0)
    assert result["state"] == SessionState.CONNECTED
    assert result["session"] is session
    assert session.holders == {"console": 1, "dashboard": 1}
    gated_mux.send_command("survival", "list")
    assert gated.channel.sent == ["list"]


def test_acquire_during_failed_reconnect_raises(gated_mux, gated, recorder, profile):
    session = gated_mux.acquire(profile, "console")
    gated.gate.clear()
    gated.fail_opens = True
    gated.channel.push_eof()
    assert wait_until(lambda: session.state == SessionState.DEGRADED)

    worker, result = _acquire_in_background(gated_mux, profile, "dashboard")
    gated.gate.set()
    worker.join(5.0)
    assert isinstance(result.get("error"), TransportError)
    assert "session" not in result
    assert len(recorder.fatal) == 1
    assert gated_mux.get("survival") is None
