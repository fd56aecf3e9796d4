"""
Shared fixtures: an in-memory PTY transport and a polling helper.

Sessions run real reader threads against these fakes, so assertions about
asynchronous effects go through ``wait_until`` rather than fixed sleeps.
"""

import queue
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

import pytest

from panelbridge.errors import TransportError
from panelbridge.protocol import encode_frame
from panelbridge.transport import Channel, ServerProfile, Transport

_EOF = object()


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeChannel(Channel):
    def __init__(self, greeting: bytes = b""):
        self.inbox: "queue.Queue" = queue.Queue()
        self.sent: List[str] = []
        self.closed = False
        self.lock = threading.Lock()
        if greeting:
            self.push(greeting)

    def push(self, data: bytes) -> None:
        self.inbox.put(data)

    def push_frame(self, type_name: str, payload: Optional[dict] = None) -> None:
        self.push(encode_frame(type_name, {"payload": payload} if payload is not None else None))

    def push_eof(self) -> None:
        self.inbox.put(_EOF)

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise TransportError("channel closed")
        try:
            item = self.inbox.get(timeout=0.02)
        except queue.Empty:
            raise socket.timeout()
        if item is _EOF:
            return b""
        return item

    def send(self, data: bytes) -> None:
        if self.closed:
            raise TransportError("channel closed")
        with self.lock:
            self.sent.extend(line for line in data.decode("utf-8").split("\n") if line)

    def close(self) -> None:
        self.closed = True


class FakeTransport(Transport):
    def __init__(self, greeting: bytes = b"$ "):
        self.greeting = greeting
        self.channels: List[FakeChannel] = []
        self.fail_opens = False
        self.commands: List[str] = []
        self.files: Dict[str, str] = {}
        self.closed = False

    @property
    def opened(self) -> int:
        return len(self.channels)

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    def open_channel(self, server: ServerProfile) -> Channel:
        if self.fail_opens:
            raise TransportError(f"connect to {server.host} refused")
        channel = FakeChannel(self.greeting)
        self.channels.append(channel)
        return channel

    def run_once(self, server: ServerProfile, command: str) -> str:
        self.commands.append(command)
        for path, content in self.files.items():
            if path in command:
                return content
        return ""

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def profile() -> ServerProfile:
    return ServerProfile(
        name="survival",
        host="mc.example.net",
        user="minecraft",
        server_path="/srv/survival",
        session_type="screen",
        session_name="mc",
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
