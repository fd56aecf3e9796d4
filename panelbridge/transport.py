import socket
import threading
from dataclasses import dataclass
from typing import Optional

import paramiko

from panelbridge.config import (
    BUFFER_SIZE, CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, RECV_POLL_TIMEOUT, TERM_ENV, config
)
from panelbridge.errors import TransportError


@dataclass
class ServerProfile:
    name: str
    host: str
    user: str
    port: int = 22
    password: Optional[str] = None
    key_path: Optional[str] = None
    key_passphrase: Optional[str] = None
    verify_host_key: bool = True
    server_path: str = ""
    plugins_path: str = ""
    session_type: str = "direct"
    session_name: Optional[str] = None

    @property
    def effective_plugins_path(self) -> str:
        if self.plugins_path:
            return self.plugins_path
        base = self.server_path.rstrip("/") if self.server_path else "."
        return f"{base}/plugins"

    @property
    def commands_file(self) -> str:
        return f"{self.effective_plugins_path}/MCPanelBridge/commands.json"

    def remote_command(self) -> str:
        """Command attached to the PTY, by session type."""
        name = self.session_name
        if self.session_type == "screen":
            if name:
                cmd = f"screen -x '{name}' || screen -r '{name}'"
            else:
                cmd = "screen -x $(screen -ls | awk '/[0-9]+\\./ {print $1; exit}') 2>/dev/null || screen -ls"
        elif self.session_type == "tmux":
            # keep tmux out of the alternate screen so scrollback survives
            overrides = "tmux set-option -g -a terminal-overrides ',xterm*:smcup@:rmcup@' \\;"
            if name:
                cmd = f"{overrides} attach-session -t '{name}'"
            else:
                cmd = f"{overrides} attach-session 2>/dev/null || tmux list-sessions"
        elif self.session_type == "mcwrap":
            path = self.server_path or "."
            cmd = f"mcwrap-pty attach '{path}' --raw 2>/dev/null || mcwrap attach '{path}' --raw"
        else:
            path = self.server_path or "~"
            cmd = f"cd '{path}' && exec bash"
        return f"{TERM_ENV} {cmd}"

    @classmethod
    def from_config(cls) -> "ServerProfile":
        return cls(
            name=config.SERVER_NAME,
            host=config.SSH_HOST or "",
            user=config.SSH_USER or "",
            port=config.SSH_PORT,
            password=config.SSH_PASSWORD,
            key_path=config.SSH_KEY_PATH,
            key_passphrase=config.SSH_KEY_PASSPHRASE,
            verify_host_key=config.SSH_VERIFY_HOST_KEY,
            server_path=config.SERVER_PATH,
            plugins_path=config.PLUGINS_PATH,
            session_type=config.SESSION_TYPE,
            session_name=config.SESSION_NAME,
        )


class Channel:
    """Bidirectional PTY byte stream.

    ``recv`` returns b"" on EOF, raises ``socket.timeout`` when nothing arrived
    within the poll interval and TransportError on failure.
    """

    def recv(self, size: int) -> bytes:
        raise NotImplementedError

    def send(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class Transport:
    def open_channel(self, server: ServerProfile) -> Channel:
        raise NotImplementedError

    def run_once(self, server: ServerProfile, command: str) -> str:
        raise NotImplementedError

    def close(self) -> None:
        pass


class ParamikoChannel(Channel):
    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel):
        self.client = client
        self.channel = channel
        self.closed = False

    def recv(self, size: int = BUFFER_SIZE) -> bytes:
        try:
            return self.channel.recv(size)
        except socket.timeout:
            raise
        except Exception as exc:
            raise TransportError(f"recv failed: {exc}") from exc

    def send(self, data: bytes) -> None:
        if self.closed or self.channel.closed:
            raise TransportError("channel closed")
        try:
            self.channel.sendall(data)
        except Exception as exc:
            raise TransportError(f"send failed: {exc}") from exc

    def close(self) -> None:
        self.closed = True
        try:
            self.channel.close()
        except Exception:
            pass
        try:
            self.client.close()
        except Exception:
            pass


class ParamikoTransport(Transport):
    """SSH transport: one client per PTY channel, a pooled client for one-shot commands."""

    def __init__(self, term_width: int = 120, term_height: int = 40):
        self.term_width = term_width
        self.term_height = term_height
        self.lock = threading.Lock()
        self.exec_clients = {}

    def _connect(self, server: ServerProfile) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if server.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": server.host,
            "port": server.port,
            "username": server.user,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if server.password:
            connect_kwargs["password"] = server.password
        if server.key_path:
            connect_kwargs["key_filename"] = server.key_path
            if server.key_passphrase:
                connect_kwargs["passphrase"] = server.key_passphrase

        try:
            client.connect(**connect_kwargs)
        except Exception as exc:
            client.close()
            raise TransportError(f"connect to {server.host}:{server.port} failed: {exc}") from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return client

    def open_channel(self, server: ServerProfile) -> Channel:
        client = self._connect(server)
        try:
            channel = client.get_transport().open_session()
            channel.get_pty(term="xterm-256color", width=self.term_width, height=self.term_height)
            channel.exec_command(server.remote_command())
            channel.settimeout(RECV_POLL_TIMEOUT)
        except Exception as exc:
            client.close()
            raise TransportError(f"PTY open failed on {server.host}: {exc}") from exc
        return ParamikoChannel(client, channel)

    def _exec_client(self, server: ServerProfile) -> paramiko.SSHClient:
        with self.lock:
            client = self.exec_clients.get(server.name)
            transport = client.get_transport() if client else None
            if client is None or transport is None or not transport.is_active():
                client = self._connect(server)
                self.exec_clients[server.name] = client
            return client

    def run_once(self, server: ServerProfile, command: str) -> str:
        client = self._exec_client(server)
        try:
            _stdin, stdout, _stderr = client.exec_command(command, timeout=CONNECT_TIMEOUT)
            return stdout.read().decode("utf-8", errors="replace")
        except Exception as exc:
            with self.lock:
                self.exec_clients.pop(server.name, None)
            client.close()
            raise TransportError(f"command failed on {server.host}: {exc}") from exc

    def close(self) -> None:
        with self.lock:
            clients = list(self.exec_clients.values())
            self.exec_clients.clear()
        for client in clients:
            try:
                client.close()
            except Exception:
                pass
