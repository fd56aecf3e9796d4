"""
Tests for server profiles and the paramiko channel adapter.
"""

import socket
from unittest.mock import MagicMock

import pytest

from panelbridge.errors import TransportError
from panelbridge.transport import ParamikoChannel, ServerProfile


def test_plugins_path_defaults_under_server_path(profile):
    assert profile.effective_plugins_path == "/srv/survival/plugins"
    assert profile.commands_file == "/srv/survival/plugins/MCPanelBridge/commands.json"
    profile.plugins_path = "/opt/plugins"
    assert profile.commands_file == "/opt/plugins/MCPanelBridge/commands.json"


@pytest.mark.parametrize("session_type,name,expected", [
    ("screen", "mc", "screen -x 'mc'"),
    ("tmux", "mc", "attach-session -t 'mc'"),
    ("mcwrap", None, "mcwrap-pty attach '/srv/survival' --raw"),
    ("direct", None, "cd '/srv/survival' && exec bash"),
])
def test_remote_command_by_session_type(profile, session_type, name, expected):
    profile.session_type = session_type
    profile.session_name = name
    command = profile.remote_command()
    assert command.startswith("TERM=xterm-256color")
    assert expected in command


def test_profile_from_config(monkeypatch):
    from panelbridge.config import config

    monkeypatch.setattr(config, "SERVER_NAME", "lobby")
    monkeypatch.setattr(config, "SSH_HOST", "10.0.0.5")
    monkeypatch.setattr(config, "SSH_USER", "mc")
    monkeypatch.setattr(config, "SESSION_TYPE", "tmux")
    server = ServerProfile.from_config()
    assert (server.name, server.host, server.user, server.session_type) == ("lobby", "10.0.0.5", "mc", "tmux")


def test_channel_passes_poll_timeouts_through():
    raw = MagicMock()
    raw.recv.side_effect = socket.timeout()
    with pytest.raises(socket.timeout):
        ParamikoChannel(MagicMock(), raw).recv(1024)


def test_channel_wraps_other_failures():
    raw = MagicMock()
    raw.recv.side_effect = EOFError("reset")
    with pytest.raises(TransportError):
        ParamikoChannel(MagicMock(), raw).recv(1024)


def test_send_on_closed_channel_raises():
    raw = MagicMock()
    raw.closed = False
    channel = ParamikoChannel(MagicMock(), raw)
    channel.send(b"list\n")
    raw.sendall.assert_called_once_with(b"list\n")
    channel.close()
    channel.close()
    with pytest.raises(TransportError):
        channel.send(b"list\n")
