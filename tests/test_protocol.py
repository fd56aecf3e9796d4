"""
Tests for the wire helpers and payload models.
"""

import re

import pytest

from panelbridge.errors import ProtocolError
from panelbridge.models import (
    BridgeHandshake, CommandTree, CompletionList, PlayerRoster, StatusSnapshot, SystemInfo
)
from panelbridge.protocol import (
    Cadence, EventKind, cadence_request, completion_request, decode_request, encode_request,
    resolve_kind, tree_request
)


@pytest.mark.parametrize("name,kind", [
    ("status", EventKind.STATUS),
    ("status_update", EventKind.STATUS),
    ("server_status", EventKind.SERVER_STATUS),
    ("player_list", EventKind.PLAYERS),
    ("players_update", EventKind.PLAYERS),
    ("system_info", EventKind.SYSTEM_INFO),
    ("command_tree", EventKind.COMMAND_TREE),
    ("completions", EventKind.COMMAND_COMPLETIONS),
    ("mcpanel_bridge_ready", EventKind.HANDSHAKE),
    ("commandsUpdated", EventKind.COMMANDS_UPDATED),
    ("server_ready", EventKind.COMMANDS_UPDATED),
    ("registry_update", EventKind.REGISTRY_UPDATE),
    ("nope", None),
])
def test_resolve_kind(name, kind):
    assert resolve_kind(name) == kind


def test_cadence_request_line():
    line = cadence_request(Cadence.HIGH)
    assert line.startswith("mcpanel ")
    request = decode_request(line)
    assert request["type"] == "CADENCE"
    assert request["payload"] == {"rate": "high"}
    assert re.fullmatch(r"[0-9a-f]{8}", request["id"])


def test_request_ids_are_unique():
    assert decode_request(tree_request())["id"] != decode_request(tree_request())["id"]


def test_request_without_payload_omits_member():
    request = decode_request(encode_request("COMMANDS"))
    assert request["type"] == "COMMANDS"
    assert "payload" not in request


def test_completion_request_carries_buffer():
    assert decode_request(completion_request("gamemode cr"))["payload"] == {"buffer": "gamemode cr"}


def test_decode_request_rejects_other_commands():
    with pytest.raises(ValueError):
        decode_request("say hello")


def test_status_snapshot_parses_full_payload():
    status = StatusSnapshot.from_payload({
        "tps": [19.95, 19.9, 19.8],
        "mspt": 11.2,
        "usedMemoryMB": 2048,
        "maxMemoryMB": 4096,
        "cpuUsagePercent": 35.5,
        "perCoreCpu": [10, 20.5],
        "playerCount": 4,
        "maxPlayers": 20,
        "disks": [{"mount": "/", "usedBytes": 50, "totalBytes": 200}],
        "network": {"rxBytesPerSec": 1500.0, "txBytesPerSec": 800},
        "unknownField": "ignored",
    })
    assert status.tps == 19.95
    assert status.memory_percent == 50.0
    assert status.per_core_cpu == (10.0, 20.5)
    assert status.disks[0].usage_percent == 25.0
    assert status.network.tx_bytes_per_sec == 800.0
    assert status.system_cpu_percent is None


@pytest.mark.parametrize("payload", [
    ["not", "an", "object"],
    {"tps": "fast"},
    {"mspt": True},
    {"perCoreCpu": ["x"]},
    {"disks": {"mount": "/"}},
])
def test_status_snapshot_rejects_wrong_shapes(payload):
    with pytest.raises(ProtocolError) as exc_info:
        StatusSnapshot.from_payload(payload)
    assert exc_info.value.event_type == "status"


def test_player_roster():
    roster = PlayerRoster.from_payload({
        "players": [{"uuid": "u1", "name": "Steve", "world": "world", "ping": 42}, {"name": "Alex"}],
        "max": 20,
    })
    assert roster.count == 2
    assert roster.players[0].ping == 42
    assert roster.players[1].uuid == ""
    assert roster.max_players == 20

    with pytest.raises(ProtocolError):
        PlayerRoster.from_payload({"players": [{"uuid": "u1"}]})


def test_system_info_accepts_either_version_key():
    assert SystemInfo.from_payload({"minecraftVersion": "1.20.4"}).game_version == "1.20.4"
    assert SystemInfo.from_payload({"gameVersion": "1.21"}).game_version == "1.21"


def test_command_tree_accepts_wrapped_and_bare_mappings():
    wrapped = CommandTree.from_payload({"commands": {"tp": {}, "ban": {"description": "Ban"}}})
    bare = CommandTree.from_payload({"tp": {}, "ban": {"description": "Ban"}})
    assert wrapped.root_names == bare.root_names == ("ban", "tp")
    assert wrapped.find("BAN").description == "Ban"

    with pytest.raises(ProtocolError):
        CommandTree.from_payload({"commands": ["tp"]})


def test_handshake_requires_version():
    handshake = BridgeHandshake.from_payload({"version": "1.4.0", "features": ["status", "commands"]})
    assert handshake.features == frozenset({"status", "commands"})
    with pytest.raises(ProtocolError):
        BridgeHandshake.from_payload({"platform": "paper"})


def test_completion_list_accepts_strings_and_objects():
    completions = CompletionList.from_payload({
        "buffer": "gamemode ",
        "completions": ["survival", {"text": "creative", "tooltip": "Creative mode"}],
    })
    assert [c.text for c in completions.completions] == ["survival", "creative"]
    assert completions.completions[1].tooltip == "Creative mode"
