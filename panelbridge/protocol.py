"""
Bridge side-channel wire format.

The remote bridge plugin embeds structured messages inside ordinary terminal
output as an iTerm2-style OSC sequence:

    ESC ] 1337;MCPanel: <body> BEL

where <body> is either base64 of a single-line JSON document (what the plugin
emits) or the JSON document itself. Requests travel the other way as a plain
console command: ``mcpanel <base64-json>``.
"""

import base64
import binascii
import json
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from panelbridge.config import CONTROL_COMMAND
from panelbridge.errors import FrameDecodeError

START_MARKER = b"\x1b]1337;MCPanel:"
END_MARKER = b"\x07"


class EventKind(str, Enum):
    STATUS = "status"
    SERVER_STATUS = "serverStatus"
    PLAYERS = "players"
    SYSTEM_INFO = "systemInfo"
    COMMAND_TREE = "commandTree"
    COMMAND_COMPLETIONS = "commandCompletions"
    HANDSHAKE = "handshake"
    COMMANDS_UPDATED = "commandsUpdated"
    REGISTRY_UPDATE = "registryUpdate"


class Cadence(str, Enum):
    HIGH = "high"
    LOW = "low"


# Names used by older bridge builds (events carry "event", responses carry a
# snake_case "type").
TYPE_ALIASES: Dict[str, EventKind] = {
    "status_update": EventKind.STATUS,
    "server_status": EventKind.SERVER_STATUS,
    "players_update": EventKind.PLAYERS,
    "player_list": EventKind.PLAYERS,
    "system_info": EventKind.SYSTEM_INFO,
    "command_tree": EventKind.COMMAND_TREE,
    "completions": EventKind.COMMAND_COMPLETIONS,
    "complete": EventKind.COMMAND_COMPLETIONS,
    "mcpanel_bridge_ready": EventKind.HANDSHAKE,
    "commands_updated": EventKind.COMMANDS_UPDATED,
    # a finished reload invalidates the command tree the same way
    "server_ready": EventKind.COMMANDS_UPDATED,
    "registry_update": EventKind.REGISTRY_UPDATE,
}


def resolve_kind(type_name: str) -> Optional[EventKind]:
    try:
        return EventKind(type_name)
    except ValueError:
        return TYPE_ALIASES.get(type_name.lower())


def decode_body(body: bytes) -> Dict[str, Any]:
    """Turn the bytes between the markers into a JSON object."""
    text = body.strip()
    if not text:
        raise FrameDecodeError("empty frame body")
    if not text.startswith(b"{"):
        try:
            text = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise FrameDecodeError(f"invalid base64 body: {exc}") from exc
    try:
        document = json.loads(text.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FrameDecodeError(f"invalid JSON body: {exc}") from exc
    if not isinstance(document, dict):
        raise FrameDecodeError("frame body is not a JSON object")
    return document


def split_document(document: Dict[str, Any]) -> Tuple[str, Any]:
    """Return (type name, payload) for a decoded document."""
    type_name = document.get("type")
    if not isinstance(type_name, str) or not type_name:
        type_name = document.get("event")
    if not isinstance(type_name, str) or not type_name:
        raise FrameDecodeError("frame has no type discriminator")
    if "payload" in document:
        return type_name, document["payload"]
    payload = {k: v for k, v in document.items() if k not in ("type", "event")}
    return type_name, payload


def encode_frame(type_name: str, payload: Optional[Dict[str, Any]] = None, raw: bool = False) -> bytes:
    document: Dict[str, Any] = {"type": type_name}
    document.update(payload or {})
    data = json.dumps(document, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if not raw:
        data = base64.b64encode(data)
    return START_MARKER + data + END_MARKER


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def encode_request(request_type: str, payload: Optional[Dict[str, Any]] = None) -> str:
    """Build the console command line (without newline) for a bridge request."""
    request: Dict[str, Any] = {"id": new_request_id(), "type": request_type}
    if payload:
        request["payload"] = payload
    data = json.dumps(request, separators=(",", ":")).encode("utf-8")
    return f"{CONTROL_COMMAND} {base64.b64encode(data).decode('ascii')}"


def decode_request(line: str) -> Dict[str, Any]:
    prefix = CONTROL_COMMAND + " "
    if not line.startswith(prefix):
        raise ValueError("not a bridge request")
    return json.loads(base64.b64decode(line[len(prefix):].strip()).decode("utf-8"))


def cadence_request(cadence: Cadence) -> str:
    return encode_request("CADENCE", {"rate": Cadence(cadence).value})


def tree_request() -> str:
    return encode_request("COMMANDS")


def completion_request(buffer: str) -> str:
    return encode_request("COMPLETE", {"buffer": buffer})


def status_request() -> str:
    return encode_request("STATUS")


def players_request() -> str:
    return encode_request("PLAYERS")
