import json
from dataclasses import asdict
from typing import Any, Dict, Optional

from panelbridge.config import (
    DEFAULT_QUERY_MAX_SAMPLES, DEFAULT_QUERY_WINDOW, DEFAULT_READ_MAX_CHARS, DEFAULT_READ_MAX_LINES,
    HISTORY_RETENTION, MAX_QUERY_MAX_SAMPLES, MAX_READ_MAX_CHARS, MAX_READ_MAX_LINES
)
from panelbridge.errors import BridgeError, TransportError
from panelbridge.hub import BridgeHub, ServerBridge
from panelbridge.telemetry import TelemetrySnapshot
from panelbridge.utils import clamp, filter_console_lines, log_error, to_bool

DEFAULT_CONSUMER = "tool"


def project_tool_result(tool_name: str, result: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"success": False, "error": "tool returned non-object result"}

    if not result.get("success", False):
        projected = {"error": result.get("error", "unknown error"), "success": False}
        if "server" in result:
            projected["server"] = result["server"]
        return projected

    # lean payloads: the primary field first, bookkeeping after
    projected: Dict[str, Any] = {}
    if tool_name == "console_read":
        projected["output"] = result.get("output", "")
        for key in ("next_offset", "limited", "dropped_data", "filtered"):
            if key in result:
                projected[key] = result[key]
    elif tool_name == "session_list":
        projected["sessions"] = result.get("sessions", [])
    elif tool_name == "history":
        projected["series"] = result.get("series")
        if "samples" in result:
            projected["samples"] = result["samples"]
        if "available" in result:
            projected["available"] = result["available"]
    elif tool_name == "complete":
        projected["completions"] = result.get("completions", [])
        if result.get("requested"):
            projected["requested"] = True
    elif tool_name == "alerts":
        projected["alerts"] = result.get("alerts", [])
    elif tool_name == "status":
        return result
    else:
        projected["message"] = result.get("message", "OK")

    if "server" in result:
        projected["server"] = result["server"]
    if "state" in result:
        projected["state"] = result["state"]
    return projected


def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}


def tools_list() -> Dict[str, Any]:
    server_param = {
        "type": "string",
        "description": "Optional server name. If omitted, the first configured server is used.",
    }
    consumer_param = {
        "type": "string",
        "description": f"Consumer name holding the session. Default '{DEFAULT_CONSUMER}'.",
    }
    tools = [
        {
            "name": "session_list",
            "description": (
                "List configured servers with session state (disconnected|connecting|connected|degraded), "
                "holders, requested cadence and bridge handshake details."
            ),
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "connect",
            "description": "Attach a consumer to the server console, opening the SSH channel on first use.",
            "inputSchema": {
                "type": "object",
                "properties": {"server": server_param, "consumer": consumer_param},
            },
        },
        {
            "name": "disconnect",
            "description": "Release one hold of a consumer. The channel closes when the last holder leaves.",
            "inputSchema": {
                "type": "object",
                "properties": {"server": server_param, "consumer": consumer_param},
            },
        },
        {
            "name": "reconnect",
            "description": "Drop the live channel and go through the bounded reconnect path.",
            "inputSchema": {"type": "object", "properties": {"server": server_param}},
        },
        {
            "name": "send",
            "description": "Send one console line (Enter appended). Requires a connected session.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "server": server_param,
                    "command": {"type": "string", "description": "Console command, e.g. 'say hi' or 'list'."},
                },
                "required": ["command"],
            },
        },
        {
            "name": "console_read",
            "description": (
                "Read buffered console text (ANSI stripped). Supports pagination via 'offset' and "
                "'next_offset', plus filtering and tailing."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "server": server_param,
                    "offset": {"type": "number", "description": "Optional absolute offset. If omitted, shared cursor is used."},
                    "max_lines": {"type": "number", "description": "Max lines per page."},
                    "max_chars": {"type": "number", "description": "Max chars per page."},
                    "contains": {"type": "string", "description": "Filter: only lines containing this string."},
                    "regex": {"type": "string", "description": "Filter: only lines matching this regex."},
                    "level": {"type": "string", "enum": ["info", "warn", "error", "debug", "player"], "description": "Filter: only log lines of this level."},
                    "tail_lines": {"type": "number", "description": "Filter: only the last N lines."},
                },
            },
        },
        {
            "name": "status",
            "description": "Latest telemetry snapshot: status metrics, players, system info, handshake.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "server": server_param,
                    "refresh": {"type": "boolean", "description": "Ask the bridge to push status and players now."},
                },
            },
        },
        {
            "name": "history",
            "description": (
                "Time series samples for charts (tps, mspt, memory, cpu, system_cpu, players, net.rx, net.tx, "
                "cpu.core.N, disk.<mount>). Omit 'series' to list available series."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "server": server_param,
                    "series": {"type": "string"},
                    "window": {"type": "number", "description": "Seconds back from now. Default 300."},
                    "max_samples": {"type": "number", "description": "Max points returned. Default 300."},
                },
            },
        },
        {
            "name": "complete",
            "description": "Complete a console line against the cached command tree.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "server": server_param,
                    "buffer": {"type": "string", "description": "Partial command line, leading '/' optional."},
                    "remote": {"type": "boolean", "description": "Also ask the bridge for completions."},
                },
                "required": ["buffer"],
            },
        },
        {
            "name": "fetch_tree",
            "description": "Request a fresh command tree from the bridge (and from commands.json unless from_file=false).",
            "inputSchema": {
                "type": "object",
                "properties": {"server": server_param, "from_file": {"type": "boolean"}},
            },
        },
        {
            "name": "set_active",
            "description": "Mark a consumer active/inactive. Active high-frequency consumers raise the update cadence.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "server": server_param,
                    "consumer": consumer_param,
                    "active": {"type": "boolean"},
                    "high_frequency": {"type": "boolean"},
                },
                "required": ["active"],
            },
        },
        {
            "name": "alerts",
            "description": "Recent performance alerts (TPS, MSPT, memory thresholds).",
            "inputSchema": {"type": "object", "properties": {"server": server_param}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}


def render_snapshot(snapshot: TelemetrySnapshot) -> Dict[str, Any]:
    data: Dict[str, Any] = {"version": snapshot.version, "updated_at": snapshot.updated_at}
    if snapshot.status is not None:
        data["status"] = asdict(snapshot.status)
        data["status"]["memory_percent"] = snapshot.status.memory_percent
    if snapshot.players is not None:
        data["players"] = {
            "count": snapshot.players.count,
            "max": snapshot.players.max_players,
            "players": [asdict(p) for p in snapshot.players.players],
        }
    if snapshot.system_info is not None:
        data["system_info"] = asdict(snapshot.system_info)
    if snapshot.handshake is not None:
        data["handshake"] = {
            "version": snapshot.handshake.version,
            "platform": snapshot.handshake.platform,
            "features": sorted(snapshot.handshake.features),
        }
    if snapshot.command_tree is not None:
        data["root_commands"] = len(snapshot.command_tree.root_names)
    if snapshot.registries:
        data["registries"] = {key: len(values) for key, values in sorted(snapshot.registries.items())}
    return data


def _resolve(args: Dict[str, Any], hub: BridgeHub) -> Optional[ServerBridge]:
    name = args.get("server") or hub.default_server()
    return hub.get(name) if name else None


def _unknown_server(args: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": False, "error": f"unknown server '{args.get('server') or ''}'"}


def connect_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    consumer = args.get("consumer") or DEFAULT_CONSUMER
    name = bridge.profile.name
    try:
        session = hub.acquire(name, consumer)
    except TransportError as exc:
        return {"success": False, "error": str(exc), "server": name}
    return {
        "success": True,
        "message": f"{consumer} attached ({session.ref_count} holds)",
        "server": name,
        "state": session.state.value,
    }


def disconnect_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    consumer = args.get("consumer") or DEFAULT_CONSUMER
    name = bridge.profile.name
    if not hub.release(name, consumer):
        return {"success": False, "error": f"{consumer} holds no session on {name}", "server": name}
    return {
        "success": True,
        "message": f"{consumer} released",
        "server": name,
        "state": hub.session_state(name).value,
    }


def reconnect_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    name = bridge.profile.name
    if not hub.mux.reconnect(name):
        return {"success": False, "error": f"session {name} is not connected", "server": name}
    return {"success": True, "message": "reconnect started", "server": name}


def send_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        return {"success": False, "error": "command is required"}
    name = bridge.profile.name
    try:
        hub.send_command(name, command)
    except TransportError as exc:
        return {"success": False, "error": str(exc), "server": name}
    return {"success": True, "message": "sent", "server": name, "bytes_sent": len(command.encode("utf-8")) + 1}


def console_read_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    offset = args.get("offset")
    if offset is not None:
        try:
            offset = int(offset)
        except (TypeError, ValueError):
            return {"success": False, "error": "offset must be number"}
    max_lines = clamp(args.get("max_lines"), DEFAULT_READ_MAX_LINES, 1, MAX_READ_MAX_LINES)
    max_chars = clamp(args.get("max_chars"), DEFAULT_READ_MAX_CHARS, 1, MAX_READ_MAX_CHARS)

    result = bridge.console.read_slice(offset, max_lines, max_chars)
    filters = {key: args.get(key) for key in ("contains", "regex", "level", "tail_lines")}
    if any(value is not None for value in filters.values()):
        filtered = filter_console_lines(result["output"], **filters)
        if not filtered["success"]:
            return {"success": False, "error": filtered["error"]}
        result["output"] = filtered["output"]
        result["filtered"] = True
    result["success"] = True
    result["server"] = bridge.profile.name
    result["state"] = hub.session_state(bridge.profile.name).value
    return result


def status_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    name = bridge.profile.name
    result: Dict[str, Any] = {"success": True, "server": name, "state": hub.session_state(name).value}
    if to_bool(args.get("refresh")):
        result["refresh_requested"] = hub.request_refresh(name)
    result.update(render_snapshot(bridge.store.snapshot()))
    return result


def history_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    store = bridge.store
    series = args.get("series")
    if not series:
        return {"success": True, "series": None, "available": store.series_names(), "server": store.server}
    window = clamp(args.get("window"), DEFAULT_QUERY_WINDOW, 1.0, HISTORY_RETENTION)
    max_samples = clamp(args.get("max_samples"), DEFAULT_QUERY_MAX_SAMPLES, 1, MAX_QUERY_MAX_SAMPLES)
    samples = store.query(series, window, max_samples)
    return {
        "success": True,
        "series": series,
        "samples": [[s.timestamp, s.value, s.projected] for s in samples],
        "server": store.server,
    }


def complete_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    buffer = args.get("buffer")
    if not isinstance(buffer, str):
        return {"success": False, "error": "buffer must be string"}
    result: Dict[str, Any] = {
        "success": True,
        "completions": [asdict(c) for c in bridge.completion.complete_line(buffer)],
        "server": bridge.profile.name,
    }
    if to_bool(args.get("remote")):
        result["requested"] = hub.request_completions(bridge.profile.name, buffer)
    return result


def fetch_tree_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    name = bridge.profile.name
    outcome = hub.fetch_tree(name, from_file=to_bool(args.get("from_file"), True))
    if not outcome["requested"] and not outcome["file_fetch_started"]:
        return {"success": False, "error": "tree fetch could not be started", "server": name}
    parts = [label for label, flag in (("bridge", outcome["requested"]), ("commands.json", outcome["file_fetch_started"])) if flag]
    return {"success": True, "message": "fetch started: " + ", ".join(parts), "server": name}


def set_active_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    consumer = args.get("consumer") or DEFAULT_CONSUMER
    active = to_bool(args.get("active"))
    high = to_bool(args.get("high_frequency"))
    hub.set_active(bridge.profile.name, consumer, active, high)
    return {
        "success": True,
        "message": f"{consumer} {'active' if active else 'inactive'}",
        "server": bridge.profile.name,
    }


def alerts_dispatch(args: Dict[str, Any], hub: BridgeHub) -> Dict[str, Any]:
    bridge = _resolve(args, hub)
    if bridge is None:
        return _unknown_server(args)
    alerts = [dict(asdict(a), message=a.message()) for a in bridge.alerts.recent_alerts()]
    return {"success": True, "alerts": alerts, "server": bridge.profile.name}


DISPATCH = {
    "connect": connect_dispatch,
    "disconnect": disconnect_dispatch,
    "reconnect": reconnect_dispatch,
    "send": send_dispatch,
    "console_read": console_read_dispatch,
    "status": status_dispatch,
    "history": history_dispatch,
    "complete": complete_dispatch,
    "fetch_tree": fetch_tree_dispatch,
    "set_active": set_active_dispatch,
    "alerts": alerts_dispatch,
}


def handle_request(request: Dict[str, Any], hub: BridgeHub) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {})
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "panel-bridge", "version": "0.1.0"},
            },
        }

    if method == "notifications/initialized":
        return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        try:
            if tool_name == "session_list":
                result = {"success": True, "sessions": hub.list_sessions()}
            elif tool_name in DISPATCH:
                result = DISPATCH[tool_name](args, hub)
            else:
                return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}

            projected = project_tool_result(tool_name=str(tool_name), result=result)
            return make_response(req_id, projected, is_error=not result.get("success", False))
        except (BridgeError, KeyError, ValueError) as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, {"error": str(exc)}, is_error=True)
        except Exception as exc:
            log_error(f"unexpected tool error ({tool_name}): {exc!r}")
            return make_response(req_id, {"error": str(exc)}, is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
