"""
Typed views of bridge event payloads.

Parsers are lenient about extra or missing fields (newer and older bridge
builds differ) and strict only about fields that are present with the wrong
shape, which raise ProtocolError.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from panelbridge.errors import ProtocolError


def _require_mapping(payload: Any, event_type: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ProtocolError(f"{event_type} payload must be an object", event_type)
    return payload


def _number(payload: Mapping[str, Any], key: str, event_type: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, list):
        # Paper reports tps as [1m, 5m, 15m]
        value = value[0] if value else None
        if value is None:
            return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"{event_type}.{key} must be a number", event_type)
    return float(value)


def _integer(payload: Mapping[str, Any], key: str, event_type: str) -> Optional[int]:
    value = _number(payload, key, event_type)
    return None if value is None else int(value)


def _string(payload: Mapping[str, Any], key: str, event_type: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ProtocolError(f"{event_type}.{key} must be a string", event_type)
    return str(value)


def _list(payload: Mapping[str, Any], key: str, event_type: str) -> List[Any]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProtocolError(f"{event_type}.{key} must be a list", event_type)
    return value


@dataclass(frozen=True)
class DiskUsage:
    mount: str
    used_bytes: int
    total_bytes: int

    @property
    def usage_percent(self) -> Optional[float]:
        if self.total_bytes <= 0:
            return None
        return self.used_bytes / self.total_bytes * 100.0


@dataclass(frozen=True)
class NetworkStats:
    rx_bytes: Optional[int] = None
    tx_bytes: Optional[int] = None
    rx_bytes_per_sec: Optional[float] = None
    tx_bytes_per_sec: Optional[float] = None


@dataclass(frozen=True)
class StatusSnapshot:
    tps: Optional[float] = None
    mspt: Optional[float] = None
    used_memory_mb: Optional[int] = None
    max_memory_mb: Optional[int] = None
    cpu_percent: Optional[float] = None
    system_cpu_percent: Optional[float] = None
    per_core_cpu: Tuple[float, ...] = ()
    thread_count: Optional[int] = None
    uptime_seconds: Optional[int] = None
    player_count: Optional[int] = None
    max_players: Optional[int] = None
    disks: Tuple[DiskUsage, ...] = ()
    network: Optional[NetworkStats] = None

    @property
    def memory_percent(self) -> Optional[float]:
        if self.used_memory_mb is None or not self.max_memory_mb:
            return None
        return self.used_memory_mb / self.max_memory_mb * 100.0

    @classmethod
    def from_payload(cls, payload: Any) -> "StatusSnapshot":
        t = "status"
        data = _require_mapping(payload, t)
        disks = []
        for item in _list(data, "disks", t):
            disk = _require_mapping(item, t)
            disks.append(DiskUsage(
                mount=_string(disk, "mount", t) or "",
                used_bytes=_integer(disk, "usedBytes", t) or 0,
                total_bytes=_integer(disk, "totalBytes", t) or 0,
            ))
        network = None
        if data.get("network") is not None:
            net = _require_mapping(data["network"], t)
            network = NetworkStats(
                rx_bytes=_integer(net, "rxBytes", t),
                tx_bytes=_integer(net, "txBytes", t),
                rx_bytes_per_sec=_number(net, "rxBytesPerSec", t),
                tx_bytes_per_sec=_number(net, "txBytesPerSec", t),
            )
        cores = []
        for value in _list(data, "perCoreCpu", t):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ProtocolError("status.perCoreCpu must hold numbers", t)
            cores.append(float(value))
        return cls(
            tps=_number(data, "tps", t),
            mspt=_number(data, "mspt", t),
            used_memory_mb=_integer(data, "usedMemoryMB", t),
            max_memory_mb=_integer(data, "maxMemoryMB", t),
            cpu_percent=_number(data, "cpuUsagePercent", t),
            system_cpu_percent=_number(data, "systemCpuPercent", t),
            per_core_cpu=tuple(cores),
            thread_count=_integer(data, "threadCount", t),
            uptime_seconds=_integer(data, "uptimeSeconds", t),
            player_count=_integer(data, "playerCount", t),
            max_players=_integer(data, "maxPlayers", t),
            disks=tuple(disks),
            network=network,
        )

    @classmethod
    def reply_fields(cls, payload: Any) -> Dict[str, Any]:
        """Fields carried by a ``server_status`` reply to a STATUS request.

        The reply has its own shape (``onlinePlayers``, nested ``memory``) and
        lacks cpu, uptime, disk and network figures, so it is merged into the
        last status rather than replacing it. Absent fields are left out.
        """
        t = "serverStatus"
        data = _require_mapping(payload, t)
        fields = {
            "tps": _number(data, "tps", t),
            "mspt": _number(data, "mspt", t),
            "player_count": _integer(data, "onlinePlayers", t),
            "max_players": _integer(data, "maxPlayers", t),
        }
        if data.get("memory") is not None:
            memory = _require_mapping(data["memory"], t)
            fields["used_memory_mb"] = _integer(memory, "used", t)
            fields["max_memory_mb"] = _integer(memory, "max", t)
        return {key: value for key, value in fields.items() if value is not None}


@dataclass(frozen=True)
class Player:
    uuid: str
    name: str
    world: Optional[str] = None
    ping: Optional[int] = None


@dataclass(frozen=True)
class PlayerRoster:
    players: Tuple[Player, ...] = ()
    max_players: Optional[int] = None

    @property
    def count(self) -> int:
        return len(self.players)

    @classmethod
    def from_payload(cls, payload: Any) -> "PlayerRoster":
        t = "players"
        data = _require_mapping(payload, t)
        players = []
        for item in _list(data, "players", t):
            entry = _require_mapping(item, t)
            name = _string(entry, "name", t)
            if not name:
                raise ProtocolError("players entry without name", t)
            players.append(Player(
                uuid=_string(entry, "uuid", t) or "",
                name=name,
                world=_string(entry, "world", t),
                ping=_integer(entry, "ping", t),
            ))
        return cls(players=tuple(players), max_players=_integer(data, "max", t))


@dataclass(frozen=True)
class SystemInfo:
    cpu_model: Optional[str] = None
    cpu_cores: Optional[int] = None
    total_memory_mb: Optional[int] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    os_arch: Optional[str] = None
    java_version: Optional[str] = None
    jvm_name: Optional[str] = None
    server_version: Optional[str] = None
    game_version: Optional[str] = None
    network_interfaces: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "SystemInfo":
        t = "systemInfo"
        data = _require_mapping(payload, t)
        interfaces = tuple(str(name) for name in _list(data, "networkInterfaces", t))
        return cls(
            cpu_model=_string(data, "cpuModel", t),
            cpu_cores=_integer(data, "cpuCores", t),
            total_memory_mb=_integer(data, "totalMemoryMB", t),
            os_name=_string(data, "osName", t),
            os_version=_string(data, "osVersion", t),
            os_arch=_string(data, "osArch", t),
            java_version=_string(data, "javaVersion", t),
            jvm_name=_string(data, "jvmName", t),
            server_version=_string(data, "serverVersion", t),
            game_version=_string(data, "minecraftVersion", t) or _string(data, "gameVersion", t),
            network_interfaces=interfaces,
        )


@dataclass(frozen=True)
class CommandNode:
    description: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    permission: Optional[str] = None
    usage: Optional[str] = None
    children: Dict[str, "CommandNode"] = field(default_factory=dict)
    type: Optional[str] = None
    required: Optional[bool] = None
    examples: Tuple[str, ...] = ()

    @property
    def is_argument(self) -> bool:
        return self.type is not None and self.type != "literal"

    @classmethod
    def from_payload(cls, payload: Any) -> "CommandNode":
        t = "commandTree"
        if payload is None:
            return cls()
        data = _require_mapping(payload, t)
        children = data.get("children") or {}
        if not isinstance(children, Mapping):
            raise ProtocolError("commandTree children must be an object", t)
        required = data.get("required")
        return cls(
            description=_string(data, "description", t),
            aliases=tuple(str(a) for a in _list(data, "aliases", t)),
            permission=_string(data, "permission", t),
            usage=_string(data, "usage", t),
            children={str(k): cls.from_payload(v) for k, v in children.items()},
            type=_string(data, "type", t),
            required=bool(required) if required is not None else None,
            examples=tuple(str(e) for e in _list(data, "examples", t)),
        )


@dataclass(frozen=True)
class CommandTree:
    commands: Dict[str, CommandNode] = field(default_factory=dict)
    root_names: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "CommandTree":
        t = "commandTree"
        data = _require_mapping(payload, t)
        commands = data.get("commands", data)
        if not isinstance(commands, Mapping):
            raise ProtocolError("commandTree.commands must be an object", t)
        nodes = {str(name): CommandNode.from_payload(node) for name, node in commands.items()}
        return cls(commands=nodes, root_names=tuple(sorted(nodes)))

    @classmethod
    def from_names(cls, names: List[str]) -> "CommandTree":
        nodes = {str(name): CommandNode() for name in names}
        return cls(commands=nodes, root_names=tuple(sorted(nodes)))

    def find(self, name: str) -> Optional[CommandNode]:
        node = self.commands.get(name)
        if node is not None:
            return node
        lowered = name.lower()
        for key, candidate in self.commands.items():
            if key.lower() == lowered:
                return candidate
        return None


@dataclass(frozen=True)
class BridgeHandshake:
    version: str
    platform: Optional[str] = None
    features: FrozenSet[str] = frozenset()

    @classmethod
    def from_payload(cls, payload: Any) -> "BridgeHandshake":
        t = "handshake"
        data = _require_mapping(payload, t)
        version = _string(data, "version", t)
        if version is None:
            raise ProtocolError("handshake without version", t)
        return cls(
            version=version,
            platform=_string(data, "platform", t),
            features=frozenset(str(f) for f in _list(data, "features", t)),
        )


@dataclass(frozen=True)
class RegistryUpdate:
    """Value list a plugin publishes for argument completion, e.g. item ids."""

    plugin: str
    type: str
    values: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.plugin}:{self.type}"

    @classmethod
    def from_payload(cls, payload: Any) -> "RegistryUpdate":
        t = "registryUpdate"
        data = _require_mapping(payload, t)
        plugin = _string(data, "plugin", t)
        kind = _string(data, "type", t)
        if not plugin or not kind:
            raise ProtocolError("registry update without plugin or type", t)
        values = []
        for value in _list(data, "values", t):
            if not isinstance(value, str):
                raise ProtocolError("registryUpdate.values must hold strings", t)
            values.append(value)
        return cls(plugin=plugin, type=kind, values=tuple(values))


@dataclass(frozen=True)
class Completion:
    text: str
    tooltip: Optional[str] = None
    has_children: bool = False
    is_type_hint: bool = False


@dataclass(frozen=True)
class CompletionList:
    buffer: str = ""
    completions: Tuple[Completion, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "CompletionList":
        t = "commandCompletions"
        data = _require_mapping(payload, t)
        items = []
        for entry in _list(data, "completions", t):
            if isinstance(entry, str):
                items.append(Completion(text=entry))
                continue
            item = _require_mapping(entry, t)
            text = _string(item, "text", t)
            if text is None:
                raise ProtocolError("completion without text", t)
            items.append(Completion(text=text, tooltip=_string(item, "tooltip", t)))
        return cls(buffer=_string(data, "buffer", t) or "", completions=tuple(items))
