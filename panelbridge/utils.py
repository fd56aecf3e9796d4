import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional
from panelbridge.config import (
    ANSI_ESCAPE, CONTROL_CHARS, LOG_LEVEL_PATTERN, MAX_READ_MAX_LINES, PLAYER_LINE_PATTERN, TERMINAL_OSC
)

CONSOLE_LEVELS = ("info", "warn", "error", "debug", "player")


def log_error(message: str) -> None:
    print(f"[PANEL-BRIDGE] {message}", file=sys.stderr, flush=True)


def clamp(value: Any, default, min_value, max_value):
    """Coerce a tool argument to the type of ``default`` and bound it."""
    try:
        numeric = type(default)(value)
    except (TypeError, ValueError):
        numeric = default
    return max(min_value, min(max_value, numeric))


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def strip_terminal(text: str) -> str:
    """Console text without colours, window titles or stray control bytes.

    screen and tmux retitle the window with OSC sequences of their own; those
    go first, before the CSI pattern can eat just their ``ESC ]`` prefix.
    """
    if not text:
        return ""
    text = TERMINAL_OSC.sub("", text)
    text = ANSI_ESCAPE.sub("", text)
    text = CONTROL_CHARS.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")


def console_level(line: str) -> str:
    """Classify a server log line as info, warn, error, debug or player."""
    if PLAYER_LINE_PATTERN.search(line):
        return "player"
    match = LOG_LEVEL_PATTERN.search(line)
    if match is None:
        return "info"
    level = match.group(1).lower()
    return "warn" if level == "warning" else level


def json_line(path: str, payload: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    dirs = {"cache_root": cache_root}
    for name in ("sessions", "commands"):
        path = os.path.join(cache_root, name)
        os.makedirs(path, exist_ok=True)
        dirs[f"{name}_dir"] = path
    return dirs


def resolve_runtime_paths(project_root_arg: Optional[str], cache_dir_arg: Optional[str]) -> Dict[str, str]:
    """Session logs and command caches live under ``.panel-cache`` in the project.

    A shared cache dir (``--cache-dir`` / ``PANEL_CACHE_DIR``) is split per
    project so two checkouts never share root-command caches.
    """
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    cache_override = cache_dir_arg or os.environ.get("PANEL_CACHE_DIR")
    if cache_override:
        digest = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
        cache_root = os.path.join(os.path.abspath(cache_override), f"{project_tag}-{digest}")
    else:
        cache_root = os.path.join(project_root, ".panel-cache")
    return {"project_root": project_root, "project_tag": project_tag, "cache_root": cache_root}


def filter_console_lines(
    text: str,
    contains: Optional[str] = None,
    regex: Optional[str] = None,
    level: Optional[str] = None,
    tail_lines: Optional[int] = None,
) -> Dict[str, Any]:
    lines = (text or "").splitlines()
    if level:
        level = level.lower()
        if level not in CONSOLE_LEVELS:
            return {"success": False, "error": f"level must be one of {', '.join(CONSOLE_LEVELS)}"}
        lines = [line for line in lines if console_level(line) == level]
    if contains:
        lines = [line for line in lines if contains in line]
    if regex:
        try:
            compiled = re.compile(regex)
        except re.error as exc:
            return {"success": False, "error": f"invalid regex: {exc}"}
        lines = [line for line in lines if compiled.search(line)]
    if tail_lines is not None:
        lines = lines[-clamp(tail_lines, 100, 1, MAX_READ_MAX_LINES):]
    return {"success": True, "matched_lines": len(lines), "output": "\n".join(lines)}
