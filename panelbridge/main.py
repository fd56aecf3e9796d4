import sys
import io
import json
import argparse
from panelbridge.config import config, SESSION_TYPES
from panelbridge.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs
)
from panelbridge.server import handle_request

hub = None

# Force UTF-8 I/O; server consoles print symbols a legacy code page cannot encode
_stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Panel bridge: shared SSH console, live telemetry and command completion for a game server"
    )
    parser.add_argument("--host", help="SSH host (overrides PANEL_SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides PANEL_SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides PANEL_SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides PANEL_SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides PANEL_SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--port", type=int, help="SSH port (overrides PANEL_SSH_PORT env)")
    parser.add_argument("--name", help="Server display name (overrides PANEL_SERVER_NAME env)")
    parser.add_argument("--server-path", help="Remote server directory (overrides PANEL_SERVER_PATH env)")
    parser.add_argument("--plugins-path", help="Remote plugins directory (default <server-path>/plugins)")
    parser.add_argument("--session-type", choices=SESSION_TYPES, help="How the console is attached")
    parser.add_argument("--session-name", help="screen/tmux session name")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.name: config.SERVER_NAME = args.name
    if args.server_path: config.SERVER_PATH = args.server_path
    if args.plugins_path: config.PLUGINS_PATH = args.plugins_path
    if args.session_type: config.SESSION_TYPE = args.session_type
    if args.session_name: config.SESSION_NAME = args.session_name
    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False


def main() -> None:
    global hub
    from panelbridge.hub import BridgeHub
    from panelbridge.transport import ParamikoTransport, ServerProfile

    config.load_from_env()
    parser = build_parser()
    args = parser.parse_args()
    apply_args(args)

    if not config.SSH_HOST:
        parser.error("SSH host is required (via --host or PANEL_SSH_HOST env)")
    if not config.SSH_USER:
        parser.error("SSH user is required (via --user or PANEL_SSH_USER env)")
    if config.SESSION_TYPE not in SESSION_TYPES:
        parser.error(f"session type must be one of {', '.join(SESSION_TYPES)}")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    hub = BridgeHub(ParamikoTransport(), cache_dirs=config.CACHE_DIRS)
    hub.add_server(ServerProfile.from_config())

    log_error(
        f"panel bridge started for {config.SERVER_NAME} ({config.SSH_HOST}:{config.SSH_PORT}, "
        f"{config.SESSION_TYPE}). cache={config.CACHE_DIRS['cache_root']} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            response = handle_request(json.loads(line), hub)
            if response is not None:
                _write_response(response)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            try:
                req_id = json.loads(line).get("id")
            except Exception:
                req_id = None
            _write_response({
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })

    log_error("shutting down...")
    hub.close()

if __name__ == "__main__":
    main()
