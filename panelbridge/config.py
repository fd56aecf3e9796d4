import os
import re
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
RECV_POLL_TIMEOUT = 1.0
FIRST_BYTE_TIMEOUT = 15.0
READER_JOIN_TIMEOUT = 2.0

RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY = 1.0

MAX_FRAME_BYTES = 4 * 1024 * 1024

HISTORY_RETENTION = 30 * 60.0
PROJECTION_GAP = 2.0
DEFAULT_QUERY_WINDOW = 5 * 60.0
DEFAULT_QUERY_MAX_SAMPLES = 300
MAX_QUERY_MAX_SAMPLES = 3600

ACTIVITY_DEBOUNCE = 0.25

MAX_CONSOLE_CHARS = 2_000_000
DEFAULT_READ_MAX_LINES = 200
DEFAULT_READ_MAX_CHARS = 20000
MAX_READ_MAX_LINES = 5000
MAX_READ_MAX_CHARS = 200000

MAX_COMPLETIONS = 50
TREE_FETCH_MIN_INTERVAL = 5.0

ALERT_COOLDOWN = 300.0
MAX_RECENT_ALERTS = 100

CONTROL_COMMAND = "mcpanel"
TERM_ENV = "TERM=xterm-256color COLORTERM=truecolor"
SESSION_TYPES = ("screen", "tmux", "direct", "mcwrap")

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
TERMINAL_OSC = re.compile(r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)")
# [12:00:00 INFO]: ..., [12:00:00] [Server thread/WARN]: ..., [ERROR] ...
LOG_LEVEL_PATTERN = re.compile(r"\[(?:[^\[\]]*[/ ])?(INFO|WARN|WARNING|ERROR|DEBUG)\]")
PLAYER_LINE_PATTERN = re.compile(
    r"(?:^|\]:?\s)<[^>\s]+>|joined the game|left the game|lost connection|logged in with entity id"
)

# ========= Runtime Configuration =========
class BridgeConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SERVER_NAME: str = "default"
        self.SERVER_PATH: str = ""
        self.PLUGINS_PATH: str = ""
        self.SESSION_TYPE: str = "direct"
        self.SESSION_NAME: Optional[str] = None
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("PANEL_SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("PANEL_SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("PANEL_SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("PANEL_SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("PANEL_SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("PANEL_SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SERVER_NAME = os.environ.get("PANEL_SERVER_NAME", self.SERVER_NAME)
        self.SERVER_PATH = os.environ.get("PANEL_SERVER_PATH", self.SERVER_PATH)
        self.PLUGINS_PATH = os.environ.get("PANEL_PLUGINS_PATH", self.PLUGINS_PATH)
        self.SESSION_TYPE = os.environ.get("PANEL_SESSION_TYPE", self.SESSION_TYPE)
        self.SESSION_NAME = os.environ.get("PANEL_SESSION_NAME", self.SESSION_NAME)

        verify_host_env = os.environ.get("PANEL_SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

# Global instance
config = BridgeConfig()
