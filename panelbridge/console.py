import codecs
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from panelbridge.config import MAX_CONSOLE_CHARS
from panelbridge.utils import log_error, strip_terminal


@dataclass
class ConsoleBuffer:
    """Bounded console text for one server with absolute offsets.

    Offsets keep counting after the head is trimmed, so a reader holding an
    old offset learns that data was dropped instead of silently skipping it.
    """

    server: str
    max_chars: int = MAX_CONSOLE_CHARS

    lock: threading.Lock = field(default_factory=threading.Lock)
    output_buffer: str = ""
    buffer_base_offset: int = 0
    shared_cursor: int = 0
    total_received_chars: int = 0
    last_data_at: Optional[float] = None
    listeners: List[Callable[[bytes], None]] = field(default_factory=list)
    _decoder: Any = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"))

    def append_bytes(self, data: bytes) -> None:
        if not data:
            return
        self.append_output(self._decoder.decode(data))
        for listener in list(self.listeners):
            try:
                listener(data)
            except Exception as exc:
                log_error(f"console listener failed ({self.server}): {exc}")

    def append_output(self, chunk: str) -> None:
        if not chunk:
            return
        with self.lock:
            self.output_buffer += chunk
            self.total_received_chars += len(chunk)
            self.last_data_at = time.time()

            overflow = len(self.output_buffer) - self.max_chars
            if overflow > 0:
                self.output_buffer = self.output_buffer[overflow:]
                self.buffer_base_offset += overflow
                if self.shared_cursor < self.buffer_base_offset:
                    self.shared_cursor = self.buffer_base_offset

    def add_listener(self, listener: Callable[[bytes], None]) -> Callable[[], None]:
        self.listeners.append(listener)

        def remove() -> None:
            if listener in self.listeners:
                self.listeners.remove(listener)

        return remove

    def read_slice(
        self,
        offset: Optional[int],
        max_lines: int,
        max_chars: int,
    ) -> Dict[str, Any]:
        with self.lock:
            use_shared_cursor = offset is None
            if offset is None:
                offset = self.shared_cursor

            dropped_data = False
            if offset < self.buffer_base_offset:
                offset = self.buffer_base_offset
                dropped_data = True

            relative = max(0, offset - self.buffer_base_offset)
            data = self.output_buffer[relative:]

            limited = False
            if len(data) > max_chars:
                data = data[:max_chars]
                limited = True

            if max_lines > 0:
                lines = data.splitlines(keepends=True)
                if len(lines) > max_lines:
                    data = "".join(lines[:max_lines])
                    limited = True

            next_offset = offset + len(data)
            if use_shared_cursor:
                self.shared_cursor = next_offset

            return {
                "offset_start": offset,
                "next_offset": next_offset,
                "base_offset": self.buffer_base_offset,
                "output": strip_terminal(data),
                "limited": limited,
                "dropped_data": dropped_data,
                "total_received_chars": self.total_received_chars,
            }

    def clear(self) -> None:
        with self.lock:
            self.buffer_base_offset += len(self.output_buffer)
            self.output_buffer = ""
            self.shared_cursor = self.buffer_base_offset
