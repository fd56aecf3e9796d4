from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from panelbridge.config import MAX_FRAME_BYTES
from panelbridge.errors import FrameDecodeError
from panelbridge.protocol import (
    END_MARKER, START_MARKER, EventKind, decode_body, resolve_kind, split_document
)
from panelbridge.utils import log_error


@dataclass(frozen=True)
class TextFrame:
    data: bytes


@dataclass(frozen=True)
class EventFrame:
    type_name: str
    payload: Any
    kind: Optional[EventKind] = None


Frame = Union[TextFrame, EventFrame]


def _partial_marker_len(buffer: bytearray, marker: bytes) -> int:
    """Length of the longest buffer suffix that is a proper prefix of marker."""
    longest = min(len(buffer), len(marker) - 1)
    for size in range(longest, 0, -1):
        if buffer.endswith(marker[:size]):
            return size
    return 0


@dataclass
class FrameDecoder:
    """Streaming splitter of terminal bytes into Text and Event frames.

    Bytes must be fed in arrival order from a single thread. Text preceding a
    start marker is emitted immediately; only a possible partial start marker
    (or an open frame) is held back between calls.
    """

    max_frame_bytes: int = MAX_FRAME_BYTES
    frames_decoded: int = 0
    frames_rejected: int = 0

    _buffer: bytearray = field(default_factory=bytearray, repr=False)
    _in_frame: bool = field(default=False, repr=False)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Frame]:
        frames: List[Frame] = []
        if data:
            self._buffer += data
        buffer = self._buffer

        while buffer:
            if not self._in_frame:
                start = buffer.find(START_MARKER)
                if start == -1:
                    keep = _partial_marker_len(buffer, START_MARKER)
                    self._emit_text(frames, bytes(buffer[:len(buffer) - keep]))
                    del buffer[:len(buffer) - keep]
                    break
                self._emit_text(frames, bytes(buffer[:start]))
                del buffer[:start]
                self._in_frame = True

            end = buffer.find(END_MARKER, len(START_MARKER))
            restart = buffer.find(START_MARKER, len(START_MARKER))
            if restart != -1 and (end == -1 or restart < end):
                # a new frame began before this one closed
                self._reject(frames, bytes(buffer[:restart]), "unterminated frame superseded by a new start marker")
                del buffer[:restart]
                continue

            if end == -1:
                if len(buffer) > self.max_frame_bytes:
                    keep = _partial_marker_len(buffer, START_MARKER)
                    self._reject(frames, bytes(buffer[:len(buffer) - keep]), "frame exceeded size cap")
                    del buffer[:len(buffer) - keep]
                    self._in_frame = False
                break

            raw = bytes(buffer[:end + len(END_MARKER)])
            body = bytes(buffer[len(START_MARKER):end])
            del buffer[:end + len(END_MARKER)]
            self._in_frame = False
            if len(raw) > self.max_frame_bytes:
                self._reject(frames, raw, "frame exceeded size cap")
                continue
            try:
                type_name, payload = split_document(decode_body(body))
            except FrameDecodeError as exc:
                self._reject(frames, raw, str(exc))
                continue
            self.frames_decoded += 1
            frames.append(EventFrame(type_name=type_name, payload=payload, kind=resolve_kind(type_name)))

        return frames

    def flush(self) -> List[Frame]:
        """Emit whatever is still held back as Text (stream teardown)."""
        frames: List[Frame] = []
        self._emit_text(frames, bytes(self._buffer))
        self.reset()
        return frames

    def reset(self) -> None:
        """Discard held-back bytes without emitting them."""
        self._buffer = bytearray()
        self._in_frame = False

    def _reject(self, frames: List[Frame], raw: bytes, reason: str) -> None:
        self.frames_rejected += 1
        log_error(f"bridge frame dropped to console text ({len(raw)} bytes): {reason}")
        self._emit_text(frames, raw)

    @staticmethod
    def _emit_text(frames: List[Frame], data: bytes) -> None:
        if not data:
            return
        if frames and isinstance(frames[-1], TextFrame):
            frames[-1] = TextFrame(frames[-1].data + data)
        else:
            frames.append(TextFrame(data))


def text_of(frames: List[Frame]) -> bytes:
    return b"".join(f.data for f in frames if isinstance(f, TextFrame))


def events_of(frames: List[Frame]) -> List[EventFrame]:
    return [f for f in frames if isinstance(f, EventFrame)]
