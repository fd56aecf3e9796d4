"""
Tests for the streaming frame decoder.

Covers text integrity under arbitrary chunking, frame decoding in both body
encodings, and the recovery paths for malformed, oversized and interrupted
frames.
"""

import base64
import json

import pytest

from panelbridge.frames import EventFrame, FrameDecoder, TextFrame, events_of, text_of
from panelbridge.protocol import END_MARKER, START_MARKER, EventKind, encode_frame

STATUS = encode_frame("status", {"payload": {"tps": 19.8, "mspt": 12.5}})


def feed_in_chunks(decoder, data, size):
    frames = []
    for i in range(0, len(data), size):
        frames.extend(decoder.feed(data[i:i + size]))
    return frames


def test_plain_text_passes_through_unchanged():
    decoder = FrameDecoder()
    frames = decoder.feed(b"[12:00:01 INFO]: Done (3.2s)!\n")
    assert frames == [TextFrame(b"[12:00:01 INFO]: Done (3.2s)!\n")]
    assert decoder.pending == 0


@pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 1000])
def test_text_and_event_survive_any_chunking(size):
    stream = b"before \x1b[32mgreen\x1b[0m\n" + STATUS + b"after\n"
    decoder = FrameDecoder()
    frames = feed_in_chunks(decoder, stream, size) + decoder.flush()

    assert text_of(frames) == b"before \x1b[32mgreen\x1b[0m\nafter\n"
    events = events_of(frames)
    assert len(events) == 1
    assert events[0].kind == EventKind.STATUS
    assert events[0].payload == {"tps": 19.8, "mspt": 12.5}


def test_event_preserves_position_between_text():
    decoder = FrameDecoder()
    frames = decoder.feed(b"one\n" + STATUS + b"two\n")
    assert isinstance(frames[0], TextFrame) and frames[0].data == b"one\n"
    assert isinstance(frames[1], EventFrame)
    assert isinstance(frames[2], TextFrame) and frames[2].data == b"two\n"


def test_raw_json_body_is_accepted():
    body = json.dumps({"type": "players", "payload": {"players": [], "max": 20}}).encode()
    frames = FrameDecoder().feed(START_MARKER + body + END_MARKER)
    assert frames == [EventFrame("players", {"players": [], "max": 20}, EventKind.PLAYERS)]


def test_legacy_event_discriminator_and_inline_payload():
    document = {"event": "status_update", "tps": 20.0, "playerCount": 3}
    body = base64.b64encode(json.dumps(document).encode())
    frames = FrameDecoder().feed(START_MARKER + body + END_MARKER)
    assert len(frames) == 1
    assert frames[0].kind == EventKind.STATUS
    assert frames[0].payload == {"tps": 20.0, "playerCount": 3}


def test_unknown_type_is_still_an_event():
    frames = FrameDecoder().feed(encode_frame("weather", {"payload": {"rain": True}}))
    assert frames == [EventFrame("weather", {"rain": True}, None)]


def test_malformed_body_becomes_text():
    bad = START_MARKER + b"!!not-base64!!" + END_MARKER
    decoder = FrameDecoder()
    frames = decoder.feed(b"a" + bad + b"b")
    assert frames == [TextFrame(b"a" + bad + b"b")]
    assert decoder.frames_rejected == 1
    assert decoder.frames_decoded == 0


def test_body_without_discriminator_becomes_text():
    body = base64.b64encode(json.dumps({"tps": 20}).encode())
    frames = FrameDecoder().feed(START_MARKER + body + END_MARKER)
    assert text_of(frames) == START_MARKER + body + END_MARKER
    assert events_of(frames) == []


def test_oversized_frame_is_dumped_as_text():
    decoder = FrameDecoder(max_frame_bytes=128)
    junk = START_MARKER + b"A" * 200
    frames = decoder.feed(junk)
    assert text_of(frames) == junk
    assert decoder.pending == 0
    assert decoder.frames_rejected == 1

    # the decoder keeps working after the overflow
    frames = decoder.feed(b"tail" + END_MARKER + STATUS)
    assert text_of(frames) == b"tail" + END_MARKER
    assert [e.kind for e in events_of(frames)] == [EventKind.STATUS]


def test_complete_frame_over_cap_is_not_decoded():
    decoder = FrameDecoder(max_frame_bytes=128)
    big = encode_frame("status", {"payload": {"motd": "x" * 200}})
    frames = decoder.feed(b"before " + big + STATUS)
    assert text_of(frames) == b"before " + big
    assert [e.kind for e in events_of(frames)] == [EventKind.STATUS]
    assert decoder.frames_rejected == 1


def test_new_start_marker_abandons_open_frame():
    decoder = FrameDecoder()
    broken = START_MARKER + b"eyJ0eXBlIjoic3Rh"
    frames = decoder.feed(broken + STATUS)
    assert frames[0] == TextFrame(broken)
    assert frames[1].kind == EventKind.STATUS
    assert decoder.frames_rejected == 1


def test_partial_start_marker_is_held_until_resolved():
    decoder = FrameDecoder()
    assert decoder.feed(b"prompt> \x1b]13") == [TextFrame(b"prompt> ")]
    assert decoder.pending == 4
    # turned out to be some other escape sequence
    assert decoder.feed(b"99;x\x07") == [TextFrame(b"\x1b]1399;x\x07")]
    assert decoder.pending == 0


def test_flush_emits_held_bytes_and_reset_discards_them():
    decoder = FrameDecoder()
    decoder.feed(STATUS[:20])
    assert decoder.pending == 20
    assert decoder.flush() == [TextFrame(STATUS[:20])]
    assert decoder.pending == 0

    decoder.feed(STATUS[:20])
    decoder.reset()
    assert decoder.pending == 0
    assert decoder.feed(b"fresh\n") == [TextFrame(b"fresh\n")]


def test_adjacent_text_is_coalesced():
    decoder = FrameDecoder()
    bad = START_MARKER + b"%%%" + END_MARKER
    frames = decoder.feed(b"x" + bad + bad + b"y")
    assert frames == [TextFrame(b"x" + bad + bad + b"y")]


def test_startup_handshake_scenario():
    handshake = encode_frame("handshake", {"payload": {"version": "1.4.0", "platform": "paper",
                                                       "features": ["status", "commands"]}})
    stream = b"[Server thread/INFO]: Enabling MCPanelBridge\n" + handshake + b"> "
    decoder = FrameDecoder()
    frames = feed_in_chunks(decoder, stream, 5)

    events = events_of(frames)
    assert [e.kind for e in events] == [EventKind.HANDSHAKE]
    assert events[0].payload["version"] == "1.4.0"
    assert text_of(frames) == b"[Server thread/INFO]: Enabling MCPanelBridge\n> "
    assert decoder.frames_decoded == 1
