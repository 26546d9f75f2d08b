"""
Response framing for the chat byte stream.

Every fragment written to the transport is wrapped in one of two delimiter
pairs so a single stream can carry plain messages and JSON payloads:

    MESSAGE_START|<text>|MESSAGE_END|
    JSON_START|<json-text>|JSON_END|

Delimiter-like substrings inside the text are NOT escaped; consumers split on
the literal markers.
"""

from __future__ import annotations

import re

from shared.models import Frame

MESSAGE_START = "MESSAGE_START|"
MESSAGE_END = "|MESSAGE_END|"
JSON_START = "JSON_START|"
JSON_END = "|JSON_END|"

_FRAME_PATTERN = re.compile(r"(MESSAGE|JSON)_START\|([\s\S]*?)\|\1_END\|")
_KIND_BY_TAG = {"MESSAGE": "message", "JSON": "json"}


def frame_message(text: str) -> str:
    return f"{MESSAGE_START}{text}{MESSAGE_END}"


def frame_json(text: str) -> str:
    return f"{JSON_START}{text}{JSON_END}"


def parse_frames(stream_text: str) -> list[Frame]:
    """Recover every complete frame from a concatenated stream, in emission order."""
    return [
        Frame(kind=_KIND_BY_TAG[match.group(1)], text=match.group(2))
        for match in _FRAME_PATTERN.finditer(stream_text or "")
    ]


def unframe_message(text: str) -> str:
    """Return the body of a single message frame."""
    if not (text.startswith(MESSAGE_START) and text.endswith(MESSAGE_END)):
        raise ValueError("Text is not a single message frame")
    return text[len(MESSAGE_START) : len(text) - len(MESSAGE_END)]


class FrameDecoder:
    """Incremental frame decoder for live stream consumers.

    ``feed`` returns frames completed by the chunk; ``pending_text`` exposes the
    body of a message frame that is still open (for progressive rendering).
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[Frame]:
        self._buffer += chunk or ""
        frames: list[Frame] = []
        while True:
            match = _FRAME_PATTERN.search(self._buffer)
            if match is None:
                break
            frames.append(Frame(kind=_KIND_BY_TAG[match.group(1)], text=match.group(2)))
            self._buffer = self._buffer[match.end():]
        return frames

    def pending_text(self) -> str:
        start = self._buffer.find(MESSAGE_START)
        if start < 0:
            return ""
        return self._buffer[start + len(MESSAGE_START):]

    @property
    def has_open_frame(self) -> bool:
        return MESSAGE_START in self._buffer or JSON_START in self._buffer
