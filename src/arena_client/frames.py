"""
Decoder for the arena line protocol.

Every frame is one newline-terminated line of the form ``<tag>:<payload>``:

- ``a0:"..."`` / ``b0:"..."``: content chunk for participant a / b, payload is a
  quoted string where ``\\\\`` stands for a backslash and ``\\n`` for a newline.
- ``ad:{...}`` / ``bd:{...}``: completion for participant a / b, payload is JSON
  with ``finishReason`` (``stop`` or ``error``) and an optional ``error``.

Anything else is dropped so that new tags can be added upstream.
"""

import enum
import json
import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from .cancellation import CancellationToken
from .models import Participant


class FinishReason(str, enum.Enum):
    STOP = "stop"
    ERROR = "error"


@dataclass(frozen=True)
class ContentChunk:
    participant: Participant
    text: str


@dataclass(frozen=True)
class Completion:
    participant: Participant
    reason: FinishReason = FinishReason.STOP
    error: Optional[str] = None


Frame = Union[ContentChunk, Completion]

_CONTENT_TAGS = {"a0": Participant.A, "b0": Participant.B}
_COMPLETION_TAGS = {"ad": Participant.A, "bd": Participant.B}

_ESCAPE_RE = re.compile(r"\\(\\|n)")
_UNESCAPED = {"\\": "\\", "n": "\n"}


def unescape_chunk(text: str) -> str:
    # Single left-to-right pass: a backslash pair is consumed before it can pair with a following "n".
    return _ESCAPE_RE.sub(lambda m: _UNESCAPED[m.group(1)], text)


def escape_chunk(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _parse_content(payload: str) -> Optional[str]:
    if len(payload) < 2 or not (payload.startswith('"') and payload.endswith('"')):
        return None
    return unescape_chunk(payload[1:-1])


def _parse_completion(participant: Participant, payload: str) -> Optional[Completion]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    reason = FinishReason.STOP
    if str(data.get("finishReason") or "") == FinishReason.ERROR.value:
        reason = FinishReason.ERROR
    error = data.get("error")
    return Completion(
        participant=participant,
        reason=reason,
        error=str(error) if error is not None else None,
    )


def parse_frame(line: str) -> Optional[Frame]:
    """Parse one protocol line into a frame, or ``None`` if it is not a frame we know."""
    if not isinstance(line, str):
        return None
    line = line.rstrip("\r")
    tag, sep, payload = line.partition(":")
    if not sep:
        return None

    if tag in _CONTENT_TAGS:
        text = _parse_content(payload)
        if text is None:
            return None
        return ContentChunk(participant=_CONTENT_TAGS[tag], text=text)
    if tag in _COMPLETION_TAGS:
        return _parse_completion(_COMPLETION_TAGS[tag], payload)
    return None


class FrameDecoder:
    """Splits arbitrarily chunked text into frames, carrying partial lines over."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> List[Frame]:
        if not chunk:
            return []
        self._buffer += chunk
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()
        return self._decode_lines(parts)

    def flush(self) -> List[Frame]:
        """Decode whatever is left once the stream has ended."""
        remainder, self._buffer = self._buffer, ""
        return self._decode_lines([remainder])

    @staticmethod
    def _decode_lines(lines: List[str]) -> List[Frame]:
        frames: List[Frame] = []
        for line in lines:
            if not line.strip():
                continue
            frame = parse_frame(line)
            if frame is not None:
                frames.append(frame)
        return frames


async def _next_chunk(iterator: AsyncIterator[str]) -> str:
    return await iterator.__anext__()


def decode_text(text: str) -> List[Frame]:
    decoder = FrameDecoder()
    return decoder.feed(text) + decoder.flush()


async def aiter_frames(
    chunks: AsyncIterable[str],
    cancellation: Optional[CancellationToken] = None,
) -> AsyncIterator[Frame]:
    """Yield frames from an async text stream, in delivery order."""
    decoder = FrameDecoder()
    iterator = chunks.__aiter__()
    while True:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        try:
            if cancellation is None:
                chunk = await iterator.__anext__()
            else:
                chunk = await cancellation.race(_next_chunk(iterator))
        except StopAsyncIteration:
            break
        # Frames from one chunk are yielded back to back with no await in between.
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame
