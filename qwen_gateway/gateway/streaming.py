from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator

DATA_PREFIX = "data: "
DONE_EVENT = "data: [DONE]\n\n"

logger = logging.getLogger("uvicorn.error")


class SSELineBuffer:
    """Reassembles newline-terminated lines from arbitrarily split chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes | str) -> list[str]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        lines = (self._pending + text).split("\n")
        self._pending = lines.pop()
        return lines


@dataclass(frozen=True, slots=True)
class ParsedEvent:
    payload: Any


@dataclass(frozen=True, slots=True)
class OpaqueEvent:
    line: str


def parse_event_line(line: str) -> ParsedEvent | OpaqueEvent | None:
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    try:
        payload = json.loads(stripped[len(DATA_PREFIX) :])
    except ValueError:
        return OpaqueEvent(line=line)
    return ParsedEvent(payload=payload)


def _first_delta_content(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def rewrite_cumulative_event(previous: str, payload: Any) -> tuple[str, Any]:
    """Turn one cumulative-content event into an incremental one.

    Returns the cumulative content to compare the next event against, and the
    event to emit. The input payload is never mutated.
    """
    current = _first_delta_content(payload)
    if current is None:
        return previous, payload

    new_content = current
    if previous and current.startswith(previous):
        new_content = current[len(previous) :]

    choices = payload["choices"]
    first = choices[0]
    rewritten = {
        **payload,
        "choices": [
            {**first, "delta": {**first["delta"], "content": new_content}},
            *choices[1:],
        ],
    }
    return current, rewritten


def format_data_event(payload: Any) -> str:
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"{DATA_PREFIX}{body}\n\n"


@dataclass(slots=True)
class StreamSession:
    previous_cumulative_content: str = ""
    line_buffer: SSELineBuffer = field(default_factory=SSELineBuffer)
    events_emitted: int = 0


class StreamReframer:
    """Relays one upstream SSE stream, rewriting cumulative content into deltas.

    One instance serves exactly one client connection.
    """

    def __init__(self) -> None:
        self.session = StreamSession()

    def process_line(self, line: str) -> str | None:
        event = parse_event_line(line)
        if event is None:
            return None
        if isinstance(event, OpaqueEvent):
            return f"{event.line}\n\n"

        previous, outgoing = rewrite_cumulative_event(
            self.session.previous_cumulative_content, event.payload
        )
        self.session.previous_cumulative_content = previous
        return format_data_event(outgoing)

    async def reframe(
        self, chunks: AsyncIterable[bytes | str]
    ) -> AsyncIterator[str]:
        session = self.session
        async for chunk in chunks:
            for line in session.line_buffer.feed(chunk):
                outgoing = self.process_line(line)
                if outgoing is None:
                    continue
                session.events_emitted += 1
                yield outgoing

        if session.line_buffer.pending.strip():
            logger.debug(
                "stream_partial_line_discarded chars=%d",
                len(session.line_buffer.pending),
            )
        yield DONE_EVENT
