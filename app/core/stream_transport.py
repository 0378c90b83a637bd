"""Chat stream events and their SSE wire codec.

Server side encodes events as ``data: <json>\\n\\n`` frames; the client
decodes the same frames back into events. Three frame types exist on the
wire (token, done, error). A tag flag travels as a token frame whose
cumulative flags changed, with empty content when no text rides along.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Union

from app.core.chat_errors import ErrorKind
from app.core.logging import get_logger
from app.core.schemas_chat import TokenUsage

logger = get_logger(__name__)

# Tag name → wire flag
WIRE_FLAGS: dict[str, str] = {
    "MEMORY": "memory_moment",
    "PATTERN": "pattern_insight",
    "DISCOVERY_COMPLETE": "discovery_complete",
}
_TAG_BY_FLAG = {flag: tag for tag, flag in WIRE_FLAGS.items()}


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class SignalFlagEvent:
    name: str


@dataclass(frozen=True)
class CompletionEvent:
    turn_id: str | None
    usage: TokenUsage = field(default_factory=TokenUsage)
    flags: dict[str, bool] = field(default_factory=dict)
    domain: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    message: str
    retryable: bool = True


StreamEvent = Union[TokenEvent, SignalFlagEvent, CompletionEvent, ErrorEvent]
TERMINAL_EVENTS = (CompletionEvent, ErrorEvent)


def _sse_event(data: dict) -> str:
    """Format a dict as an SSE data line."""
    return f"data: {json.dumps(data)}\n\n"


class SseEncoder:
    """Encode one stream's events, carrying the cumulative tag flags."""

    def __init__(self):
        self._flags: dict[str, bool] = {flag: False for flag in WIRE_FLAGS.values()}

    @property
    def flags(self) -> dict[str, bool]:
        return dict(self._flags)

    def encode(self, event: StreamEvent) -> str:
        if isinstance(event, TokenEvent):
            return _sse_event({"type": "token", "content": event.text, **self._flags})

        if isinstance(event, SignalFlagEvent):
            flag = WIRE_FLAGS.get(event.name)
            if flag is None:
                raise ValueError(f"Unknown signal flag: {event.name}")
            self._flags[flag] = True
            return _sse_event({"type": "token", "content": "", **self._flags})

        if isinstance(event, CompletionEvent):
            for tag, seen in event.flags.items():
                if seen and tag in WIRE_FLAGS:
                    self._flags[WIRE_FLAGS[tag]] = True
            return _sse_event(
                {
                    "type": "done",
                    "message_id": event.turn_id,
                    "usage": event.usage.to_wire(),
                    **self._flags,
                    "domain": event.domain,
                }
            )

        if isinstance(event, ErrorEvent):
            return _sse_event(
                {
                    "type": "error",
                    "message": event.message,
                    "kind": event.kind.value,
                    "retryable": event.retryable,
                }
            )

        raise TypeError(f"Not a stream event: {event!r}")


class SseDecoder:
    """Decode SSE lines into stream events.

    Feed it lines as they arrive (without trailing newlines). Blank lines,
    comments and frames that are not valid JSON are skipped.
    """

    def __init__(self):
        self._flags: dict[str, bool] = {flag: False for flag in WIRE_FLAGS.values()}
        self.terminated = False

    def feed_line(self, line: str) -> list[StreamEvent]:
        line = line.strip()
        if not line.startswith("data:"):
            return []
        body = line[5:].strip()
        if not body or body == "[DONE]":
            return []
        try:
            frame = json.loads(body)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable SSE frame: {body[:80]}")
            return []
        if not isinstance(frame, dict):
            return []
        return self._decode_frame(frame)

    def _decode_frame(self, frame: dict[str, Any]) -> list[StreamEvent]:
        frame_type = frame.get("type")

        if frame_type == "token":
            events: list[StreamEvent] = []
            content = frame.get("content") or ""
            if content:
                events.append(TokenEvent(text=content))
            events.extend(self._flag_transitions(frame))
            return events

        if frame_type == "done":
            flag_events = self._flag_transitions(frame)
            usage = frame.get("usage") or {}
            self.terminated = True
            return [
                *flag_events,
                CompletionEvent(
                    turn_id=frame.get("message_id"),
                    usage=TokenUsage(
                        prompt_tokens=int(usage.get("prompt_tokens") or 0),
                        completion_tokens=int(usage.get("completion_tokens") or 0),
                    ),
                    flags={tag: self._flags[flag] for flag, tag in _TAG_BY_FLAG.items()},
                    domain=frame.get("domain"),
                ),
            ]

        if frame_type == "error":
            self.terminated = True
            kind_value = frame.get("kind") or ErrorKind.MODEL_INVOCATION.value
            try:
                kind = ErrorKind(kind_value)
            except ValueError:
                kind = ErrorKind.MODEL_INVOCATION
            return [
                ErrorEvent(
                    kind=kind,
                    message=frame.get("message") or "",
                    retryable=bool(frame.get("retryable", True)),
                )
            ]

        return []

    def _flag_transitions(self, frame: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for flag, tag in _TAG_BY_FLAG.items():
            if frame.get(flag) and not self._flags[flag]:
                self._flags[flag] = True
                events.append(SignalFlagEvent(name=tag))
        return events
