"""Incremental decoding of server-sent event streams into protocol events.

The decoder never assumes that network chunks align with lines: text is
buffered until a newline completes a line, and only complete lines are
interpreted. Each backend flavour supplies an interpreter that maps one JSON
payload onto at most one `StreamEvent`.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from typing import Any

from pydantic import ValidationError

from .errors import StructuredPayloadParseError
from .models import (
    MessageDone,
    RequiresAction,
    RunIdentified,
    StreamEnd,
    StreamError,
    StreamEvent,
    StructuredPayload,
    TextDelta,
    ToolCall,
    ToolCallsDelta,
    ToolMessage,
)
from .protocol import (
    BLOCK_DELIMITER,
    BOUNDARY_SENTINEL,
    DATA_PREFIX,
    DONE_MARKER,
    FINISH_REASON_ERROR,
    FINISH_REASON_STOP,
    MESSAGE_DELTA_OBJECT,
    MESSAGE_OBJECT,
    RUN_FAILED_STATUSES,
    RUN_OBJECT,
    RUN_REQUIRES_ACTION,
    extract_error,
)

logger = logging.getLogger(__name__)

Interpreter = Callable[[dict[str, Any]], "StreamEvent | None"]


def interpret_completion_chunk(payload: dict[str, Any]) -> StreamEvent | None:
    """Map one direct-completions chunk onto an event.

    Chunks without `choices` or `delta` are ignored.
    """
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None

    finish_reason = choice.get("finish_reason")
    if finish_reason == FINISH_REASON_STOP:
        return StreamEnd()
    if finish_reason == FINISH_REASON_ERROR:
        error = extract_error(payload) or extract_error(choice)
        message = error.get("message") if error is not None else None
        return StreamError(message=str(message or "completion stream reported an error"))

    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None

    tool_calls = delta.get("tool_calls")
    if isinstance(tool_calls, list) and tool_calls:
        return ToolCallsDelta(tool_calls=[call for call in tool_calls if isinstance(call, dict)])

    content = delta.get("content")
    if delta.get("role") == "tool":
        tool_call_id = delta.get("tool_call_id")
        return ToolMessage(
            tool_call_id=tool_call_id if isinstance(tool_call_id, str) else None,
            content=_stringify(content),
        )

    if isinstance(content, str) and content:
        return TextDelta(text=content)
    return None


def interpret_assistant_event(payload: dict[str, Any]) -> StreamEvent | None:
    """Map one managed-run stream payload onto an event.

    Payloads are told apart by their `object` field; run step and other
    informational objects are ignored.
    """
    kind = payload.get("object")

    if kind == MESSAGE_DELTA_OBJECT:
        delta = payload.get("delta")
        text = _join_text_parts(delta.get("content") if isinstance(delta, dict) else None)
        return TextDelta(text=text) if text else None

    if kind == MESSAGE_OBJECT:
        if payload.get("status") != "completed":
            return None
        return build_message_done(_join_text_parts(payload.get("content")))

    if kind == RUN_OBJECT:
        run_id = payload.get("id")
        if not isinstance(run_id, str):
            return None
        status = payload.get("status")
        if status == RUN_REQUIRES_ACTION:
            return _requires_action(run_id, payload)
        if status in RUN_FAILED_STATUSES:
            last_error = payload.get("last_error")
            message = last_error.get("message") if isinstance(last_error, dict) else None
            return StreamError(message=str(message or f"run {run_id} {status}"))
        return RunIdentified(run_id=run_id, status=status if isinstance(status, str) else None)

    error = extract_error(payload)
    if error is not None:
        return StreamError(message=str(error.get("message") or "assistant stream reported an error"))
    return None


def parse_structured_block(block: str) -> StructuredPayload:
    """Parse the JSON found between block delimiters."""
    try:
        return StructuredPayload.model_validate(json.loads(block))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise StructuredPayloadParseError(f"invalid structured block: {exc}") from exc


def build_message_done(text: str) -> MessageDone:
    """Split a completed message into prose and its trailing structured block.

    An unparseable block is logged and replaced by an empty payload; the prose
    stays usable.
    """
    parts = text.split(BLOCK_DELIMITER)
    prose = parts[0].replace(BOUNDARY_SENTINEL, "").strip()
    payload = StructuredPayload()
    if len(parts) > 1 and parts[1].strip():
        try:
            payload = parse_structured_block(parts[1].strip())
        except StructuredPayloadParseError as exc:
            logger.warning("failed to parse structured block from message: %s", exc)
            logger.debug("message text: %r", text)
    return MessageDone(final_text=prose, structured_payload=payload, raw_text=text)


class StreamDecoder:
    """Turn arbitrarily chunked stream text into an ordered event sequence.

    Only `data: ` lines are interpreted. Decoding stops after the first
    `StreamEnd` or `StreamError`; later buffered lines are ignored.
    """

    def __init__(self, interpret: Interpreter = interpret_completion_chunk) -> None:
        self._interpret = interpret
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once a terminal event was produced."""
        return self._finished

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        """Append one fragment and return events for every line it completes."""
        if self._finished:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def finish(self) -> list[StreamEvent]:
        """Flush the trailing unterminated line once the transport has closed."""
        if self._finished:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._decode_lines([remainder])

    async def decode(self, chunks: AsyncIterable[str | bytes]) -> AsyncIterator[StreamEvent]:
        """Lazily decode an async chunk source."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
            if self._finished:
                return
        for event in self.finish():
            yield event

    def decode_all(self, chunks: Iterable[str | bytes]) -> list[StreamEvent]:
        """Decode an in-memory chunk sequence in one go."""
        events: list[StreamEvent] = []
        for chunk in chunks:
            events.extend(self.feed(chunk))
            if self._finished:
                return events
        events.extend(self.finish())
        return events

    def _decode_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            event = self._decode_line(line)
            if event is None:
                continue
            events.append(event)
            if isinstance(event, (StreamEnd, StreamError)):
                self._finished = True
                self._buffer = ""
                break
        return events

    def _decode_line(self, line: str) -> StreamEvent | None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :]
        if data.strip() == DONE_MARKER:
            return StreamEnd()
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            return StreamError(message=f"invalid JSON in stream line: {exc}", line=line)
        if not isinstance(payload, dict):
            return None
        return self._interpret(payload)


def _requires_action(run_id: str, payload: dict[str, Any]) -> StreamEvent:
    required_action = payload.get("required_action")
    submit = required_action.get("submit_tool_outputs") if isinstance(required_action, dict) else None
    raw_calls = submit.get("tool_calls") if isinstance(submit, dict) else None
    if not isinstance(raw_calls, list):
        return RunIdentified(run_id=run_id, status=RUN_REQUIRES_ACTION)
    try:
        tool_calls = [ToolCall.model_validate(call) for call in raw_calls]
    except ValidationError as exc:
        return StreamError(message=f"invalid tool calls for run {run_id}: {exc}")
    return RequiresAction(run_id=run_id, tool_calls=tool_calls)


def _join_text_parts(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for part in content:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        text = part.get("text")
        value = text.get("value") if isinstance(text, dict) else text
        if isinstance(value, str):
            parts.append(value)
    return "".join(parts)


def _stringify(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content)
