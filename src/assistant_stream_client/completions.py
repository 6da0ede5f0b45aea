from __future__ import annotations

import contextlib
import json
import logging
import os
from collections.abc import Sequence
from typing import Any

from .cancellation import CancellationToken
from .channel import MessageChannel
from .decoder import StreamDecoder, interpret_completion_chunk
from .errors import AssistantError, OperationCancelled, StreamFailedError, StreamParseError
from .models import (
    ChatMessage,
    CompletionConfig,
    CompletionState,
    CompletionTurnResult,
    StreamError,
    TextDelta,
    ToolCallsDelta,
    ToolMessage,
)
from .protocol import DEFAULT_BASE_URL
from .transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)


class CompletionStreamClient:
    """Streaming client for a stateless chat-completions endpoint.

    The full history is sent with every request. Assistant tool-call deltas
    and tool messages are returned as separate messages instead of being merged
    into the prose of the answer.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        config: CompletionConfig | None = None,
        channel: MessageChannel | None = None,
        assistant_id: str = "assistant",
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            config: Endpoint and request options.
            channel: Channel receiving message, typing and error notifications.
            assistant_id: Sender id stamped on messages produced by the backend.
        """
        self._transport = transport
        self._config = config if config is not None else CompletionConfig()
        self._channel = channel if channel is not None else MessageChannel()
        self._assistant_id = assistant_id
        self._state: CompletionState = "idle"
        self._started = False

    @classmethod
    def from_env(
        cls,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        channel: MessageChannel | None = None,
        request_timeout: float = 30.0,
    ) -> CompletionStreamClient:
        """Create an unstarted client configured from `OPENAI_*` environment variables."""
        resolved_base_url = base_url or os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL
        resolved_key = api_key or os.getenv("OPENAI_API_KEY")
        resolved_model = model or os.getenv("OPENAI_MODEL")

        headers: dict[str, str] = {}
        if resolved_key:
            headers["Authorization"] = f"Bearer {resolved_key}"
        transport = HttpxTransport(resolved_base_url, headers=headers, timeout=request_timeout)
        config = CompletionConfig(
            base_url=resolved_base_url,
            model=resolved_model,
            api_key=resolved_key,
            request_timeout=request_timeout,
        )
        return cls(transport, config=config, channel=channel)

    @property
    def state(self) -> CompletionState:
        return self._state

    @property
    def channel(self) -> MessageChannel:
        return self._channel

    async def start(self) -> CompletionStreamClient:
        """Connect the transport once."""
        if not self._started:
            await self._transport.connect()
            self._started = True
        return self

    async def __aenter__(self) -> CompletionStreamClient:
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._transport.close()
        self._started = False

    def build_request(self, history: Sequence[ChatMessage]) -> dict[str, Any]:
        """Build the request body for `history`."""
        body: dict[str, Any] = {
            "messages": [to_request_message(message) for message in history],
            "stream": True,
        }
        if self._config.model is not None:
            body["model"] = self._config.model
        if self._config.max_tokens is not None:
            body["max_tokens"] = self._config.max_tokens
        if self._config.temperature is not None:
            body["temperature"] = self._config.temperature
        if self._config.include_tool_messages:
            body["include_tool_messages"] = True
        return body

    async def send(
        self,
        history: Sequence[ChatMessage],
        *,
        conversation_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> CompletionTurnResult:
        """Stream the answer to `history` and return the messages it produced.

        Transport and decode errors are published on the error channel, then
        re-raised. Cancellation via `token` stops the stream and sets `aborted`.
        """
        if self._state == "streaming":
            raise RuntimeError("a completion stream is already in progress")
        self._state = "streaming"

        response = ""
        messages: list[ChatMessage] = []
        pending_calls: dict[int, dict[str, Any]] = {}
        aborted = False

        def flush_tool_calls() -> None:
            if not pending_calls:
                return
            calls = [pending_calls[index] for index in sorted(pending_calls)]
            pending_calls.clear()
            content = json.dumps({"role": "assistant", "content": None, "tool_calls": calls})
            messages.append(self._message("assistant", content))

        try:
            stream = await self._transport.open_stream(
                "POST",
                self._config.path,
                self.build_request(history),
            )
            decoder = StreamDecoder(interpret_completion_chunk)
            async with stream, contextlib.aclosing(decoder.decode(stream.chunks())) as events:
                async for event in events:
                    if token is not None:
                        token.throw_if_cancelled()

                    if isinstance(event, TextDelta):
                        flush_tool_calls()
                        response += event.text
                        await self._channel.publish_typing(
                            response,
                            conversation_id=conversation_id,
                            sender=self,
                        )
                    elif isinstance(event, ToolCallsDelta):
                        _merge_tool_call_deltas(pending_calls, event.tool_calls)
                    elif isinstance(event, ToolMessage):
                        flush_tool_calls()
                        content = json.dumps(
                            {
                                "role": "tool",
                                "tool_call_id": event.tool_call_id,
                                "content": event.content,
                            }
                        )
                        messages.append(self._message("tool", content))
                    elif isinstance(event, StreamError):
                        if event.line is not None:
                            raise StreamParseError(event.message, line=event.line)
                        raise StreamFailedError(event.message)
            flush_tool_calls()
        except OperationCancelled:
            aborted = True
        except AssistantError as exc:
            self._state = "failed"
            logger.warning("completion stream failed: %s", exc)
            await self._channel.publish_error(
                str(exc),
                conversation_id=conversation_id,
                sender=self,
            )
            raise
        except BaseException:
            self._state = "failed"
            raise
        finally:
            await self._channel.publish_typing(
                "",
                is_typing=False,
                conversation_id=conversation_id,
                sender=self,
            )

        if aborted:
            self._state = "cancelled"
        else:
            self._state = "completed"
            if response:
                messages.append(self._message("assistant", response))

        for message in messages:
            await self._channel.publish_message(
                message,
                conversation_id=conversation_id,
                sender=self,
            )

        return CompletionTurnResult(response=response, messages=messages, aborted=aborted)

    def _message(self, role: Any, content: str) -> ChatMessage:
        return ChatMessage(role=role, content=content, sender_id=self._assistant_id)


def to_request_message(message: ChatMessage) -> dict[str, Any]:
    """Map a stored message onto the provider-neutral request shape.

    Non-user messages whose content is JSON carrying `tool_calls` or
    `role: "tool"` are replayed as such; anything else is plain assistant text.
    """
    if message.role in ("user", "system"):
        return {"role": message.role, "content": message.content}

    try:
        parsed = json.loads(message.content)
    except ValueError:
        return {"role": "assistant", "content": message.content}

    if isinstance(parsed, dict):
        if parsed.get("tool_calls"):
            return {
                "role": "assistant",
                "content": parsed.get("content"),
                "tool_calls": parsed["tool_calls"],
            }
        if parsed.get("role") == "tool":
            content = parsed.get("content")
            return {
                "role": "tool",
                "tool_call_id": parsed.get("tool_call_id"),
                "content": content if isinstance(content, str) else json.dumps(content),
            }
    return {"role": "assistant", "content": message.content}


def _merge_tool_call_deltas(
    pending: dict[int, dict[str, Any]],
    fragments: list[dict[str, Any]],
) -> None:
    for position, fragment in enumerate(fragments):
        index = fragment.get("index")
        if not isinstance(index, int):
            index = position
        call = pending.setdefault(
            index,
            {"id": None, "type": "function", "function": {"name": "", "arguments": ""}},
        )
        if isinstance(fragment.get("id"), str):
            call["id"] = fragment["id"]
        if isinstance(fragment.get("type"), str):
            call["type"] = fragment["type"]
        function = fragment.get("function")
        if not isinstance(function, dict):
            continue
        if isinstance(function.get("name"), str):
            call["function"]["name"] += function["name"]
        if isinstance(function.get("arguments"), str):
            call["function"]["arguments"] += function["arguments"]
