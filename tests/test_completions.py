from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Mapping
from typing import Any

import pytest

from assistant_stream_client import (
    AssistantAPIError,
    CancellationToken,
    ChannelEvent,
    ChatMessage,
    CompletionConfig,
    CompletionStreamClient,
    CompletionTurnResult,
    MessageChannel,
    StreamFailedError,
)
from assistant_stream_client.completions import to_request_message
from assistant_stream_client.transport import ResponseStream, Transport


def _chunk(delta: dict[str, Any], finish_reason: str | None = None) -> str:
    choice: dict[str, Any] = {"index": 0, "delta": delta}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return "data: " + json.dumps({"choices": [choice]}) + "\n\n"


STOP = _chunk({}, "stop")


class FakeStream(ResponseStream):
    def __init__(self, chunks: list[str]) -> None:
        self._chunks = chunks
        self.closed = False

    async def chunks(self) -> AsyncIterator[str]:
        for chunk in self._chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeCompletionsTransport(Transport):
    def __init__(self, chunks: list[str] | None = None, *, error: Exception | None = None) -> None:
        self.chunks = chunks or []
        self.error = error
        self.connected = False
        self.closed = False
        self.bodies: list[dict[str, Any]] = []
        self.paths: list[str] = []
        self.stream: FakeStream | None = None

    async def connect(self) -> None:
        self.connected = True

    async def request(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        raise AssertionError("completions client only streams")

    async def open_stream(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> ResponseStream:
        self.paths.append(path)
        self.bodies.append(dict(payload or {}))
        if self.error is not None:
            raise self.error
        self.stream = FakeStream(self.chunks)
        return self.stream

    async def close(self) -> None:
        self.closed = True


def _record(channel: MessageChannel) -> list[ChannelEvent]:
    events: list[ChannelEvent] = []
    for topic in ("message", "typing", "error"):
        channel.subscribe(topic, events.append)
    return events


HISTORY = [
    ChatMessage(role="system", content="be brief"),
    ChatMessage(role="user", content="hi", sender_id="u1"),
]


def test_send_streams_answer_and_publishes_typing_and_message() -> None:
    transport = FakeCompletionsTransport(
        [_chunk({"role": "assistant", "content": "Hel"}), _chunk({"content": "lo"}), STOP]
    )
    channel = MessageChannel()
    events = _record(channel)
    client = CompletionStreamClient(
        transport,
        config=CompletionConfig(model="local-model", max_tokens=256),
        channel=channel,
        assistant_id="bot",
    )

    async def _run() -> CompletionTurnResult:
        async with client:
            return await client.send(HISTORY, conversation_id="conv-1")

    result = asyncio.run(_run())

    assert result.response == "Hello"
    assert not result.aborted
    assert result.messages == [ChatMessage(role="assistant", content="Hello", sender_id="bot")]
    assert client.state == "completed"
    assert transport.connected and transport.closed
    assert transport.stream is not None and transport.stream.closed

    assert transport.paths == ["/chat/completions"]
    assert transport.bodies[0] == {
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ],
        "stream": True,
        "model": "local-model",
        "max_tokens": 256,
    }

    typing = [(event.content, event.is_typing) for event in events if event.topic == "typing"]
    assert typing == [("Hel", True), ("Hello", True), ("", False)]
    published = [event for event in events if event.topic == "message"]
    assert [event.message for event in published] == result.messages
    assert all(event.conversation_id == "conv-1" for event in events)


def test_tool_call_fragments_and_tool_messages_are_reified() -> None:
    transport = FakeCompletionsTransport(
        [
            _chunk(
                {
                    "role": "assistant",
                    "tool_calls": [
                        {"index": 0, "id": "call_1", "type": "function", "function": {"name": "weather", "arguments": ""}}
                    ],
                }
            ),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"city": '}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"Oslo"}'}}]}),
            _chunk({"role": "tool", "tool_call_id": "call_1", "content": "cold"}),
            _chunk({"content": "It is cold."}),
            STOP,
        ]
    )
    client = CompletionStreamClient(
        transport,
        config=CompletionConfig(include_tool_messages=True),
    )

    result = asyncio.run(client.send(HISTORY))

    assert transport.bodies[0]["include_tool_messages"] is True
    assert [message.role for message in result.messages] == ["assistant", "tool", "assistant"]

    call_message = json.loads(result.messages[0].content)
    assert call_message["tool_calls"] == [
        {"id": "call_1", "type": "function", "function": {"name": "weather", "arguments": '{"city": "Oslo"}'}}
    ]
    assert json.loads(result.messages[1].content) == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": "cold",
    }
    assert result.messages[2].content == "It is cold."
    assert result.response == "It is cold."


def test_stored_tool_messages_replay_in_request_shape() -> None:
    call_content = json.dumps(
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [{"id": "c", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
        }
    )
    tool_content = json.dumps({"role": "tool", "tool_call_id": "c", "content": {"ok": True}})

    assert to_request_message(ChatMessage(role="assistant", content=call_content)) == {
        "role": "assistant",
        "content": None,
        "tool_calls": [{"id": "c", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
    }
    assert to_request_message(ChatMessage(role="tool", content=tool_content)) == {
        "role": "tool",
        "tool_call_id": "c",
        "content": '{"ok": true}',
    }
    assert to_request_message(ChatMessage(role="assistant", content="plain")) == {
        "role": "assistant",
        "content": "plain",
    }
    assert to_request_message(ChatMessage(role="assistant", content="[1, 2]")) == {
        "role": "assistant",
        "content": "[1, 2]",
    }


def test_stream_error_is_published_then_raised() -> None:
    error_line = "data: " + json.dumps(
        {"choices": [{"delta": {}, "finish_reason": "error"}], "error": {"message": "model crashed"}}
    )
    transport = FakeCompletionsTransport([_chunk({"content": "partial"}), error_line + "\n"])
    channel = MessageChannel()
    events = _record(channel)
    client = CompletionStreamClient(transport, channel=channel)

    with pytest.raises(StreamFailedError, match="model crashed"):
        asyncio.run(client.send(HISTORY, conversation_id="c"))

    assert client.state == "failed"
    assert [event.error for event in events if event.topic == "error"] == ["model crashed"]
    assert [event for event in events if event.topic == "message"] == []
    assert events[-1].topic == "typing" and not events[-1].is_typing


def test_transport_error_is_published_then_raised() -> None:
    transport = FakeCompletionsTransport(error=AssistantAPIError("Invalid OpenAI api key.", status_code=401))
    channel = MessageChannel()
    events = _record(channel)

    with pytest.raises(AssistantAPIError):
        asyncio.run(CompletionStreamClient(transport, channel=channel).send(HISTORY))

    assert [event.error for event in events if event.topic == "error"] == ["Invalid OpenAI api key."]


def test_cancellation_stops_stream_and_sets_aborted() -> None:
    token = CancellationToken()
    transport = FakeCompletionsTransport(
        [_chunk({"content": "one "}), _chunk({"content": "two"}), STOP]
    )
    channel = MessageChannel()
    channel.subscribe("typing", lambda event: token.cancel() if event.is_typing else None)
    client = CompletionStreamClient(transport, channel=channel)

    result = asyncio.run(client.send(HISTORY, token=token))

    assert result.aborted
    assert result.response == "one "
    assert result.messages == []
    assert client.state == "cancelled"
    assert transport.stream is not None and transport.stream.closed


def test_from_env_reads_openai_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:8080/v1")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_MODEL", "llama")

    client = CompletionStreamClient.from_env()
    body = client.build_request([ChatMessage(role="user", content="x")])

    assert body["model"] == "llama"
    assert body["stream"] is True
