from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from assistant_stream_client import (
    AssistantAPIError,
    CancellationToken,
    OperationCancelled,
    ToolCall,
    ToolCallDispatcher,
    ToolCallResult,
    ToolSubmissionError,
)


def _call(call_id: str, name: str, arguments: dict[str, Any] | str = "{}") -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCall.model_validate(
        {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}}
    )


def test_dispatch_keeps_order_and_isolates_failures() -> None:
    executed: list[str] = []

    def execute(name: str, arguments: dict[str, Any]) -> Any:
        executed.append(name)
        if name == "a":
            raise RuntimeError("a exploded")
        return {"name": name, "arguments": arguments}

    async def _run() -> list[ToolCallResult]:
        return await ToolCallDispatcher().dispatch(
            [_call("call_a", "a"), _call("call_b", "b", {"q": 1})],
            execute,
        )

    results = asyncio.run(_run())

    assert executed == ["a", "b"]
    assert [result.tool_call_id for result in results] == ["call_a", "call_b"]
    assert results[0].failed
    assert results[0].output == "Tool call failed: a exploded"
    assert not results[1].failed
    assert results[1].output.startswith("\n```json\n")
    assert '"q": 1' in results[1].output


def test_dispatch_all_failing_still_yields_one_result_per_call() -> None:
    def execute(name: str, arguments: dict[str, Any]) -> Any:
        raise ValueError(f"{name} unavailable")

    async def _run() -> list[ToolCallResult]:
        return await ToolCallDispatcher().dispatch(
            [_call("1", "x"), _call("2", "y"), _call("3", "z", "not json")],
            execute,
        )

    results = asyncio.run(_run())

    assert [result.tool_call_id for result in results] == ["1", "2", "3"]
    assert all(result.failed for result in results)
    assert results[0].output == "Tool call failed: x unavailable"
    assert results[2].output.startswith("Tool call failed: ")


def test_dispatch_awaits_async_executors() -> None:
    async def execute(name: str, arguments: dict[str, Any]) -> Any:
        await asyncio.sleep(0)
        return arguments["value"] * 2

    async def _run() -> list[ToolCallResult]:
        return await ToolCallDispatcher().dispatch([_call("c", "double", {"value": 21})], execute)

    results = asyncio.run(_run())

    assert results[0].output == "\n```json\n42\n```\n"


def test_cancelled_token_executes_nothing() -> None:
    executed: list[str] = []
    token = CancellationToken()
    token.cancel()

    async def _run() -> None:
        await ToolCallDispatcher().dispatch(
            [_call("1", "x")],
            lambda name, arguments: executed.append(name),
            token,
        )

    with pytest.raises(OperationCancelled):
        asyncio.run(_run())
    assert executed == []


def test_cancellation_between_calls_stops_the_batch() -> None:
    executed: list[str] = []
    token = CancellationToken()

    def execute(name: str, arguments: dict[str, Any]) -> Any:
        executed.append(name)
        token.cancel()
        return "ok"

    async def _run() -> None:
        await ToolCallDispatcher().dispatch([_call("1", "x"), _call("2", "y")], execute, token)

    with pytest.raises(OperationCancelled):
        asyncio.run(_run())
    assert executed == ["x"]


def test_parallel_wrapper_is_unpacked_into_one_combined_result() -> None:
    executed: list[tuple[str, dict[str, Any]]] = []

    def execute(name: str, arguments: dict[str, Any]) -> Any:
        executed.append((name, arguments))
        if name == "broken":
            raise RuntimeError("nope")
        return name.upper()

    wrapper = _call(
        "call_parallel",
        "multi_tool_use.parallel",
        {
            "tool_uses": [
                {"recipient_name": "functions.alpha", "parameters": {"n": 1}},
                {"recipient_name": "functions.broken", "parameters": {}},
                {"recipient_name": "gamma"},
            ]
        },
    )

    async def _run() -> list[ToolCallResult]:
        return await ToolCallDispatcher().dispatch([wrapper], execute)

    results = asyncio.run(_run())

    assert executed == [("alpha", {"n": 1}), ("broken", {}), ("gamma", {})]
    # One combined output for the outer call, not one per sub-call.
    assert len(results) == 1
    assert results[0].tool_call_id == "call_parallel"
    assert results[0].failed
    assert results[0].output == (
        '\n```json\n"ALPHA"\n```\n' + "Tool call failed: nope" + '\n```json\n"GAMMA"\n```\n'
    )


def test_malformed_parallel_wrapper_becomes_failure_text() -> None:
    wrapper = _call("p", "multi_tool_use.parallel", {"uses": []})

    async def _run() -> list[ToolCallResult]:
        return await ToolCallDispatcher().dispatch([wrapper], lambda name, arguments: None)

    results = asyncio.run(_run())

    assert results[0].failed
    assert "tool_uses" in results[0].output


def _results() -> list[ToolCallResult]:
    return [
        ToolCallResult(tool_call_id="a", output="first"),
        ToolCallResult(tool_call_id="b", output="second"),
    ]


def test_submit_patches_rejected_index_and_resends_once() -> None:
    sent: list[list[dict[str, Any]]] = []

    async def send(outputs: list[dict[str, Any]]) -> str:
        sent.append([dict(output) for output in outputs])
        if len(sent) == 1:
            raise AssistantAPIError("Invalid value for tool_outputs[1].output", status_code=400)
        return "stream"

    result = asyncio.run(ToolCallDispatcher().submit(_results(), send))

    assert result == "stream"
    assert len(sent) == 2
    assert sent[1][0] == {"tool_call_id": "a", "output": "first"}
    assert sent[1][1]["tool_call_id"] == "b"
    assert sent[1][1]["output"].startswith("Error submitting tool outputs: ")


def test_submit_fails_after_second_rejection() -> None:
    attempts = 0

    async def send(outputs: list[dict[str, Any]]) -> str:
        nonlocal attempts
        attempts += 1
        raise AssistantAPIError("bad tool_outputs[0]", status_code=400)

    with pytest.raises(ToolSubmissionError) as exc_info:
        asyncio.run(ToolCallDispatcher().submit(_results(), send))

    assert attempts == 2
    assert exc_info.value.index == 0


def test_submit_without_index_propagates_unchanged() -> None:
    attempts = 0

    async def send(outputs: list[dict[str, Any]]) -> str:
        nonlocal attempts
        attempts += 1
        raise AssistantAPIError("server overloaded", status_code=503)

    with pytest.raises(AssistantAPIError, match="server overloaded"):
        asyncio.run(ToolCallDispatcher().submit(_results(), send))
    assert attempts == 1
