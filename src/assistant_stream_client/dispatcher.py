from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from .cancellation import CancellationToken
from .errors import AssistantAPIError, OperationCancelled, ToolSubmissionError
from .models import ToolCall, ToolCallResult
from .protocol import (
    PARALLEL_RECIPIENT_PREFIX,
    PARALLEL_TOOL_NAME,
    extract_tool_output_index,
    format_tool_failure,
    format_tool_output,
    make_tool_outputs,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Capability that runs one tool by name. May return a value or an awaitable.
ToolExecutor = Callable[[str, dict[str, Any]], Any]


class ToolCallDispatcher:
    """Execute batches of tool calls and hand their outputs back to the backend.

    A failing tool never aborts its siblings: the failure becomes the call's
    output text. Only cancellation escapes a batch.
    """

    async def dispatch(
        self,
        tool_calls: Sequence[ToolCall],
        execute: ToolExecutor,
        token: CancellationToken | None = None,
    ) -> list[ToolCallResult]:
        """Run every call in order and return one result per call, same order.

        A `multi_tool_use.parallel` call is unpacked into its sub-calls, whose
        outputs are concatenated into a single result under the outer call id.
        The backend then receives exactly one output per call it asked for,
        instead of one entry per sub-call.

        Raises:
            OperationCancelled: when the token is cancelled before a (sub)call.
        """
        results: list[ToolCallResult] = []
        for call in tool_calls:
            if token is not None:
                token.throw_if_cancelled()
            if call.function.name == PARALLEL_TOOL_NAME:
                results.append(await self._dispatch_parallel(call, execute, token))
            else:
                results.append(await self._dispatch_one(call, execute))
        return results

    async def submit(
        self,
        results: Sequence[ToolCallResult],
        send: Callable[[list[dict[str, Any]]], Awaitable[T]],
    ) -> T:
        """Send tool outputs, patching and resending once on an indexed rejection.

        When the backend rejects `tool_outputs[k]` with a 400, output `k` is
        replaced by the error text and the batch is sent one more time.
        """
        outputs = make_tool_outputs(list(results))
        try:
            return await send(outputs)
        except AssistantAPIError as exc:
            index = extract_tool_output_index(str(exc))
            if exc.status_code != 400 or index is None or index >= len(outputs):
                raise
            logger.warning("tool outputs rejected at index %d: %s", index, exc)
            outputs[index] = {
                **outputs[index],
                "output": f"Error submitting tool outputs: {exc}",
            }

        try:
            return await send(outputs)
        except AssistantAPIError as exc:
            index = extract_tool_output_index(str(exc))
            raise ToolSubmissionError(
                f"tool outputs rejected after patching: {exc}",
                index=index,
            ) from exc

    async def _dispatch_one(self, call: ToolCall, execute: ToolExecutor) -> ToolCallResult:
        try:
            arguments = _parse_arguments(call.function.arguments)
            output = await _execute(execute, call.function.name, arguments)
        except OperationCancelled:
            raise
        except Exception as exc:
            logger.warning("tool call %s (%s) failed: %s", call.id, call.function.name, exc)
            return ToolCallResult(tool_call_id=call.id, output=format_tool_failure(exc), failed=True)
        return ToolCallResult(tool_call_id=call.id, output=output)

    async def _dispatch_parallel(
        self,
        call: ToolCall,
        execute: ToolExecutor,
        token: CancellationToken | None,
    ) -> ToolCallResult:
        try:
            uses = _parse_parallel_uses(call.function.arguments)
        except (ValueError, TypeError) as exc:
            logger.warning("could not unpack parallel tool call %s: %s", call.id, exc)
            return ToolCallResult(tool_call_id=call.id, output=format_tool_failure(exc), failed=True)

        outputs: list[str] = []
        failed = False
        for name, parameters in uses:
            if token is not None:
                token.throw_if_cancelled()
            try:
                outputs.append(await _execute(execute, name, parameters))
            except OperationCancelled:
                raise
            except Exception as exc:
                logger.warning("tool call %s (%s) failed: %s", call.id, name, exc)
                outputs.append(format_tool_failure(exc))
                failed = True
        return ToolCallResult(tool_call_id=call.id, output="".join(outputs), failed=failed)


async def _execute(execute: ToolExecutor, name: str, arguments: dict[str, Any]) -> str:
    result = execute(name, arguments)
    if inspect.isawaitable(result):
        result = await result
    return format_tool_output(result)


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    arguments = json.loads(raw)
    if not isinstance(arguments, dict):
        raise ValueError(f"tool arguments must be a JSON object, got {type(arguments).__name__}")
    return arguments


def _parse_parallel_uses(raw: str) -> list[tuple[str, dict[str, Any]]]:
    payload = json.loads(raw)
    uses = payload.get("tool_uses") if isinstance(payload, dict) else None
    if not isinstance(uses, list):
        raise ValueError("parallel tool call carries no tool_uses list")

    parsed: list[tuple[str, dict[str, Any]]] = []
    for use in uses:
        if not isinstance(use, dict) or not isinstance(use.get("recipient_name"), str):
            raise ValueError(f"malformed parallel tool use: {use!r}")
        name = use["recipient_name"]
        if name.startswith(PARALLEL_RECIPIENT_PREFIX):
            name = name[len(PARALLEL_RECIPIENT_PREFIX) :]
        parameters = use.get("parameters")
        parsed.append((name, parameters if isinstance(parameters, dict) else {}))
    return parsed
