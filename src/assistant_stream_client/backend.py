from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .errors import AssistantProtocolError
from .transport import ResponseStream, Transport


class AssistantsBackend:
    """Remote operations of the managed thread/run API."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    @property
    def transport(self) -> Transport:
        return self._transport

    async def create_assistant(
        self,
        *,
        model: str,
        name: str,
        instructions: str | None = None,
        tools: Sequence[dict[str, Any]] = (),
    ) -> str:
        """Create an assistant and return its id."""
        body: dict[str, Any] = {"model": model, "name": name, "tools": list(tools)}
        if instructions is not None:
            body["instructions"] = instructions
        result = await self._transport.request("POST", "/assistants", body)
        return _require_id(result, "assistant")

    async def delete_assistant(self, assistant_id: str) -> None:
        await self._transport.request("DELETE", f"/assistants/{assistant_id}")

    async def create_thread(self) -> str:
        """Create an empty thread and return its id."""
        result = await self._transport.request("POST", "/threads", {})
        return _require_id(result, "thread")

    async def get_thread(self, thread_id: str) -> dict[str, Any]:
        result = await self._transport.request("GET", f"/threads/{thread_id}")
        return result if isinstance(result, dict) else {}

    async def delete_thread(self, thread_id: str) -> None:
        await self._transport.request("DELETE", f"/threads/{thread_id}")

    async def create_message(
        self,
        thread_id: str,
        content: str,
        *,
        role: str = "user",
    ) -> dict[str, Any]:
        """Append a message to a thread.

        The backend rejects user messages while a run on the thread is active.
        """
        result = await self._transport.request(
            "POST",
            f"/threads/{thread_id}/messages",
            {"role": role, "content": content},
        )
        return result if isinstance(result, dict) else {}

    async def list_messages(self, thread_id: str) -> list[dict[str, Any]]:
        result = await self._transport.request("GET", f"/threads/{thread_id}/messages")
        return _data_list(result)

    async def list_runs(self, thread_id: str) -> list[dict[str, Any]]:
        result = await self._transport.request("GET", f"/threads/{thread_id}/runs")
        return _data_list(result)

    async def cancel_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        result = await self._transport.request(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/cancel",
        )
        return result if isinstance(result, dict) else {}

    async def stream_run(self, thread_id: str, assistant_id: str) -> ResponseStream:
        """Start a run of `assistant_id` on the thread and stream its events."""
        return await self._transport.open_stream(
            "POST",
            f"/threads/{thread_id}/runs",
            {"assistant_id": assistant_id, "stream": True},
        )

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        tool_outputs: list[dict[str, Any]],
    ) -> ResponseStream:
        """Submit tool outputs for a run waiting on them and stream its continuation."""
        return await self._transport.open_stream(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            {"tool_outputs": tool_outputs, "stream": True},
        )


def _require_id(payload: Any, kind: str) -> str:
    object_id = payload.get("id") if isinstance(payload, dict) else None
    if not isinstance(object_id, str) or not object_id:
        raise AssistantProtocolError(f"{kind} creation succeeded but no {kind} id found")
    return object_id


def _data_list(payload: Any) -> list[dict[str, Any]]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]
