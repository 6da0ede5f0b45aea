from __future__ import annotations

import json
import re
from typing import Any

# Server-sent-events framing used by both backends.
DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"

# Reserved `finish_reason` values in completion chunks.
FINISH_REASON_STOP = "stop"
FINISH_REASON_ERROR = "error"

# A single sentinel marks where prose ends inside a text delta; three in a row
# delimit the trailing JSON block inside the final message text.
BOUNDARY_SENTINEL = "⁙"
BLOCK_DELIMITER = BOUNDARY_SENTINEL * 3

# Object types carried by assistant stream payloads.
RUN_OBJECT = "thread.run"
MESSAGE_OBJECT = "thread.message"
MESSAGE_DELTA_OBJECT = "thread.message.delta"

# Run statuses.
RUN_REQUIRES_ACTION = "requires_action"
RUN_TERMINAL_STATUSES = frozenset(
    {
        "cancelled",
        "failed",
        "completed",
        "incomplete",
        "expired",
    }
)
RUN_FAILED_STATUSES = frozenset({"failed", "expired"})
RUN_ACTIVE_STATUSES = frozenset({"queued", "in_progress", "requires_action", "cancelling"})

# Aggregate tool call wrapping several function calls in one argument payload.
PARALLEL_TOOL_NAME = "multi_tool_use.parallel"
PARALLEL_RECIPIENT_PREFIX = "functions."

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"

ASSISTANTS_BETA_HEADER = {"OpenAI-Beta": "assistants=v2"}

_TOOL_OUTPUT_INDEX_RE = re.compile(r"tool_outputs\[(\d+)\]")


def is_terminal_status(status: str | None) -> bool:
    """Return True when a run status is terminal on the backend."""
    return status in RUN_TERMINAL_STATUSES


def is_active_run_error(message: str) -> bool:
    """Return True when a message-create failure reports an active run on the thread."""
    return "is active" in message


def extract_tool_output_index(message: str) -> int | None:
    """Return `k` from a `tool_outputs[k]` validation message, if present."""
    match = _TOOL_OUTPUT_INDEX_RE.search(message)
    if match is None:
        return None
    return int(match.group(1))


def extract_error(payload: Any) -> dict[str, Any] | None:
    """Return the error object of a response body if present and valid."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def format_tool_output(result: Any) -> str:
    """Render a successful tool result as a fenced JSON block for the model."""
    return "\n```json\n" + json.dumps(result, indent=2, default=str) + "\n```\n"


def format_tool_failure(exc: BaseException) -> str:
    """Render a failed tool call as plain text for the model."""
    return f"Tool call failed: {exc}"


def make_tool_outputs(results: list[Any]) -> list[dict[str, Any]]:
    """Build the outbound `tool_outputs` array from ordered tool results."""
    return [{"tool_call_id": result.tool_call_id, "output": result.output} for result in results]
