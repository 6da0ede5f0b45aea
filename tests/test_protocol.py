from assistant_stream_client.models import ToolCallResult
from assistant_stream_client.protocol import (
    extract_error,
    extract_tool_output_index,
    format_tool_failure,
    format_tool_output,
    is_active_run_error,
    is_terminal_status,
    make_tool_outputs,
)


def test_extract_error_reads_error_payload() -> None:
    error = extract_error({"error": {"code": "invalid_api_key", "message": "boom"}})
    assert error is not None
    assert error["code"] == "invalid_api_key"
    assert error["message"] == "boom"
    assert extract_error({"error": "flat string"}) is None
    assert extract_error(["not", "a", "dict"]) is None


def test_extract_tool_output_index() -> None:
    assert extract_tool_output_index("Invalid 'tool_outputs[3].output': string too long") == 3
    assert extract_tool_output_index("tool_outputs is empty") is None


def test_run_status_helpers() -> None:
    assert is_terminal_status("expired")
    assert not is_terminal_status("requires_action")
    assert not is_terminal_status(None)
    assert is_active_run_error("Thread thread_1 already has an active run; run run_1 is active.")
    assert not is_active_run_error("No thread found")


def test_tool_output_formatting() -> None:
    assert format_tool_output({"a": 1}) == '\n```json\n{\n  "a": 1\n}\n```\n'
    assert format_tool_failure(ValueError("bad input")) == "Tool call failed: bad input"
    assert make_tool_outputs([ToolCallResult(tool_call_id="c", output="x", failed=True)]) == [
        {"tool_call_id": "c", "output": "x"}
    ]
