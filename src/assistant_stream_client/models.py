from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal, TypeAlias, Union

from pydantic import BaseModel, ConfigDict, Field

from .protocol import DEFAULT_BASE_URL, DEFAULT_MODEL


class FileReference(BaseModel):
    """A file the assistant points at in the trailing structured block.

    Attributes:
        name: Display name chosen by the model.
        path: Local path reported by the tool that produced the file.
        mime_type: MIME type (`mimeType` on the wire).
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    path: str
    mime_type: str | None = Field(default=None, alias="mimeType")


class StructuredPayload(BaseModel):
    """Structured metadata trailing the prose of an assistant message.

    Unknown keys are preserved so callers can extend the block convention.
    """

    model_config = ConfigDict(extra="allow")

    files: list[FileReference] = Field(default_factory=list)


class ToolFunction(BaseModel):
    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    """Request, emitted by the model, to run an external function.

    Attributes:
        id: Call identifier, unique within one batch.
        type: Call type; only `function` is produced by current backends.
        function: Function name and JSON-encoded argument string.
    """

    id: str
    type: str = "function"
    function: ToolFunction


class ToolCallResult(BaseModel):
    """Output for exactly one `ToolCall` of a batch.

    Attributes:
        tool_call_id: Identifier of the originating call.
        output: Text handed back to the model, failure text included.
        failed: True when the call (or any sub-call of a parallel batch) failed.
    """

    tool_call_id: str
    output: str
    failed: bool = False


class TextDelta(BaseModel):
    kind: Literal["text_delta"] = "text_delta"
    text: str


class MessageDone(BaseModel):
    """A completed assistant message.

    Attributes:
        final_text: Prose with the structured block and sentinels removed.
        structured_payload: Parsed trailing block, empty when absent or invalid.
        raw_text: Full message text as delivered by the backend.
    """

    kind: Literal["message_done"] = "message_done"
    final_text: str
    structured_payload: StructuredPayload = Field(default_factory=StructuredPayload)
    raw_text: str = ""


class RequiresAction(BaseModel):
    kind: Literal["requires_action"] = "requires_action"
    run_id: str
    tool_calls: list[ToolCall] = Field(default_factory=list)


class RunIdentified(BaseModel):
    kind: Literal["run_identified"] = "run_identified"
    run_id: str
    status: str | None = None


class ToolCallsDelta(BaseModel):
    """Assistant delta carrying (possibly partial) `tool_calls` fragments."""

    kind: Literal["tool_calls_delta"] = "tool_calls_delta"
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)


class ToolMessage(BaseModel):
    """Delta produced with `role: "tool"` by backends that run tools themselves."""

    kind: Literal["tool_message"] = "tool_message"
    tool_call_id: str | None = None
    content: str = ""


class StreamEnd(BaseModel):
    kind: Literal["stream_end"] = "stream_end"


class StreamError(BaseModel):
    """Fatal stream condition.

    Attributes:
        message: Backend-provided or decoder-generated description.
        line: Offending raw line when the payload could not be decoded.
    """

    kind: Literal["stream_error"] = "stream_error"
    message: str
    line: str | None = None


StreamEvent: TypeAlias = Annotated[
    Union[
        TextDelta,
        MessageDone,
        RequiresAction,
        RunIdentified,
        ToolCallsDelta,
        ToolMessage,
        StreamEnd,
        StreamError,
    ],
    Field(discriminator="kind"),
]


class ConversationTurnResult(BaseModel):
    """Externally visible outcome of one conversation turn.

    Attributes:
        response: Accumulated assistant prose.
        data: Structured trailing payload (referenced files and extras).
        run_id: First run id observed for the turn (managed variant).
        thread_id: Thread the turn ran against (managed variant).
        assistant_id: Assistant that produced the answer (managed variant).
        aborted: True when the turn was cancelled; cancellation is never raised.
    """

    response: str = ""
    data: StructuredPayload = Field(default_factory=StructuredPayload)
    run_id: str | None = None
    thread_id: str | None = None
    assistant_id: str | None = None
    aborted: bool = False


class ChatMessage(BaseModel):
    """One stored message of a direct-completions conversation.

    Tool-call and tool-result messages are stored with JSON-encoded content so
    that they can be replayed in later requests.
    """

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    sender_id: str | None = None


class CompletionTurnResult(ConversationTurnResult):
    """Turn result of the direct completions client.

    Attributes:
        messages: Messages to append to the history, in arrival order: reified
            tool-call and tool messages first, the assistant answer last.
    """

    messages: list[ChatMessage] = Field(default_factory=list)


class AgentTask(BaseModel):
    """A task an agent exposes as a callable tool.

    Attributes:
        name: Task name, unique within its agent.
        description: What the task does, shown to the model.
        schema_: Parameter map (`schema` on the wire), name -> `{type, description}`.
        returns: Free-form description of the return value.
        required_params: Parameters the model must always provide.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    schema_: dict[str, dict[str, Any]] = Field(default_factory=dict, alias="schema")
    returns: Any = None
    required_params: list[str] = Field(default_factory=list, alias="requiredParams")


class Agent(BaseModel):
    """An agent whose tasks are offered to the assistant as tools."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    instructions: str = ""
    tasks: list[AgentTask] = Field(default_factory=list)
    include_tool_messages: bool = Field(default=False, alias="includeToolMessages")
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    temperature: float | None = None


#: Lifecycle of a managed-variant run session.
#:
#: Values: ``idle`` -> ``submitting`` -> ``streaming`` ->
#: ``awaiting_tool_results`` -> ``streaming`` ... -> one of the terminal states
#: ``completed``, ``failed``, ``cancelled``.
RunState: TypeAlias = Literal[
    "idle",
    "submitting",
    "streaming",
    "awaiting_tool_results",
    "completed",
    "failed",
    "cancelled",
]

#: Lifecycle of a direct completions stream.
CompletionState: TypeAlias = Literal["idle", "streaming", "completed", "failed", "cancelled"]


@dataclass(slots=True)
class AssistantConfig:
    """Configuration for the managed thread/run client.

    Attributes:
        api_key: Bearer token for the backend.
        model: Model id used when the assistant is created.
        base_url: REST base URL of the backend.
        assistant_name: Name given to newly created assistants.
        request_timeout: Timeout in seconds for non-streaming requests.
        max_tool_rounds: Upper bound on required-action rounds per turn.
    """

    api_key: str
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    assistant_name: str = "Assistant"
    request_timeout: float = 30.0
    max_tool_rounds: int = 25


@dataclass(slots=True)
class CompletionConfig:
    """Configuration for the direct completions client.

    Attributes:
        base_url: Base URL of the completions backend.
        path: Endpoint path appended to `base_url`.
        model: Optional model id forwarded in the request body.
        api_key: Optional bearer token.
        max_tokens: Optional completion token cap.
        temperature: Optional sampling temperature.
        include_tool_messages: Ask the backend to stream tool-call messages.
        request_timeout: Timeout in seconds used for connect/read.
    """

    base_url: str = DEFAULT_BASE_URL
    path: str = "/chat/completions"
    model: str | None = None
    api_key: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    include_tool_messages: bool = False
    request_timeout: float = 30.0
