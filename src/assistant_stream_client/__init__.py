from .cancellation import CancellationToken
from .channel import ChannelEvent, MessageChannel
from .client import AssistantClient
from .completions import CompletionStreamClient
from .decoder import StreamDecoder, interpret_assistant_event, interpret_completion_chunk
from .dispatcher import ToolCallDispatcher
from .errors import (
    AssistantAPIError,
    AssistantError,
    AssistantProtocolError,
    AssistantTransportError,
    OperationCancelled,
    StreamFailedError,
    StreamParseError,
    StructuredPayloadParseError,
    TooManyRoundsError,
    ToolExecutionError,
    ToolSubmissionError,
)
from .instructions import build_instructions
from .models import (
    Agent,
    AgentTask,
    AssistantConfig,
    ChatMessage,
    CompletionConfig,
    CompletionTurnResult,
    ConversationTurnResult,
    FileReference,
    StructuredPayload,
    ToolCall,
    ToolCallResult,
)
from .session import RunSession
from .tools import ToolDescriptor, ToolRegistry, build_agent_tools

__all__ = [
    "Agent",
    "AgentTask",
    "AssistantAPIError",
    "AssistantClient",
    "AssistantConfig",
    "AssistantError",
    "AssistantProtocolError",
    "AssistantTransportError",
    "CancellationToken",
    "ChannelEvent",
    "ChatMessage",
    "CompletionConfig",
    "CompletionStreamClient",
    "CompletionTurnResult",
    "ConversationTurnResult",
    "FileReference",
    "MessageChannel",
    "OperationCancelled",
    "RunSession",
    "StreamDecoder",
    "StreamFailedError",
    "StreamParseError",
    "StructuredPayload",
    "StructuredPayloadParseError",
    "TooManyRoundsError",
    "ToolCall",
    "ToolCallDispatcher",
    "ToolCallResult",
    "ToolDescriptor",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolSubmissionError",
    "build_agent_tools",
    "build_instructions",
    "interpret_assistant_event",
    "interpret_completion_chunk",
]
