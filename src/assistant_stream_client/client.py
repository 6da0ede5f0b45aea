from __future__ import annotations

import logging
import os
from typing import Any

from .backend import AssistantsBackend
from .cancellation import CancellationToken
from .dispatcher import ToolCallDispatcher, ToolExecutor
from .errors import AssistantTransportError
from .models import AssistantConfig, ConversationTurnResult
from .protocol import ASSISTANTS_BETA_HEADER, DEFAULT_BASE_URL, DEFAULT_MODEL
from .session import DeltaCallback, RunSession
from .tools import ToolRegistry
from .transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)


class AssistantClient:
    """High-level async client for an assistant bound to one persistent thread."""

    def __init__(
        self,
        transport: Transport,
        *,
        config: AssistantConfig,
        assistant_id: str | None = None,
        thread_id: str | None = None,
        tools: ToolRegistry | None = None,
        instructions: str | None = None,
        dispatcher: ToolCallDispatcher | None = None,
    ) -> None:
        """Create a client bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            config: Model, endpoint and loop limits.
            assistant_id: Existing assistant to reuse; created by `init()` if None.
            thread_id: Existing thread to reuse; created by `init()` if None.
            tools: Tools offered to the assistant and executed on its behalf.
            instructions: Instructions used when the assistant is created.
            dispatcher: Optional tool-call dispatcher shared by all turns.
        """
        self._transport = transport
        self._backend = AssistantsBackend(transport)
        self._config = config
        self._assistant_id = assistant_id
        self._thread_id = thread_id
        self._tools = tools if tools is not None else ToolRegistry()
        self._instructions = instructions
        self._dispatcher = dispatcher if dispatcher is not None else ToolCallDispatcher()

        self._session: RunSession | None = None
        self._started = False
        self._closed = False

    @classmethod
    def from_env(
        cls,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        assistant_id: str | None = None,
        thread_id: str | None = None,
        tools: ToolRegistry | None = None,
        instructions: str | None = None,
        request_timeout: float = 30.0,
        max_tool_rounds: int = 25,
    ) -> AssistantClient:
        """Create an unstarted client configured from `OPENAI_*` environment variables."""
        resolved_key = api_key or os.getenv("OPENAI_API_KEY")
        if not resolved_key:
            raise ValueError("an API key is required (pass api_key or set OPENAI_API_KEY)")
        config = AssistantConfig(
            api_key=resolved_key,
            model=model or os.getenv("OPENAI_MODEL") or DEFAULT_MODEL,
            base_url=base_url or os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL,
            request_timeout=request_timeout,
            max_tool_rounds=max_tool_rounds,
        )
        transport = HttpxTransport(
            config.base_url,
            headers={"Authorization": f"Bearer {config.api_key}", **ASSISTANTS_BETA_HEADER},
            timeout=config.request_timeout,
        )
        return cls(
            transport,
            config=config,
            assistant_id=assistant_id,
            thread_id=thread_id,
            tools=tools,
            instructions=instructions,
        )

    @property
    def assistant_id(self) -> str | None:
        return self._assistant_id

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def current_run_id(self) -> str | None:
        """Run id of the turn in progress, once the backend has reported it."""
        return self._session.run_id if self._session is not None else None

    @property
    def is_running(self) -> bool:
        return self._session is not None

    async def start(self) -> AssistantClient:
        """Connect transport once."""
        if self._closed:
            raise AssistantTransportError("client is closed")
        if not self._started:
            await self._transport.connect()
            self._started = True
        return self

    async def __aenter__(self) -> AssistantClient:
        """Support `async with AssistantClient(...)` usage."""
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel any turn in progress and close the transport."""
        if self._closed:
            return
        self._closed = True
        if self._session is not None:
            self._session.token.cancel()
        await self._transport.close()
        self._started = False

    async def init(self) -> None:
        """Create the assistant and the thread unless ids were supplied."""
        await self.start()
        if self._assistant_id is None:
            self._assistant_id = await self._backend.create_assistant(
                model=self._config.model,
                name=self._config.assistant_name,
                instructions=self._instructions,
                tools=self._tools.schemas(),
            )
            logger.info("created assistant %s", self._assistant_id)
        if self._thread_id is None:
            self._thread_id = await self._backend.create_thread()
            logger.info("created thread %s", self._thread_id)

    async def add_user_message(
        self,
        content: str,
        *,
        on_delta: DeltaCallback | None = None,
        execute: ToolExecutor | None = None,
    ) -> ConversationTurnResult:
        """Run one turn for `content` and return the assembled answer.

        Tool calls are executed with `execute`, defaulting to the client's
        tool registry. `cancel_current_run()` aborts the turn; the result then
        has `aborted=True`.
        """
        if self._session is not None:
            raise RuntimeError("a turn is already in progress on this thread")
        if self._assistant_id is None or self._thread_id is None:
            await self.init()
        if self._assistant_id is None:
            raise RuntimeError("assistant is not initialized; call init() first")

        session = RunSession(
            self._backend,
            thread_id=self._require_thread(),
            assistant_id=self._assistant_id,
            token=CancellationToken(),
            dispatcher=self._dispatcher,
            max_tool_rounds=self._config.max_tool_rounds,
        )
        self._session = session
        try:
            return await session.run(
                content,
                execute=execute if execute is not None else self._tools.execute,
                on_delta=on_delta,
            )
        finally:
            self._session = None

    def cancel_current_run(self) -> bool:
        """Request cancellation of the turn in progress.

        Returns False when no turn is running.
        """
        if self._session is None:
            logger.info("no ongoing run to cancel")
            return False
        self._session.token.cancel()
        return True

    async def add_assistant_message(self, content: str) -> None:
        """Append an assistant-authored message to the thread."""
        await self._backend.create_message(self._require_thread(), content, role="assistant")

    async def get_messages(self) -> list[dict[str, Any]]:
        return await self._backend.list_messages(self._require_thread())

    async def get_thread(self) -> dict[str, Any]:
        return await self._backend.get_thread(self._require_thread())

    async def destroy(self) -> None:
        """Delete the thread and the assistant on the backend."""
        if self._thread_id is not None:
            await self._backend.delete_thread(self._thread_id)
            self._thread_id = None
        if self._assistant_id is not None:
            await self._backend.delete_assistant(self._assistant_id)
            self._assistant_id = None

    def _require_thread(self) -> str:
        if self._thread_id is None:
            raise RuntimeError("thread is not initialized; call init() first")
        return self._thread_id
