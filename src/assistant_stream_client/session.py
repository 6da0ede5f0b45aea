from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .backend import AssistantsBackend
from .cancellation import CancellationToken
from .decoder import StreamDecoder, interpret_assistant_event
from .dispatcher import ToolCallDispatcher, ToolExecutor
from .errors import (
    AssistantAPIError,
    AssistantError,
    OperationCancelled,
    StreamFailedError,
    StreamParseError,
    TooManyRoundsError,
)
from .models import (
    ConversationTurnResult,
    MessageDone,
    RequiresAction,
    RunIdentified,
    RunState,
    StreamError,
    StructuredPayload,
    TextDelta,
)
from .protocol import (
    BOUNDARY_SENTINEL,
    RUN_ACTIVE_STATUSES,
    RUN_REQUIRES_ACTION,
    is_active_run_error,
    is_terminal_status,
)
from .transport import ResponseStream

logger = logging.getLogger(__name__)

#: Live "typing" callback receiving prose fragments as they stream in.
DeltaCallback = Callable[[str], Any]


@dataclass(slots=True)
class _RoundOutcome:
    response: str = ""
    data: StructuredPayload | None = None
    required: RequiresAction | None = None


class RunSession:
    """One conversation turn of an assistant against a persistent thread.

    The session submits the user message, streams the run, and loops through
    required-action rounds until the run finishes, fails or is cancelled. A
    session serves exactly one turn.
    """

    def __init__(
        self,
        backend: AssistantsBackend,
        *,
        thread_id: str,
        assistant_id: str,
        token: CancellationToken,
        dispatcher: ToolCallDispatcher | None = None,
        max_tool_rounds: int = 25,
    ) -> None:
        """Create a session bound to one thread and one turn.

        Args:
            backend: Remote thread/run operations.
            thread_id: Thread the turn runs against.
            assistant_id: Assistant executing the run.
            token: Cancellation token owned by this turn.
            dispatcher: Tool-call dispatcher; a default one is created if omitted.
            max_tool_rounds: Upper bound on required-action rounds.
        """
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be at least 1")
        self._backend = backend
        self._thread_id = thread_id
        self._assistant_id = assistant_id
        self._token = token
        self._dispatcher = dispatcher if dispatcher is not None else ToolCallDispatcher()
        self._max_tool_rounds = max_tool_rounds

        self._state: RunState = "idle"
        self._first_run_id: str | None = None
        self._run_id: str | None = None
        self._run_status: str | None = None
        self._remote_cancel: asyncio.Future[None] | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def run_id(self) -> str | None:
        """Id of the run currently driven by this session, once known."""
        return self._run_id

    @property
    def token(self) -> CancellationToken:
        return self._token

    async def run(
        self,
        content: str,
        *,
        execute: ToolExecutor,
        on_delta: DeltaCallback | None = None,
    ) -> ConversationTurnResult:
        """Drive the turn to completion and return its result.

        Cancellation is reported through `ConversationTurnResult.aborted` and is
        never raised. Transport and protocol errors propagate.
        """
        if self._state != "idle":
            raise RuntimeError("a run session serves exactly one turn")
        self._token.on_cancel(self._on_cancel)

        rounds_seen: list[_RoundOutcome] = []
        data = StructuredPayload()
        aborted = False

        try:
            self._state = "submitting"
            await self.submit(content)
            self._token.throw_if_cancelled()

            stream = await self._backend.stream_run(self._thread_id, self._assistant_id)
            rounds = 0
            while True:
                self._set_state("streaming")
                outcome = _RoundOutcome()
                rounds_seen.append(outcome)
                await self._consume(stream, on_delta, outcome)
                if outcome.data is not None:
                    data = _merge_payload(data, outcome.data)
                if outcome.required is None:
                    break

                rounds += 1
                if rounds > self._max_tool_rounds:
                    await self._cancel_remote_run(outcome.required.run_id)
                    raise TooManyRoundsError(
                        f"run {outcome.required.run_id} still requires action "
                        f"after {self._max_tool_rounds} rounds",
                        rounds=rounds,
                    )

                self._set_state("awaiting_tool_results")
                self._token.throw_if_cancelled()
                results = await self._dispatcher.dispatch(
                    outcome.required.tool_calls,
                    execute,
                    self._token,
                )
                self._token.throw_if_cancelled()
                stream = await self._submit_tool_outputs(outcome.required.run_id, results)
        except OperationCancelled:
            aborted = True
        except AssistantError as exc:
            if not self._token.is_cancelled:
                self._state = "failed"
                raise
            logger.debug("ignoring error raised after cancellation: %s", exc)
            aborted = True
        except BaseException:
            self._state = "failed"
            await self._settle_remote_cancel()
            raise

        if aborted or self._token.is_cancelled:
            aborted = True
            await self._unwind_cancelled()
            self._state = "cancelled"
        else:
            self._state = "completed"

        return ConversationTurnResult(
            response="\n".join(outcome.response for outcome in rounds_seen if outcome.response),
            data=data,
            run_id=self._first_run_id,
            thread_id=self._thread_id,
            assistant_id=self._assistant_id,
            aborted=aborted,
        )

    async def submit(self, content: str) -> None:
        """Create the user message, clearing a stale active run once if needed."""
        try:
            await self._backend.create_message(self._thread_id, content)
        except AssistantAPIError as exc:
            if not is_active_run_error(str(exc)):
                raise
            logger.info("thread %s has an active run, cancelling it: %s", self._thread_id, exc)
            await self._cancel_stale_run()
            await self._backend.create_message(self._thread_id, content)

    async def _cancel_stale_run(self) -> None:
        runs = await self._backend.list_runs(self._thread_id)
        stale = next((run for run in runs if run.get("status") == RUN_REQUIRES_ACTION), None)
        if stale is None:
            stale = next((run for run in runs if run.get("status") in RUN_ACTIVE_STATUSES), None)
        if stale is None or not isinstance(stale.get("id"), str):
            logger.info("no active run found on thread %s", self._thread_id)
            return
        await self._backend.cancel_run(self._thread_id, stale["id"])

    async def _submit_tool_outputs(self, run_id: str, results: list[Any]) -> ResponseStream:
        async def send(outputs: list[dict[str, Any]]) -> ResponseStream:
            return await self._backend.submit_tool_outputs(self._thread_id, run_id, outputs)

        return await self._dispatcher.submit(results, send)

    async def _consume(
        self,
        stream: ResponseStream,
        on_delta: DeltaCallback | None,
        outcome: _RoundOutcome,
    ) -> None:
        prose_complete = False
        decoder = StreamDecoder(interpret_assistant_event)

        async with stream, contextlib.aclosing(decoder.decode(stream.chunks())) as events:
            async for event in events:
                # Run ids are tracked before the cancellation check.
                if isinstance(event, RunIdentified):
                    self._track_run(event.run_id, event.status)
                elif isinstance(event, RequiresAction):
                    self._track_run(event.run_id, RUN_REQUIRES_ACTION)
                self._token.throw_if_cancelled()

                if isinstance(event, TextDelta):
                    if prose_complete:
                        continue
                    text = event.text
                    if BOUNDARY_SENTINEL in text:
                        # The rest of this message is the structured block.
                        text = text.split(BOUNDARY_SENTINEL, 1)[0]
                        prose_complete = True
                    if text:
                        outcome.response += text
                        await _emit(on_delta, text)
                elif isinstance(event, MessageDone):
                    prose_complete = False
                    if outcome.data is None:
                        outcome.data = event.structured_payload
                    else:
                        outcome.data = _merge_payload(outcome.data, event.structured_payload)
                elif isinstance(event, RequiresAction):
                    outcome.required = event
                elif isinstance(event, StreamError):
                    if event.line is not None:
                        raise StreamParseError(event.message, line=event.line)
                    raise StreamFailedError(event.message)

    def _track_run(self, run_id: str, status: str | None) -> None:
        if self._first_run_id is None:
            self._first_run_id = run_id
        if run_id != self._run_id:
            logger.debug("run %s on thread %s: %s", run_id, self._thread_id, status)
        self._run_id = run_id
        self._run_status = status

    def _set_state(self, state: RunState) -> None:
        logger.debug("run session on thread %s: %s -> %s", self._thread_id, self._state, state)
        self._state = state

    def _on_cancel(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Outside the event loop; the remote cancel is issued while unwinding.
            return
        self._ensure_remote_cancel()

    def _ensure_remote_cancel(self) -> asyncio.Future[None] | None:
        if self._remote_cancel is not None:
            return self._remote_cancel
        if self._run_id is None or is_terminal_status(self._run_status):
            return None
        self._remote_cancel = asyncio.ensure_future(self._cancel_remote_run(self._run_id))
        return self._remote_cancel

    async def _unwind_cancelled(self) -> None:
        pending = self._ensure_remote_cancel()
        if pending is not None:
            await pending

    async def _settle_remote_cancel(self) -> None:
        """Wait for a remote cancel already scheduled by the cancel listener."""
        pending = self._remote_cancel
        if pending is None or pending.done():
            return
        try:
            await pending
        except asyncio.CancelledError:
            pending.cancel()
            raise

    async def _cancel_remote_run(self, run_id: str) -> None:
        try:
            await self._backend.cancel_run(self._thread_id, run_id)
        except AssistantError as exc:
            logger.warning("failed to cancel run %s: %s", run_id, exc)
            return
        self._run_status = "cancelling"
        logger.info("cancelled run %s on thread %s", run_id, self._thread_id)


async def _emit(callback: DeltaCallback | None, text: str) -> None:
    if callback is None:
        return
    result = callback(text)
    if inspect.isawaitable(result):
        await result


def _merge_payload(current: StructuredPayload, update: StructuredPayload) -> StructuredPayload:
    merged = current.model_dump(by_alias=True)
    merged.update(update.model_dump(by_alias=True, exclude_unset=True))
    return StructuredPayload.model_validate(merged)
