"""Explicit publish/subscribe channel between conversation clients and their UI."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel

from .models import ChatMessage

logger = logging.getLogger(__name__)

#: Topics carried by a `MessageChannel`.
#:
#: Values:
#: - ``"message"``: a complete message arrived for a conversation.
#: - ``"typing"``: live partial assistant output (``content``) or typing end.
#: - ``"error"``: a turn failed; ``error`` holds the text to present.
ChannelTopic: TypeAlias = Literal["message", "typing", "error"]

ChannelHandler = Callable[["ChannelEvent"], Any]


class ChannelEvent(BaseModel):
    """One notification published on a `MessageChannel`.

    Attributes:
        topic: Notification topic.
        conversation_id: Conversation the event belongs to, when known.
        message: Complete message for ``message`` events.
        is_typing: Whether the assistant is still producing output.
        content: Accumulated partial output for ``typing`` events.
        error: Failure description for ``error`` events.
    """

    topic: ChannelTopic
    conversation_id: str | None = None
    message: ChatMessage | None = None
    is_typing: bool = False
    content: str = ""
    error: str | None = None


class MessageChannel:
    """In-memory channel dispatching events to per-topic subscribers.

    A subscriber registered with an `owner` does not receive events published
    by that same owner.
    """

    def __init__(self) -> None:
        self._subscribers: dict[ChannelTopic, list[tuple[ChannelHandler, object | None]]] = {
            "message": [],
            "typing": [],
            "error": [],
        }

    def subscribe(
        self,
        topic: ChannelTopic,
        handler: ChannelHandler,
        *,
        owner: object | None = None,
    ) -> Callable[[], None]:
        """Register `handler` for `topic` and return a callable that removes it."""
        entry = (handler, owner)
        self._subscribers[topic].append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers[topic]:
                self._subscribers[topic].remove(entry)

        return unsubscribe

    async def publish(self, event: ChannelEvent, *, sender: object | None = None) -> None:
        """Deliver `event` to every subscriber of its topic.

        A failing handler is logged and does not stop delivery to the others.
        """
        for handler, owner in list(self._subscribers[event.topic]):
            if sender is not None and owner is sender:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("channel handler for %r failed", event.topic)

    async def publish_message(
        self,
        message: ChatMessage,
        *,
        conversation_id: str | None = None,
        sender: object | None = None,
    ) -> None:
        await self.publish(
            ChannelEvent(topic="message", conversation_id=conversation_id, message=message),
            sender=sender,
        )

    async def publish_typing(
        self,
        content: str,
        *,
        is_typing: bool = True,
        conversation_id: str | None = None,
        sender: object | None = None,
    ) -> None:
        await self.publish(
            ChannelEvent(
                topic="typing",
                conversation_id=conversation_id,
                is_typing=is_typing,
                content=content,
            ),
            sender=sender,
        )

    async def publish_error(
        self,
        error: str,
        *,
        conversation_id: str | None = None,
        sender: object | None = None,
    ) -> None:
        await self.publish(
            ChannelEvent(topic="error", conversation_id=conversation_id, error=error),
            sender=sender,
        )
