#!/usr/bin/env python3
"""Run a multi-turn chat against a streaming chat-completions endpoint.

This example demonstrates:
- keeping the conversation history on the client side
- typing updates delivered through a `MessageChannel` subscriber
- stored tool-call messages replayed on later turns
- errors reported on the channel before they are raised
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from assistant_stream_client import (
    AssistantAPIError,
    AssistantProtocolError,
    AssistantTransportError,
    ChannelEvent,
    ChatMessage,
    CompletionStreamClient,
    MessageChannel,
)

DEFAULT_PROMPTS = [
    "Name three prime numbers.",
    "Now add them up.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the completions example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--base-url", help="Endpoint base URL (defaults to OPENAI_BASE_URL).")
    parser.add_argument("--model", help="Model id (defaults to OPENAI_MODEL).")
    parser.add_argument(
        "--system",
        default="You are a concise assistant.",
        help="System message placed at the start of the history.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


class TypingPrinter:
    """Print only the newly streamed suffix of each typing update."""

    def __init__(self) -> None:
        self._printed = 0

    def __call__(self, event: ChannelEvent) -> None:
        if not event.is_typing:
            self._printed = 0
            print()
            return
        print(event.content[self._printed :], end="", flush=True)
        self._printed = len(event.content)


async def run_session(args: argparse.Namespace) -> int:
    """Send each prompt with the accumulated history and print the answers."""
    channel = MessageChannel()
    channel.subscribe("typing", TypingPrinter())
    channel.subscribe("error", lambda event: print(f"[channel:error] {event.error}", file=sys.stderr))

    history = [ChatMessage(role="system", content=args.system)]
    try:
        async with CompletionStreamClient.from_env(
            base_url=args.base_url,
            model=args.model,
            channel=channel,
        ) as client:
            for index, prompt in enumerate(args.prompts or DEFAULT_PROMPTS, start=1):
                print(f"\n[user:{index}] {prompt}")
                history.append(ChatMessage(role="user", content=prompt, sender_id="cli"))
                print(f"[assistant:{index}] ", end="", flush=True)
                result = await client.send(history, conversation_id="cli")
                history.extend(result.messages)
                print(f"[meta] messages={len(result.messages)} history={len(history)}")
        return 0
    except AssistantAPIError as exc:
        details = f" status={exc.status_code}" if exc.status_code is not None else ""
        print(f"[error] api:{details} {exc}", file=sys.stderr)
        return 2
    except AssistantProtocolError as exc:
        print(f"[error] protocol: {exc}", file=sys.stderr)
        return 3
    except AssistantTransportError as exc:
        print(f"[error] transport: {exc}", file=sys.stderr)
        return 4
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()
