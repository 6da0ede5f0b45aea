#!/usr/bin/env python3
"""Run a small multi-turn assistant chat against a persistent thread.

This example demonstrates:
- creating (or reusing) an assistant and a thread
- live prose streaming through `on_delta`
- a local tool executed on the assistant's behalf
- Ctrl+C cancelling the turn in progress instead of the whole session
- referenced files parsed from the trailing structured block
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any

from assistant_stream_client import (
    AssistantAPIError,
    AssistantClient,
    AssistantProtocolError,
    AssistantTransportError,
    ToolDescriptor,
    ToolRegistry,
    TooManyRoundsError,
    build_instructions,
)

DEFAULT_PROMPTS = [
    "What time is it in UTC right now?",
    "Write that time into a short sentence a child would understand.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the assistant example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--assistant-id", help="Reuse an existing assistant instead of creating one.")
    parser.add_argument("--thread-id", help="Reuse an existing thread instead of creating one.")
    parser.add_argument("--model", help="Model id (defaults to OPENAI_MODEL or gpt-4o).")
    parser.add_argument(
        "--keep",
        action="store_true",
        help="Keep the assistant and thread after the session instead of deleting them.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _current_time(arguments: dict[str, Any]) -> dict[str, str]:
    return {"utc": datetime.now(timezone.utc).isoformat(timespec="seconds")}


def _tools() -> ToolRegistry:
    return ToolRegistry(
        [
            ToolDescriptor(
                name="clock_now",
                description="Return the current UTC time.",
                schema={},
                required_params=(),
                invoke=_current_time,
                returns={"utc": "ISO 8601 timestamp"},
            )
        ]
    )


async def run_session(args: argparse.Namespace) -> int:
    """Run the prompts one turn at a time and print each answer."""
    prompts = args.prompts or DEFAULT_PROMPTS
    try:
        client = AssistantClient.from_env(
            model=args.model,
            assistant_id=args.assistant_id,
            thread_id=args.thread_id,
            tools=_tools(),
            instructions=build_instructions(),
        )
    except ValueError as exc:
        print(f"[error] config: {exc}", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, client.cancel_current_run)
    try:
        async with client:
            await client.init()
            print(f"[init] assistant_id={client.assistant_id} thread_id={client.thread_id}")

            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                print(f"[assistant:{index}] ", end="", flush=True)
                result = await client.add_user_message(
                    prompt,
                    on_delta=lambda text: print(text, end="", flush=True),
                )
                print()
                if result.aborted:
                    print("[cancelled] turn aborted", file=sys.stderr)
                for file in result.data.files:
                    print(f"[file] {file.name} -> {file.path} ({file.mime_type or 'unknown type'})")
                print(f"[meta] run_id={result.run_id} aborted={result.aborted}")

            if not args.keep:
                await client.destroy()
        return 0
    except AssistantAPIError as exc:
        details = f" status={exc.status_code}" if exc.status_code is not None else ""
        print(f"[error] api:{details} {exc}", file=sys.stderr)
        return 2
    except TooManyRoundsError as exc:
        print(f"[error] gave up after {exc.rounds} tool rounds", file=sys.stderr)
        return 3
    except AssistantProtocolError as exc:
        print(f"[error] protocol: {exc}", file=sys.stderr)
        return 3
    except AssistantTransportError as exc:
        print(f"[error] transport: {exc}", file=sys.stderr)
        return 4
    finally:
        loop.remove_signal_handler(signal.SIGINT)


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
