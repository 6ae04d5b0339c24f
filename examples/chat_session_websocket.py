#!/usr/bin/env python3
"""Run a small multi-turn chat against an assistant backend over websocket.

This example demonstrates:
- websocket URL configuration (flag or ASSISTANT_SESSION_WS_URL)
- task status subscription while a chat is in flight
- per-request timeouts
- typed error handling for timeouts, backend errors and connection loss
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from assistant_session import (
    AssistantSession,
    BackendError,
    Envelope,
    SessionSettings,
    SessionTimeoutError,
    TransportClosedError,
)

DEFAULT_PROMPTS = [
    "Summarize what this repository does in one sentence.",
    "List the files you would change to add a --verbose flag.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the websocket example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--url",
        default=os.getenv("ASSISTANT_SESSION_WS_URL", "ws://127.0.0.1:8765"),
        help="Websocket URL of the assistant backend.",
    )
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument(
        "--file",
        action="append",
        dest="files",
        help="File path to attach to every prompt. Can be provided multiple times.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Per-chat timeout in seconds (<=0 waits indefinitely).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _normalize_timeout(timeout: float) -> float | None:
    if timeout <= 0:
        return None
    return timeout


def _print_status(envelope: Envelope) -> None:
    payload = envelope.payload
    detail = f" ({payload['detail']})" if payload.get("detail") else ""
    print(f"[status] task={payload.get('taskId')} state={payload.get('state')}{detail}")


async def run_session(args: argparse.Namespace) -> int:
    """Send each prompt in turn and print replies and task status events."""
    prompts = args.prompts or DEFAULT_PROMPTS
    timeout = _normalize_timeout(args.timeout)
    settings = SessionSettings.from_env()

    session = AssistantSession.connect_websocket(url=args.url, settings=settings)
    session.subscribe("task.status", _print_status)
    try:
        await session.start()
        print(f"[connected] url={args.url}")

        for index, prompt in enumerate(prompts, start=1):
            print(f"\n[user:{index}] {prompt}")
            result = await session.chat(prompt, files=args.files, timeout=timeout)
            print(f"[assistant:{index}] {result.content}")
            task = session.get_task(result.task_id)
            state = task.status.value if task is not None else "unknown"
            print(f"[meta] task_id={result.task_id} state={state}")
        return 0
    except SessionTimeoutError as exc:
        print(f"[error] timeout: {exc}", file=sys.stderr)
        return 2
    except BackendError as exc:
        details = f" code={exc.code}" if exc.code is not None else ""
        print(f"[error] backend:{details} {exc}", file=sys.stderr)
        return 3
    except TransportClosedError as exc:
        print(f"[error] transport: {exc}", file=sys.stderr)
        return 4
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130
    finally:
        await session.close()


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()
