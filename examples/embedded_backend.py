#!/usr/bin/env python3
"""Drive a session against a toy backend running in the same event loop.

This example demonstrates:
- `QueueTransport.pair()` for in-process embedding
- replies arriving out of order and still matching their callers
- file edits and command output associated with a task
- cancelling a running task and waiting for the backend's acknowledgement
"""

from __future__ import annotations

import asyncio
import logging
import random

from assistant_session import AssistantSession, Envelope, EnvelopeCodec, QueueTransport


async def toy_backend(transport: QueueTransport) -> None:
    """Answer each request after a random delay, emitting task status first."""
    codec = EnvelopeCodec()
    background: set[asyncio.Task[None]] = set()

    async def reply(kind: str, correlation_id: str, payload: dict[str, object]) -> None:
        await transport.send(codec.encode(Envelope(id=correlation_id, kind=kind, payload=payload)))

    async def handle(request: Envelope) -> None:
        await asyncio.sleep(random.uniform(0.01, 0.1))
        payload = request.payload
        if request.kind == "chat.request":
            task_id = f"task-{request.id[:6]}"
            await reply("task.status", request.id, {"taskId": task_id, "state": "running"})
            await reply("chat.response", request.id, {"content": f"echo: {payload['message']}", "taskId": task_id})
        elif request.kind == "file.edit":
            await reply("file.edited", request.id, {"path": payload["path"], "content": payload.get("content", "")})
        elif request.kind == "command.run":
            await reply(
                "command.output",
                request.id,
                {"command": payload["command"], "output": "ok", "exitCode": 0},
            )
        elif request.kind == "task.cancel":
            await reply("task.status", request.id, {"taskId": payload["taskId"], "state": "cancelled"})
        else:
            await reply("error", request.id, {"message": f"unsupported request {request.kind}"})

    while True:
        request = codec.decode(await transport.recv())
        task = asyncio.create_task(handle(request))
        background.add(task)
        task.add_done_callback(background.discard)


async def main() -> None:
    client_end, backend_end = QueueTransport.pair()
    backend = asyncio.create_task(toy_backend(backend_end))

    async with AssistantSession(client_end, request_timeout=5.0) as session:
        results = await asyncio.gather(*(session.chat(f"question {i}") for i in range(3)))
        for result in results:
            print(f"[chat] {result.correlation_id[:6]} -> {result.content} (task {result.task_id})")

        task_id = results[0].task_id
        edit = await session.edit_file("notes.md", "# notes\n", "create", task_id=task_id)
        output = await session.run_command("make test", task_id=task_id)
        print(f"[edit] {edit.path}  [command] exit={output.exit_code} output={output.output!r}")

        await session.cancel_task(task_id)
        task = session.get_task(task_id)
        print(f"[task] {task_id} {task.status.value} files={sorted(task.associated_files)}")

    backend.cancel()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
