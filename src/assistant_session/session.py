from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from .codec import EnvelopeCodec
from .config import SessionSettings
from .errors import DecodeError, TransportClosedError, UnknownTaskError
from .models import (
    ChatResponsePayload,
    ChatResult,
    CommandOutputPayload,
    CommandResult,
    EditResult,
    Envelope,
    FileEditedPayload,
    FileOperation,
    Task,
)
from .protocol import (
    CHAT_REQUEST,
    COMMAND_RUN,
    FILE_EDIT,
    TASK_APPROVAL,
    TASK_CANCEL,
    expected_response_kind,
)
from .registry import CorrelationRegistry
from .router import DispatchRouter, Handler, Subscription
from .tasks import TaskTracker
from .transport import StdioTransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

# Requests whose replies may create or touch a task.
_TASK_ORIGIN_KINDS = frozenset({CHAT_REQUEST, FILE_EDIT, COMMAND_RUN})


class AssistantSession:
    """Async session between an editor client and an assistant backend.

    One session owns one transport connection together with its correlation
    registry, dispatch router and task tracker. Requests are sent in call
    order; replies may arrive in any order and are matched back to their
    callers by correlation id.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        request_timeout: float | None = 30.0,
        command_timeout: float | None = None,
        codec: EnvelopeCodec | None = None,
    ) -> None:
        """Create a session bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            request_timeout: Default deadline for chat, edit, cancel and
                approval exchanges. None waits indefinitely.
            command_timeout: Default deadline for `run_command`.
            codec: Envelope codec; defaults to JSON frames.
        """
        self._transport = transport
        self._request_timeout = request_timeout
        self._command_timeout = command_timeout
        self._codec = codec if codec is not None else EnvelopeCodec()

        self._registry = CorrelationRegistry()
        self._tracker = TaskTracker()
        self._router = DispatchRouter(self._registry, self._tracker)

        self._send_lock = asyncio.Lock()
        self._receiver_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False
        self._close_reason: str | None = None

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        settings: SessionSettings | None = None,
    ) -> AssistantSession:
        """Create an unstarted session that talks to a backend subprocess."""
        resolved = settings if settings is not None else SessionSettings.from_env()
        transport = StdioTransport(
            list(command) if command is not None else resolved.command,
            cwd=cwd,
            env=env,
            connect_timeout=resolved.connect_timeout,
        )
        return cls(
            transport,
            request_timeout=resolved.request_timeout,
            command_timeout=resolved.command_timeout,
        )

    @classmethod
    def connect_websocket(
        cls,
        *,
        url: str | None = None,
        headers: Mapping[str, str] | None = None,
        settings: SessionSettings | None = None,
    ) -> AssistantSession:
        """Create an unstarted session over a websocket connection."""
        resolved = settings if settings is not None else SessionSettings.from_env()
        transport = WebSocketTransport(
            url or resolved.url,
            headers=headers,
            connect_timeout=resolved.connect_timeout,
        )
        return cls(
            transport,
            request_timeout=resolved.request_timeout,
            command_timeout=resolved.command_timeout,
        )

    @classmethod
    def from_settings(cls, settings: SessionSettings | None = None) -> AssistantSession:
        """Create an unstarted websocket session from settings or environment."""
        return cls.connect_websocket(settings=settings)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def registry(self) -> CorrelationRegistry:
        return self._registry

    @property
    def router(self) -> DispatchRouter:
        return self._router

    @property
    def tasks(self) -> tuple[Task, ...]:
        """Snapshots of every tracked task."""
        return self._tracker.tasks

    def get_task(self, task_id: str) -> Task | None:
        """Snapshot of one task, or None if it is not tracked."""
        return self._tracker.get(task_id)

    def discard_task(self, task_id: str) -> None:
        """Archive a terminal task once no view references it."""
        self._tracker.discard(task_id)

    async def start(self) -> AssistantSession:
        """Connect transport and start the background receive loop once."""
        if self._closed:
            raise TransportClosedError("session is closed")
        if self._started:
            return self
        await self._transport.connect()
        self._start_receiver()
        self._started = True
        return self

    async def __aenter__(self) -> AssistantSession:
        """Support `async with AssistantSession(...)` usage."""
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Close session on context-manager exit."""
        await self.close()

    async def close(self) -> None:
        """Stop receiving, fail outstanding state and close the transport."""
        if self._closed:
            return
        await self._shutdown("session-closed", TransportClosedError("session is closing"))
        await self._transport.close()
        self._started = False

    def subscribe(self, kind: str, handler: Handler) -> Subscription:
        """Call `handler` for every inbound envelope of `kind`.

        Returns a `Subscription`; call its `unsubscribe()` to detach.
        """
        return self._router.on(kind, handler)

    def set_fallback_handler(self, handler: Handler | None) -> None:
        """Set or clear the handler for envelopes of unrecognized kinds."""
        self._router.set_fallback(handler)

    async def chat(
        self,
        message: str,
        *,
        files: Sequence[str] | None = None,
        images: Sequence[str] | None = None,
        timeout: float | None = None,
    ) -> ChatResult:
        """Send one chat message and wait for the assistant reply.

        A successful reply always leaves a task in the tracker; status events
        for it keep arriving after this call returns.
        """
        payload: dict[str, Any] = {"message": message}
        if files is not None:
            payload["files"] = list(files)
        if images is not None:
            payload["images"] = list(images)

        correlation_id, response = await self._exchange(
            CHAT_REQUEST,
            payload,
            timeout=self._resolve_timeout(timeout, self._request_timeout),
            files=files or (),
        )
        reply = ChatResponsePayload.model_validate(response)
        claimed = self._tracker.claim(correlation_id)
        task_id = reply.task_id or claimed or correlation_id
        return ChatResult(
            correlation_id=correlation_id,
            content=reply.content,
            task_id=task_id,
            raw=response,
        )

    async def edit_file(
        self,
        path: str,
        content: str = "",
        operation: FileOperation = "modify",
        *,
        task_id: str | None = None,
        timeout: float | None = None,
    ) -> EditResult:
        """Ask the backend to create, modify or delete a file."""
        payload: dict[str, Any] = {"path": path, "content": content, "operation": operation}
        if task_id is not None:
            payload["taskId"] = task_id

        correlation_id, response = await self._exchange(
            FILE_EDIT,
            payload,
            timeout=self._resolve_timeout(timeout, self._request_timeout),
            task_id=task_id,
        )
        self._tracker.forget_request(correlation_id)
        ack = FileEditedPayload.model_validate(response)
        return EditResult(
            correlation_id=correlation_id,
            path=ack.path,
            content=ack.content,
            raw=response,
        )

    async def run_command(
        self,
        command: str,
        *,
        cwd: str | None = None,
        task_id: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell command on the backend.

        Resolves with the first correlated `command.output`; later output for
        the same id still reaches `command.output` subscribers. Never retried.
        """
        payload: dict[str, Any] = {"command": command}
        if cwd is not None:
            payload["cwd"] = cwd
        if task_id is not None:
            payload["taskId"] = task_id

        correlation_id, response = await self._exchange(
            COMMAND_RUN,
            payload,
            timeout=self._resolve_timeout(timeout, self._command_timeout),
            task_id=task_id,
        )
        self._tracker.forget_request(correlation_id)
        output = CommandOutputPayload.model_validate(response)
        return CommandResult(
            correlation_id=correlation_id,
            command=output.command,
            output=output.output,
            exit_code=output.exit_code,
            raw=response,
        )

    async def cancel_task(self, task_id: str, *, timeout: float | None = None) -> None:
        """Ask the backend to cancel a task and wait for its acknowledgement.

        The local task only changes state when the backend's terminal status
        arrives. Cancelling an already terminal task is a no-op.

        Raises:
            UnknownTaskError: The session is not tracking `task_id`.
        """
        task = self._tracker.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        if task.terminal:
            logger.debug("task %s is already %s; not cancelling", task_id, task.status.value)
            return
        await self._exchange(
            TASK_CANCEL,
            {"taskId": task_id},
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        )

    async def approve_task(
        self,
        task_id: str,
        approved: bool = True,
        *,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Answer a task awaiting approval and wait for the acknowledgement."""
        if task_id not in self._tracker:
            raise UnknownTaskError(task_id)
        payload: dict[str, Any] = {"taskId": task_id, "approved": approved}
        if reason is not None:
            payload["reason"] = reason
        await self._exchange(
            TASK_APPROVAL,
            payload,
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        )

    async def request(
        self,
        kind: str,
        payload: Mapping[str, Any],
        *,
        expected_kind: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one request envelope and return the correlated reply payload."""
        correlation_id, response = await self._exchange(
            kind,
            dict(payload),
            expected_kind=expected_kind,
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        )
        self._tracker.forget_request(correlation_id)
        return response

    async def notify(self, kind: str, payload: Mapping[str, Any]) -> str:
        """Send a one-way envelope that expects no reply; return its id."""
        envelope = Envelope(id=_new_correlation_id(), kind=kind, payload=dict(payload))
        frame = self._codec.encode(envelope)
        await self._send(frame)
        return envelope.id

    async def _exchange(
        self,
        kind: str,
        payload: dict[str, Any],
        *,
        timeout: float | None,
        expected_kind: str | None = None,
        files: Sequence[str] = (),
        task_id: str | None = None,
    ) -> tuple[str, dict[str, Any]]:
        if self._closed:
            raise TransportClosedError(self._close_reason or "session is closed")

        envelope = Envelope(id=_new_correlation_id(), kind=kind, payload=payload)
        frame = self._codec.encode(envelope)
        reply_kind = expected_kind or expected_response_kind(kind)

        future = self._registry.register(envelope.id, reply_kind, timeout)
        if kind in _TASK_ORIGIN_KINDS:
            self._tracker.track_request(envelope.id, kind, files=files, task_id=task_id)
        try:
            await self._send(frame)
        except TransportClosedError:
            self._registry.discard(envelope.id)
            self._tracker.forget_request(envelope.id)
            raise

        try:
            response = await future
        except BaseException:
            self._tracker.forget_request(envelope.id)
            raise
        return envelope.id, response

    async def _send(self, frame: str) -> None:
        if self._closed:
            raise TransportClosedError(self._close_reason or "session is closed")
        async with self._send_lock:
            await self._transport.send(frame)

    def _resolve_timeout(self, timeout: float | None, default: float | None) -> float | None:
        return timeout if timeout is not None else default

    def _start_receiver(self) -> None:
        """Start background receive loop exactly once."""
        if self._receiver_task is not None:
            return
        self._receiver_task = asyncio.create_task(self._receiver_loop())

    async def _receiver_loop(self) -> None:
        """Decode inbound frames one at a time and hand them to the router."""
        try:
            while not self._closed:
                frame = await self._transport.recv()
                try:
                    envelope = self._codec.decode(frame)
                except DecodeError as exc:
                    logger.warning("dropping undecodable frame: %s (frame=%r)", exc, exc.frame)
                    continue
                self._router.dispatch(envelope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._closed:
                return
            logger.error("connection lost: %s", exc)
            self._receiver_task = None
            error = TransportClosedError(f"connection lost: {exc}")
            await self._shutdown("connection-lost", error)
            with contextlib.suppress(Exception):
                await self._transport.close()

    async def _shutdown(self, reason: str, error: TransportClosedError) -> None:
        self._closed = True
        self._close_reason = str(error)

        if self._receiver_task is not None:
            self._receiver_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver_task
            self._receiver_task = None

        rejected = self._registry.reject_all(error)
        failed = self._tracker.fail_all(reason)
        if rejected or failed:
            logger.info(
                "%s: rejected %d pending exchange(s), failed %d task(s)",
                reason,
                rejected,
                failed,
            )
        await self._router.close()


def _new_correlation_id() -> str:
    return uuid.uuid4().hex
