from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .errors import TransportClosedError

#: One serialized envelope as carried by a transport.
Frame = str | bytes

#: Largest frame the built-in transports accept by default.
MAX_FRAME_SIZE = 16 * 1024 * 1024


class Transport(ABC):
    """Duplex, message-oriented connection carrying opaque frames.

    Frames are delivered in send order. Implementations raise
    `TransportClosedError` from `send`/`recv` once the connection is gone.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection; calling it again on an open transport does nothing."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, frame: str) -> None:
        """Deliver one encoded envelope to the peer."""
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> Frame:
        """Wait for the next frame from the peer."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        raise NotImplementedError


# Seconds to wait for the backend to exit after stdin closes, then after SIGTERM.
_SHUTDOWN_GRACE = 0.5


class StdioTransport(Transport):
    """Run the backend as a child process and exchange one frame per line.

    Blank lines from the backend are keepalives and are skipped. A line longer
    than `max_frame_size` means the stream can no longer be trusted, so it is
    reported as a closed transport rather than a bad frame.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        max_frame_size: int = MAX_FRAME_SIZE,
        inherit_stderr: bool = False,
    ) -> None:
        """Describe how to launch the backend; nothing starts until `connect`.

        Args:
            command: Backend argv.
            cwd: Working directory for the backend.
            env: Full environment for the backend; None inherits ours.
            connect_timeout: Seconds allowed for spawning the process.
            max_frame_size: Longest accepted line, in bytes.
            inherit_stderr: Let backend diagnostics through to our stderr.
        """
        if not command:
            raise ValueError("backend command must not be empty")
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._connect_timeout = connect_timeout
        self._max_frame_size = max_frame_size
        self._inherit_stderr = inherit_stderr
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def returncode(self) -> int | None:
        """Exit status of the backend once it has exited."""
        return self._proc.returncode if self._proc is not None else None

    async def connect(self) -> None:
        if self._proc is not None:
            return
        try:
            self._proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *self._command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=None if self._inherit_stderr else asyncio.subprocess.DEVNULL,
                    cwd=self._cwd,
                    env=self._env,
                    limit=self._max_frame_size,
                ),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportClosedError(
                f"could not start backend {self._command[0]!r} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def send(self, frame: str) -> None:
        if "\n" in frame:
            raise ValueError("stdio frames must fit on one line")
        if self._proc is None or self._proc.stdin is None:
            raise TransportClosedError("stdio transport is not connected")
        try:
            self._proc.stdin.write(frame.encode("utf-8") + b"\n")
            await self._proc.stdin.drain()
        except OSError as exc:
            raise self._lost("writing") from exc

    async def recv(self) -> Frame:
        if self._proc is None or self._proc.stdout is None:
            raise TransportClosedError("stdio transport is not connected")
        while True:
            try:
                line = await self._proc.stdout.readline()
            except ValueError as exc:
                raise TransportClosedError(
                    f"backend sent a line longer than {self._max_frame_size} bytes"
                ) from exc
            except OSError as exc:
                raise self._lost("reading") from exc
            if not line:
                raise self._lost("reading")
            frame = line.rstrip(b"\r\n")
            if frame.strip():
                return frame

    async def close(self) -> None:
        """Close stdin, then escalate to SIGTERM and SIGKILL if the backend lingers."""
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=_SHUTDOWN_GRACE)
            return
        except asyncio.TimeoutError:
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=_SHUTDOWN_GRACE)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()

    def _lost(self, action: str) -> TransportClosedError:
        status = self.returncode
        if status is not None:
            return TransportClosedError(f"backend exited with status {status} while {action}")
        return TransportClosedError(f"backend pipe closed while {action}")


class WebSocketTransport(Transport):
    """Carry each envelope as one websocket message.

    When the backend closes the socket, the close code and reason end up in
    the `TransportClosedError` message, and from there in the session's
    connection-lost log line.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        max_frame_size: int = MAX_FRAME_SIZE,
        ping_interval: float | None = 20.0,
    ) -> None:
        """Describe the backend endpoint; nothing is dialled until `connect`.

        Args:
            url: Backend endpoint, ``ws://`` or ``wss://``.
            headers: Extra handshake headers, e.g. host-issued credentials.
            connect_timeout: Seconds allowed for the opening handshake.
            max_frame_size: Largest accepted message, in bytes.
            ping_interval: Keepalive ping period; None disables pings.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._max_frame_size = max_frame_size
        self._ping_interval = ping_interval
        self._socket: Any = None

    async def connect(self) -> None:
        if self._socket is not None:
            return
        try:
            self._socket = await websockets.connect(
                self._url,
                additional_headers=self._headers,
                compression=None,
                open_timeout=self._connect_timeout,
                max_size=self._max_frame_size,
                ping_interval=self._ping_interval,
            )
        except Exception as exc:
            raise TransportClosedError(
                f"cannot reach backend at {self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def send(self, frame: str) -> None:
        if self._socket is None:
            raise TransportClosedError("websocket transport is not connected")
        try:
            await self._socket.send(frame)
        except ConnectionClosed as exc:
            raise TransportClosedError(_describe_close(exc)) from exc

    async def recv(self) -> Frame:
        if self._socket is None:
            raise TransportClosedError("websocket transport is not connected")
        try:
            return await self._socket.recv()
        except ConnectionClosed as exc:
            raise TransportClosedError(_describe_close(exc)) from exc

    async def close(self) -> None:
        socket, self._socket = self._socket, None
        if socket is None:
            return
        with contextlib.suppress(ConnectionClosed, OSError):
            await socket.close()


def _describe_close(exc: ConnectionClosed) -> str:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return "backend connection dropped without a close frame"
    reason = f": {frame.reason}" if frame.reason else ""
    return f"backend closed the websocket (code {frame.code}{reason})"


_CLOSED = object()


class QueueTransport(Transport):
    """In-process transport backed by asyncio queues.

    Use `QueueTransport.pair()` to get two connected ends, e.g. to embed a
    backend in the same event loop as the editor client.
    """

    def __init__(
        self,
        incoming: asyncio.Queue[Any] | None = None,
        outgoing: asyncio.Queue[Any] | None = None,
    ) -> None:
        self._incoming: asyncio.Queue[Any] = incoming if incoming is not None else asyncio.Queue()
        self._outgoing: asyncio.Queue[Any] = outgoing if outgoing is not None else asyncio.Queue()
        self._closed = False

    @classmethod
    def pair(cls) -> tuple[QueueTransport, QueueTransport]:
        left_to_right: asyncio.Queue[Any] = asyncio.Queue()
        right_to_left: asyncio.Queue[Any] = asyncio.Queue()
        return (
            cls(incoming=right_to_left, outgoing=left_to_right),
            cls(incoming=left_to_right, outgoing=right_to_left),
        )

    async def connect(self) -> None:
        if self._closed:
            raise TransportClosedError("queue transport is closed")

    async def send(self, frame: str) -> None:
        if self._closed:
            raise TransportClosedError("queue transport is closed")
        await self._outgoing.put(frame)

    async def recv(self) -> Frame:
        if self._closed:
            raise TransportClosedError("queue transport is closed")
        frame = await self._incoming.get()
        if frame is _CLOSED:
            self._closed = True
            raise TransportClosedError("peer closed queue transport")
        return frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outgoing.put_nowait(_CLOSED)
