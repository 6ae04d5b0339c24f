from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field

ENV_PREFIX = "ASSISTANT_SESSION_"

DEFAULT_WS_URL = "ws://127.0.0.1:8765"
DEFAULT_STDIO_COMMAND = ("assistant-backend", "--stdio")


@dataclass(slots=True)
class SessionSettings:
    """Connection and timeout settings for `AssistantSession`.

    Attributes:
        url: Websocket endpoint of the backend.
        command: Backend argv for stdio mode.
        request_timeout: Default deadline for chat, edit, cancel and approval
            exchanges, in seconds.
        command_timeout: Deadline for `run_command`; None waits until the
            backend answers.
        connect_timeout: Deadline for opening the transport.
    """

    url: str = DEFAULT_WS_URL
    command: list[str] = field(default_factory=lambda: list(DEFAULT_STDIO_COMMAND))
    request_timeout: float = 30.0
    command_timeout: float | None = None
    connect_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SessionSettings:
        """Build settings from ``ASSISTANT_SESSION_*`` environment variables."""
        env = os.environ if environ is None else environ
        settings = cls()
        url = env.get(f"{ENV_PREFIX}WS_URL")
        if url:
            settings.url = url
        command = env.get(f"{ENV_PREFIX}CMD")
        if command:
            settings.command = shlex.split(command)
        settings.request_timeout = _float(env, "REQUEST_TIMEOUT", settings.request_timeout)
        settings.connect_timeout = _float(env, "CONNECT_TIMEOUT", settings.connect_timeout)
        raw = env.get(f"{ENV_PREFIX}COMMAND_TIMEOUT", "").strip().lower()
        if raw and raw not in ("none", "0", "off"):
            settings.command_timeout = _float(env, "COMMAND_TIMEOUT", None)
        return settings


def _float(env: Mapping[str, str], name: str, default: float | None) -> float | None:
    raw = env.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be positive, got {raw!r}")
    return value
