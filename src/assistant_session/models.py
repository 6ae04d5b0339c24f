from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from .protocol import (
    CHAT_REQUEST,
    CHAT_RESPONSE,
    COMMAND_OUTPUT,
    COMMAND_RUN,
    ERROR,
    FILE_EDIT,
    FILE_EDITED,
    TASK_APPROVAL,
    TASK_CANCEL,
    TASK_STATUS,
    is_known_kind,
)

#: File mutation requested by `file.edit`.
FileOperation: TypeAlias = Literal["create", "modify", "delete"]


class Envelope(BaseModel):
    """One protocol message.

    Attributes:
        id: Correlation id. Requests assign it; every reply or event belonging
            to the exchange echoes it. Unsolicited events carry a fresh id.
        kind: Semantic type, e.g. ``chat.request`` or ``task.status``.
        payload: Kind-specific structured data.
        sent_at: Monotonic timestamp, used for ordering diagnostics only.
    """

    id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    sent_at: float = Field(default_factory=time.monotonic)

    @property
    def known(self) -> bool:
        """True when `kind` is part of the recognized set."""
        return is_known_kind(self.kind)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatRequestPayload(_Payload):
    message: str
    files: list[str] | None = None
    images: list[str] | None = None


class ChatResponsePayload(_Payload):
    content: str
    task_id: str | None = Field(default=None, alias="taskId")
    final: bool | None = None


class FileEditPayload(_Payload):
    path: str
    content: str = ""
    operation: FileOperation
    task_id: str | None = Field(default=None, alias="taskId")


class FileEditedPayload(_Payload):
    path: str
    content: str = ""


class CommandRunPayload(_Payload):
    command: str
    cwd: str | None = None
    task_id: str | None = Field(default=None, alias="taskId")


class CommandOutputPayload(_Payload):
    command: str
    output: str
    exit_code: int | None = Field(default=None, alias="exitCode")


class TaskStatusPayload(_Payload):
    task_id: str = Field(alias="taskId")
    state: str
    detail: str | None = None


class TaskCancelPayload(_Payload):
    task_id: str = Field(alias="taskId")


class TaskApprovalPayload(_Payload):
    task_id: str = Field(alias="taskId")
    approved: bool
    reason: str | None = None


class ErrorPayload(_Payload):
    message: str
    code: int | str | None = None
    data: Any = None


PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    CHAT_REQUEST: ChatRequestPayload,
    CHAT_RESPONSE: ChatResponsePayload,
    FILE_EDIT: FileEditPayload,
    FILE_EDITED: FileEditedPayload,
    COMMAND_RUN: CommandRunPayload,
    COMMAND_OUTPUT: CommandOutputPayload,
    TASK_STATUS: TaskStatusPayload,
    TASK_CANCEL: TaskCancelPayload,
    TASK_APPROVAL: TaskApprovalPayload,
    ERROR: ErrorPayload,
}


class ChatResult(BaseModel):
    """Result of a single `chat` exchange.

    Attributes:
        correlation_id: Id of the chat request.
        content: Assistant reply text.
        task_id: Task the reply belongs to. Falls back to the correlation id
            when the backend does not name one.
        raw: Full reply payload.
    """

    correlation_id: str
    content: str
    task_id: str
    raw: dict[str, Any] = Field(default_factory=dict)


class EditResult(BaseModel):
    """Acknowledged file edit.

    Attributes:
        correlation_id: Id of the edit request.
        path: Path the backend reports as edited.
        content: Content after the edit.
        raw: Full ack payload.
    """

    correlation_id: str
    path: str
    content: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


class CommandResult(BaseModel):
    """First output event for a `command.run` request.

    Attributes:
        correlation_id: Id of the command request.
        command: Command string echoed by the backend.
        output: Captured output.
        exit_code: Exit code when the backend reports one.
        raw: Full output payload.
    """

    correlation_id: str
    command: str
    output: str
    exit_code: int | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TaskState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


class TaskTransition(BaseModel):
    """One recorded state change.

    `source` is None for the creating transition.
    """

    source: TaskState | None
    target: TaskState
    at: float = Field(default_factory=time.monotonic)
    detail: str | None = None


class Task(BaseModel):
    """One logical unit of assistant work.

    Attributes:
        task_id: Backend task identifier.
        status: Current lifecycle state.
        history: Ordered transitions, starting with creation.
        associated_files: Paths touched on behalf of the task.
        origin_id: Correlation id of the request that created the task.
        last_detail: Most recent status detail reported by the backend.
        failure_reason: Why the task failed, when it did.
    """

    task_id: str
    status: TaskState = TaskState.CREATED
    history: list[TaskTransition] = Field(default_factory=list)
    associated_files: set[str] = Field(default_factory=set)
    origin_id: str | None = None
    last_detail: str | None = None
    failure_reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal
