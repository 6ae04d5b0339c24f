from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from pydantic import ValidationError

from .errors import ProtocolAnomaly
from .models import (
    ChatResponsePayload,
    Envelope,
    FileEditedPayload,
    Task,
    TaskState,
    TaskStatusPayload,
    TaskTransition,
)
from .protocol import (
    CHAT_RESPONSE,
    FILE_EDITED,
    STATUS_CANCELLED,
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_NEEDS_APPROVAL,
    STATUS_RUNNING,
    TASK_STATUS,
    normalize_state,
)

logger = logging.getLogger(__name__)

# Status strings that only confirm a task exists.
STATUS_CREATED = frozenset({"created", "accepted", "queued", "pending"})

ANOMALY_HISTORY_SIZE = 256


@dataclass(slots=True)
class _Origin:
    correlation_id: str
    kind: str
    files: tuple[str, ...] = ()
    task_id: str | None = None
    created_tasks: list[str] = field(default_factory=list)


class TaskTracker:
    """Per-session state machine for assistant tasks.

    Tasks change state only through inbound envelopes passed to `observe`
    and through `fail_all` when the session loses its connection. Callers
    get snapshots; the live objects never leave the tracker.
    """

    def __init__(self, *, anomaly_history: int = ANOMALY_HISTORY_SIZE) -> None:
        self._tasks: dict[str, Task] = {}
        self._origins: dict[str, _Origin] = {}
        self.anomalies: deque[ProtocolAnomaly] = deque(maxlen=anomaly_history)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(task.model_copy(deep=True) for task in self._tasks.values())

    def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task is not None else None

    def track_request(
        self,
        correlation_id: str,
        kind: str,
        *,
        files: Iterable[str] = (),
        task_id: str | None = None,
    ) -> None:
        """Remember an outbound request that may create or touch a task."""
        self._origins[correlation_id] = _Origin(
            correlation_id=correlation_id,
            kind=kind,
            files=tuple(files),
            task_id=task_id,
        )

    def claim(self, correlation_id: str) -> str | None:
        """Stop tracking a request; return the first task it created."""
        origin = self._origins.pop(correlation_id, None)
        if origin is None or not origin.created_tasks:
            return None
        return origin.created_tasks[0]

    def forget_request(self, correlation_id: str) -> None:
        self._origins.pop(correlation_id, None)

    def observe(self, envelope: Envelope, *, settled: bool = False) -> None:
        """Apply one inbound envelope.

        Args:
            envelope: Decoded inbound envelope.
            settled: True when the envelope completed a pending exchange.
                Replies that arrive late are never applied.
        """
        if envelope.kind == TASK_STATUS:
            self._observe_status(envelope)
        elif envelope.kind == CHAT_RESPONSE and settled:
            self._observe_chat_response(envelope)
        elif envelope.kind == FILE_EDITED and settled:
            self._observe_file_edited(envelope)

    def fail_all(self, reason: str) -> int:
        """Mark every non-terminal task failed."""
        count = 0
        for task in self._tasks.values():
            if task.terminal:
                continue
            task.failure_reason = reason
            self._transition(task, TaskState.FAILED, reason)
            count += 1
        self._origins.clear()
        if count:
            logger.info("failed %d task(s): %s", count, reason)
        return count

    def discard(self, task_id: str) -> None:
        """Archive a terminal task."""
        task = self._tasks.get(task_id)
        if task is None:
            return
        if not task.terminal:
            raise ValueError(f"task {task_id!r} is still {task.status.value}")
        del self._tasks[task_id]

    def _observe_status(self, envelope: Envelope) -> None:
        status = TaskStatusPayload.model_validate(envelope.payload)
        task = self._tasks.get(status.task_id)
        if task is None:
            origin = self._origins.get(envelope.id)
            if origin is None:
                self._anomaly("status for unknown task", envelope, status.task_id)
                return
            task = self._create(status.task_id, origin)

        if task.terminal:
            self._anomaly(f"status after {task.status.value}", envelope, task.task_id)
            return

        state = normalize_state(status.state)
        if state in STATUS_CREATED:
            if task.status is not TaskState.CREATED:
                self._anomaly(f"{state!r} while {task.status.value}", envelope, task.task_id)
            return
        if state in STATUS_RUNNING:
            if task.status is TaskState.RUNNING:
                task.last_detail = status.detail
                return
            self._transition(task, TaskState.RUNNING, status.detail)
        elif state in STATUS_NEEDS_APPROVAL:
            if task.status is TaskState.AWAITING_APPROVAL:
                task.last_detail = status.detail
                return
            if task.status is not TaskState.RUNNING:
                self._anomaly(f"{state!r} while {task.status.value}", envelope, task.task_id)
                return
            self._transition(task, TaskState.AWAITING_APPROVAL, status.detail)
        elif state in STATUS_DONE:
            if task.status is not TaskState.RUNNING:
                self._anomaly(f"{state!r} while {task.status.value}", envelope, task.task_id)
                return
            self._transition(task, TaskState.COMPLETED, status.detail)
        elif state in STATUS_ERROR:
            task.failure_reason = status.detail or state
            self._transition(task, TaskState.FAILED, status.detail)
        elif state in STATUS_CANCELLED:
            self._transition(task, TaskState.CANCELLED, status.detail)
        else:
            self._anomaly(f"unknown state {status.state!r}", envelope, task.task_id)

    def _observe_chat_response(self, envelope: Envelope) -> None:
        response = ChatResponsePayload.model_validate(envelope.payload)
        origin = self._origins.get(envelope.id)
        task_id = response.task_id
        if task_id is None:
            task_id = origin.created_tasks[0] if origin and origin.created_tasks else envelope.id

        task = self._tasks.get(task_id)
        if task is None:
            task = self._create(task_id, origin or _Origin(envelope.id, CHAT_RESPONSE))
        elif origin is not None and task_id not in origin.created_tasks:
            origin.created_tasks.append(task_id)

        if not response.final:
            return
        if task.status is TaskState.RUNNING:
            self._transition(task, TaskState.COMPLETED, "final response")
        else:
            self._anomaly(f"final response while {task.status.value}", envelope, task_id)

    def _observe_file_edited(self, envelope: Envelope) -> None:
        origin = self._origins.get(envelope.id)
        if origin is None or origin.task_id is None:
            return
        task = self._tasks.get(origin.task_id)
        if task is None or task.terminal:
            self._anomaly("edit acknowledged for inactive task", envelope, origin.task_id)
            return
        try:
            edited = FileEditedPayload.model_validate(envelope.payload)
        except ValidationError:
            return
        task.associated_files.add(edited.path)

    def _create(self, task_id: str, origin: _Origin) -> Task:
        task = Task(
            task_id=task_id,
            origin_id=origin.correlation_id,
            associated_files=set(origin.files),
            history=[TaskTransition(source=None, target=TaskState.CREATED)],
        )
        self._tasks[task_id] = task
        origin.created_tasks.append(task_id)
        logger.debug("task %s created by %s", task_id, origin.correlation_id)
        return task

    def _transition(self, task: Task, target: TaskState, detail: str | None) -> None:
        logger.debug("task %s: %s -> %s", task.task_id, task.status.value, target.value)
        task.history.append(TaskTransition(source=task.status, target=target, detail=detail))
        task.status = target
        if detail is not None:
            task.last_detail = detail

    def _anomaly(self, reason: str, envelope: Envelope, task_id: str | None) -> None:
        anomaly = ProtocolAnomaly(
            reason=reason,
            correlation_id=envelope.id,
            kind=envelope.kind,
            task_id=task_id,
            detail=dict(envelope.payload),
        )
        self.anomalies.append(anomaly)
        logger.warning("protocol anomaly: %s", anomaly)
