from __future__ import annotations

from collections.abc import Mapping
from typing import Any

# Envelope kinds understood by this package.
CHAT_REQUEST = "chat.request"
CHAT_RESPONSE = "chat.response"
FILE_EDIT = "file.edit"
FILE_EDITED = "file.edited"
COMMAND_RUN = "command.run"
COMMAND_OUTPUT = "command.output"
TASK_STATUS = "task.status"
TASK_CANCEL = "task.cancel"
TASK_APPROVAL = "task.approval"
ERROR = "error"

KNOWN_KINDS = frozenset(
    {
        CHAT_REQUEST,
        CHAT_RESPONSE,
        FILE_EDIT,
        FILE_EDITED,
        COMMAND_RUN,
        COMMAND_OUTPUT,
        TASK_STATUS,
        TASK_CANCEL,
        TASK_APPROVAL,
        ERROR,
    }
)

# Wire `type` values. Some wire types are shared by a request and its reply;
# the payload shape tells them apart.
WIRE_CHAT = "chat"
WIRE_FILE_EDIT = "fileEdit"
WIRE_COMMAND = "command"
WIRE_STATUS = "status"
WIRE_ERROR = "error"
WIRE_CANCEL = "cancel"
WIRE_APPROVAL = "approval"

WIRE_TYPES: Mapping[str, str] = {
    CHAT_REQUEST: WIRE_CHAT,
    CHAT_RESPONSE: WIRE_CHAT,
    FILE_EDIT: WIRE_FILE_EDIT,
    FILE_EDITED: WIRE_FILE_EDIT,
    COMMAND_RUN: WIRE_COMMAND,
    COMMAND_OUTPUT: WIRE_COMMAND,
    TASK_STATUS: WIRE_STATUS,
    TASK_CANCEL: WIRE_CANCEL,
    TASK_APPROVAL: WIRE_APPROVAL,
    ERROR: WIRE_ERROR,
}

# Reply kind a request of each kind is settled by.
EXPECTED_RESPONSE_KINDS: Mapping[str, str] = {
    CHAT_REQUEST: CHAT_RESPONSE,
    FILE_EDIT: FILE_EDITED,
    COMMAND_RUN: COMMAND_OUTPUT,
    TASK_CANCEL: TASK_STATUS,
    TASK_APPROVAL: TASK_STATUS,
}

# Task status aliases, grouped by the lifecycle event they signal.
STATUS_RUNNING = frozenset({"running", "started", "in-progress"})
STATUS_NEEDS_APPROVAL = frozenset({"needs-approval", "awaiting-approval", "approval-required"})
STATUS_DONE = frozenset({"done", "completed", "complete"})
STATUS_ERROR = frozenset({"error", "failed"})
STATUS_CANCELLED = frozenset({"cancelled", "canceled"})


def wire_type_for(kind: str) -> str:
    """Return the wire `type` for an envelope kind.

    Kinds this package does not know are sent verbatim.
    """
    return WIRE_TYPES.get(kind, kind)


def kind_for_wire(wire_type: str, payload: Mapping[str, Any]) -> str:
    """Map a wire `type` (plus payload shape) onto an envelope kind.

    Unrecognized wire types are returned unchanged so they can be routed to a
    fallback handler.
    """
    if wire_type in KNOWN_KINDS:
        return wire_type
    if wire_type == WIRE_CHAT:
        return CHAT_RESPONSE if "content" in payload else CHAT_REQUEST
    if wire_type == WIRE_FILE_EDIT:
        return FILE_EDIT if "operation" in payload else FILE_EDITED
    if wire_type == WIRE_COMMAND:
        return COMMAND_OUTPUT if "output" in payload else COMMAND_RUN
    if wire_type == WIRE_STATUS:
        return TASK_STATUS
    if wire_type == WIRE_ERROR:
        return ERROR
    if wire_type == WIRE_CANCEL:
        return TASK_CANCEL
    if wire_type == WIRE_APPROVAL:
        return TASK_APPROVAL
    return wire_type


def is_known_kind(kind: str) -> bool:
    """Return True when kind belongs to the recognized set."""
    return kind in KNOWN_KINDS


def expected_response_kind(kind: str) -> str:
    """Return the reply kind for a request kind."""
    try:
        return EXPECTED_RESPONSE_KINDS[kind]
    except KeyError:
        raise ValueError(f"{kind!r} is not a request kind") from None


def normalize_state(state: str) -> str:
    """Lower-case a status string and unify separators."""
    return state.strip().lower().replace("_", "-").replace(" ", "-")
