import pytest

from assistant_session.protocol import (
    CHAT_REQUEST,
    CHAT_RESPONSE,
    COMMAND_OUTPUT,
    COMMAND_RUN,
    FILE_EDIT,
    FILE_EDITED,
    TASK_STATUS,
    expected_response_kind,
    kind_for_wire,
    normalize_state,
    wire_type_for,
)


def test_shared_wire_types_are_split_by_payload_shape() -> None:
    assert kind_for_wire("chat", {"message": "hi"}) == CHAT_REQUEST
    assert kind_for_wire("chat", {"content": "hello!"}) == CHAT_RESPONSE
    assert kind_for_wire("fileEdit", {"path": "a.py", "operation": "create"}) == FILE_EDIT
    assert kind_for_wire("fileEdit", {"path": "a.py", "content": ""}) == FILE_EDITED
    assert kind_for_wire("command", {"command": "ls"}) == COMMAND_RUN
    assert kind_for_wire("command", {"command": "ls", "output": "a.py"}) == COMMAND_OUTPUT
    assert kind_for_wire("status", {}) == TASK_STATUS


def test_dotted_kinds_and_unknown_types_pass_through() -> None:
    assert kind_for_wire("chat.response", {}) == CHAT_RESPONSE
    assert kind_for_wire("unknown-future-kind", {}) == "unknown-future-kind"
    assert wire_type_for("unknown-future-kind") == "unknown-future-kind"
    assert wire_type_for(FILE_EDITED) == "fileEdit"


def test_expected_response_kind_rejects_non_requests() -> None:
    assert expected_response_kind(CHAT_REQUEST) == CHAT_RESPONSE
    assert expected_response_kind(COMMAND_RUN) == COMMAND_OUTPUT
    with pytest.raises(ValueError):
        expected_response_kind(CHAT_RESPONSE)


def test_normalize_state() -> None:
    assert normalize_state(" Needs_Approval ") == "needs-approval"
    assert normalize_state("in progress") == "in-progress"
