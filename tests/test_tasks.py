from __future__ import annotations

import logging

import pytest

from assistant_session.models import Envelope, TaskState
from assistant_session.tasks import TaskTracker


def _status(task_id: str, state: str, *, correlation_id: str = "r1", detail: str | None = None) -> Envelope:
    payload = {"taskId": task_id, "state": state}
    if detail is not None:
        payload["detail"] = detail
    return Envelope(id=correlation_id, kind="task.status", payload=payload)


def _chat_response(correlation_id: str, **payload: object) -> Envelope:
    return Envelope(id=correlation_id, kind="chat.response", payload={"content": "ok", **payload})


def _tracker_with_running_task() -> TaskTracker:
    tracker = TaskTracker()
    tracker.track_request("r1", "chat.request", files=["src/app.py"])
    tracker.observe(_status("t1", "running"))
    return tracker


def test_status_for_originating_request_creates_task() -> None:
    tracker = _tracker_with_running_task()

    task = tracker.get("t1")
    assert task is not None
    assert task.status is TaskState.RUNNING
    assert [step.target for step in task.history] == [TaskState.CREATED, TaskState.RUNNING]
    assert task.history[0].source is None
    assert task.origin_id == "r1"
    assert task.associated_files == {"src/app.py"}


def test_approval_round_trip_and_completion() -> None:
    tracker = _tracker_with_running_task()

    tracker.observe(_status("t1", "needs-approval", detail="write src/app.py"))
    assert tracker.get("t1").status is TaskState.AWAITING_APPROVAL

    tracker.observe(_status("t1", "running", correlation_id="approval-1"))
    assert tracker.get("t1").status is TaskState.RUNNING

    tracker.observe(_status("t1", "done"))
    task = tracker.get("t1")
    assert task.status is TaskState.COMPLETED
    assert task.terminal


def test_repeated_running_is_progress_only() -> None:
    tracker = _tracker_with_running_task()
    tracker.observe(_status("t1", "running", detail="reading files"))

    task = tracker.get("t1")
    assert len(task.history) == 2
    assert task.last_detail == "reading files"


def test_error_fails_task_with_reason() -> None:
    tracker = _tracker_with_running_task()
    tracker.observe(_status("t1", "error", detail="model unavailable"))

    task = tracker.get("t1")
    assert task.status is TaskState.FAILED
    assert task.failure_reason == "model unavailable"


def test_terminal_tasks_ignore_later_events(caplog: pytest.LogCaptureFixture) -> None:
    tracker = _tracker_with_running_task()
    tracker.observe(_status("t1", "cancelled"))

    with caplog.at_level(logging.WARNING, logger="assistant_session.tasks"):
        tracker.observe(_status("t1", "running"))
        tracker.observe(_status("t1", "done"))

    task = tracker.get("t1")
    assert task.status is TaskState.CANCELLED
    assert len(tracker.anomalies) == 2
    assert all(anomaly.task_id == "t1" for anomaly in tracker.anomalies)
    assert "protocol anomaly" in caplog.text


def test_status_for_unknown_task_is_an_anomaly() -> None:
    tracker = TaskTracker()
    tracker.observe(_status("ghost", "running", correlation_id="unsolicited"))

    assert tracker.get("ghost") is None
    assert tracker.anomalies[-1].reason == "status for unknown task"


def test_out_of_table_transitions_are_rejected() -> None:
    tracker = TaskTracker()
    tracker.track_request("r1", "chat.request")
    tracker.observe(_status("t1", "created"))
    tracker.observe(_status("t1", "done"))
    tracker.observe(_status("t1", "needs-approval"))
    tracker.observe(_status("t1", "teleporting"))

    assert tracker.get("t1").status is TaskState.CREATED
    assert len(tracker.anomalies) == 3


def test_chat_response_creates_task_only_when_settled() -> None:
    tracker = TaskTracker()
    tracker.track_request("r1", "chat.request")

    tracker.observe(_chat_response("r1", taskId="t1"), settled=False)
    assert len(tracker) == 0

    tracker.observe(_chat_response("r1", taskId="t1"), settled=True)
    assert tracker.get("t1").status is TaskState.CREATED
    assert tracker.claim("r1") == "t1"


def test_chat_response_without_task_id_reuses_created_task() -> None:
    tracker = _tracker_with_running_task()
    tracker.observe(_chat_response("r1"), settled=True)

    assert [task.task_id for task in tracker.tasks] == ["t1"]
    assert tracker.get("t1").status is TaskState.RUNNING


def test_chat_response_without_any_task_falls_back_to_correlation_id() -> None:
    tracker = TaskTracker()
    tracker.track_request("r9", "chat.request")
    tracker.observe(_chat_response("r9"), settled=True)

    assert tracker.get("r9") is not None


def test_final_chat_response_completes_task() -> None:
    tracker = _tracker_with_running_task()
    tracker.observe(_chat_response("r1", taskId="t1", final=True), settled=True)

    assert tracker.get("t1").status is TaskState.COMPLETED


def test_final_chat_response_before_running_is_an_anomaly() -> None:
    tracker = TaskTracker()
    tracker.track_request("r1", "chat.request")
    tracker.observe(_status("t1", "created"))

    tracker.observe(_chat_response("r1", taskId="t1", final=True), settled=True)

    task = tracker.get("t1")
    assert task.status is TaskState.CREATED
    assert [step.target for step in task.history] == [TaskState.CREATED]
    assert tracker.anomalies[-1].reason == "final response while created"


def test_file_edit_ack_is_associated_with_task() -> None:
    tracker = _tracker_with_running_task()
    tracker.track_request("e1", "file.edit", task_id="t1")
    ack = Envelope(id="e1", kind="file.edited", payload={"path": "README.md", "content": ""})

    tracker.observe(ack, settled=True)

    assert tracker.get("t1").associated_files == {"src/app.py", "README.md"}


def test_fail_all_marks_only_active_tasks() -> None:
    tracker = _tracker_with_running_task()
    tracker.track_request("r2", "chat.request")
    tracker.observe(_status("t2", "running", correlation_id="r2"))
    tracker.observe(_status("t2", "done", correlation_id="r2"))

    assert tracker.fail_all("connection-lost") == 1

    assert tracker.get("t1").status is TaskState.FAILED
    assert tracker.get("t1").failure_reason == "connection-lost"
    assert tracker.get("t2").status is TaskState.COMPLETED


def test_discard_only_archives_terminal_tasks() -> None:
    tracker = _tracker_with_running_task()
    with pytest.raises(ValueError):
        tracker.discard("t1")

    tracker.observe(_status("t1", "done"))
    tracker.discard("t1")
    assert "t1" not in tracker


def test_snapshots_do_not_leak_live_state() -> None:
    tracker = _tracker_with_running_task()
    snapshot = tracker.get("t1")
    snapshot.status = TaskState.COMPLETED
    snapshot.associated_files.add("evil.py")

    task = tracker.get("t1")
    assert task.status is TaskState.RUNNING
    assert task.associated_files == {"src/app.py"}
