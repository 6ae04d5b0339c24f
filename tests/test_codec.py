import json
import math

import pytest

from assistant_session.codec import EnvelopeCodec
from assistant_session.errors import DecodeError, EncodeError
from assistant_session.models import Envelope


def test_encode_uses_wire_shape() -> None:
    codec = EnvelopeCodec()
    envelope = Envelope(id="1", kind="chat.request", payload={"message": "hi"}, sent_at=12.5)

    frame = json.loads(codec.encode(envelope))

    assert frame == {"id": "1", "type": "chat", "payload": {"message": "hi"}, "timestamp": 12.5}


def test_encode_emits_camel_case_and_drops_unset_fields() -> None:
    codec = EnvelopeCodec()
    envelope = Envelope(
        id="2",
        kind="file.edit",
        payload={"path": "a.py", "content": "x = 1\n", "operation": "create", "task_id": "t1"},
    )

    payload = json.loads(codec.encode(envelope))["payload"]

    assert payload == {"path": "a.py", "content": "x = 1\n", "operation": "create", "taskId": "t1"}


def test_encode_rejects_invalid_payload() -> None:
    codec = EnvelopeCodec()
    envelope = Envelope(id="3", kind="file.edit", payload={"path": "a.py", "operation": "rename"})
    with pytest.raises(EncodeError):
        codec.encode(envelope)


def test_decode_chat_response() -> None:
    codec = EnvelopeCodec()
    envelope = codec.decode(
        '{"id":"1","type":"chat","payload":{"content":"hello!","taskId":"t1"},"timestamp":3}'
    )
    assert envelope.id == "1"
    assert envelope.kind == "chat.response"
    assert envelope.payload == {"content": "hello!", "taskId": "t1"}
    assert envelope.sent_at == 3.0


def test_decode_accepts_bytes_and_integer_ids() -> None:
    codec = EnvelopeCodec()
    envelope = codec.decode(b'{"id":7,"type":"status","payload":{"taskId":"t1","state":"running"}}')
    assert envelope.id == "7"
    assert envelope.kind == "task.status"


def test_decode_keeps_unknown_kinds() -> None:
    codec = EnvelopeCodec()
    envelope = codec.decode('{"id":"9","type":"unknown-future-kind","payload":{"x":1}}')
    assert envelope.kind == "unknown-future-kind"
    assert envelope.known is False
    assert envelope.payload == {"x": 1}


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        "[1, 2]",
        '{"type":"chat","payload":{"content":"x"}}',
        '{"id":"1","payload":{}}',
        '{"id":"1","type":"chat","payload":"hello"}',
        '{"id":"1","type":"status","payload":{"state":"running"}}',
        '{"id":"1","type":"chat","payload":{}}',
        b"\xff\xfe",
        "[" * 100_000,
        '{"id":"1","type":"chat","payload":{"content":"x"},"timestamp":' + "9" * 5000 + "}",
    ],
)
def test_decode_malformed_frames_raise_decode_error(frame: object) -> None:
    codec = EnvelopeCodec()
    with pytest.raises(DecodeError) as exc_info:
        codec.decode(frame)  # type: ignore[arg-type]
    assert exc_info.value.frame == frame


@pytest.mark.parametrize("timestamp", ["9" * 400, "-" + "9" * 400, "NaN", "Infinity", '"yesterday"'])
def test_decode_replaces_unusable_timestamp_with_receive_time(timestamp: str) -> None:
    codec = EnvelopeCodec()
    envelope = codec.decode(
        '{"id":"1","type":"status","payload":{"taskId":"t1","state":"running"},"timestamp":' + timestamp + "}"
    )
    assert envelope.kind == "task.status"
    assert math.isfinite(envelope.sent_at)
