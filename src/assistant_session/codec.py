from __future__ import annotations

import json
import math
import time
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .errors import DecodeError, EncodeError
from .models import PAYLOAD_MODELS, Envelope
from .protocol import kind_for_wire, wire_type_for


class EnvelopeCodec:
    """Translate envelopes to and from JSON text frames.

    Wire shape::

        {"id": str, "type": str, "payload": object, "timestamp": number}

    Recognized kinds have their payload validated against the matching
    payload model in both directions. Unrecognized wire types decode into
    envelopes whose `kind` is the raw type so they can reach a fallback
    handler.
    """

    def encode(self, envelope: Envelope) -> str:
        """Serialize one envelope into a compact JSON frame."""
        payload = envelope.payload
        model = PAYLOAD_MODELS.get(envelope.kind)
        if model is not None:
            try:
                payload = model.model_validate(payload).to_wire()
            except ValidationError as exc:
                raise EncodeError(
                    f"invalid {envelope.kind} payload: {exc.error_count()} validation error(s)"
                ) from exc
        message = {
            "id": envelope.id,
            "type": wire_type_for(envelope.kind),
            "payload": payload,
            "timestamp": envelope.sent_at,
        }
        try:
            return json.dumps(message, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise EncodeError(f"{envelope.kind} payload is not JSON-serializable") from exc

    def decode(self, frame: str | bytes | bytearray) -> Envelope:
        """Parse one frame into an envelope.

        Raises:
            DecodeError: The frame is not a valid envelope. No other exception
                escapes this method.
        """
        try:
            text = frame.decode("utf-8") if isinstance(frame, (bytes, bytearray)) else frame
            message = json.loads(text)
        except (UnicodeDecodeError, ValueError, TypeError) as exc:
            raise DecodeError("frame is not valid JSON", frame=frame) from exc
        except RecursionError as exc:
            raise DecodeError("frame is nested too deeply", frame=frame) from exc

        if not isinstance(message, dict):
            raise DecodeError("frame is not a JSON object", frame=frame)

        correlation_id = _coerce_id(message.get("id"))
        if correlation_id is None:
            raise DecodeError("frame has no usable id", frame=frame)

        wire_type = message.get("type")
        if not isinstance(wire_type, str) or not wire_type:
            raise DecodeError("frame has no type", frame=frame)

        payload = message.get("payload", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise DecodeError(f"{wire_type} payload is not an object", frame=frame)
        payload = dict(payload)

        kind = kind_for_wire(wire_type, payload)
        model = PAYLOAD_MODELS.get(kind)
        if model is not None:
            try:
                model.model_validate(payload)
            except ValidationError as exc:
                raise DecodeError(f"{kind} payload has the wrong shape", frame=frame) from exc

        try:
            return Envelope(
                id=correlation_id,
                kind=kind,
                payload=payload,
                sent_at=_sent_at(message.get("timestamp")),
            )
        except ValidationError as exc:
            raise DecodeError("frame is not a valid envelope", frame=frame) from exc


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value:
        return value
    return None


def _sent_at(timestamp: Any) -> float:
    # Missing, non-numeric or out-of-range timestamps get the local receive time.
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return time.monotonic()
    try:
        sent_at = float(timestamp)
    except OverflowError:
        return time.monotonic()
    return sent_at if math.isfinite(sent_at) else time.monotonic()
