from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .errors import BackendError, SessionTimeoutError
from .models import Envelope, ErrorPayload
from .protocol import CHAT_RESPONSE, COMMAND_OUTPUT, ERROR, FILE_EDITED

logger = logging.getLogger(__name__)

# Kinds that only ever answer a request; status events are not listed since
# they also arrive unsolicited.
REPLY_KINDS = frozenset({CHAT_RESPONSE, FILE_EDITED, COMMAND_OUTPUT, ERROR})

# How many settled or expired ids to remember for late-response diagnostics.
RETIRED_HISTORY_SIZE = 1024

_LATE_REASONS = frozenset({"timed out", "cancelled"})


@dataclass(slots=True)
class PendingExchange:
    correlation_id: str
    expected_kind: str
    future: asyncio.Future[dict[str, Any]]
    created_at: float = field(default_factory=time.monotonic)
    timeout: float | None = None
    timer: asyncio.TimerHandle | None = None


class CorrelationRegistry:
    """Map outstanding correlation ids to the callers awaiting them.

    Every exchange completes at most once: by `resolve`, `reject`, its
    deadline, or the caller cancelling the returned future. Whatever arrives
    for an id afterwards is dropped and logged.
    """

    def __init__(self, *, retired_history: int = RETIRED_HISTORY_SIZE) -> None:
        self._pending: dict[str, PendingExchange] = {}
        self._retired: OrderedDict[str, str] = OrderedDict()
        self._retired_history = retired_history

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._pending

    def get(self, correlation_id: str) -> PendingExchange | None:
        return self._pending.get(correlation_id)

    def is_late(self, correlation_id: str) -> bool:
        """Return True if the id belonged to an exchange that timed out or was cancelled."""
        return self._retired.get(correlation_id) in _LATE_REASONS

    def register(
        self,
        correlation_id: str,
        expected_kind: str,
        timeout: float | None = None,
    ) -> asyncio.Future[dict[str, Any]]:
        """Create a pending exchange and return the future its caller awaits.

        Args:
            correlation_id: Id the reply will echo.
            expected_kind: Envelope kind that resolves the exchange.
            timeout: Seconds until the exchange is rejected with
                `SessionTimeoutError`; None waits indefinitely.
        """
        if correlation_id in self._pending:
            raise ValueError(f"correlation id {correlation_id!r} is already pending")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        exchange = PendingExchange(
            correlation_id=correlation_id,
            expected_kind=expected_kind,
            future=future,
            timeout=timeout,
        )
        if timeout is not None:
            exchange.timer = loop.call_later(timeout, self._expire, correlation_id)
        self._pending[correlation_id] = exchange
        future.add_done_callback(lambda _: self._abandon(correlation_id, future))
        return future

    def resolve(self, correlation_id: str, payload: dict[str, Any]) -> bool:
        """Complete the matching exchange successfully.

        Returns False (and logs) when no exchange is pending for the id.
        """
        exchange = self._take(correlation_id, "resolved")
        if exchange is None:
            self._log_unmatched(correlation_id, "response")
            return False
        if not exchange.future.done():
            exchange.future.set_result(payload)
        return True

    def reject(self, correlation_id: str, error: BaseException) -> bool:
        """Complete the matching exchange with `error`."""
        exchange = self._take(correlation_id, "rejected")
        if exchange is None:
            self._log_unmatched(correlation_id, "rejection")
            return False
        if not exchange.future.done():
            exchange.future.set_exception(error)
        return True

    def discard(self, correlation_id: str) -> None:
        """Drop an exchange without completing it (request never left)."""
        exchange = self._pending.pop(correlation_id, None)
        if exchange is None:
            return
        if exchange.timer is not None:
            exchange.timer.cancel()
        if not exchange.future.done():
            exchange.future.cancel()

    def settle(self, envelope: Envelope) -> bool:
        """Apply an inbound envelope to its pending exchange, if any.

        An `error` envelope rejects the exchange with `BackendError`; an
        envelope of the expected kind resolves it. Any other kind leaves the
        exchange pending. Returns True when an exchange was completed.
        """
        exchange = self._pending.get(envelope.id)
        if exchange is None:
            if envelope.kind in REPLY_KINDS:
                self._log_unmatched(envelope.id, envelope.kind)
            return False

        if envelope.kind == ERROR:
            error = ErrorPayload.model_validate(envelope.payload)
            return self.reject(
                envelope.id,
                BackendError(
                    error.message,
                    correlation_id=envelope.id,
                    code=error.code,
                    data=error.data,
                ),
            )
        if envelope.kind != exchange.expected_kind:
            return False
        return self.resolve(envelope.id, envelope.payload)

    def reject_all(self, error: BaseException) -> int:
        """Reject every pending exchange; used when the connection is lost."""
        count = 0
        for correlation_id in list(self._pending):
            if self.reject(correlation_id, error):
                count += 1
        return count

    def _take(self, correlation_id: str, reason: str) -> PendingExchange | None:
        exchange = self._pending.pop(correlation_id, None)
        if exchange is None:
            return None
        if exchange.timer is not None:
            exchange.timer.cancel()
        self._retire(correlation_id, reason)
        return exchange

    def _expire(self, correlation_id: str) -> None:
        exchange = self._take(correlation_id, "timed out")
        if exchange is None:
            return
        timeout = exchange.timeout or 0.0
        logger.debug("exchange %s timed out after %.3fs", correlation_id, timeout)
        if not exchange.future.done():
            exchange.future.set_exception(
                SessionTimeoutError(
                    f"no {exchange.expected_kind} for {correlation_id} within {timeout:.3f}s",
                    correlation_id=correlation_id,
                    timeout=timeout,
                )
            )

    def _abandon(self, correlation_id: str, future: asyncio.Future[Any]) -> None:
        # Caller cancelled the future while the exchange was still pending.
        exchange = self._pending.get(correlation_id)
        if exchange is None or exchange.future is not future or not future.cancelled():
            return
        self._take(correlation_id, "cancelled")

    def _retire(self, correlation_id: str, reason: str) -> None:
        self._retired[correlation_id] = reason
        self._retired.move_to_end(correlation_id)
        while len(self._retired) > self._retired_history:
            self._retired.popitem(last=False)

    def _log_unmatched(self, correlation_id: str, what: str) -> None:
        reason = self._retired.get(correlation_id)
        if reason in _LATE_REASONS:
            logger.warning("dropping late %s for %s exchange %s", what, reason, correlation_id)
        elif reason is not None:
            logger.debug("dropping duplicate %s for %s exchange %s", what, reason, correlation_id)
        else:
            logger.debug("dropping %s for unknown exchange %s", what, correlation_id)
