from __future__ import annotations

import asyncio
import logging

import pytest

from assistant_session.errors import BackendError, SessionTimeoutError, TransportClosedError
from assistant_session.models import Envelope
from assistant_session.protocol import CHAT_RESPONSE, TASK_STATUS
from assistant_session.registry import CorrelationRegistry


def _reply(correlation_id: str, content: str = "ok") -> Envelope:
    return Envelope(id=correlation_id, kind=CHAT_RESPONSE, payload={"content": content})


def test_resolve_completes_exactly_once() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        future = registry.register("a", CHAT_RESPONSE)

        assert registry.resolve("a", {"content": "first"}) is True
        assert registry.resolve("a", {"content": "second"}) is False
        assert registry.reject("a", RuntimeError("late")) is False

        assert await future == {"content": "first"}
        assert len(registry) == 0
        assert not registry.is_late("a")

    asyncio.run(_run())


def test_register_rejects_duplicate_pending_id() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        registry.register("a", CHAT_RESPONSE)
        with pytest.raises(ValueError):
            registry.register("a", CHAT_RESPONSE)
        registry.discard("a")

    asyncio.run(_run())


def test_timeout_rejects_and_drops_late_response(caplog: pytest.LogCaptureFixture) -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        loop = asyncio.get_running_loop()
        started = loop.time()
        future = registry.register("a", CHAT_RESPONSE, timeout=0.1)

        with pytest.raises(SessionTimeoutError) as exc_info:
            await future
        elapsed = loop.time() - started
        assert 0.09 <= elapsed < 1.0
        assert exc_info.value.correlation_id == "a"
        assert "a" not in registry

        await asyncio.sleep(0.05)
        assert registry.settle(_reply("a", "too late")) is False
        assert registry.is_late("a")
        assert len(registry) == 0

    with caplog.at_level(logging.WARNING, logger="assistant_session.registry"):
        asyncio.run(_run())
    assert any("timed out" in record.getMessage() for record in caplog.records)


def test_settle_ignores_other_kinds_for_pending_id() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        future = registry.register("a", CHAT_RESPONSE)

        status = Envelope(id="a", kind=TASK_STATUS, payload={"taskId": "t1", "state": "running"})
        assert registry.settle(status) is False
        assert not future.done()

        assert registry.settle(_reply("a", "hello!")) is True
        assert await future == {"content": "hello!"}

    asyncio.run(_run())


def test_error_envelope_rejects_only_its_exchange() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        failing = registry.register("a", CHAT_RESPONSE)
        other = registry.register("b", CHAT_RESPONSE)

        error = Envelope(id="a", kind="error", payload={"message": "boom", "code": 500})
        assert registry.settle(error) is True

        with pytest.raises(BackendError) as exc_info:
            await failing
        assert str(exc_info.value) == "boom"
        assert exc_info.value.code == 500
        assert not other.done()
        assert "b" in registry
        registry.discard("b")

    asyncio.run(_run())


def test_unknown_id_leaves_pending_exchanges_untouched() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        future = registry.register("a", CHAT_RESPONSE)

        assert registry.settle(_reply("zzz")) is False
        assert not future.done()
        assert len(registry) == 1
        registry.discard("a")

    asyncio.run(_run())


def test_reject_all_fails_every_pending_exchange() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        futures = [registry.register(str(i), CHAT_RESPONSE, timeout=5.0) for i in range(3)]

        assert registry.reject_all(TransportClosedError("connection lost")) == 3
        for future in futures:
            with pytest.raises(TransportClosedError):
                await future
        assert len(registry) == 0

    asyncio.run(_run())


def test_cancelled_caller_removes_exchange() -> None:
    async def _run() -> None:
        registry = CorrelationRegistry()
        future = registry.register("a", CHAT_RESPONSE, timeout=5.0)

        future.cancel()
        await asyncio.sleep(0)

        assert "a" not in registry
        assert registry.is_late("a")
        assert registry.settle(_reply("a")) is False

    asyncio.run(_run())
