from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, TypeAlias

from .models import Envelope
from .registry import REPLY_KINDS, CorrelationRegistry
from .tasks import TaskTracker

logger = logging.getLogger(__name__)

#: Durable handler; may be a plain function or a coroutine function.
Handler: TypeAlias = Callable[[Envelope], Any]


class Subscription:
    """Token returned by `DispatchRouter.on`; call `unsubscribe` to detach."""

    __slots__ = ("_router", "kind", "handler", "_active")

    def __init__(self, router: DispatchRouter, kind: str, handler: Handler) -> None:
        self._router = router
        self.kind = kind
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._router._remove(self)

    close = unsubscribe

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.unsubscribe()


class DispatchRouter:
    """Route decoded envelopes to pending exchanges, tasks and handlers.

    For each known envelope the registry settles its exchange first, then the
    tracker observes it, then every durable handler for the kind is scheduled
    as its own asyncio task. Handlers never run inside `dispatch`, so a slow
    handler cannot hold up the receive loop. Replies that arrive after their
    exchange timed out or was cancelled are dropped here. Unknown kinds
    bypass the registry and tracker and go to the fallback handler.
    """

    def __init__(
        self,
        registry: CorrelationRegistry | None = None,
        tracker: TaskTracker | None = None,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._handlers: dict[str, list[Subscription]] = {}
        self._fallback: Handler | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(self, kind: str, handler: Handler) -> Subscription:
        """Register a durable handler for every inbound envelope of `kind`."""
        subscription = Subscription(self, kind, handler)
        self._handlers.setdefault(kind, []).append(subscription)
        return subscription

    def set_fallback(self, handler: Handler | None) -> None:
        """Set or clear the handler for envelopes of unrecognized kinds."""
        self._fallback = handler

    def handlers_for(self, kind: str) -> list[Handler]:
        return [subscription.handler for subscription in self._handlers.get(kind, ())]

    def dispatch(self, envelope: Envelope) -> bool:
        """Route one inbound envelope; return True if it completed an exchange."""
        if not envelope.known:
            if self._fallback is None:
                logger.info("no handler for unrecognized kind %r (id=%s)", envelope.kind, envelope.id)
            else:
                self._schedule(self._fallback, envelope)
            return False

        settled = self._registry.settle(envelope) if self._registry is not None else False
        if not settled and self._is_late_reply(envelope):
            return False
        if self._tracker is not None:
            try:
                self._tracker.observe(envelope, settled=settled)
            except Exception:
                logger.exception("task tracker failed on %s %s", envelope.kind, envelope.id)

        for handler in self.handlers_for(envelope.kind):
            self._schedule(handler, envelope)
        return settled

    async def drain(self) -> None:
        """Wait for currently scheduled handlers to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding handler tasks and drop all subscriptions."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for subscriptions in self._handlers.values():
            for subscription in subscriptions:
                subscription._active = False
        self._handlers.clear()
        self._fallback = None

    def _is_late_reply(self, envelope: Envelope) -> bool:
        # Replies to timed out or cancelled exchanges reach neither tasks nor handlers.
        return (
            self._registry is not None
            and envelope.kind in REPLY_KINDS
            and self._registry.is_late(envelope.id)
        )

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._handlers.get(subscription.kind)
        if not subscriptions:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._handlers[subscription.kind]

    def _schedule(self, handler: Handler, envelope: Envelope) -> None:
        task: asyncio.Task[Any] = asyncio.create_task(self._run_handler(handler, envelope))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_handler(self, handler: Handler, envelope: Envelope) -> None:
        try:
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("handler %r failed on %s %s", handler, envelope.kind, envelope.id)
