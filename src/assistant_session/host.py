"""Minimal host capabilities for embedding an assistant task controller.

A controller written against a rich editor host only needs three things from
it: somewhere to keep state, somewhere to keep secrets, and a way to emit
messages. `HostContext` bundles exactly those.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .session import AssistantSession


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def update(self, key: str, value: Any) -> None: ...

    def keys(self) -> list[str]: ...


@runtime_checkable
class SecretStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def store(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


#: Sends one message of `kind` with `payload` to the other side.
MessageEmitter = Callable[[str, Mapping[str, Any]], Awaitable[Any]]


class MemoryKeyValueStore:
    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def update(self, key: str, value: Any) -> None:
        # None removes the key.
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def keys(self) -> list[str]:
        return list(self._data)


class MemorySecretStore:
    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    async def store(self, key: str, value: str) -> None:
        self._secrets[key] = value

    async def delete(self, key: str) -> None:
        self._secrets.pop(key, None)


async def _discard(kind: str, payload: Mapping[str, Any]) -> None:
    return None


@dataclass(slots=True)
class HostContext:
    """Capabilities handed to an embedded task controller."""

    state: KeyValueStore = field(default_factory=MemoryKeyValueStore)
    secrets: SecretStore = field(default_factory=MemorySecretStore)
    emit: MessageEmitter = _discard

    @classmethod
    def for_session(
        cls,
        session: AssistantSession,
        *,
        state: KeyValueStore | None = None,
        secrets: SecretStore | None = None,
    ) -> HostContext:
        """Build a context whose emitter sends one-way envelopes on `session`."""
        return cls(
            state=state if state is not None else MemoryKeyValueStore(),
            secrets=secrets if secrets is not None else MemorySecretStore(),
            emit=session.notify,
        )
