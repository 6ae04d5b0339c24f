from .codec import EnvelopeCodec
from .config import SessionSettings
from .errors import (
    BackendError,
    DecodeError,
    EncodeError,
    ProtocolAnomaly,
    SessionError,
    SessionTimeoutError,
    TransportClosedError,
    UnknownTaskError,
)
from .host import HostContext, MemoryKeyValueStore, MemorySecretStore
from .models import (
    ChatResult,
    CommandResult,
    EditResult,
    Envelope,
    Task,
    TaskState,
    TaskTransition,
)
from .registry import CorrelationRegistry
from .router import DispatchRouter, Subscription
from .session import AssistantSession
from .tasks import TaskTracker
from .transport import QueueTransport, StdioTransport, Transport, WebSocketTransport

__all__ = [
    "AssistantSession",
    "BackendError",
    "ChatResult",
    "CommandResult",
    "CorrelationRegistry",
    "DecodeError",
    "DispatchRouter",
    "EditResult",
    "EncodeError",
    "Envelope",
    "EnvelopeCodec",
    "HostContext",
    "MemoryKeyValueStore",
    "MemorySecretStore",
    "ProtocolAnomaly",
    "QueueTransport",
    "SessionError",
    "SessionSettings",
    "SessionTimeoutError",
    "StdioTransport",
    "Subscription",
    "Task",
    "TaskState",
    "TaskTracker",
    "TaskTransition",
    "Transport",
    "TransportClosedError",
    "UnknownTaskError",
    "WebSocketTransport",
]
