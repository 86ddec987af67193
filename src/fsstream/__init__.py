"""
fsstream

Native filesystem change streams: watch a set of directories and receive
ordered, coalesced batches of change events with resumable checkpoints.

Features:
- Stream lifecycle: create, start, stop, dispose, rebind
- Coalescing latency window per stream, FSEvents-compatible flag bits
- Monotonic event ids persisted in an SQLite journal
- Resume from a checkpoint without gaps, including offline changes
- Non-blocking delivery to sinks through per-stream worker queues
"""

from .flags import (
    SINCE_NOW,
    NATIVE_SINCE_NOW,
    SINCE_ALL,
    CreateFlags,
    EventFlags,
    describe,
)

from .models import (
    StreamState,
    BridgeState,
    RawEvent,
    EventBatch,
    StreamStatus,
)

from .config import DeliveryPolicy, StreamConfig

from .exceptions import (
    FSStreamError,
    InvalidArgumentError,
    ResourceExhaustedError,
    InvalidStateError,
    InternalInvariantViolation,
    SinkError,
    JournalError,
)

from .journal import (
    EventJournal,
    current_event_id,
    last_event_before,
    purge_events_up_to,
)
from .runloop import RunLoop
from .native import NativeStream
from .bridge import EventBridge
from .stream import StreamManager, StreamHandle


__all__ = [
    # Flags
    "SINCE_NOW",
    "NATIVE_SINCE_NOW",
    "SINCE_ALL",
    "CreateFlags",
    "EventFlags",
    "describe",
    # Models
    "StreamState",
    "BridgeState",
    "RawEvent",
    "EventBatch",
    "StreamStatus",
    # Config
    "DeliveryPolicy",
    "StreamConfig",
    # Exceptions
    "FSStreamError",
    "InvalidArgumentError",
    "ResourceExhaustedError",
    "InvalidStateError",
    "InternalInvariantViolation",
    "SinkError",
    "JournalError",
    # Journal
    "EventJournal",
    "current_event_id",
    "last_event_before",
    "purge_events_up_to",
    # Components
    "RunLoop",
    "NativeStream",
    "EventBridge",
    "StreamManager",
    "StreamHandle",
]

__version__ = "0.1.0"
