"""Data models for the fsstream package."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Tuple
import time

from .flags import EventFlags, describe


class StreamState(Enum):
    """Lifecycle states of a stream handle."""
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    DISPOSED = "disposed"
    FAILED = "failed"


class BridgeState(Enum):
    """Delivery state of one stream as seen by the event bridge."""
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    DELIVERING = "delivering"


@dataclass(frozen=True)
class RawEvent:
    """
    One change reported by the native event source.

    Attributes:
        path: Path of the changed item (or its directory, without FILE_EVENTS)
        flags: Native flag bits, passed through undecoded
        id: Event identifier, usable as a checkpoint
    """
    path: str
    flags: EventFlags
    id: int

    def has(self, flag: EventFlags) -> bool:
        """Check whether every bit of ``flag`` is set on this event."""
        return self.flags & flag == flag

    @property
    def is_created(self) -> bool:
        return self.has(EventFlags.CREATED)

    @property
    def is_removed(self) -> bool:
        return self.has(EventFlags.REMOVED)

    @property
    def is_renamed(self) -> bool:
        return self.has(EventFlags.RENAMED)

    @property
    def is_modified(self) -> bool:
        return self.has(EventFlags.MODIFIED)

    @property
    def is_metadata_changed(self) -> bool:
        return self.has(EventFlags.INODE_META_MOD)

    @property
    def is_directory(self) -> bool:
        return self.has(EventFlags.IS_DIR)

    @property
    def is_history_done(self) -> bool:
        return self.has(EventFlags.HISTORY_DONE)

    @property
    def must_rescan(self) -> bool:
        """Coalescing lost per-file detail: re-enumerate the subtree at ``path``."""
        return self.has(EventFlags.MUST_SCAN_SUBDIRS)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {"path": self.path, "flags": int(self.flags), "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "RawEvent":
        """Create from dictionary."""
        return cls(
            path=data["path"],
            flags=EventFlags(data.get("flags", 0)),
            id=int(data["id"]),
        )

    def __repr__(self) -> str:
        return f"RawEvent(id={self.id}, path={self.path!r}, flags={describe(self.flags)})"


@dataclass(frozen=True)
class EventBatch:
    """
    An ordered, non-empty group of events delivered to a sink in one call.

    Attributes:
        events: Events in native delivery order
        received_at: Unix timestamp when the bridge built the batch
    """
    events: Tuple[RawEvent, ...]
    received_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not isinstance(self.events, tuple):
            object.__setattr__(self, "events", tuple(self.events))
        if not self.events:
            raise ValueError("an event batch must contain at least one event")

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[RawEvent]:
        return iter(self.events)

    def __getitem__(self, index):
        return self.events[index]

    @property
    def first_id(self) -> int:
        return self.events[0].id

    @property
    def last_id(self) -> int:
        return max(event.id for event in self.events)

    @property
    def paths(self) -> Tuple[str, ...]:
        return tuple(event.path for event in self.events)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "events": [e.to_dict() for e in self.events],
            "received_at": self.received_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EventBatch":
        """Create from dictionary."""
        return cls(
            events=tuple(RawEvent.from_dict(e) for e in data["events"]),
            received_at=data.get("received_at", time.time()),
        )


@dataclass
class StreamStatus:
    """
    Point-in-time view of a stream handle.

    Native sources send no heartbeat, so callers poll this instead of
    inferring failure from silence.
    """
    state: StreamState
    bridge_state: BridgeState
    checkpoint: int
    batches_delivered: int = 0
    events_delivered: int = 0
    sink_errors: int = 0
    last_error: Optional[BaseException] = None

    @property
    def is_active(self) -> bool:
        return self.state == StreamState.STARTED
