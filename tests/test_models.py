"""Tests for models and flags modules."""

import pytest

from fsstream.flags import (
    NATIVE_SINCE_NOW,
    SINCE_ALL,
    SINCE_NOW,
    CreateFlags,
    EventFlags,
    describe,
    is_since_now,
)
from fsstream.models import (
    BridgeState,
    EventBatch,
    RawEvent,
    StreamState,
    StreamStatus,
)


class TestFlags:
    """Tests for flag constants and helpers."""

    def test_event_flag_values(self):
        assert EventFlags.MUST_SCAN_SUBDIRS == 0x1
        assert EventFlags.HISTORY_DONE == 0x10
        assert EventFlags.ROOT_CHANGED == 0x20
        assert EventFlags.CREATED == 0x100
        assert EventFlags.REMOVED == 0x200
        assert EventFlags.INODE_META_MOD == 0x400
        assert EventFlags.RENAMED == 0x800
        assert EventFlags.MODIFIED == 0x1000
        assert EventFlags.IS_FILE == 0x10000
        assert EventFlags.IS_DIR == 0x20000
        assert EventFlags.IS_SYMLINK == 0x40000

    def test_create_flag_values(self):
        assert CreateFlags.NO_DEFER == 0x2
        assert CreateFlags.WATCH_ROOT == 0x4
        assert CreateFlags.FILE_EVENTS == 0x10

    def test_since_now_sentinels(self):
        assert is_since_now(SINCE_NOW)
        assert is_since_now(NATIVE_SINCE_NOW)
        assert not is_since_now(SINCE_ALL)
        assert not is_since_now(42)

    def test_describe(self):
        assert describe(EventFlags.CREATED | EventFlags.IS_FILE) == "CREATED|IS_FILE"
        assert describe(0) == "NONE"


class TestRawEvent:
    """Tests for RawEvent class."""

    def test_flag_helpers(self):
        event = RawEvent(path="/w/a.txt", flags=EventFlags.CREATED | EventFlags.IS_FILE, id=5)
        assert event.is_created
        assert not event.is_removed
        assert not event.is_directory
        assert not event.must_rescan

    def test_rescan_and_history(self):
        rescan = RawEvent(path="/w", flags=EventFlags.MUST_SCAN_SUBDIRS, id=3)
        marker = RawEvent(path="/w", flags=EventFlags.HISTORY_DONE, id=4)
        assert rescan.must_rescan
        assert marker.is_history_done

    def test_modified_and_metadata(self):
        event = RawEvent(
            path="/w/a.txt",
            flags=EventFlags.MODIFIED | EventFlags.INODE_META_MOD | EventFlags.IS_FILE,
            id=9,
        )
        assert event.is_modified
        assert event.is_metadata_changed

    def test_is_immutable(self):
        event = RawEvent(path="/w", flags=EventFlags.NONE, id=1)
        with pytest.raises(AttributeError):
            event.id = 2

    def test_to_dict_from_dict(self):
        event = RawEvent(path="/w/d", flags=EventFlags.REMOVED | EventFlags.IS_DIR, id=77)
        data = event.to_dict()
        assert data == {"path": "/w/d", "flags": 0x20200, "id": 77}
        assert RawEvent.from_dict(data) == event

    def test_repr_names_flags(self):
        event = RawEvent(path="/w/a", flags=EventFlags.RENAMED, id=1)
        assert "RENAMED" in repr(event)


class TestEventBatch:
    """Tests for EventBatch class."""

    def _events(self):
        return [
            RawEvent(path="/w/a", flags=EventFlags.CREATED, id=10),
            RawEvent(path="/w/b", flags=EventFlags.MODIFIED, id=11),
            RawEvent(path="/w/a", flags=EventFlags.REMOVED, id=12),
        ]

    def test_empty_batch_rejected(self):
        with pytest.raises(ValueError):
            EventBatch(events=())
        with pytest.raises(ValueError):
            EventBatch(events=[])

    def test_list_converted_to_tuple(self):
        batch = EventBatch(events=self._events())
        assert isinstance(batch.events, tuple)

    def test_sequence_protocol(self):
        batch = EventBatch(events=self._events())
        assert len(batch) == 3
        assert batch[1].path == "/w/b"
        assert [e.id for e in batch] == [10, 11, 12]

    def test_id_bounds(self):
        batch = EventBatch(events=self._events())
        assert batch.first_id == 10
        assert batch.last_id == 12

    def test_paths_keep_order_and_repeats(self):
        batch = EventBatch(events=self._events())
        assert batch.paths == ("/w/a", "/w/b", "/w/a")

    def test_to_dict_from_dict(self):
        batch = EventBatch(events=self._events(), received_at=1000.0)
        restored = EventBatch.from_dict(batch.to_dict())
        assert restored.events == batch.events
        assert restored.received_at == 1000.0


class TestStreamStatus:
    """Tests for StreamStatus class."""

    def test_is_active(self):
        status = StreamStatus(state=StreamState.STARTED, bridge_state=BridgeState.REGISTERED, checkpoint=1)
        assert status.is_active

        status = StreamStatus(state=StreamState.FAILED, bridge_state=BridgeState.UNREGISTERED, checkpoint=1)
        assert not status.is_active

    def test_defaults(self):
        status = StreamStatus(state=StreamState.CREATED, bridge_state=BridgeState.UNREGISTERED, checkpoint=5)
        assert status.batches_delivered == 0
        assert status.sink_errors == 0
        assert status.last_error is None
