"""Tests for native stream module."""

import pytest
import threading
import time

from fsstream.exceptions import InternalInvariantViolation
from fsstream.flags import SINCE_NOW, CreateFlags, EventFlags
from fsstream.journal import EventJournal
from fsstream.native import NativeStream, nearest_existing_dir
from fsstream.runloop import RunLoop


class Collector:
    """Thread-safe record of native callback invocations."""

    def __init__(self):
        self.batches = []
        self.lock = threading.Lock()

    def __call__(self, stream, num_events, paths, flags, ids):
        with self.lock:
            self.batches.append(list(zip(paths, flags, ids)))

    def events(self):
        with self.lock:
            return [event for batch in self.batches for event in batch]

    def count(self):
        with self.lock:
            return len(self.batches)


@pytest.fixture
def journal(tmp_path):
    journal = EventJournal(tmp_path / "events.db")
    yield journal
    journal.close()


@pytest.fixture
def runloop():
    runloop = RunLoop()
    yield runloop
    runloop.close()


@pytest.fixture
def root(tmp_path):
    root = tmp_path / "watched"
    root.mkdir()
    return root


def make_stream(root, journal, runloop, callback, **kwargs):
    options = dict(
        since=SINCE_NOW,
        latency=0.1,
        flags=CreateFlags.FILE_EVENTS,
        checkpoint=journal.current_event_id(),
    )
    options.update(kwargs)
    paths = options.pop("paths", [str(root)])
    return NativeStream(
        paths=paths,
        callback=callback,
        journal=journal,
        runloop=runloop,
        **options,
    )


class TestNearestExistingDir:
    """Tests for nearest_existing_dir function."""

    def test_existing(self, tmp_path):
        assert nearest_existing_dir(str(tmp_path)) == str(tmp_path)

    def test_missing_descendant(self, tmp_path):
        assert nearest_existing_dir(str(tmp_path / "a" / "b")) == str(tmp_path)


class TestNativeStreamLifecycle:
    """Tests for start/stop/invalidate of NativeStream."""

    def test_nothing_before_start(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector)

        (root / "a.txt").write_text("x")
        time.sleep(0.3)

        assert collector.count() == 0
        assert runloop.registration_count() == 0
        stream.release()

    def test_start_twice(self, root, journal, runloop):
        stream = make_stream(root, journal, runloop, Collector())

        assert stream.start() is True
        assert stream.start() is False
        assert stream.is_running

        stream.stop()
        assert not stream.is_running
        assert runloop.registration_count() == 0

    def test_stop_when_not_running(self, root, journal, runloop):
        stream = make_stream(root, journal, runloop, Collector())
        assert stream.stop() is True

    def test_restart(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector)

        stream.start()
        stream.stop()
        assert stream.start() is True
        time.sleep(0.2)

        (root / "again.txt").write_text("x")
        time.sleep(0.5)
        stream.stop()

        assert any(p.endswith("again.txt") for p, _, _ in collector.events())

    def test_invalidated_cannot_start(self, root, journal, runloop):
        stream = make_stream(root, journal, runloop, Collector())
        stream.invalidate()
        with pytest.raises(RuntimeError):
            stream.start()

    def test_no_delivery_after_stop(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector)
        stream.start()
        time.sleep(0.2)

        (root / "before.txt").write_text("x")
        stream.stop()
        delivered = collector.count()

        (root / "after.txt").write_text("x")
        time.sleep(1.0)

        assert collector.count() == delivered
        assert not any(p.endswith("after.txt") for p, _, _ in collector.events())

    def test_stop_drains_pending(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=10.0)
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(root / "pending.txt"), EventFlags.CREATED, False)
        assert stream.stop() is True

        assert [p for p, _, _ in collector.events()] == [str(root / "pending.txt")]

    def test_stop_from_callback(self, root, journal, runloop):
        done = threading.Event()

        def callback(stream, num_events, paths, flags, ids):
            stream.stop()
            done.set()

        stream = make_stream(root, journal, runloop, callback)
        stream.start()
        time.sleep(0.2)
        stream.ingest(str(root / "a.txt"), EventFlags.CREATED, False)

        assert done.wait(timeout=2.0)
        assert not stream.is_running


class TestNativeStreamDelivery:
    """Tests for coalescing and flag handling."""

    def test_detects_file_creation(self, root, journal, runloop):
        collector = Collector()
        checkpoint = journal.current_event_id()
        stream = make_stream(root, journal, runloop, collector)
        stream.start()
        time.sleep(0.2)

        (root / "a.txt").write_text("hello")
        time.sleep(0.6)
        stream.stop()

        created = [
            (p, f, i) for p, f, i in collector.events()
            if p == str(root / "a.txt") and f & EventFlags.CREATED
        ]
        assert created
        assert created[0][1] & EventFlags.IS_FILE
        assert created[0][2] > checkpoint

    def test_coalesces_within_latency(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=0.5)
        stream.start()
        time.sleep(0.2)

        path = str(root / "a.txt")
        stream.ingest(path, EventFlags.MODIFIED | EventFlags.INODE_META_MOD, False)
        stream.ingest(path, EventFlags.MODIFIED | EventFlags.INODE_META_MOD, False)
        time.sleep(1.0)
        stream.stop()

        assert collector.count() == 1
        events = collector.events()
        assert len(events) == 1
        assert events[0][1] & EventFlags.INODE_META_MOD

    def test_coalesced_flags_are_ored(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=0.3)
        stream.start()
        time.sleep(0.2)

        path = str(root / "a.txt")
        stream.ingest(path, EventFlags.CREATED, False)
        stream.ingest(path, EventFlags.REMOVED, False)
        time.sleep(0.6)
        stream.stop()

        (_, flags, _), = collector.events()
        assert flags & EventFlags.CREATED
        assert flags & EventFlags.REMOVED
        assert flags & EventFlags.IS_FILE

    def test_ids_monotonic_across_batches(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=0.05)
        stream.start()
        time.sleep(0.2)

        for i in range(5):
            stream.ingest(str(root / f"f{i}.txt"), EventFlags.CREATED, False)
            time.sleep(0.15)
        stream.stop()

        with collector.lock:
            batches = list(collector.batches)
        assert len(batches) >= 2
        for first, second in zip(batches, batches[1:]):
            assert max(i for _, _, i in first) <= min(i for _, _, i in second)

    def test_paths_outside_roots_ignored(self, root, journal, runloop, tmp_path):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=10.0)
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(tmp_path / "elsewhere.txt"), EventFlags.CREATED, False)
        stream.stop()

        assert collector.events() == []

    def test_directory_granularity_without_file_events(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, flags=CreateFlags.NONE, latency=10.0)
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(root / "sub" / "a.txt"), EventFlags.CREATED, False)
        stream.ingest(str(root / "sub" / "b.txt"), EventFlags.CREATED, False)
        stream.stop()

        events = collector.events()
        assert [p for p, _, _ in events] == [str(root / "sub")]
        assert not events[0][1] & EventFlags.CREATED

    def test_watch_root_reports_root_change(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(
            root, journal, runloop, collector,
            flags=CreateFlags.FILE_EVENTS | CreateFlags.WATCH_ROOT,
            latency=10.0,
        )
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(root), EventFlags.REMOVED, True)
        stream.stop()

        (path, flags, _), = collector.events()
        assert path == str(root)
        assert flags == EventFlags.ROOT_CHANGED

    def test_overflow_coarsened_to_rescan(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=10.0, max_pending_events=3)
        stream.start()
        time.sleep(0.2)

        for i in range(4):
            stream.ingest(str(root / f"f{i}.txt"), EventFlags.CREATED, False)
        stream.stop()

        (path, flags, _), = collector.events()
        assert path == str(root)
        assert flags & EventFlags.MUST_SCAN_SUBDIRS
        assert flags & EventFlags.USER_DROPPED

    def test_missing_path_watched_through_ancestor(self, root, journal, runloop):
        collector = Collector()
        target = root / "later"
        stream = make_stream(root, journal, runloop, collector, paths=[str(target)])
        stream.start()
        time.sleep(0.2)

        (root / "unrelated.txt").write_text("x")
        target.mkdir()
        (target / "inside.txt").write_text("x")
        time.sleep(0.6)
        stream.stop()

        paths = [p for p, _, _ in collector.events()]
        assert str(target) in paths
        assert not any(p.endswith("unrelated.txt") for p in paths)

    def test_flush_sync_delivers_now(self, root, journal, runloop):
        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, latency=10.0)
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(root / "a.txt"), EventFlags.CREATED, False)
        last = stream.flush_sync(timeout=2.0)

        events = collector.events()
        assert [p for p, _, _ in events] == [str(root / "a.txt")]
        assert events[-1][2] == last
        stream.stop()

    def test_flush_with_nothing_pending_returns(self, root, journal, runloop):
        stream = make_stream(root, journal, runloop, Collector())
        stream.start()
        time.sleep(0.2)

        start = time.monotonic()
        stream.flush_sync(timeout=2.0)
        assert time.monotonic() - start < 1.0
        stream.stop()

    def test_contract_breach_halts_stream(self, root, journal, runloop):
        calls = []

        def callback(stream, num_events, paths, flags, ids):
            calls.append(num_events)
            raise InternalInvariantViolation("mismatch")

        stream = make_stream(root, journal, runloop, callback, latency=0.05)
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(root / "a.txt"), EventFlags.CREATED, False)
        time.sleep(0.3)
        stream.ingest(str(root / "b.txt"), EventFlags.CREATED, False)
        time.sleep(0.3)

        assert calls == [1]
        assert isinstance(stream.failure, InternalInvariantViolation)
        stream.stop()

    def test_callback_error_does_not_stop_stream(self, root, journal, runloop):
        calls = []

        def callback(stream, num_events, paths, flags, ids):
            calls.append(paths)
            raise RuntimeError("consumer bug")

        stream = make_stream(root, journal, runloop, callback, latency=0.05)
        stream.start()
        time.sleep(0.2)

        stream.ingest(str(root / "a.txt"), EventFlags.CREATED, False)
        time.sleep(0.3)
        stream.ingest(str(root / "b.txt"), EventFlags.CREATED, False)
        time.sleep(0.3)
        stream.stop()

        assert len(calls) == 2
        assert stream.failure is None


class TestNativeStreamHistory:
    """Tests for since replay."""

    def test_replays_journal_then_history_done(self, root, journal, runloop):
        checkpoint = journal.current_event_id()
        journal.record([
            (str(root / "old.txt"), EventFlags.CREATED | EventFlags.IS_FILE),
            ("/not/watched", EventFlags.CREATED),
        ])

        collector = Collector()
        stream = make_stream(root, journal, runloop, collector, since=checkpoint, checkpoint=checkpoint)
        stream.start()
        time.sleep(0.5)
        stream.stop()

        events = collector.events()
        assert events[0][0] == str(root / "old.txt")
        assert events[1][1] == EventFlags.HISTORY_DONE
        assert events[1][2] >= events[0][2]

    def test_offline_changes_replayed(self, root, journal, runloop):
        first = make_stream(root, journal, runloop, Collector())
        first.start()
        time.sleep(0.2)
        first.stop()
        checkpoint = first.clean_stop_id()
        assert checkpoint is not None

        (root / "offline.txt").write_text("x")

        collector = Collector()
        second = make_stream(root, journal, runloop, collector, since=checkpoint, checkpoint=checkpoint)
        second.start()
        time.sleep(0.5)
        second.stop()

        created = [p for p, f, _ in collector.events() if f & EventFlags.CREATED]
        assert str(root / "offline.txt") in created

    def test_replay_batches(self, root, journal, runloop):
        checkpoint = journal.current_event_id()
        journal.record([(str(root / f"f{i}"), EventFlags.CREATED) for i in range(5)])

        collector = Collector()
        stream = make_stream(
            root, journal, runloop, collector,
            since=checkpoint, checkpoint=checkpoint,
            replay_batch_size=2, snapshot_roots=False,
        )
        stream.start()
        time.sleep(0.5)
        stream.stop()

        with collector.lock:
            sizes = [len(batch) for batch in collector.batches]
        assert sizes == [2, 2, 2]
