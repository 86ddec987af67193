"""Tests for run loop module."""

import pytest
import threading
import time

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from fsstream.runloop import RunLoop


class RecordingHandler(FileSystemEventHandler):
    def __init__(self):
        super().__init__()
        self.paths = []
        self.lock = threading.Lock()

    def on_any_event(self, event):
        with self.lock:
            self.paths.append(event.src_path)


class TestRunLoop:
    """Tests for RunLoop class."""

    def test_observer_created_lazily(self):
        runloop = RunLoop()
        assert runloop.observer is None
        runloop.close()

    def test_schedule_and_unschedule(self, tmp_path):
        runloop = RunLoop()
        handler = RecordingHandler()

        watch = runloop.schedule(handler, str(tmp_path))

        assert runloop.registration_count() == 1
        assert runloop.observer.is_alive()
        assert runloop.unschedule(handler, watch) is True
        assert runloop.registration_count() == 0

        runloop.close()

    def test_unschedule_unknown(self, tmp_path):
        runloop = RunLoop()
        handler = RecordingHandler()
        watch = runloop.schedule(handler, str(tmp_path))

        assert runloop.unschedule(RecordingHandler(), watch) is False

        runloop.close()

    def test_shared_watch_kept_until_last_handler(self, tmp_path):
        runloop = RunLoop()
        first = RecordingHandler()
        second = RecordingHandler()

        watch1 = runloop.schedule(first, str(tmp_path))
        watch2 = runloop.schedule(second, str(tmp_path))
        assert runloop.registration_count() == 2

        runloop.unschedule(first, watch1)
        time.sleep(0.2)

        (tmp_path / "after.txt").write_text("x")
        time.sleep(0.5)

        with first.lock:
            assert not first.paths
        with second.lock:
            assert any(p.endswith("after.txt") for p in second.paths)

        runloop.unschedule(second, watch2)
        runloop.close()

    def test_missing_path_raises(self, tmp_path):
        runloop = RunLoop()
        with pytest.raises(OSError):
            runloop.schedule(RecordingHandler(), str(tmp_path / "missing"))
        runloop.close()

    def test_closed_run_loop_rejects_schedule(self, tmp_path):
        runloop = RunLoop()
        runloop.close()
        with pytest.raises(RuntimeError):
            runloop.schedule(RecordingHandler(), str(tmp_path))

    def test_host_observer_not_stopped(self, tmp_path):
        observer = Observer()
        observer.start()
        try:
            runloop = RunLoop(observer)
            runloop.schedule(RecordingHandler(), str(tmp_path))
            runloop.close()
            assert observer.is_alive()
        finally:
            observer.stop()
            observer.join()
