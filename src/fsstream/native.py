"""Native event stream built on watchdog.

Watchdog picks the platform notification API (FSEvents, inotify, kqueue,
ReadDirectoryChangesW). This module turns its per-operation notifications
into the native stream contract: notifications are coalesced per path for
``latency`` seconds, stamped with ids from the event journal, and handed to
a callback as parallel ``paths``/``flags``/``ids`` arrays from one delivery
thread per stream.
"""

import logging
import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers.api import ObservedWatch

from .exceptions import InternalInvariantViolation, JournalError
from .flags import (
    CreateFlags,
    EventFlags,
    ITEM_CHANGE_FLAGS,
    ITEM_KIND_FLAGS,
    is_since_now,
)
from .history import (
    is_under,
    journaled_events,
    offline_changes,
    take_snapshot,
)
from .journal import EventJournal, SnapshotEntries
from .runloop import RunLoop

logger = logging.getLogger(__name__)

# callback(stream, num_events, paths, flags, ids)
NativeCallback = Callable[["NativeStream", int, List[str], List[int], List[int]], None]

# Entry ready for delivery: (path, flags, id)
_Entry = Tuple[str, int, int]

MODIFY_FLAGS = EventFlags.MODIFIED | EventFlags.INODE_META_MOD


class NativeEventHandler(FileSystemEventHandler):
    """Handler that forwards watchdog notifications to one native stream."""

    def __init__(self, stream: "NativeStream"):
        super().__init__()
        self.stream = stream

    def on_created(self, event):
        self.stream.ingest(event.src_path, EventFlags.CREATED, event.is_directory)

    def on_deleted(self, event):
        self.stream.ingest(event.src_path, EventFlags.REMOVED, event.is_directory)

    def on_modified(self, event):
        self.stream.ingest(event.src_path, MODIFY_FLAGS, event.is_directory)

    def on_closed(self, event):
        # close-after-write
        self.stream.ingest(event.src_path, MODIFY_FLAGS, event.is_directory)

    def on_moved(self, event):
        self.stream.ingest(event.src_path, EventFlags.RENAMED, event.is_directory)
        self.stream.ingest(event.dest_path, EventFlags.RENAMED, event.is_directory)

    def __repr__(self) -> str:
        return f"NativeEventHandler({self.stream.name})"


def nearest_existing_dir(path: str) -> str:
    """Walk up from ``path`` to the first directory that exists."""
    current = path
    while not os.path.isdir(current):
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return current


class NativeStream:
    """
    One native event stream bound to a fixed set of paths.

    Lifecycle mirrors the native API: created, then start() registers the
    stream with the run loop and spawns its delivery thread, stop() undoes
    that and may be followed by another start(), invalidate() forbids any
    further start and release() drops the callback.
    """

    def __init__(
        self,
        paths: Sequence[str],
        since: int,
        latency: float,
        flags: CreateFlags,
        callback: NativeCallback,
        journal: EventJournal,
        runloop: RunLoop,
        checkpoint: int,
        snapshot_roots: bool = True,
        replay_batch_size: int = 1000,
        max_pending_events: int = 10000,
        name: Optional[str] = None,
    ):
        """
        Initialize the stream.

        Args:
            paths: Absolute paths to watch
            since: Checkpoint to replay history from, or a SINCE_NOW sentinel
            latency: Coalescing window in seconds
            flags: Creation flags
            callback: Receives every delivered batch as parallel arrays
            journal: Source of event ids and history
            runloop: Substrate the stream registers into
            checkpoint: Id the stream starts counting from
            snapshot_roots: Store root snapshots on start and on clean stop
            replay_batch_size: Max events per history batch
            max_pending_events: Pending paths before coarsening to a rescan
            name: Label used in logs and thread names
        """
        self.paths: Tuple[str, ...] = tuple(paths)
        self.since = since
        self.latency = latency
        self.flags = CreateFlags(flags)
        self.name = name or f"stream-{id(self):x}"

        self._callback: Optional[NativeCallback] = callback
        self._journal = journal
        self._runloop = runloop
        self._snapshot_roots = snapshot_roots
        self._replay_batch_size = max(1, replay_batch_size)
        self._max_pending_events = max_pending_events

        # Paths may be reported in resolved form (e.g. /private/tmp on macOS)
        resolved = [os.path.realpath(p) for p in self.paths]
        self._match_roots: Tuple[str, ...] = tuple(dict.fromkeys(list(self.paths) + resolved))

        self._cond = threading.Condition()
        self._pending: Dict[str, EventFlags] = {}
        self._window_started = 0.0
        self._last_delivery = 0.0
        self._ready: Deque[List[_Entry]] = deque()
        self._flush_requested = False
        self._accepting = False
        self._stopping = False
        self._drain_on_stop = True
        self._latest_id = checkpoint
        self._delivered_id = checkpoint
        self._sealed_id = checkpoint
        self._clean_stop_id: Optional[int] = None

        self._seal_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._handler = NativeEventHandler(self)
        self._watches: List[ObservedWatch] = []
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._started_once = False
        self._generation = 0
        self._replaying = False
        self._invalidated = False
        self._failure: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Ingestion (observer thread)
    # ------------------------------------------------------------------

    def ingest(self, raw_path, change: EventFlags, is_directory: bool) -> None:
        """
        Add one watchdog notification to the coalescing buffer.

        Runs on the observer thread, so it only touches in-memory state.
        """
        path = os.fsdecode(raw_path)
        if not is_under(path, self._match_roots):
            return

        flags = EventFlags(change)
        if self.flags & CreateFlags.WATCH_ROOT and path in self._match_roots:
            if change & (EventFlags.CREATED | EventFlags.REMOVED | EventFlags.RENAMED):
                flags = EventFlags.ROOT_CHANGED
        if flags & ITEM_CHANGE_FLAGS:
            flags |= EventFlags.IS_DIR if is_directory else EventFlags.IS_FILE
            if os.path.islink(path):
                flags |= EventFlags.IS_SYMLINK

        path, flags = self._granularity(path, flags)

        with self._cond:
            if not self._accepting:
                return
            now = time.monotonic()
            if not self._pending:
                self._window_started = now
                if self.flags & CreateFlags.NO_DEFER and now - self._last_delivery >= self.latency:
                    self._window_started = now - self.latency
            self._pending[path] = self._pending.get(path, EventFlags.NONE) | flags
            if len(self._pending) > self._max_pending_events:
                self._coarsen_pending()
            self._cond.notify_all()

    def _granularity(self, path: str, flags: EventFlags) -> Tuple[str, EventFlags]:
        """Report the containing directory unless FILE_EVENTS was requested."""
        if self.flags & CreateFlags.FILE_EVENTS:
            return path, flags

        value = int(flags)
        item_mask = int(ITEM_CHANGE_FLAGS | ITEM_KIND_FLAGS)
        own_dir_change = (
            value & EventFlags.IS_DIR
            and not value & ~int(MODIFY_FLAGS | ITEM_KIND_FLAGS)
        )
        directory = path if own_dir_change else os.path.dirname(path)
        if not is_under(directory, self._match_roots):
            directory = path
        return directory, EventFlags(value & ~item_mask)

    def _coarsen_pending(self) -> None:
        """Internal: replace an overflowing buffer with one rescan per root."""
        logger.warning(
            "%s: more than %d pending paths, coarsening to subtree rescans",
            self.name, self._max_pending_events,
        )
        self._pending = {
            root: EventFlags.MUST_SCAN_SUBDIRS | EventFlags.USER_DROPPED
            for root in self.paths
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Register with the run loop and begin delivering.

        Returns:
            True if the stream is running, False if it was already running

        Raises:
            RuntimeError: If the stream was invalidated
            OSError: If the OS refuses a watch
        """
        previous = self._thread
        if previous is not None and previous.is_alive() and previous is not threading.current_thread():
            previous.join(timeout=5.0)

        with self._state_lock:
            if self._invalidated:
                raise RuntimeError(f"{self.name} was invalidated")
            if self._running:
                return False

            replay_from = None
            if not is_since_now(self.since):
                replay_from = self._latest_id if self._started_once else self.since

            with self._cond:
                self._pending.clear()
                self._ready.clear()
                self._stopping = False
                self._drain_on_stop = True
                self._flush_requested = False
                self._accepting = True
                self._clean_stop_id = None

            try:
                for target in dict.fromkeys(nearest_existing_dir(p) for p in self.paths):
                    self._watches.append(self._runloop.schedule(self._handler, target))
            except Exception:
                self._deregister()
                with self._cond:
                    self._accepting = False
                raise

            self._generation += 1
            self._thread = threading.Thread(
                target=self._run,
                args=(self._generation, replay_from),
                name=f"fsstream-{self.name}",
                daemon=True,
            )
            self._running = True
            self._started_once = True
            self._thread.start()
            logger.info("%s started on %d path(s)", self.name, len(self.paths))
            return True

    def stop(self, timeout: float = 5.0, snapshot: bool = True) -> bool:
        """
        Deregister from the run loop and stop the delivery thread.

        Pending events are delivered before this returns, unless it is
        called from the delivery thread itself, in which case they are
        discarded. Either way no callback runs after it returns.

        Args:
            timeout: How long to let pending events drain; after that they
                are dropped and only the batch in progress is waited for
            snapshot: Store root snapshots if the stop was clean

        Returns:
            True if everything pending was delivered
        """
        with self._state_lock:
            if not self._running:
                return True
            self._running = False

            entries = self._collect_snapshots() if snapshot and self._snapshot_roots else None

            self._deregister()

            inside = threading.current_thread() is self._thread
            with self._cond:
                self._accepting = False
                self._stopping = True
                self._drain_on_stop = not inside
                if inside:
                    dropped = len(self._pending) + sum(len(b) for b in self._ready)
                    if dropped:
                        logger.warning("%s stopped from its own callback, %d event(s) left for replay",
                                       self.name, dropped)
                    self._pending.clear()
                    self._ready.clear()
                self._cond.notify_all()

            thread = self._thread

        if inside:
            return False

        # Joined outside the state lock so a callback calling back into the
        # stream cannot stall on it.
        thread.join(timeout=timeout)
        if thread.is_alive():
            # Stop draining but wait out the callback in progress
            with self._cond:
                dropped = len(self._pending) + sum(len(b) for b in self._ready)
                self._drain_on_stop = False
                self._pending.clear()
                self._ready.clear()
                self._cond.notify_all()
            logger.warning("%s delivery thread still busy after %.1fs, waiting for the batch in progress "
                           "(%d event(s) left for replay)", self.name, timeout, dropped)
            thread.join()
            logger.info("%s stopped", self.name)
            return False

        clean = self._failure is None
        if clean and entries is not None:
            self._store_snapshots(entries)
        logger.info("%s stopped", self.name)
        return clean

    def invalidate(self) -> None:
        """Stop if needed and forbid any further start."""
        if self._running:
            self.stop(snapshot=False)
        with self._state_lock:
            self._invalidated = True

    def release(self) -> None:
        """Drop the callback; the stream is unusable afterwards."""
        self.invalidate()
        self._callback = None

    def _deregister(self) -> None:
        for watch in self._watches:
            self._runloop.unschedule(self._handler, watch)
        self._watches = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    # ------------------------------------------------------------------
    # Delivery thread
    # ------------------------------------------------------------------

    def _run(self, generation: int, replay_from: Optional[int]) -> None:
        try:
            if replay_from is not None:
                self._replaying = True
                try:
                    self._replay_history(replay_from)
                finally:
                    self._replaying = False
            if self._snapshot_roots and not self._stopping:
                self._store_snapshots(self._collect_snapshots())

            while True:
                batch = None
                seal = False
                with self._cond:
                    while True:
                        if self._ready:
                            batch = self._ready.popleft()
                            break
                        if self._pending and (self._stopping and self._drain_on_stop):
                            seal = True
                            break
                        if self._stopping or generation != self._generation:
                            break
                        if self._pending:
                            remaining = self._window_started + self.latency - time.monotonic()
                            if self._flush_requested or remaining <= 0:
                                seal = True
                                break
                            self._cond.wait(timeout=remaining)
                        else:
                            self._flush_requested = False
                            self._cond.wait()

                if seal:
                    self._seal()
                    continue
                if batch is None:
                    return
                self._deliver(batch)
        except InternalInvariantViolation as e:
            logger.critical("%s: native contract breach, stream halted: %s", self.name, e)
            self._fail(e)
        except JournalError as e:
            logger.error("%s: journal failure, stream halted: %s", self.name, e)
            self._fail(e)
        except OSError as e:
            logger.error("%s: filesystem error, stream halted: %s", self.name, e)
            self._fail(e)
        finally:
            self._journal.release_thread_connection()
            with self._cond:
                self._cond.notify_all()

    def _fail(self, error: BaseException) -> None:
        self._failure = error
        with self._cond:
            self._accepting = False
            self._pending.clear()
            self._ready.clear()

    def _seal(self) -> Optional[int]:
        """
        Stamp everything pending with journal ids and queue it for delivery.

        Returns:
            The last id assigned, or None if nothing was pending
        """
        with self._seal_lock:
            with self._cond:
                if not self._pending or self._replaying:
                    self._flush_requested = False
                    return None
                entries = list(self._pending.items())
                self._pending.clear()
                self._flush_requested = False

            ids = self._journal.record(entries)
            with self._cond:
                self._ready.append([
                    (path, int(flags), event_id)
                    for (path, flags), event_id in zip(entries, ids)
                ])
                self._latest_id = max(self._latest_id, ids[-1])
                self._sealed_id = max(self._sealed_id, ids[-1])
                self._cond.notify_all()
            return ids[-1]

    def _deliver(self, batch: List[_Entry]) -> None:
        callback = self._callback
        if callback is not None and batch:
            paths = [entry[0] for entry in batch]
            flags = [entry[1] for entry in batch]
            ids = [entry[2] for entry in batch]
            logger.debug("%s delivering %d event(s), ids %d..%d",
                         self.name, len(batch), ids[0], ids[-1])
            try:
                callback(self, len(batch), paths, flags, ids)
            except InternalInvariantViolation:
                raise
            except Exception:
                logger.exception("%s: callback raised, batch ending at %d lost to this stream",
                                 self.name, batch[-1][2])

        with self._cond:
            self._last_delivery = time.monotonic()
            if batch:
                self._delivered_id = max(self._delivered_id, max(e[2] for e in batch))
            self._cond.notify_all()

    def _replay_history(self, since: int) -> None:
        """Deliver journaled and offline changes newer than ``since``."""
        history: List[_Entry] = []
        for event_id, path, flags in journaled_events(self._journal, since, self._match_roots):
            path, flags = self._granularity(path, flags)
            history.append((path, int(flags), event_id))

        if self._snapshot_roots:
            changes = [self._granularity(path, flags) for path, flags in offline_changes(self._journal, self.paths, since)]
            if changes:
                ids = self._journal.record(changes)
                history.extend(
                    (path, int(flags), event_id)
                    for (path, flags), event_id in zip(changes, ids)
                )

        marker_id = max([self._latest_id, since] + [entry[2] for entry in history])
        marker_id = max(marker_id, self._journal.current_event_id())
        history.append((self.paths[0], int(EventFlags.HISTORY_DONE), marker_id))
        with self._cond:
            self._latest_id = max(self._latest_id, marker_id)
            self._sealed_id = max(self._sealed_id, marker_id)

        logger.info("%s replaying %d historical event(s) since %d",
                    self.name, len(history) - 1, since)
        for start in range(0, len(history), self._replay_batch_size):
            if self._stopping:
                return
            self._deliver(history[start:start + self._replay_batch_size])

    def _collect_snapshots(self) -> Dict[str, SnapshotEntries]:
        return {root: take_snapshot(root) for root in self.paths if os.path.isdir(root)}

    def _store_snapshots(self, snapshots: Dict[str, SnapshotEntries]) -> Optional[int]:
        if not snapshots:
            return None
        snapshot_id = self._journal.reserve_id()
        for root, entries in snapshots.items():
            self._journal.save_snapshot(root, snapshot_id, entries)
        with self._cond:
            self._latest_id = max(self._latest_id, snapshot_id)
            if self._stopping:
                self._clean_stop_id = snapshot_id
        return snapshot_id

    def store_baseline(self) -> Optional[int]:
        """
        Snapshot every watched root before the stream ever runs.

        Missing roots are stored as empty listings, so a root created later
        shows up in the diff of a stream resuming from the returned id.

        Returns:
            The id labelling the snapshots, or None if snapshots are off
        """
        if not self._snapshot_roots:
            return None
        snapshot_id = self._store_snapshots({root: take_snapshot(root) for root in self.paths})
        with self._cond:
            self._delivered_id = max(self._delivered_id, snapshot_id)
            self._sealed_id = max(self._sealed_id, snapshot_id)
        return snapshot_id

    # ------------------------------------------------------------------
    # Queries and flushing
    # ------------------------------------------------------------------

    def flush_async(self) -> int:
        """
        Ask for pending events to be delivered without waiting.

        Returns:
            The id of the last event that will be delivered
        """
        last = self._seal()
        with self._cond:
            self._cond.notify_all()
            return last if last is not None else self._sealed_id

    def flush_sync(self, timeout: float = 5.0) -> int:
        """
        Deliver pending events and wait until the callback has seen them.

        Returns:
            The id of the last event flushed
        """
        target = self.flush_async()
        if threading.current_thread() is self._thread:
            return target

        deadline = time.monotonic() + timeout
        with self._cond:
            while (self._delivered_id < target and self._running
                   and self._failure is None and not self._stopping):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("%s flush timed out waiting for event %d", self.name, target)
                    return target
                self._cond.wait(timeout=min(remaining, 0.1))
        return target

    def latest_event_id(self) -> int:
        """Get the last id assigned to an event of this stream."""
        with self._cond:
            return self._latest_id

    def clean_stop_id(self) -> Optional[int]:
        """Id of the snapshot stored by the last clean stop, if any."""
        with self._cond:
            return self._clean_stop_id

    def copy_paths_being_watched(self) -> List[str]:
        """Get the paths this stream was created with."""
        return list(self.paths)

    def device_being_watched(self) -> Optional[int]:
        """Get ``st_dev`` of the first watched path that exists."""
        for path in self.paths:
            try:
                return os.stat(nearest_existing_dir(path)).st_dev
            except OSError:
                continue
        return None

    def is_delivery_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def __repr__(self) -> str:
        return f"NativeStream({self.name}, paths={list(self.paths)})"
