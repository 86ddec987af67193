"""Stream manager: lifecycle of native event streams and their handles."""

import errno
import logging
import math
import os
import threading
from typing import List, Optional, Sequence, Set, Union

from watchdog.observers.api import BaseObserver

from .bridge import ErrorHandler, EventBridge, Sink
from .config import DeliveryPolicy, StreamConfig
from .exceptions import (
    InvalidArgumentError,
    InvalidStateError,
    ResourceExhaustedError,
)
from .flags import MAX_EVENT_ID, SINCE_NOW, CreateFlags, is_since_now
from .journal import EventJournal
from .models import StreamState, StreamStatus
from .native import NativeStream
from .runloop import RunLoop

logger = logging.getLogger(__name__)

PathLike = Union[str, bytes, os.PathLike]

# OS errors meaning the kernel ran out of watches, descriptors or memory
EXHAUSTION_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOSPC, errno.ENOMEM})

_VALID_CREATE_FLAGS = sum(flag.value for flag in CreateFlags)


class StreamHandle:
    """
    A native event stream bound to one watch set.

    Handles are created by :meth:`StreamManager.create` and are owned by
    that manager. The path set, checkpoint, latency and flags are fixed for
    the life of the handle; use :meth:`StreamManager.rebind` to watch
    different paths.

    Attributes:
        paths: Watched paths, absolute, in creation order
        since: Checkpoint the handle was created with
        latency: Coalescing window in seconds
        flags: Creation flags
        name: Label used in logs and thread names
    """

    def __init__(
        self,
        manager: "StreamManager",
        native: NativeStream,
        since: int,
        checkpoint: int,
    ):
        self._manager = manager
        self._native = native
        self._state = StreamState.CREATED
        self._checkpoint = checkpoint
        self._final_checkpoint: Optional[int] = None
        self._final_status: Optional[StreamStatus] = None
        self._stop_clean = False
        self._lock = threading.RLock()

        self.paths = native.paths
        self.since = since
        self.latency = native.latency
        self.flags = native.flags
        self.name = native.name

    @property
    def state(self) -> StreamState:
        if self._state != StreamState.DISPOSED and self._native.failure is not None:
            return StreamState.FAILED
        return self._state

    # Convenience wrappers around the owning manager

    def start(self) -> None:
        self._manager.start(self)

    def stop(self) -> None:
        self._manager.stop(self)

    def dispose(self) -> None:
        self._manager.dispose(self)

    def register_sink(self, sink: Sink, on_error: Optional[ErrorHandler] = None) -> None:
        self._manager.register_sink(self, sink, on_error)

    def current_checkpoint(self) -> int:
        return self._manager.current_checkpoint(self)

    def flush(self) -> int:
        return self._manager.flush(self)

    def flush_async(self) -> int:
        return self._manager.flush_async(self)

    def status(self) -> StreamStatus:
        return self._manager.status(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._manager.dispose(self)
        return False

    def __repr__(self) -> str:
        return f"StreamHandle({self.name}, state={self.state.value}, paths={list(self.paths)})"


class StreamManager:
    """
    Creates native event streams and drives their lifecycle.

    Every stream shares one watchdog observer (the run loop), one event
    journal (the id source) and one event bridge (the sink registry).

    Example:
        with StreamManager(StreamConfig(db_path=tmp / "events.db")) as manager:
            handle = manager.create(["/tmp/watchtest"], latency=0.5)
            handle.register_sink(print)
            handle.start()
            ...
            checkpoint = handle.current_checkpoint()
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        observer: Optional[BaseObserver] = None,
        journal: Optional[EventJournal] = None,
        on_error: Optional[ErrorHandler] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: Stream configuration (defaults apply if omitted)
            observer: Host-owned watchdog observer to register into
            journal: Shared event journal; opened from ``config.db_path`` if omitted
            on_error: Default handler for sink failures of every stream
        """
        self.config = config or StreamConfig()
        self._owns_journal = journal is None
        self.journal = journal or EventJournal(self.config.db_path)
        self.runloop = RunLoop(observer)
        self.bridge = EventBridge(
            policy=self.config.delivery_policy,
            queue_size=self.config.sink_queue_size,
            on_error=on_error,
            join_timeout=self.config.stop_timeout,
        )
        self._handles: Set[StreamHandle] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._counter = 0

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_paths(paths) -> List[str]:
        if isinstance(paths, (str, bytes, os.PathLike)):
            paths = [paths]
        try:
            entries = list(paths)
        except TypeError:
            raise InvalidArgumentError(f"paths must be a sequence of paths, got {type(paths).__name__}")
        if not entries:
            raise InvalidArgumentError("at least one path must be watched")

        result: List[str] = []
        for entry in entries:
            try:
                path = os.fsdecode(os.fspath(entry))
            except TypeError:
                raise InvalidArgumentError(f"not a path: {entry!r}")
            if not path or "\x00" in path:
                raise InvalidArgumentError(f"invalid path: {entry!r}")
            path = os.path.abspath(path)
            if os.path.exists(path) and not os.path.isdir(path):
                raise InvalidArgumentError(f"not a directory: {path}")
            if path not in result:
                result.append(path)
        return result

    @staticmethod
    def _validate_since(since) -> int:
        if isinstance(since, bool) or not isinstance(since, int):
            raise InvalidArgumentError(f"since must be an event id, got {since!r}")
        if since < 0 or since > MAX_EVENT_ID:
            raise InvalidArgumentError(f"since out of range: {since}")
        return since

    def _validate_latency(self, latency) -> float:
        if latency is None:
            return self.config.default_latency
        if isinstance(latency, bool) or not isinstance(latency, (int, float)):
            raise InvalidArgumentError(f"latency must be a number of seconds, got {latency!r}")
        if not math.isfinite(latency) or latency < 0:
            raise InvalidArgumentError(f"latency must be non-negative, got {latency}")
        return float(latency)

    def _validate_flags(self, flags) -> CreateFlags:
        if flags is None:
            return CreateFlags(self.config.default_flags)
        if isinstance(flags, bool) or not isinstance(flags, int):
            raise InvalidArgumentError(f"flags must be CreateFlags, got {flags!r}")
        if flags & ~_VALID_CREATE_FLAGS:
            raise InvalidArgumentError(f"unknown creation flags: {flags:#x}")
        return CreateFlags(flags)

    def _check_usable(self, handle: StreamHandle) -> None:
        if not isinstance(handle, StreamHandle) or handle._manager is not self:
            raise InvalidStateError(f"{handle!r} does not belong to this manager")
        if handle._state == StreamState.DISPOSED:
            raise InvalidStateError(f"{handle.name} was disposed")

    @staticmethod
    def _map_os_error(error: OSError, paths: Sequence[str]) -> Exception:
        if error.errno in EXHAUSTION_ERRNOS:
            return ResourceExhaustedError(f"Cannot watch {list(paths)}: {error}")
        return InvalidArgumentError(f"Cannot watch {list(paths)}: {error}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        paths: Sequence[PathLike],
        since: int = SINCE_NOW,
        latency: Optional[float] = None,
        flags: Optional[CreateFlags] = None,
        name: Optional[str] = None,
    ) -> StreamHandle:
        """
        Create an unstarted stream for a set of directories.

        Args:
            paths: Directories to watch; they need not exist yet
            since: Checkpoint to resume from, or SINCE_NOW for live events only
            latency: Coalescing window in seconds (config default if omitted)
            flags: Creation flags (config default if omitted)
            name: Label for logs and thread names

        Returns:
            An unstarted handle

        Raises:
            InvalidArgumentError: If any argument is invalid
            ResourceExhaustedError: If the OS cannot provide the resources
            InvalidStateError: If the manager was closed
        """
        watch_set = self._validate_paths(paths)
        since = self._validate_since(since)
        latency = self._validate_latency(latency)
        flags = self._validate_flags(flags)

        with self._lock:
            if self._closed:
                raise InvalidStateError("Stream manager is closed")
            self._counter += 1
            name = name or f"stream-{self._counter}"

        checkpoint = self.journal.current_event_id() if is_since_now(since) else since

        try:
            native = NativeStream(
                paths=watch_set,
                since=since,
                latency=latency,
                flags=flags,
                callback=self.bridge.callback,
                journal=self.journal,
                runloop=self.runloop,
                checkpoint=checkpoint,
                snapshot_roots=self.config.snapshot_roots,
                replay_batch_size=self.config.replay_batch_size,
                max_pending_events=self.config.max_pending_events,
                name=name,
            )
        except MemoryError as e:
            raise ResourceExhaustedError(f"Cannot allocate stream for {watch_set}") from e

        # Baseline for resuming from this checkpoint, started or not
        if is_since_now(since):
            try:
                baseline = native.store_baseline()
            except OSError as e:
                raise self._map_os_error(e, watch_set) from e
            if baseline is not None:
                checkpoint = baseline

        handle = StreamHandle(self, native, since, checkpoint)
        self.bridge.add_stream(native, checkpoint)
        with self._lock:
            self._handles.add(handle)

        logger.info("Created %s on %s (since=%d, latency=%.3fs)", name, watch_set, since, latency)
        return handle

    def start(self, handle: StreamHandle) -> None:
        """
        Start delivering events for a handle. No-op if already started.

        Raises:
            InvalidStateError: If the handle was disposed or has failed
            ResourceExhaustedError: If the OS refuses a watch
        """
        self._check_usable(handle)
        native = handle._native

        with handle._lock:
            if native.failure is not None:
                raise InvalidStateError(f"{handle.name} failed: {native.failure}")
            if handle._state == StreamState.STARTED:
                return

            self.bridge.activate(native)
            try:
                native.start()
            except OSError as e:
                self.bridge.deactivate(native)
                raise self._map_os_error(e, handle.paths) from e
            except RuntimeError as e:
                self.bridge.deactivate(native)
                raise InvalidStateError(str(e)) from e

            handle._state = StreamState.STARTED
            handle._stop_clean = False

    def stop(self, handle: StreamHandle) -> None:
        """
        Stop delivering events for a handle. No-op if not started.

        Pending events reach the sink before this returns. Once it returns
        the sink is not called again for this handle. Called from inside
        the sink itself, pending events are discarded instead; they are
        replayed when resuming from the handle's checkpoint.

        Raises:
            InvalidStateError: If the handle was disposed
        """
        self._check_usable(handle)

        with handle._lock:
            if handle._state != StreamState.STARTED:
                return
            handle._state = StreamState.STOPPED

        self._halt(handle)

    def _halt(self, handle: StreamHandle) -> None:
        """Internal: stop the native stream and its bridge route in a safe order."""
        native = handle._native
        timeout = self.config.stop_timeout

        if self.bridge.is_sink_thread(native):
            # The sink cannot wait for itself: close the route first so the
            # native drain lands nowhere, then stop without a snapshot.
            self.bridge.deactivate(native)
            native.stop(timeout=timeout, snapshot=False)
            clean = False
        else:
            clean = native.stop(timeout=timeout)
            clean = self.bridge.deactivate(native) and clean

        handle._stop_clean = clean
        logger.info("Stopped %s%s", handle.name, "" if clean else " (pending events left for replay)")

    def dispose(self, handle: StreamHandle) -> None:
        """
        Stop a handle if needed and release its native stream. Idempotent.

        The handle's checkpoint stays readable afterwards.
        """
        if not isinstance(handle, StreamHandle) or handle._manager is not self:
            raise InvalidStateError(f"{handle!r} does not belong to this manager")

        with handle._lock:
            if handle._state == StreamState.DISPOSED:
                return
            was_started = handle._state == StreamState.STARTED
            handle._state = StreamState.STOPPED

        if was_started:
            self._halt(handle)

        with handle._lock:
            handle._state = StreamState.DISPOSED
            handle._final_checkpoint = self._checkpoint_of(handle)
            handle._final_status = self._status_of(handle)

        handle._native.release()
        self.bridge.remove_stream(handle._native)
        with self._lock:
            self._handles.discard(handle)

        logger.info("Disposed %s at checkpoint %d", handle.name, handle._final_checkpoint)

    def rebind(self, handle: StreamHandle, paths: Sequence[PathLike]) -> StreamHandle:
        """
        Replace a handle with one watching different paths.

        The new handle resumes from the old one's checkpoint and keeps its
        latency, flags and sink; it is started if the old one was.

        Returns:
            The new handle
        """
        self._check_usable(handle)
        was_started = handle._state == StreamState.STARTED
        sink, on_error = self.bridge.registration(handle._native)

        self.dispose(handle)
        replacement = self.create(
            paths,
            since=handle._final_checkpoint,
            latency=handle.latency,
            flags=handle.flags,
        )
        if sink is not None:
            self.register_sink(replacement, sink, on_error)
        if was_started:
            self.start(replacement)
        logger.info("Rebound %s to %s as %s", handle.name, list(replacement.paths), replacement.name)
        return replacement

    # ------------------------------------------------------------------
    # Sinks, flushing and queries
    # ------------------------------------------------------------------

    def register_sink(self, handle: StreamHandle, sink: Sink, on_error: Optional[ErrorHandler] = None) -> None:
        """
        Register the consumer of a handle's batches, replacing any previous one.

        Register before start(): batches already in flight may still reach
        the previous sink.
        """
        self._check_usable(handle)
        if not callable(sink):
            raise InvalidArgumentError(f"sink must be callable, got {sink!r}")
        self.bridge.register_sink(handle._native, sink, on_error)

    def flush(self, handle: StreamHandle) -> int:
        """
        Deliver every pending event and wait until the sink has it.

        Returns:
            The id of the last event flushed
        """
        self._check_usable(handle)
        if handle._state != StreamState.STARTED:
            return self._checkpoint_of(handle)

        native = handle._native
        if self.bridge.is_sink_thread(native):
            return native.flush_async()

        timeout = self.config.stop_timeout
        target = native.flush_sync(timeout=timeout)
        if self.config.delivery_policy == DeliveryPolicy.QUEUED:
            self.bridge.wait_delivered(native, target, timeout)
        return target

    def flush_async(self, handle: StreamHandle) -> int:
        """
        Schedule delivery of every pending event without waiting.

        Returns:
            The id of the last event that will be delivered
        """
        self._check_usable(handle)
        if handle._state != StreamState.STARTED:
            return self._checkpoint_of(handle)
        return handle._native.flush_async()

    def current_checkpoint(self, handle: StreamHandle) -> int:
        """
        Get a checkpoint to persist and pass as ``since`` on a later create().

        It is the id of the last event handed to the sink, the creation
        checkpoint if none was, or the snapshot taken by a clean stop.
        Readable after dispose.
        """
        if not isinstance(handle, StreamHandle) or handle._manager is not self:
            raise InvalidStateError(f"{handle!r} does not belong to this manager")
        with handle._lock:
            if handle._final_checkpoint is not None:
                return handle._final_checkpoint
            return self._checkpoint_of(handle)

    def _checkpoint_of(self, handle: StreamHandle) -> int:
        candidates = [handle._checkpoint]
        delivered = self.bridge.delivered_id(handle._native)
        if delivered is not None:
            candidates.append(delivered)
        if handle._stop_clean and handle._state != StreamState.STARTED:
            clean_id = handle._native.clean_stop_id()
            if clean_id is not None:
                candidates.append(clean_id)
        return max(candidates)

    def paths(self, handle: StreamHandle) -> List[str]:
        """Get the paths a handle watches."""
        self._check_usable(handle)
        return handle._native.copy_paths_being_watched()

    def latest_event_id(self, handle: StreamHandle) -> int:
        """Get the last event id the handle's native stream assigned."""
        self._check_usable(handle)
        return handle._native.latest_event_id()

    def device(self, handle: StreamHandle) -> Optional[int]:
        """Get the device number of the first watched path that exists."""
        self._check_usable(handle)
        return handle._native.device_being_watched()

    def status(self, handle: StreamHandle) -> StreamStatus:
        """
        Get an explicit view of a handle's health.

        Works on disposed handles too; a stream that failed reports
        ``StreamState.FAILED`` with the cause in ``last_error``.
        """
        if not isinstance(handle, StreamHandle) or handle._manager is not self:
            raise InvalidStateError(f"{handle!r} does not belong to this manager")
        with handle._lock:
            if handle._state == StreamState.DISPOSED:
                return handle._final_status
            return self._status_of(handle)

    def _status_of(self, handle: StreamHandle) -> StreamStatus:
        native = handle._native
        try:
            stats = self.bridge.stats(native)
        except KeyError:
            stats = {}
        last_error = native.failure or stats.get("last_error")
        return StreamStatus(
            state=StreamState.DISPOSED if handle._state == StreamState.DISPOSED else handle.state,
            bridge_state=self.bridge.state(native),
            checkpoint=self._checkpoint_of(handle),
            batches_delivered=stats.get("batches_delivered", 0),
            events_delivered=stats.get("events_delivered", 0),
            sink_errors=stats.get("sink_errors", 0),
            last_error=last_error,
        )

    def handles(self) -> List[StreamHandle]:
        """Get every live (not yet disposed) handle."""
        with self._lock:
            return list(self._handles)

    def close(self) -> None:
        """Dispose every handle and shut down the run loop."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles = list(self._handles)

        for handle in handles:
            try:
                self.dispose(handle)
            except Exception:
                logger.exception("Failed to dispose %s", handle.name)

        self.runloop.close(timeout=self.config.stop_timeout)
        if self._owns_journal:
            self.journal.close()
        logger.info("Stream manager closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
