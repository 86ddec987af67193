"""Event bridge: the boundary between native delivery threads and consumer sinks."""

import logging
import os
import queue
import threading
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

from .config import DeliveryPolicy
from .exceptions import InternalInvariantViolation, SinkError
from .flags import EventFlags
from .models import BridgeState, EventBatch, RawEvent

logger = logging.getLogger(__name__)

Sink = Callable[[EventBatch], None]
ErrorHandler = Callable[[SinkError], None]

_STOP = object()


class _Route:
    """Sink registration and delivery bookkeeping for one native stream."""

    def __init__(self, stream, checkpoint: int):
        self.stream = stream
        self.sink: Optional[Sink] = None
        self.on_error: Optional[ErrorHandler] = None
        self.state = BridgeState.UNREGISTERED
        self.active = False
        self.closing = False
        self.queue: Optional[queue.Queue] = None
        self.worker: Optional[threading.Thread] = None
        self.delivered_id = checkpoint
        self.batches_delivered = 0
        self.events_delivered = 0
        self.sink_errors = 0
        self.last_error: Optional[BaseException] = None
        self.lock = threading.Lock()
        self.delivered = threading.Condition(self.lock)


class EventBridge:
    """
    Routes native batches to the sink registered for their stream.

    The native layer calls :meth:`callback` with parallel arrays; they are
    turned into an :class:`EventBatch` right there and never travel further.
    With ``DeliveryPolicy.QUEUED`` each stream gets a FIFO queue and a
    worker thread, so a slow sink never holds up the native delivery thread.
    A bounded queue (``queue_size > 0``) makes the delivery thread wait
    instead, trading latency for no loss. With ``DeliveryPolicy.INLINE`` the
    sink runs on the delivery thread itself.
    """

    def __init__(
        self,
        policy: DeliveryPolicy = DeliveryPolicy.QUEUED,
        queue_size: int = 0,
        on_error: Optional[ErrorHandler] = None,
        join_timeout: float = 5.0,
    ):
        """
        Initialize the bridge.

        Args:
            policy: How batches are handed to sinks
            queue_size: Max queued batches per stream under QUEUED (0 = unbounded)
            on_error: Default out-of-band handler for sink failures
            join_timeout: How long deactivate() lets queued batches drain
        """
        self.policy = policy
        self.queue_size = queue_size
        self.on_error = on_error
        self.join_timeout = join_timeout
        self._routes: Dict[object, _Route] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_stream(self, stream, checkpoint: int) -> None:
        """Create an (unregistered) route for a native stream."""
        with self._lock:
            if stream not in self._routes:
                self._routes[stream] = _Route(stream, checkpoint)

    def register_sink(self, stream, sink: Sink, on_error: Optional[ErrorHandler] = None) -> None:
        """
        Register the sink for a stream, replacing any previous one.

        Register before the stream starts: a replacement made while batches
        are flowing has no ordering guarantee relative to the old sink.
        """
        route = self._route(stream)
        with route.lock:
            if route.state == BridgeState.DELIVERING:
                logger.warning("Replacing sink of %s while it is delivering", stream)
            route.sink = sink
            route.on_error = on_error
            if route.state == BridgeState.UNREGISTERED:
                route.state = BridgeState.REGISTERED

    def registration(self, stream) -> Tuple[Optional[Sink], Optional[ErrorHandler]]:
        """Get the (sink, on_error) pair registered for a stream."""
        route = self._route(stream)
        with route.lock:
            return route.sink, route.on_error

    def activate(self, stream) -> None:
        """Accept batches for a stream; called when it starts."""
        route = self._route(stream)
        with route.lock:
            route.active = True
            route.closing = False
            route.state = BridgeState.REGISTERED if route.sink else BridgeState.UNREGISTERED
            if self.policy == DeliveryPolicy.QUEUED:
                route.queue = queue.Queue(maxsize=self.queue_size)
                route.worker = threading.Thread(
                    target=self._worker_loop,
                    args=(route, route.queue),
                    name=f"fsstream-sink-{getattr(stream, 'name', id(stream))}",
                    daemon=True,
                )
                route.worker.start()

    def deactivate(self, stream) -> bool:
        """
        Stop accepting batches for a stream; called when it stops.

        From any thread but the stream's own sink worker, queued batches are
        delivered and the worker joined before returning. From inside the
        sink, queued batches are dropped (the checkpoint does not cover
        them, so resuming replays them).

        Returns:
            True if every accepted batch reached the sink
        """
        with self._lock:
            route = self._routes.get(stream)
        if route is None:
            return True

        with route.lock:
            if not route.active:
                return True
            route.active = False
            route.state = BridgeState.UNREGISTERED
            worker, pending = route.worker, route.queue
            inside = worker is not None and threading.current_thread() is worker
            if inside:
                route.closing = True
            route.worker = None
            route.queue = None
            route.delivered.notify_all()

        if worker is None:
            return True

        if inside:
            dropped = self._discard_queued(pending)
            if dropped:
                logger.warning("Dropped %d queued batch(es) of %s stopped from its sink", dropped, stream)
            return dropped == 0

        try:
            pending.put(_STOP, timeout=self.join_timeout)
            worker.join(timeout=self.join_timeout)
        except queue.Full:
            pass
        if not worker.is_alive():
            return True

        # The sink is still busy: skip what is queued, but never return
        # while a batch is in the sink.
        with route.lock:
            route.closing = True
        dropped = self._discard_queued(pending)
        logger.warning("Sink worker of %s still busy after %.1fs, waiting for the batch in progress "
                       "(%d queued batch(es) left for replay)", stream, self.join_timeout, dropped)
        worker.join()
        return False

    @staticmethod
    def _discard_queued(pending: queue.Queue) -> int:
        """Internal: empty a route queue, leaving only a stop marker in it."""
        dropped = 0
        while True:
            try:
                item = pending.get_nowait()
            except queue.Empty:
                pass
            else:
                if item is not _STOP:
                    dropped += 1
                continue
            try:
                pending.put_nowait(_STOP)
                return dropped
            except queue.Full:
                continue

    def remove_stream(self, stream) -> None:
        """Forget a stream entirely; called when it is disposed."""
        self.deactivate(stream)
        with self._lock:
            self._routes.pop(stream, None)

    def _route(self, stream) -> _Route:
        with self._lock:
            route = self._routes.get(stream)
        if route is None:
            raise KeyError(f"Unknown stream: {stream!r}")
        return route

    # ------------------------------------------------------------------
    # Native entry point
    # ------------------------------------------------------------------

    @staticmethod
    def translate(
        num_events: int,
        paths: Sequence,
        flags: Sequence[int],
        ids: Sequence[int],
    ) -> EventBatch:
        """
        Turn the native parallel arrays into an event batch.

        Raises:
            InternalInvariantViolation: If the arrays do not all hold
                exactly ``num_events`` entries, or the batch is empty
        """
        if num_events < 1:
            raise InternalInvariantViolation(f"native batch reports {num_events} events")
        for name, array in (("paths", paths), ("flags", flags), ("ids", ids)):
            if len(array) != num_events:
                raise InternalInvariantViolation(
                    f"native batch reports {num_events} events but {name} has {len(array)}"
                )

        return EventBatch(events=tuple(
            RawEvent(path=os.fsdecode(paths[i]), flags=EventFlags(flags[i]), id=int(ids[i]))
            for i in range(num_events)
        ))

    def callback(
        self,
        stream,
        num_events: int,
        paths: Sequence,
        flags: Sequence[int],
        ids: Sequence[int],
    ) -> None:
        """
        Entry point invoked by the native delivery thread.

        Sink failures are reported through the error channel and never
        raised here; a malformed batch raises InternalInvariantViolation.
        """
        batch = self.translate(num_events, paths, flags, ids)

        with self._lock:
            route = self._routes.get(stream)
        if route is None or not route.active:
            logger.debug("Dropping %d event(s) for inactive stream %s", len(batch), stream)
            return

        if self.policy == DeliveryPolicy.INLINE:
            self._deliver(route, batch)
            return

        pending = route.queue
        while not route.closing and pending is not None:
            try:
                pending.put(batch, timeout=0.1)
                return
            except queue.Full:
                logger.debug("Sink queue of %s full, waiting", stream)

    def _worker_loop(self, route: _Route, pending: queue.Queue) -> None:
        while True:
            batch = pending.get()
            if batch is _STOP:
                return
            if route.closing:
                continue
            self._deliver(route, batch)

    def _deliver(self, route: _Route, batch: EventBatch) -> None:
        """Internal: hand one batch to the sink, containing its failures."""
        sink = route.sink
        error: Optional[SinkError] = None

        if sink is None:
            logger.debug("No sink registered for %s, %d event(s) discarded", route.stream, len(batch))
        else:
            try:
                sink(batch)
            except Exception as e:
                error = SinkError(
                    f"Sink failed on batch {batch.first_id}..{batch.last_id}: {e}",
                    batch=batch,
                    cause=e,
                )

        with route.lock:
            route.delivered_id = max(route.delivered_id, batch.last_id)
            route.batches_delivered += 1
            route.events_delivered += len(batch)
            if route.active and route.sink is not None:
                route.state = BridgeState.DELIVERING
            if error is not None:
                route.sink_errors += 1
                route.last_error = error
            on_error = route.on_error or self.on_error
            route.delivered.notify_all()

        if error is not None:
            logger.error("%s: %s", route.stream, error, exc_info=error.cause)
            if on_error is not None:
                try:
                    on_error(error)
                except Exception:
                    logger.exception("Error handler for %s raised", route.stream)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_sink_thread(self, stream) -> bool:
        """Check whether the caller is running inside this stream's sink."""
        with self._lock:
            route = self._routes.get(stream)
        if route is None:
            return False
        if self.policy == DeliveryPolicy.INLINE:
            return stream.is_delivery_thread()
        return route.worker is not None and threading.current_thread() is route.worker

    def state(self, stream) -> BridgeState:
        with self._lock:
            route = self._routes.get(stream)
        return route.state if route else BridgeState.UNREGISTERED

    def delivered_id(self, stream) -> Optional[int]:
        """Get the last event id handed to the stream's sink."""
        with self._lock:
            route = self._routes.get(stream)
        if route is None:
            return None
        with route.lock:
            return route.delivered_id

    def wait_delivered(self, stream, event_id: int, timeout: float) -> bool:
        """
        Wait until the sink has been handed every event up to ``event_id``.

        Returns immediately when called from the stream's own sink.

        Returns:
            True if the sink caught up, False on timeout or deactivation
        """
        with self._lock:
            route = self._routes.get(stream)
        if route is None:
            return False
        if self.is_sink_thread(stream):
            with route.lock:
                return route.delivered_id >= event_id

        deadline = time.monotonic() + timeout
        with route.delivered:
            while route.delivered_id < event_id:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not route.active:
                    return False
                route.delivered.wait(timeout=min(remaining, 0.1))
            return True

    def stats(self, stream) -> dict:
        """Get delivery counters for a stream."""
        route = self._route(stream)
        with route.lock:
            return {
                "batches_delivered": route.batches_delivered,
                "events_delivered": route.events_delivered,
                "sink_errors": route.sink_errors,
                "last_error": route.last_error,
            }
