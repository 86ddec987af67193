"""Registration of native streams into a shared watchdog observer."""

import logging
import threading
from typing import Dict, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

logger = logging.getLogger(__name__)


class RunLoop:
    """
    The scheduling substrate native streams register into.

    Wraps one watchdog observer thread. Several streams may watch the same
    directory; watchdog keys watches by path, so registrations are counted
    here and the watch is only unscheduled when its last handler leaves.
    An observer supplied by the host is used as is and never stopped here.
    """

    def __init__(self, observer: Optional[BaseObserver] = None):
        """
        Initialize the run loop.

        Args:
            observer: Host-owned observer; one is created lazily if omitted
        """
        self._observer = observer
        self._owns_observer = observer is None
        self._registrations: Dict[ObservedWatch, Set[FileSystemEventHandler]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _ensure_observer(self) -> BaseObserver:
        if self._observer is None:
            self._observer = Observer()
        if self._owns_observer and not self._observer.is_alive():
            self._observer.daemon = True
            self._observer.start()
            logger.debug("Started observer thread %s", self._observer.name)
        return self._observer

    def schedule(self, handler: FileSystemEventHandler, path: str) -> ObservedWatch:
        """
        Register a handler for recursive notifications under ``path``.

        Raises:
            OSError: If the OS refuses the watch (missing path, limits)
            RuntimeError: If the run loop was closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Run loop is closed")
            observer = self._ensure_observer()
            watch = observer.schedule(handler, path, recursive=True)
            self._registrations.setdefault(watch, set()).add(handler)
            logger.debug("Scheduled %s on %s", handler, path)
            return watch

    def unschedule(self, handler: FileSystemEventHandler, watch: ObservedWatch) -> bool:
        """
        Deregister a handler.

        Holds the observer's dispatch lock while removing, so once this
        returns the handler receives no further notifications.

        Returns:
            True if the handler was registered for the watch
        """
        with self._lock:
            handlers = self._registrations.get(watch)
            if not handlers or handler not in handlers:
                return False

            handlers.discard(handler)
            if handlers:
                self._observer.remove_handler_for_watch(handler, watch)
            else:
                del self._registrations[watch]
                self._observer.unschedule(watch)
            logger.debug("Unscheduled %s from %s", handler, watch.path)
            return True

    def registration_count(self) -> int:
        """Get the number of live handler registrations."""
        with self._lock:
            return sum(len(handlers) for handlers in self._registrations.values())

    @property
    def observer(self) -> Optional[BaseObserver]:
        return self._observer

    def close(self, timeout: float = 5.0) -> None:
        """Drop every registration and stop the observer if it is ours."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

            for watch in list(self._registrations):
                self._observer.unschedule(watch)
            self._registrations.clear()

            observer = self._observer

        if self._owns_observer and observer is not None and observer.is_alive():
            observer.stop()
            observer.join(timeout=timeout)
