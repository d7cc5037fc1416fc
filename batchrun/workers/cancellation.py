import logging
import queue
import signal
import threading
from contextlib import contextmanager
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancellationCoordinator:
    """Single stop switch shared by the scheduler and every running attempt.

    Executors poll ``event`` while waiting on their process and run the
    graceful-then-forced termination sequence once it is set. The scheduler
    registers a listener so a stop wakes its loop immediately instead of on
    the next completion. Live process handles are tracked here so callers can
    verify nothing outlives a run.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[str], None]] = []
        self._processes = {}
        self.reason: Optional[str] = None

    @property
    def event(self) -> threading.Event:
        return self._event

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    def stop(self, reason: str = "stop requested") -> bool:
        """Request a stop. Returns True only for the call that flipped the switch."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            listeners = list(self._listeners)

        logger.warning(f"Cancelling run: {reason}")
        for listener in listeners:
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Cancellation listener failed: {str(e)}")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def add_listener(self, callback: Callable[[str], None]):
        with self._lock:
            self._listeners.append(callback)
            already_stopped = self._event.is_set()
        if already_stopped:
            callback(self.reason)

    def remove_listener(self, callback: Callable[[str], None]):
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def track(self, handle):
        with self._lock:
            self._processes[id(handle)] = handle

    def untrack(self, handle):
        with self._lock:
            self._processes.pop(id(handle), None)

    def live_pids(self) -> List[int]:
        """PIDs of tracked processes that have not been reaped yet"""
        with self._lock:
            handles = list(self._processes.values())
        return [h.pid for h in handles if h.pid is not None and h.is_alive()]

    @contextmanager
    def handle_signals(self, signals=(signal.SIGINT, signal.SIGTERM)):
        """Turn SIGINT/SIGTERM into stop() for the duration of the block.

        The handler only queues the signal number; a relay thread calls stop()
        so no lock is ever taken on the interrupted main thread. Only usable
        from the main thread; previous handlers are restored on exit.
        """
        received = queue.SimpleQueue()

        def handle_shutdown(signum, frame):
            received.put(signum)

        def relay():
            while True:
                signum = received.get()
                if signum is None:
                    return
                self.stop(f"received {signal.Signals(signum).name}")

        watcher = threading.Thread(target=relay, name="batchrun-signals", daemon=True)
        watcher.start()
        previous = {}
        try:
            for signum in signals:
                previous[signum] = signal.signal(signum, handle_shutdown)
            yield self
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            received.put(None)
            watcher.join()
