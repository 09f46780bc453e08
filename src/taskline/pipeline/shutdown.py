"""Two-tier interrupt handling driven by a cancellation event queue.

The OS signal handler only enqueues an event. A consumer thread turns the
first event into a graceful stop request and the second into a forced kill of
every tracked agent process.
"""

from __future__ import annotations

import logging
import queue
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from taskline.pipeline.process import DEFAULT_KILL_WAIT_SECONDS, ProcessRegistry

logger = logging.getLogger(__name__)

SHUTDOWN_EXIT_CODE = 130

_STOP_CONSUMER = object()


class ShutdownController:
    """Cancellation token shared by the orchestrator and its workers."""

    def __init__(
        self,
        registry: ProcessRegistry,
        *,
        kill_wait: float = DEFAULT_KILL_WAIT_SECONDS,
    ) -> None:
        self.registry = registry
        self.kill_wait = kill_wait
        self._requested = threading.Event()
        self._forced = threading.Event()
        self._events: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._signals_seen = 0
        self._consumer: threading.Thread | None = None

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    @property
    def forced(self) -> bool:
        return self._forced.is_set()

    def cancelled(self) -> bool:
        return self.requested

    def notify(self, signal_name: str = "SIGINT") -> None:
        """Enqueue one interrupt event; safe to call from a signal handler."""

        self._events.put(signal_name)

    def handle(self, signal_name: str) -> None:
        """Apply one interrupt event: first graceful, then forced."""

        self._signals_seen += 1
        if self._signals_seen == 1:
            self._requested.set()
            logger.warning(
                "%s received: finishing in-flight steps, then stopping. "
                "Interrupt again to force.",
                signal_name,
            )
            return
        if self._forced.is_set():
            return
        self._forced.set()
        logger.warning("%s received again: killing running agents", signal_name)
        self.registry.kill_all(signal.SIGTERM, wait=self.kill_wait)

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; ``True`` if shutdown was requested."""

        return self._requested.wait(timeout)

    def drain(self) -> None:
        """Handle queued events synchronously (used when no consumer runs)."""

        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            if event is not _STOP_CONSUMER:
                self.handle(str(event))

    @contextmanager
    def install(self) -> Iterator[ShutdownController]:
        """Route SIGINT/SIGTERM into the event queue for the duration of the block."""

        consumer = threading.Thread(target=self._consume, name="shutdown-consumer", daemon=True)
        consumer.start()
        self._consumer = consumer

        if not hasattr(signal, "SIGINT"):
            try:
                yield self
            finally:
                self._stop_consumer()
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.notify(name)

        installed = False
        try:
            try:
                signal.signal(signal.SIGINT, _handler)
                signal.signal(signal.SIGTERM, _handler)
                installed = True
            except ValueError:
                # Signal handlers can only be installed in main thread.
                logger.debug("Not in main thread, signal handlers not installed")
            yield self
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            self._stop_consumer()

    def _consume(self) -> None:
        while True:
            event = self._events.get()
            if event is _STOP_CONSUMER:
                return
            self.handle(str(event))

    def _stop_consumer(self) -> None:
        if self._consumer is None:
            return
        self._events.put(_STOP_CONSUMER)
        self._consumer.join(timeout=self.kill_wait + 5)
        self._consumer = None
