"""Bounded pool of broker worker threads."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from genqueue.jobs.worker import JobWorker, WorkerRunSummary

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[str], JobWorker]


class WorkerPool:
    """Run ``concurrency`` workers, each on its own thread.

    ``stop`` lets every worker finish its in-flight job before the threads are
    joined; deliveries nobody claimed stay queued in the broker.
    """

    def __init__(
        self,
        *,
        worker_factory: WorkerFactory,
        concurrency: int = 5,
        worker_id: str = "genqueue-worker",
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be a positive integer.")
        self.concurrency = concurrency
        self.worker_id = worker_id
        self._worker_factory = worker_factory
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._summaries: list[WorkerRunSummary] = []
        self._lock = threading.Lock()
        self._stop_signal_name: str | None = None

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started.")
        self._stop_event.clear()
        for index in range(self.concurrency):
            consumer_id = f"{self.worker_id}-{index + 1}"
            worker = self._worker_factory(consumer_id)
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker,),
                name=consumer_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool %s started with %d workers", self.worker_id, self.concurrency)

    def stop(self, *, timeout: float | None = None) -> WorkerRunSummary:
        """Signal workers to stop and wait for in-flight jobs."""

        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        still_running = [thread.name for thread in self._threads if thread.is_alive()]
        if still_running:
            logger.warning("Workers still running after stop: %s", ", ".join(still_running))
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        logger.info("Worker pool %s stopped", self.worker_id)
        return self.summary()

    def summary(self) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        with self._lock:
            for item in self._summaries:
                aggregate.merge(item)
        return aggregate

    def run_forever(self) -> WorkerRunSummary:
        """Run until SIGINT/SIGTERM or ``stop`` from another thread."""

        with self._signal_handlers():
            self.start()
            while not self._stop_event.wait(0.5):
                pass
        if self._stop_signal_name is not None:
            logger.info("Worker pool %s stopping on %s", self.worker_id, self._stop_signal_name)
        return self.stop()

    def _run_worker(self, worker: JobWorker) -> None:
        summary = worker.run_loop(stop_event=self._stop_event)
        with self._lock:
            self._summaries.append(summary)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_signal_name = name
            self._stop_event.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
