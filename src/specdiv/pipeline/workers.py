"""Thread-based producer / worker / writer pool.

One producer thread feeds tasks (raster chunks or pixel partitions) into a
bounded queue, ``nb_workers`` worker threads apply a pure function, and a
single writer thread consumes results in task order. numpy, GDAL and
scikit-learn release the GIL in their heavy loops, so threads give real
parallelism without copying chunks between processes.
"""

import logging
import queue
import threading
from typing import Any, Callable, Iterable, Optional

__all__ = ['ChunkWorkerPool']

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_WORKER_DONE = object()


class ChunkWorkerPool:
    """Runs a task function over an iterable with bounded memory.

    Results reach the writer in task order whatever the worker count, so
    the files it writes do not depend on thread scheduling. At most
    ``2 * max_queue_size + nb_workers`` tasks are in flight (queued, being
    worked on, or finished and waiting for an earlier one), so peak memory
    is a small multiple of one chunk. The first exception raised by the
    producer, a worker or the writer sets the stop event; every thread
    winds down and the exception is re-raised in the caller. There is no
    partial continuation.

    Parameters
    ----------
    nb_workers : int
        Number of worker threads.
    max_queue_size : int, optional
        Capacity of the task and result queues (default: ``nb_workers``).
    name : str
        Prefix for thread names in log records.

    Examples
    --------
    >>> pool = ChunkWorkerPool(nb_workers=4)
    >>> with RasterWriter(path, profile) as writer:
    ...     pool.run(reader.iter_chunks(), work=compute, write=lambda r: writer.write(*r))
    """

    def __init__(self, nb_workers: int, max_queue_size: Optional[int] = None,
                 name: str = "ChunkWorker"):
        self.nb_workers = max(1, int(nb_workers))
        self.max_queue_size = max_queue_size or self.nb_workers
        self.name = name

        self._stop_event = threading.Event()
        self._errors: list[BaseException] = []
        self._error_lock = threading.Lock()
        self._slots = threading.Semaphore(self.max_in_flight)

    @property
    def max_in_flight(self) -> int:
        return 2 * self.max_queue_size + self.nb_workers

    def stopped(self) -> bool:
        """Check if the pool should stop."""
        return self._stop_event.is_set()

    def _fail(self, exc: BaseException) -> None:
        with self._error_lock:
            self._errors.append(exc)
        self._stop_event.set()

    def _put(self, q: queue.Queue, item) -> bool:
        while not self.stopped():
            try:
                q.put(item, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _get(self, q: queue.Queue):
        while not self.stopped():
            try:
                return q.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
        return _WORKER_DONE

    def _acquire_slot(self) -> bool:
        while not self.stopped():
            if self._slots.acquire(timeout=_POLL_SECONDS):
                return True
        return False

    def _produce(self, tasks: Iterable, task_queue: queue.Queue) -> None:
        iterator = iter(tasks)
        try:
            for index, task in enumerate(iterator):
                if not self._acquire_slot() or not self._put(task_queue, (index, task)):
                    return
            # Shutdown sentinels, one per worker
            for _ in range(self.nb_workers):
                if not self._put(task_queue, None):
                    return
        except Exception as exc:
            logger.error("%s producer failed: %s", self.name, exc)
            self._fail(exc)
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def _work(self, work: Callable, task_queue: queue.Queue, result_queue: queue.Queue) -> None:
        try:
            while True:
                item = self._get(task_queue)
                if item is _WORKER_DONE:
                    return
                if item is None:
                    self._put(result_queue, _WORKER_DONE)
                    return
                index, task = item
                if not self._put(result_queue, (index, work(task))):
                    return
        except Exception as exc:
            logger.error("%s worker failed: %s", threading.current_thread().name, exc)
            self._fail(exc)

    def _write(self, write: Callable, result_queue: queue.Queue) -> None:
        finished = 0
        pending: dict[int, Any] = {}
        next_index = 0
        try:
            while finished < self.nb_workers:
                item = self._get(result_queue)
                if item is _WORKER_DONE:
                    if self.stopped():
                        return
                    finished += 1
                    continue
                index, result = item
                pending[index] = result
                while next_index in pending:
                    write(pending.pop(next_index))
                    next_index += 1
                    self._slots.release()
        except Exception as exc:
            logger.error("%s writer failed: %s", self.name, exc)
            self._fail(exc)

    def run(self, tasks: Iterable, work: Callable[[Any], Any],
            write: Optional[Callable[[Any], None]] = None) -> Optional[list]:
        """Apply ``work`` to every task and hand each result to ``write``.

        Parameters
        ----------
        tasks : iterable
            Consumed lazily by the producer thread.
        work : callable
            Pure function of one task. Runs concurrently on worker threads.
        write : callable, optional
            Called from the single writer thread for every result, in task
            order. When omitted, results are collected and returned.

        Returns
        -------
        list or None
            Collected results (task order) when ``write`` is None.

        Raises
        ------
        Exception
            The first exception raised by any thread.
        """
        self._stop_event.clear()
        self._errors = []
        self._slots = threading.Semaphore(self.max_in_flight)
        collected: list = []
        sink = write if write is not None else collected.append

        task_queue: queue.Queue = queue.Queue(maxsize=self.max_queue_size)
        result_queue: queue.Queue = queue.Queue(maxsize=self.max_queue_size)

        threads = [threading.Thread(target=self._produce, args=(tasks, task_queue),
                                    name=f"{self.name}-producer", daemon=True)]
        threads += [
            threading.Thread(target=self._work, args=(work, task_queue, result_queue),
                             name=f"{self.name}-{i}", daemon=True)
            for i in range(self.nb_workers)
        ]
        threads.append(threading.Thread(target=self._write, args=(sink, result_queue),
                                        name=f"{self.name}-writer", daemon=True))

        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        if self._errors:
            raise self._errors[0]

        return None if write is not None else collected
