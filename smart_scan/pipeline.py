"""Chunked, memory-bounded worker pipeline shared by indexing, organising, and tagging.

    chunk 1: level = controller.concurrency_level()
             ThreadPool(level) -> item, item, ... item   (any order)
             wait for the whole chunk
    chunk 2: level = controller.concurrency_level()       (re-assessed)
             ...

Each finished item bumps a shared counter and publishes a ProgressUpdate on a
ProgressChannel. The channel hands updates to a dispatcher thread, so a slow
subscriber never stalls a worker.
"""

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from queue import Queue
from typing import Callable, Sequence, TypeVar

from concurrency import ConcurrencyController
from config import CHUNK_SIZE
from errors import DimensionMismatch

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunStatus(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETE, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class ProgressUpdate:
    current: int
    total: int
    extras: dict = field(default_factory=dict)


@dataclass
class RunSummary:
    processed: int
    total: int
    elapsed_seconds: float
    extras: dict = field(default_factory=dict)


ProgressSubscriber = Callable[[ProgressUpdate], None]

_CLOSE = object()


class ProgressChannel:
    """Fire-and-continue progress stream.

    publish() never blocks on subscribers. Subscribers are called in order on
    a single dispatcher thread. latest() serves pollers.
    """

    def __init__(self):
        self._queue: Queue = Queue()
        self._subscribers: list[ProgressSubscriber] = []
        self._latest: ProgressUpdate | None = None
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._dispatch, name="progress", daemon=True)
        self._thread.start()

    def subscribe(self, fn: ProgressSubscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def publish(self, update: ProgressUpdate) -> None:
        with self._lock:
            self._latest = update
        self._queue.put(update)

    def latest(self) -> ProgressUpdate | None:
        with self._lock:
            return self._latest

    def close(self, timeout: float | None = 5.0) -> None:
        """Deliver everything already published, then stop the dispatcher."""
        self._queue.put(_CLOSE)
        self._thread.join(timeout)

    def _dispatch(self) -> None:
        while True:
            update = self._queue.get()
            if update is _CLOSE:
                return
            with self._lock:
                subscribers = list(self._subscribers)
            for fn in subscribers:
                try:
                    fn(update)
                except Exception:
                    logger.warning("Progress subscriber failed", exc_info=True)


class RunState:
    """Status of one run: IDLE -> ACTIVE -> COMPLETE | FAILED | CANCELLED."""

    def __init__(self, channel: ProgressChannel | None = None):
        self.channel = channel
        self.status = RunStatus.IDLE
        self.summary: RunSummary | None = None
        self.error: str | None = None
        self._lock = threading.Lock()

    def progress(self, update: ProgressUpdate) -> None:
        with self._lock:
            if self.status.terminal:
                return
            if self.status is RunStatus.IDLE:
                self.status = RunStatus.ACTIVE
        if self.channel is not None:
            self.channel.publish(update)

    def complete(self, summary: RunSummary) -> None:
        with self._lock:
            if self.status.terminal:
                return
            self.status = RunStatus.COMPLETE
            self.summary = summary
        logger.info(
            "Run complete: %d/%d in %.1fs", summary.processed, summary.total, summary.elapsed_seconds
        )

    def fail(self, error: BaseException | str) -> None:
        with self._lock:
            if self.status.terminal:
                return
            self.status = RunStatus.FAILED
            self.error = str(error)

    def cancel(self) -> None:
        with self._lock:
            if self.status.terminal:
                return
            self.status = RunStatus.CANCELLED

    def to_dict(self) -> dict:
        latest = self.channel.latest() if self.channel else None
        return {
            "status": self.status.value,
            "progress": None if latest is None else {
                "current": latest.current,
                "total": latest.total,
                **latest.extras,
            },
            "summary": None if self.summary is None else {
                "processed": self.summary.processed,
                "total": self.summary.total,
                "elapsed_seconds": round(self.summary.elapsed_seconds, 3),
                **self.summary.extras,
            },
            "error": self.error,
        }


def chunks(items: Sequence[T], size: int) -> list[Sequence[T]]:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


def run_chunked(
    items: Sequence[T],
    worker: Callable[[T], int],
    controller: ConcurrencyController,
    state: RunState | None = None,
    cancel_event: threading.Event | None = None,
    chunk_size: int = CHUNK_SIZE,
    extras: Callable[[], dict] | None = None,
) -> int:
    """Run worker over items in chunks and return the summed worker results.

    worker returns how much the item contributed (usually 1 or 0). Any
    exception it raises is logged with the item and counts as 0, except
    DimensionMismatch, which aborts the run, marks it FAILED and re-raises.
    Cancellation stops before the next chunk and before each unstarted item.
    """
    state = state or RunState()
    cancel_event = cancel_event or threading.Event()
    abort = threading.Event()
    total = len(items)
    start = time.time()
    counter_lock = threading.Lock()
    done = 0
    processed = 0

    def _one(item: T) -> None:
        nonlocal done, processed
        if cancel_event.is_set() or abort.is_set():
            return
        try:
            contributed = worker(item)
        except DimensionMismatch:
            abort.set()
            raise
        except Exception:
            logger.warning("Failed to process %s", item, exc_info=True)
            contributed = 0
        # Publishing under the lock keeps `current` monotonic on the channel
        with counter_lock:
            done += 1
            processed += contributed or 0
            state.progress(ProgressUpdate(done, total, extras() if extras else {}))

    try:
        for chunk in chunks(items, chunk_size):
            if cancel_event.is_set():
                break
            level = controller.concurrency_level()
            with ThreadPoolExecutor(max_workers=level) as pool:
                futures = [pool.submit(_one, item) for item in chunk]
                for f in futures:
                    f.result()
    except Exception as exc:
        logger.error("Run failed after %d/%d items: %s", done, total, exc)
        state.fail(exc)
        raise

    if cancel_event.is_set():
        logger.info("Run cancelled after %d/%d items", done, total)
        state.cancel()
    else:
        state.complete(RunSummary(processed, total, time.time() - start, extras() if extras else {}))
    return processed
