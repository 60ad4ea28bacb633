"""Buffers samples into batches and hands closed batches to the intake queue."""

from __future__ import annotations
import asyncio
import logging
import time
from typing import Callable, Iterable, Optional, Sequence
from esadapter.errors import AccumulatorClosedError, BackpressureError
from esadapter.models import Batch, FlushTrigger, Sample, TriggerKind, estimate_size
from esadapter.stats import AdapterStats
from esadapter.triggers import DEFAULT_ORDER, first_breach

logger = logging.getLogger(__name__)


class BatchAccumulator:
    """Collects samples and closes the current batch on size, count or age.

    `add` checks size and count after every append; `check_age` (driven by
    the timer task started with `start`) checks all three. Both run under the
    same lock, so a batch is never read by a flush decision while it is being
    appended to. The handoff to the intake queue also happens under the lock:
    when the queue is full, adders wait (or get BackpressureError once
    `enqueue_timeout` expires) instead of growing memory.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        max_age: float,
        max_docs: int,
        max_size: int,
        order: Sequence[TriggerKind] = DEFAULT_ORDER,
        enqueue_timeout: float = 0,
        stats: Optional[AdapterStats] = None,
        on_flush: Optional[Callable[[FlushTrigger, Batch], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.limits = {
            TriggerKind.SIZE: max_size,
            TriggerKind.COUNT: max_docs,
            TriggerKind.AGE: max_age,
        }
        self.order = tuple(order)
        self.enqueue_timeout = enqueue_timeout
        self.stats = stats
        self.on_flush = on_flush
        self._clock = clock
        self._lock = asyncio.Lock()
        self._batch = Batch(created_at=clock())
        self._closed = False
        self._ticker: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._batch)

    def _evaluate(self, include_age: bool) -> Optional[FlushTrigger]:
        b = self._batch
        if not b:
            return None
        measured = {TriggerKind.SIZE: b.size_bytes, TriggerKind.COUNT: len(b)}
        if include_age:
            measured[TriggerKind.AGE] = b.age(self._clock())
        return first_breach(self.order, measured, self.limits)

    async def add(self, sample: Sample) -> Optional[FlushTrigger]:
        size = estimate_size(sample)
        async with self._lock:
            if self._closed:
                raise AccumulatorClosedError("accumulator is closed")
            self._batch.append(sample, size)
            trigger = self._evaluate(include_age=False)
            if trigger is None:
                return None
            if not await self._handoff(trigger):
                # queue stayed full: the sample is handed back to the caller, not accepted
                self._batch.pop(size)
                raise BackpressureError(f"intake queue full for {self.enqueue_timeout}s")
            return trigger

    async def add_many(self, samples: Iterable[Sample]) -> int:
        n = 0
        for s in samples:
            await self.add(s)
            n += 1
        return n

    async def check_age(self) -> Optional[FlushTrigger]:
        async with self._lock:
            if self._closed:
                return None
            trigger = self._evaluate(include_age=True)
            if trigger is None:
                return None
            # on backpressure the batch stays current and the next tick retries
            return trigger if await self._handoff(trigger) else None

    async def _handoff(self, trigger: Optional[FlushTrigger], timeout: Optional[float] = None) -> bool:
        batch = self._batch
        batch.trigger = trigger
        self._batch = Batch(created_at=self._clock())
        if timeout is None:
            timeout = self.enqueue_timeout
        try:
            if timeout and timeout > 0:
                await asyncio.wait_for(self.queue.put(batch), timeout)
            else:
                await self.queue.put(batch)
        except asyncio.TimeoutError:
            batch.trigger = None
            self._batch = batch
            return False
        except asyncio.CancelledError:
            batch.trigger = None
            self._batch = batch
            raise
        kind = trigger.kind.value if trigger else "shutdown"
        logger.debug(
            "flush %s: %d samples, %d bytes (threshold=%s measured=%s)",
            kind, len(batch), batch.size_bytes,
            trigger.threshold if trigger else "-", trigger.measured if trigger else "-",
        )
        if self.stats is not None:
            self.stats.batches_flushed.labels(trigger=kind).inc()
            self.stats.queue_depth.set(self.queue.qsize())
        if self.on_flush is not None and trigger is not None:
            self.on_flush(trigger, batch)
        return True

    def start(self, interval: Optional[float] = None) -> None:
        if self._ticker is not None:
            return
        max_age = self.limits[TriggerKind.AGE]
        if not max_age or max_age <= 0:
            return
        if interval is None:
            interval = max(0.01, min(1.0, max_age / 4))
        self._ticker = asyncio.create_task(self._run_age_checks(interval))

    async def _run_age_checks(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.check_age()

    async def close(self, timeout: Optional[float] = None) -> Optional[Batch]:
        """Stop accepting samples and hand off the partial batch.

        Returns the partial batch when it could not be queued within
        `timeout`, so the caller can report it as lost.
        """
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        async with self._lock:
            self._closed = True
            if not self._batch:
                return None
            logger.info("final flush of %d buffered samples", len(self._batch))
            if await self._handoff(None, timeout=timeout if timeout is not None else 0):
                return None
            leftover, self._batch = self._batch, Batch(created_at=self._clock())
            return leftover
