from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional
from esadapter.errors import StoreError, TransientStoreError
from esadapter.failures import FailureChannel
from esadapter.models import Batch, DocOutcome, Sample
from esadapter.stats import AdapterStats
from esadapter.store import StoreClient

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    written: int = 0
    permanent: int = 0
    failed: int = 0
    attempts: int = 0


class FlushWorkerPool:
    """N workers that bulk-write queued batches to the write alias.

    Documents are always addressed to the alias, so a rollover between two
    bulk requests just sends the second one to the new index.
    """

    def __init__(
        self,
        store: StoreClient,
        queue: asyncio.Queue,
        alias: str,
        failures: FailureChannel,
        workers: int = 1,
        max_retries: int = 3,
        backoff: float = 0.5,
        backoff_max: float = 30.0,
        stats: Optional[AdapterStats] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.queue = queue
        self.alias = alias
        self.failures = failures
        self.workers = workers
        self.max_retries = max_retries
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.stats = stats
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []
        # worker id -> samples of its current batch not yet written
        self._in_flight: Dict[int, List[Sample]] = {}

    def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._run(i), name=f"flush-worker-{i}"))

    async def _run(self, worker_id: int) -> None:
        while True:
            batch: Batch = await self.queue.get()
            if self.stats is not None:
                self.stats.queue_depth.set(self.queue.qsize())
            try:
                await self.write_batch(batch, worker_id)
            except asyncio.CancelledError:
                # drain() reports what this batch still had pending
                self.queue.task_done()
                raise
            except Exception as exc:  # a bug must not take the worker down with the batch
                logger.exception("worker %d crashed writing a batch", worker_id)
                pending = self._in_flight.get(worker_id, batch.samples)
                self.failures.report("worker_error", len(pending), repr(exc))
            self._in_flight.pop(worker_id, None)
            self.queue.task_done()

    def _delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** attempt), self.backoff_max)

    async def write_batch(self, batch: Batch, worker_id: int = -1) -> WriteResult:
        """Write one batch with bounded retries.

        Retryable per-document failures are re-submitted as a smaller batch;
        a transient request failure re-submits everything still pending, any
        other request failure drops the batch as rejected. At most
        `max_retries` retries follow the first attempt.
        """
        res = WriteResult()
        reason = ""
        pending = list(batch.samples)
        self._in_flight[worker_id] = pending
        while pending:
            res.attempts += 1
            started = time.perf_counter()
            try:
                results = await self.store.bulk(self.alias, [s.to_document() for s in pending])
            except TransientStoreError as exc:
                reason = str(exc)
                logger.warning("bulk of %d samples failed (attempt %d): %s", len(pending), res.attempts, exc)
            except StoreError as exc:
                # refused request, not retried
                res.failed = len(pending)
                self.failures.report("rejected", len(pending), str(exc))
                pending[:] = []
                break
            else:
                if self.stats is not None:
                    self.stats.bulk_latency.observe(time.perf_counter() - started)
                retry: List[Sample] = []
                rejected: List[str] = []
                for sample, item in zip(pending, results):
                    if item.outcome is DocOutcome.ACCEPTED:
                        res.written += 1
                    elif item.outcome is DocOutcome.RETRYABLE:
                        retry.append(sample)
                        reason = item.reason or f"status {item.status}"
                    else:
                        rejected.append(item.reason or f"status {item.status}")
                accepted = len(pending) - len(retry) - len(rejected)
                if self.stats is not None and accepted:
                    self.stats.samples_written.inc(accepted)
                if rejected:
                    res.permanent += len(rejected)
                    self.failures.report("permanent", len(rejected), rejected[0])
                pending[:] = retry
                if not pending:
                    break
                logger.warning("%d of %d documents need a retry: %s", len(retry), len(results), reason)
            if res.attempts > self.max_retries:
                res.failed = len(pending)
                self.failures.report(
                    "retries_exhausted", len(pending),
                    f"gave up after {res.attempts} attempts: {reason}",
                )
                pending[:] = []
                break
            if self.stats is not None:
                self.stats.bulk_retries.inc()
            await self._sleep(self._delay(res.attempts - 1))
        return res

    async def drain(self, timeout: Optional[float]) -> int:
        """Wait for the queue to empty, then stop the workers.

        Whatever is still queued or in flight when `timeout` expires is
        reported as lost. Returns the number of lost samples.
        """
        lost = 0
        try:
            await asyncio.wait_for(self.queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.error("intake queue not drained within %ss", timeout)
        await self.stop()
        for pending in self._in_flight.values():
            lost += len(pending)
        self._in_flight.clear()
        while True:
            try:
                batch = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            lost += len(batch)
            self.queue.task_done()
        if lost:
            self.failures.report("shutdown", lost, "not written before the shutdown deadline")
        return lost

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        for t in self._tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._tasks = []
