from __future__ import annotations
import asyncio
import logging
from typing import List, Optional, Sequence, Union
from esadapter.accumulator import BatchAccumulator
from esadapter.config import Settings, parse_duration, parse_size
from esadapter.errors import StartupError, StoreError
from esadapter.failures import FailureChannel
from esadapter.lifecycle import (
    DailyIndexScheduler,
    IndexLifecycleManager,
    bootstrap_write_index,
    ensure_template,
)
from esadapter.models import IndexTemplate, LabelMatcher, RolloverPolicy, Sample
from esadapter.reader import ReadQueryTranslator
from esadapter.stats import AdapterStats
from esadapter.store import ElasticStore, StoreClient
from esadapter.triggers import trigger_order
from esadapter.workers import FlushWorkerPool

logger = logging.getLogger(__name__)


def rollover_policy(s: Settings) -> RolloverPolicy:
    return RolloverPolicy(
        max_age_seconds=parse_duration(s.es_index_max_age),
        max_docs=s.es_index_max_docs,
        max_size_bytes=parse_size(s.es_index_max_size),
    )


def build_lifecycle(s: Settings, store: StoreClient,
                    stats: Optional[AdapterStats] = None) -> Union[IndexLifecycleManager, DailyIndexScheduler]:
    if s.es_index_daily:
        return DailyIndexScheduler(store, s.es_alias, interval=s.es_index_check_interval, stats=stats)
    return IndexLifecycleManager(
        store, s.es_alias, rollover_policy(s),
        interval=s.es_index_check_interval,
        order=trigger_order(s.trigger_order),
        stats=stats,
    )


class AdapterRunner:
    """Wires the write pipeline, index lifecycle and reads around one store."""

    def __init__(self, settings: Settings, store: Optional[StoreClient] = None,
                 stats: Optional[AdapterStats] = None):
        self.s = settings
        self.store = store if store is not None else ElasticStore.from_settings(settings)
        self.stats = stats or AdapterStats()
        self.failures = FailureChannel(self.stats)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=self.s.es_queue_size)

        self.accumulator = BatchAccumulator(
            self.queue,
            max_age=self.s.es_batch_max_age,
            max_docs=self.s.es_batch_max_docs,
            max_size=self.s.es_batch_max_size,
            order=trigger_order(self.s.trigger_order),
            enqueue_timeout=self.s.es_enqueue_timeout,
            stats=self.stats,
        )
        self.pool = FlushWorkerPool(
            self.store, self.queue, self.s.es_alias, self.failures,
            workers=self.s.es_workers,
            max_retries=self.s.es_max_retries,
            backoff=self.s.es_retry_backoff,
            backoff_max=self.s.es_retry_backoff_max,
            stats=self.stats,
        )
        self.lifecycle = build_lifecycle(self.s, self.store, self.stats)
        self.reader = ReadQueryTranslator(self.store, self.s.es_alias, max_docs=self.s.es_search_max_docs)
        self.template = IndexTemplate.for_alias(self.s.es_alias, self.s.es_index_shards, self.s.es_index_replicas)
        self.started = False

    async def provision(self) -> str:
        """Apply the template and make sure the alias has a write index."""
        try:
            await ensure_template(self.store, self.template)
            return await bootstrap_write_index(self.store, self.s.es_alias, daily=self.s.es_index_daily)
        except StoreError as exc:
            raise StartupError(f"cannot provision alias {self.s.es_alias}: {exc}") from exc

    async def start(self) -> None:
        write_index = await self.provision()
        self.pool.start()
        self.accumulator.start()
        self.lifecycle.start()
        self.started = True
        logger.info("writing to alias %s (currently %s) with %d workers",
                    self.s.es_alias, write_index, self.s.es_workers)

    async def write(self, samples: Sequence[Sample]) -> int:
        self.stats.samples_received.inc(len(samples))
        return await self.accumulator.add_many(samples)

    async def read(self, start_ms: int, end_ms: int, matchers: Sequence[LabelMatcher]) -> List[Sample]:
        return await self.reader.read(start_ms, end_ms, matchers)

    async def ready(self) -> bool:
        return self.started and not self.accumulator.closed and await self.store.ping()

    async def close(self) -> None:
        """Stop intake, flush the partial batch and drain workers within the shutdown timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.s.shutdown_timeout
        self.started = False
        await self.lifecycle.stop()
        try:
            leftover = await asyncio.wait_for(self.accumulator.close(timeout=self.s.shutdown_timeout),
                                              self.s.shutdown_timeout)
        except asyncio.TimeoutError:
            leftover = None
            n = self.accumulator.pending()
            if n:
                self.failures.report("shutdown", n, "buffered samples could not be flushed")
        if leftover:
            self.failures.report("shutdown", len(leftover), "final batch could not be queued")
        await self.pool.drain(max(0.0, deadline - loop.time()))
        await self.store.close()
        logger.info("adapter stopped")
