from __future__ import annotations
from typing import Optional
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class AdapterStats:
    """Counters and gauges exported on the admin /metrics endpoint."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        r = self.registry

        self.samples_received = Counter("es_adapter_samples_received_total", "Samples received on the write endpoint", registry=r)
        self.samples_written = Counter("es_adapter_samples_written_total", "Samples accepted by the store", registry=r)
        self.samples_dropped = Counter(
            "es_adapter_samples_dropped_total",
            "Samples that were accepted but never written",
            ["reason"],  # reason: permanent | rejected | retries_exhausted | shutdown | worker_error
            registry=r,
        )
        self.batches_flushed = Counter(
            "es_adapter_batches_flushed_total",
            "Batches handed to the worker pool",
            ["trigger"],  # trigger: size | count | age | shutdown
            registry=r,
        )
        self.bulk_retries = Counter("es_adapter_bulk_retries_total", "Bulk write retry attempts", registry=r)
        self.bulk_latency = Histogram(
            "es_adapter_bulk_seconds",
            "Latency of one bulk request",
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
            registry=r,
        )
        self.rollovers = Counter("es_adapter_rollovers_total", "Write index rollovers performed", registry=r)
        self.rollover_failures = Counter("es_adapter_rollover_failures_total", "Rollover attempts that failed and will be retried", registry=r)
        self.index_docs = Gauge("es_adapter_write_index_docs", "Approximate doc count of the current write index", registry=r)
        self.index_size_bytes = Gauge("es_adapter_write_index_size_bytes", "Approximate size of the current write index", registry=r)
        self.queue_depth = Gauge("es_adapter_intake_queue_depth", "Batches waiting for a worker", registry=r)
