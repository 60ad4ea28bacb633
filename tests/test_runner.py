import asyncio
import pytest
from esadapter.errors import StartupError, StoreError
from esadapter.models import Sample
from esadapter.runner import AdapterRunner

T0 = 1_700_000_000_000


def _samples(n: int, offset: int = 0):
    return [Sample("node_cpu_seconds_total", {"job": "node", "cpu": str(i % 4)}, T0 + i, float(i))
            for i in range(offset, offset + n)]


def test_start_provisions_alias_and_template(store, make_settings):
    async def scenario():
        runner = AdapterRunner(make_settings(), store=store)
        await runner.start()
        assert await runner.ready()
        assert store.template_puts == 1
        assert await store.write_index("prom-metrics") == "prom-metrics-000001"
        await runner.close()
        assert store.closed
        assert not await runner.ready()

    asyncio.run(scenario())


def test_startup_failure_is_fatal(store, make_settings):
    async def broken(name):
        raise StoreError("connection refused")

    store.get_template = broken

    async def scenario():
        runner = AdapterRunner(make_settings(), store=store)
        with pytest.raises(StartupError):
            await runner.start()
        assert not runner.started

    asyncio.run(scenario())


def test_close_flushes_partial_batch(store, make_settings):
    async def scenario():
        runner = AdapterRunner(make_settings(es_batch_max_docs=100), store=store)
        await runner.start()
        await runner.write(_samples(42))
        assert store.docs_by_index()["prom-metrics-000001"] == []
        await runner.close()
        assert len(store.docs_by_index()["prom-metrics-000001"]) == 42
        assert runner.failures.total_samples == 0
        assert runner.stats.registry.get_sample_value("es_adapter_samples_received_total") == 42

    asyncio.run(scenario())


def test_shutdown_deadline_reports_unwritten_samples(store, make_settings):
    async def scenario():
        runner = AdapterRunner(
            make_settings(shutdown_timeout=0.1, es_retry_backoff=10, es_retry_backoff_max=10, es_workers=1),
            store=store,
        )
        await runner.start()
        store.fail_bulk = 1000
        await runner.write(_samples(3))
        await runner.close()
        assert runner.failures.total_samples == 3
        assert runner.failures.recent()[-1].kind == "shutdown"

    asyncio.run(scenario())


def test_rollovers_during_writes_lose_and_duplicate_nothing(store, make_settings):
    async def scenario():
        runner = AdapterRunner(make_settings(es_batch_max_docs=7, es_workers=3, es_search_max_docs=10_000), store=store)
        await runner.start()

        async def writer(part: int):
            for chunk in range(10):
                await runner.write(_samples(10, offset=part * 100 + chunk * 10))
                await asyncio.sleep(0)

        async def roller():
            for _ in range(8):
                await runner.lifecycle.tick(force=True)
                await asyncio.sleep(0)

        await asyncio.gather(*(writer(p) for p in range(5)), roller())
        await runner.close()

        assert len(store.indices) >= 5
        assert all(len(t) == 1 for t in store.write_targets)
        timestamps = [d["timestamp"] for docs in store.docs_by_index().values() for d in docs]
        assert sorted(timestamps) == [T0 + i for i in range(500)]

        got = await runner.read(T0, T0 + 1000, [])
        assert len(got) == 500

    asyncio.run(scenario())
