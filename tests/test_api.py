import time
from fastapi.testclient import TestClient
from esadapter import remote
from esadapter.api import create_admin_app, create_app
from esadapter.errors import StoreError, TransientStoreError
from esadapter.producer import synthetic_write_request
from esadapter.runner import AdapterRunner
from esadapter.schemas import Matcher, Query, ReadRequest, WriteRequest

T0 = 1_700_000_000_000

WRITE = {
    "timeseries": [
        {"labels": {"__name__": "up", "job": "api"}, "samples": [{"timestamp": T0, "value": 1}, {"timestamp": T0 + 1000, "value": 1}]},
        {"labels": {"__name__": "up", "job": "db"}, "samples": [{"timestamp": T0, "value": 0}]},
    ]
}


def _read(client, matchers):
    body = {"queries": [{"start_timestamp_ms": T0, "end_timestamp_ms": T0 + 60_000, "matchers": matchers}]}
    r = client.post("/read", json=body)
    assert r.status_code == 200
    return r.json()["results"][0]["timeseries"]


def test_write_then_read(store, make_settings):
    runner = AdapterRunner(make_settings(es_batch_max_docs=1), store=store)
    with TestClient(create_app(runner)) as client:
        assert client.post("/write", json=WRITE).status_code == 204

        series = []
        for _ in range(100):
            series = _read(client, [{"type": "EQ", "name": "__name__", "value": "up"}])
            if sum(len(s["samples"]) for s in series) == 3:
                break
            time.sleep(0.01)
        assert sorted(series, key=lambda s: s["labels"]["job"]) == [
            {"labels": {"__name__": "up", "job": "api"}, "samples": [{"timestamp": T0, "value": 1.0}, {"timestamp": T0 + 1000, "value": 1.0}]},
            {"labels": {"__name__": "up", "job": "db"}, "samples": [{"timestamp": T0, "value": 0.0}]},
        ]

        only_db = _read(client, [{"type": "NEQ", "name": "job", "value": "api"}])
        assert [s["labels"]["job"] for s in only_db] == ["db"]


def test_shutdown_writes_buffered_samples(store, make_settings):
    runner = AdapterRunner(make_settings(es_batch_max_docs=1000), store=store)
    with TestClient(create_app(runner)) as client:
        assert client.post("/write", json=WRITE).status_code == 204
    assert len(store.docs_by_index()["prom-metrics-000001"]) == 3


def test_bad_write_requests(store, make_settings):
    runner = AdapterRunner(make_settings(), store=store)
    with TestClient(create_app(runner)) as client:
        r = client.post("/write", json={"timeseries": [{"labels": {"job": "api"}, "samples": [{"timestamp": T0, "value": 1}]}]})
        assert r.status_code == 400
        assert client.post("/write", content=b"{not json").status_code == 400
        assert client.post("/write", json={"timeseries": [{"labels": {"__name__": "up"}, "samples": [{"value": 1}]}]}).status_code == 400
    assert runner.stats.registry.get_sample_value("es_adapter_samples_received_total") == 0


def test_admin_endpoints(store, make_settings):
    runner = AdapterRunner(make_settings(), store=store)
    admin = TestClient(create_admin_app(runner))
    assert admin.get("/live").status_code == 200
    assert admin.get("/ready").status_code == 503

    with TestClient(create_app(runner)) as client:
        client.post("/write", json=WRITE)
        assert admin.get("/ready").json() == {"ok": True, "alias": "prom-metrics"}
        metrics = admin.get("/metrics")
        assert metrics.status_code == 200
        assert "es_adapter_samples_received_total 3.0" in metrics.text

    runner.failures.report("permanent", 2, "mapper_parsing_exception: failed to parse")
    body = admin.get("/failures").json()
    assert body["dropped_samples"] == 2
    assert body["recent"][0]["kind"] == "permanent"


def test_metrics_can_be_disabled(store, make_settings):
    runner = AdapterRunner(make_settings(), store=store)
    admin = TestClient(create_admin_app(runner, stats_enabled=False))
    assert admin.get("/metrics").status_code == 404


def test_synthetic_requests_are_valid_writes():
    body = synthetic_write_request(series=20, ts_ms=T0)
    samples = WriteRequest.model_validate(body).to_samples()
    assert len(samples) == 20
    assert all(s.timestamp_ms == T0 and "__name__" not in s.labels for s in samples)


REMOTE_HEADERS = {"Content-Type": "application/x-protobuf", "Content-Encoding": "snappy"}


def test_prometheus_remote_write_and_read(store, make_settings):
    runner = AdapterRunner(make_settings(es_batch_max_docs=1), store=store)
    with TestClient(create_app(runner)) as client:
        body = remote.encode_write(WriteRequest.model_validate(WRITE))
        r = client.post("/write", content=body,
                        headers={**REMOTE_HEADERS, "X-Prometheus-Remote-Write-Version": "0.1.0"})
        assert r.status_code == 204

        query = ReadRequest(queries=[Query(start_timestamp_ms=T0, end_timestamp_ms=T0 + 60_000,
                                           matchers=[Matcher(type="EQ", name="job", value="api")])])
        series = []
        for _ in range(100):
            r = client.post("/read", content=remote.encode_read(query), headers=REMOTE_HEADERS)
            assert r.status_code == 200
            assert r.headers["content-type"] == "application/x-protobuf"
            assert r.headers["content-encoding"] == "snappy"
            series = remote.decode_read_response(r.content).results[0].timeseries
            if series and len(series[0].samples) == 2:
                break
            time.sleep(0.01)
        assert [(ts.labels, [(p.timestamp, p.value) for p in ts.samples]) for ts in series] == [
            ({"__name__": "up", "job": "api"}, [(T0, 1.0), (T0 + 1000, 1.0)]),
        ]


def test_corrupt_remote_bodies_are_rejected(store, make_settings):
    runner = AdapterRunner(make_settings(), store=store)
    with TestClient(create_app(runner)) as client:
        assert client.post("/write", content=b"garbage", headers=REMOTE_HEADERS).status_code == 400
        assert client.post("/read", content=b"garbage", headers=REMOTE_HEADERS).status_code == 400


def test_read_store_errors_map_to_gateway_statuses(store, make_settings):
    runner = AdapterRunner(make_settings(), store=store)
    body = {"queries": [{"start_timestamp_ms": T0, "end_timestamp_ms": T0 + 60_000, "matchers": []}]}
    with TestClient(create_app(runner)) as client:
        async def unavailable(index, query, size, sort):
            raise TransientStoreError("search timed out after 10.0s")

        store.search = unavailable
        assert client.post("/read", json=body).status_code == 503

        async def broken(index, query, size, sort):
            raise StoreError("search: HTTP 400 parsing_exception", status=400)

        store.search = broken
        assert client.post("/read", json=body).status_code == 502
