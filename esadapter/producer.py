from __future__ import annotations
import asyncio
import random
import time
import httpx
import orjson
from esadapter import remote
from esadapter.schemas import WriteRequest

JOBS = ["api", "worker", "scheduler"]
INSTANCES = [f"10.0.0.{i}:9100" for i in range(1, 6)]
METRICS = ["http_requests_total", "process_cpu_seconds_total", "queue_depth"]

JSON_HEADERS = {"Content-Type": "application/json"}
REMOTE_WRITE_HEADERS = {
    "Content-Type": remote.CONTENT_TYPE,
    "Content-Encoding": remote.CONTENT_ENCODING,
    "X-Prometheus-Remote-Write-Version": remote.REMOTE_WRITE_VERSION,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def synthetic_write_request(series: int, ts_ms: int) -> dict:
    timeseries = []
    for _ in range(series):
        metric = random.choice(METRICS)
        labels = {
            "__name__": metric,
            "job": random.choice(JOBS),
            "instance": random.choice(INSTANCES),
        }
        value = float(random.randint(0, 1000)) if metric != "process_cpu_seconds_total" else random.random() * 100
        timeseries.append({"labels": labels, "samples": [{"timestamp": ts_ms, "value": value}]})
    return {"timeseries": timeseries}


async def produce_samples(url: str, rate_per_sec: int, seconds: int, series_per_request: int = 50,
                          use_json: bool = False) -> dict:
    """POST synthetic samples to the write endpoint at roughly `rate_per_sec` samples/s.

    Bodies are snappy protobuf like a Prometheus remote_write client sends,
    or plain JSON with `use_json`.
    """
    sent = 0
    rejected = 0
    interval = series_per_request / max(1, rate_per_sec)
    async with httpx.AsyncClient(timeout=10.0) as client:
        deadline = time.monotonic() + seconds
        while time.monotonic() < deadline:
            req = synthetic_write_request(series_per_request, _now_ms())
            if use_json:
                resp = await client.post(url, content=orjson.dumps(req), headers=JSON_HEADERS)
            else:
                body = remote.encode_write(WriteRequest.model_validate(req))
                resp = await client.post(url, content=body, headers=REMOTE_WRITE_HEADERS)
            if resp.status_code == 204:
                sent += series_per_request
            else:
                rejected += series_per_request
            await asyncio.sleep(interval)
    return {"sent": sent, "rejected": rejected}
