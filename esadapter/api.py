from __future__ import annotations
import orjson
from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError
from esadapter import remote
from esadapter.errors import AccumulatorClosedError, BackpressureError, InvalidSampleError, StoreError, TransientStoreError
from esadapter.reader import group_series
from esadapter.runner import AdapterRunner
from esadapter.schemas import QueryResult, ReadRequest, ReadResponse, WriteRequest, series_to_schema

def create_app(runner: AdapterRunner) -> FastAPI:
    app = FastAPI(title="Prometheus Elasticsearch Adapter", version="1.0.0")

    @app.on_event("startup")
    async def _startup():
        await runner.start()

    @app.on_event("shutdown")
    async def _shutdown():
        await runner.close()

    @app.post("/write", status_code=204)
    async def write(request: Request):
        body = await request.body()
        try:
            if remote.is_remote_protocol(request.headers):
                req = remote.decode_write(body)
            else:
                req = WriteRequest.model_validate(orjson.loads(body))
            samples = req.to_samples()
        except (orjson.JSONDecodeError, ValidationError, InvalidSampleError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        try:
            await runner.write(samples)
        except (BackpressureError, AccumulatorClosedError) as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return Response(status_code=204)

    @app.post("/read")
    async def read(request: Request):
        body = await request.body()
        proto = remote.is_remote_protocol(request.headers)
        try:
            req = remote.decode_read(body) if proto else ReadRequest.model_validate(orjson.loads(body))
        except (orjson.JSONDecodeError, ValidationError, InvalidSampleError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        results = []
        try:
            for q in req.queries:
                samples = await runner.read(q.start_timestamp_ms, q.end_timestamp_ms, [m.to_matcher() for m in q.matchers])
                results.append(QueryResult(timeseries=[series_to_schema(labels, pts) for labels, pts in group_series(samples)]))
        except TransientStoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        except StoreError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        resp = ReadResponse(results=results)
        if proto:
            return Response(
                remote.encode_read_response(resp),
                media_type=remote.CONTENT_TYPE,
                headers={"Content-Encoding": remote.CONTENT_ENCODING},
            )
        return Response(orjson.dumps(resp.model_dump()), media_type="application/json")
    return app

def create_admin_app(runner: AdapterRunner, stats_enabled: bool = True) -> FastAPI:
    admin = FastAPI(title="Prometheus Elasticsearch Adapter admin", version="1.0.0")

    @admin.get("/live")
    def live():
        return {"ok": True}

    @admin.get("/ready")
    async def ready():
        if not await runner.ready():
            raise HTTPException(status_code=503, detail="not ready")
        return {"ok": True, "alias": runner.s.es_alias}

    @admin.get("/failures")
    def failures():
        return {
            "dropped_samples": runner.failures.total_samples,
            "recent": [f.as_dict() for f in runner.failures.recent()],
        }

    if stats_enabled:
        @admin.get("/metrics")
        def metrics():
            return Response(generate_latest(runner.stats.registry), media_type=CONTENT_TYPE_LATEST)

    return admin

