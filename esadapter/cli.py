from __future__ import annotations
import argparse
import asyncio
import uvicorn
from esadapter.api import create_admin_app, create_app
from esadapter.config import Settings, settings
from esadapter.lifecycle import IndexLifecycleManager, bootstrap_write_index, ensure_template
from esadapter.logging_setup import setup_logging
from esadapter.models import IndexTemplate
from esadapter.producer import produce_samples
from esadapter.runner import AdapterRunner, build_lifecycle
from esadapter.store import ElasticStore


def _settings_from_args(args) -> Settings:
    overrides = {k: v for k, v in vars(args).items() if k in Settings.model_fields and v is not None}
    return Settings(**{**settings.model_dump(), **overrides})


def cmd_serve(args):
    s = _settings_from_args(args)
    setup_logging(s.debug)
    runner = AdapterRunner(s)
    servers = [
        uvicorn.Server(uvicorn.Config(create_app(runner), host=args.host, port=s.listen_port, log_config=None)),
        uvicorn.Server(uvicorn.Config(create_admin_app(runner, stats_enabled=s.stats), host=args.host,
                                      port=s.admin_port, log_config=None)),
    ]

    async def _main():
        tasks = [asyncio.create_task(srv.serve()) for srv in servers]
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for srv in servers:
            srv.should_exit = True
        await asyncio.gather(*pending)

    asyncio.run(_main())


def cmd_ensure_template(args):
    s = _settings_from_args(args)
    setup_logging(s.debug)

    async def _main():
        store = ElasticStore.from_settings(s)
        try:
            changed = await ensure_template(store, IndexTemplate.for_alias(s.es_alias, s.es_index_shards, s.es_index_replicas))
            write_index = await bootstrap_write_index(store, s.es_alias, daily=s.es_index_daily)
        finally:
            await store.close()
        return {"alias": s.es_alias, "template_changed": changed, "write_index": write_index}

    print(asyncio.run(_main()))


def cmd_rollover(args):
    s = _settings_from_args(args)
    setup_logging(s.debug)

    async def _main():
        store = ElasticStore.from_settings(s)
        try:
            lifecycle = build_lifecycle(s, store)
            if isinstance(lifecycle, IndexLifecycleManager):
                new = await lifecycle.tick(force=args.force)
            else:
                new = await lifecycle.tick()
            current = await store.write_index(s.es_alias)
        finally:
            await store.close()
        return {"alias": s.es_alias, "rolled_over": new is not None, "write_index": current}

    print(asyncio.run(_main()))


def cmd_produce(args):
    print(asyncio.run(produce_samples(
        url=args.url,
        rate_per_sec=args.rate,
        seconds=args.seconds,
        series_per_request=args.series_per_request,
        use_json=args.json,
    )))


def _store_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--es-url", dest="es_url", default=settings.es_url)
    p.add_argument("--es-user", dest="es_user", default=settings.es_user)
    p.add_argument("--es-password", dest="es_password", default=settings.es_password)
    p.add_argument("--es-sniff", dest="es_sniff", action=argparse.BooleanOptionalAction, default=settings.es_sniff)
    p.add_argument("--es-timeout-seconds", dest="es_timeout_seconds", type=float, default=settings.es_timeout_seconds)
    p.add_argument("--es-alias", dest="es_alias", default=settings.es_alias)
    p.add_argument("--es-index-daily", dest="es_index_daily", action=argparse.BooleanOptionalAction, default=settings.es_index_daily)
    p.add_argument("--es-index-shards", dest="es_index_shards", type=int, default=settings.es_index_shards)
    p.add_argument("--es-index-replicas", dest="es_index_replicas", type=int, default=settings.es_index_replicas)
    p.add_argument("--es-index-max-age", dest="es_index_max_age", default=settings.es_index_max_age)
    p.add_argument("--es-index-max-docs", dest="es_index_max_docs", type=int, default=settings.es_index_max_docs)
    p.add_argument("--es-index-max-size", dest="es_index_max_size", default=settings.es_index_max_size)
    p.add_argument("--debug", dest="debug", action=argparse.BooleanOptionalAction, default=settings.debug)


def main():
    p = argparse.ArgumentParser(prog="es-adapter")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("serve")
    _store_args(r)
    r.add_argument("--host", default="0.0.0.0")
    r.add_argument("--port", dest="listen_port", type=int, default=settings.listen_port)
    r.add_argument("--admin-port", dest="admin_port", type=int, default=settings.admin_port)
    r.add_argument("--es-workers", dest="es_workers", type=int, default=settings.es_workers)
    r.add_argument("--es-batch-max-age", dest="es_batch_max_age", type=float, default=settings.es_batch_max_age)
    r.add_argument("--es-batch-max-docs", dest="es_batch_max_docs", type=int, default=settings.es_batch_max_docs)
    r.add_argument("--es-batch-max-size", dest="es_batch_max_size", type=int, default=settings.es_batch_max_size)
    r.add_argument("--es-queue-size", dest="es_queue_size", type=int, default=settings.es_queue_size)
    r.add_argument("--es-enqueue-timeout", dest="es_enqueue_timeout", type=float, default=settings.es_enqueue_timeout)
    r.add_argument("--es-max-retries", dest="es_max_retries", type=int, default=settings.es_max_retries)
    r.add_argument("--es-retry-backoff", dest="es_retry_backoff", type=float, default=settings.es_retry_backoff)
    r.add_argument("--es-retry-backoff-max", dest="es_retry_backoff_max", type=float, default=settings.es_retry_backoff_max)
    r.add_argument("--es-index-check-interval", dest="es_index_check_interval", type=float, default=settings.es_index_check_interval)
    r.add_argument("--es-search-max-docs", dest="es_search_max_docs", type=int, default=settings.es_search_max_docs)
    r.add_argument("--shutdown-timeout", dest="shutdown_timeout", type=float, default=settings.shutdown_timeout)
    r.add_argument("--trigger-order", dest="trigger_order", default=settings.trigger_order)
    r.add_argument("--stats", dest="stats", action=argparse.BooleanOptionalAction, default=settings.stats)
    r.set_defaults(fn=cmd_serve)

    t = sub.add_parser("ensure-template")
    _store_args(t)
    t.set_defaults(fn=cmd_ensure_template)

    ro = sub.add_parser("rollover")
    _store_args(ro)
    ro.add_argument("--force", action="store_true", help="roll over even if no threshold is breached")
    ro.set_defaults(fn=cmd_rollover)

    pr = sub.add_parser("produce")
    pr.add_argument("--url", default=f"http://localhost:{settings.listen_port}/write")
    pr.add_argument("--rate", type=int, default=500)
    pr.add_argument("--seconds", type=int, default=30)
    pr.add_argument("--series-per-request", type=int, default=50)
    pr.add_argument("--json", action="store_true", help="send JSON bodies instead of snappy protobuf")
    pr.set_defaults(fn=cmd_produce)

    args = p.parse_args()
    args.fn(args)

if __name__ == "__main__":
    main()
