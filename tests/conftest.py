from __future__ import annotations
import asyncio
import re
import time
from typing import Any, Dict, List, Optional
import orjson
import pytest
from esadapter.config import Settings
from esadapter.errors import StoreError, TransientStoreError
from esadapter.store import classify_bulk_items, pick_write_index


def _field(doc: Dict[str, Any], path: str):
    cur: Any = doc
    for part in path.split(".", 1) if path.startswith("label.") else [path]:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def _clause_matches(doc: Dict[str, Any], clause: Dict[str, Any]) -> bool:
    kind, body = next(iter(clause.items()))
    if kind == "range":
        field, bounds = next(iter(body.items()))
        v = _field(doc, field)
        return v is not None and bounds.get("gte", v) <= v <= bounds.get("lte", v)
    if kind == "term":
        field, value = next(iter(body.items()))
        return _field(doc, field) == value
    if kind == "regexp":
        field, opts = next(iter(body.items()))
        v = _field(doc, field)
        return v is not None and re.fullmatch(opts["value"], str(v)) is not None
    if kind == "exists":
        return _field(doc, body["field"]) is not None
    if kind == "bool":
        return _bool_matches(doc, body)
    raise AssertionError(f"unsupported clause {clause}")


def _as_list(clauses) -> List[Dict[str, Any]]:
    return clauses if isinstance(clauses, list) else [clauses]


def _bool_matches(doc: Dict[str, Any], body: Dict[str, Any]) -> bool:
    if not all(_clause_matches(doc, c) for c in _as_list(body.get("filter", []))):
        return False
    if any(_clause_matches(doc, c) for c in _as_list(body.get("must_not", []))):
        return False
    should = _as_list(body.get("should", []))
    need = body.get("minimum_should_match", 1 if should else 0)
    return sum(1 for c in should if _clause_matches(doc, c)) >= need


class FakeStore:
    """In-memory stand-in for ElasticStore with failure injection."""

    def __init__(self):
        self.indices: Dict[str, Dict[str, Any]] = {}
        self.aliases: Dict[str, Dict[str, bool]] = {}
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.template_puts = 0
        self.now_ms = int(time.time() * 1000)
        self.bulk_sizes: List[int] = []
        self.bulk_statuses: List[List[int]] = []
        self.fail_bulk = 0
        self.fail_create = 0
        self.fail_alias = 0
        self.write_targets: List[List[str]] = []
        self.closed = False

    async def ping(self) -> bool:
        return not self.closed

    def _resolve(self, index: str) -> str:
        if index in self.aliases:
            targets = [i for i, w in self.aliases[index].items() if w]
            assert len(targets) == 1, f"alias {index} write targets: {targets}"
            return targets[0]
        if index not in self.indices:
            raise StoreError(f"no such index {index}", status=404, error_type="index_not_found_exception")
        return index

    async def bulk(self, index: str, docs: List[Dict[str, Any]]):
        self.bulk_sizes.append(len(docs))
        await asyncio.sleep(0)
        if self.fail_bulk:
            self.fail_bulk -= 1
            raise TransientStoreError("bulk: connection refused")
        target = self._resolve(index)
        statuses = self.bulk_statuses.pop(0) if self.bulk_statuses else [201] * len(docs)
        items = []
        for doc, status in zip(docs, statuses):
            op: Dict[str, Any] = {"_index": target, "status": status}
            if 200 <= status < 300:
                self.indices[target]["docs"].append(doc)
            elif status == 429:
                op["error"] = {"type": "es_rejected_execution_exception", "reason": "queue full"}
            else:
                op["error"] = {"type": "mapper_parsing_exception", "reason": "failed to parse field [value]"}
            items.append({"index": op})
        return classify_bulk_items(items)

    async def create_index(self, name: str, aliases: Optional[Dict[str, Any]] = None) -> bool:
        if self.fail_create:
            self.fail_create -= 1
            raise TransientStoreError("create index: timed out")
        if name in self.indices:
            return False
        self.indices[name] = {"docs": [], "created_ms": self.now_ms}
        for alias, conf in (aliases or {}).items():
            self.aliases.setdefault(alias, {})[name] = bool(conf.get("is_write_index"))
            self.write_targets.append([i for i, w in self.aliases[alias].items() if w])
        return True

    async def update_aliases(self, actions: List[Dict[str, Any]]) -> None:
        await asyncio.sleep(0)
        if self.fail_alias:
            self.fail_alias -= 1
            raise TransientStoreError("update aliases: 503")
        staged = {a: dict(m) for a, m in self.aliases.items()}
        for action in actions:
            (op, body), = action.items()
            if body["index"] not in self.indices:
                raise StoreError("no such index", status=404)
            members = staged.setdefault(body["alias"], {})
            if op == "add":
                members[body["index"]] = bool(body.get("is_write_index"))
            else:
                members.pop(body["index"], None)
        for alias, members in staged.items():
            targets = [i for i, w in members.items() if w]
            assert len(targets) <= 1, f"alias {alias} would have write targets {targets}"
            self.write_targets.append(targets)
        self.aliases = staged

    async def get_template(self, name: str):
        tpl = self.templates.get(name)
        return orjson.loads(orjson.dumps(tpl)) if tpl is not None else None

    async def put_template(self, name: str, body: Dict[str, Any]) -> None:
        self.template_puts += 1
        self.templates[name] = orjson.loads(orjson.dumps(body))

    async def write_index(self, alias: str) -> Optional[str]:
        if alias not in self.aliases:
            return None
        body = {i: {"aliases": {alias: {"is_write_index": w}}} for i, w in self.aliases[alias].items()}
        return pick_write_index(body, alias)

    async def index_stats(self, index: str) -> Dict[str, int]:
        meta = self.indices[index]
        return {
            "docs": len(meta["docs"]),
            "size_bytes": sum(len(orjson.dumps(d)) for d in meta["docs"]),
            "created_ms": meta["created_ms"],
        }

    async def search(self, index: str, query: Dict[str, Any], size: int, sort: List[Any]):
        names = list(self.aliases[index]) if index in self.aliases else [index]
        hits = []
        for name in names:
            for doc in self.indices[name]["docs"]:
                if _bool_matches(doc, query["bool"]):
                    hits.append(doc)
        hits.sort(key=lambda d: d["timestamp"])
        return hits[:size]

    async def close(self) -> None:
        self.closed = True

    def docs_by_index(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: meta["docs"] for name, meta in self.indices.items()}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        base = dict(
            es_alias="prom-metrics",
            es_workers=2,
            es_batch_max_age=3600,
            es_batch_max_docs=100,
            es_batch_max_size=1_000_000,
            es_queue_size=8,
            es_retry_backoff=0,
            es_max_retries=3,
            es_index_check_interval=3600,
            es_index_max_age="7d",
            es_index_max_docs=1_000_000,
            es_index_max_size="",
            es_index_daily=False,
            es_enqueue_timeout=0,
            shutdown_timeout=5,
            trigger_order="size,count,age",
        )
        base.update(overrides)
        return Settings(**base)
    return _make
