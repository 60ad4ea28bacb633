"""Elasticsearch access for the adapter.

Everything else in the package talks to the store through the primitives on
`ElasticStore` (bulk, index create, atomic alias update, index template put,
plus the lookups lifecycle and reads need). Client exceptions are translated
into `StoreError` / `TransientStoreError` here and nowhere else.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Protocol
from elasticsearch import (
    ApiError,
    AsyncElasticsearch,
    ConnectionError as ESConnectionError,
    ConnectionTimeout,
    TransportError,
)
from esadapter.config import Settings
from esadapter.errors import StoreError, TransientStoreError
from esadapter.models import BulkItemResult, DocOutcome

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 429}
ALREADY_EXISTS = "resource_already_exists_exception"


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES or status >= 500


def _error_parts(error: Any) -> tuple:
    if isinstance(error, dict):
        return str(error.get("type") or ""), str(error.get("reason") or "")
    return "", str(error or "")


def classify_bulk_items(items: List[Dict[str, Any]]) -> List[BulkItemResult]:
    """Turn the `items` of a bulk response into one tagged result per document."""
    out = []
    for item in items:
        op = next(iter(item.values())) if item else {}
        status = int(op.get("status") or 0)
        index = str(op.get("_index") or "")
        if 200 <= status < 300:
            out.append(BulkItemResult(DocOutcome.ACCEPTED, status, index))
            continue
        etype, reason = _error_parts(op.get("error"))
        outcome = DocOutcome.RETRYABLE if is_retryable_status(status) else DocOutcome.PERMANENT
        out.append(BulkItemResult(outcome, status, index, f"{etype}: {reason}" if etype else reason))
    return out


class StoreClient(Protocol):
    async def ping(self) -> bool: ...
    async def bulk(self, index: str, docs: List[Dict[str, Any]]) -> List[BulkItemResult]: ...
    async def create_index(self, name: str, aliases: Optional[Dict[str, Any]] = None) -> bool: ...
    async def update_aliases(self, actions: List[Dict[str, Any]]) -> None: ...
    async def get_template(self, name: str) -> Optional[Dict[str, Any]]: ...
    async def put_template(self, name: str, body: Dict[str, Any]) -> None: ...
    async def write_index(self, alias: str) -> Optional[str]: ...
    async def index_stats(self, index: str) -> Dict[str, int]: ...
    async def search(self, index: str, query: Dict[str, Any], size: int, sort: List[Any]) -> List[Dict[str, Any]]: ...
    async def close(self) -> None: ...


class ElasticStore:
    def __init__(self, client: AsyncElasticsearch, timeout: float = 10.0):
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, s: Settings) -> "ElasticStore":
        kwargs: Dict[str, Any] = {
            "hosts": [s.es_url],
            "request_timeout": s.es_timeout_seconds,
            "sniff_on_start": s.es_sniff,
            "sniff_on_node_failure": s.es_sniff,
        }
        if s.es_user:
            kwargs["basic_auth"] = (s.es_user, s.es_password)
        return cls(AsyncElasticsearch(**kwargs), timeout=s.es_timeout_seconds)

    async def _call(self, what: str, aw: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(aw, self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransientStoreError(f"{what} timed out after {self.timeout}s") from exc
        except (ESConnectionError, ConnectionTimeout) as exc:
            raise TransientStoreError(f"{what}: {exc}") from exc
        except ApiError as exc:
            status = int(exc.meta.status)
            etype, reason = _error_parts(exc.body.get("error") if isinstance(exc.body, dict) else exc.body)
            cls = TransientStoreError if is_retryable_status(status) else StoreError
            raise cls(f"{what}: HTTP {status} {etype} {reason}".strip(), status=status, error_type=etype) from exc
        except TransportError as exc:
            raise TransientStoreError(f"{what}: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self.client.ping()))
        except StoreError:
            return False

    async def bulk(self, index: str, docs: List[Dict[str, Any]]) -> List[BulkItemResult]:
        operations: List[Dict[str, Any]] = []
        for doc in docs:
            operations.append({"index": {"_index": index}})
            operations.append(doc)
        resp = await self._call("bulk", self.client.bulk(operations=operations))
        items = resp.body.get("items") or []
        if len(items) != len(docs):
            raise StoreError(f"bulk returned {len(items)} items for {len(docs)} documents")
        return classify_bulk_items(items)

    async def create_index(self, name: str, aliases: Optional[Dict[str, Any]] = None) -> bool:
        """Create `name`. Returns False when it already existed."""
        try:
            await self._call("create index", self.client.indices.create(index=name, aliases=aliases))
        except StoreError as exc:
            if exc.error_type == ALREADY_EXISTS:
                logger.info("index %s already exists", name)
                return False
            raise
        return True

    async def update_aliases(self, actions: List[Dict[str, Any]]) -> None:
        await self._call("update aliases", self.client.indices.update_aliases(actions=actions))

    async def get_template(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await self._call("get template", self.client.indices.get_index_template(name=name))
        except StoreError as exc:
            if exc.status == 404:
                return None
            raise
        for tpl in resp.body.get("index_templates") or []:
            if tpl.get("name") == name:
                return tpl.get("index_template")
        return None

    async def put_template(self, name: str, body: Dict[str, Any]) -> None:
        await self._call("put template", self.client.indices.put_index_template(name=name, **body))

    async def write_index(self, alias: str) -> Optional[str]:
        try:
            resp = await self._call("get alias", self.client.indices.get_alias(name=alias))
        except StoreError as exc:
            if exc.status == 404:
                return None
            raise
        return pick_write_index(resp.body, alias)

    async def index_stats(self, index: str) -> Dict[str, int]:
        stats = await self._call("index stats", self.client.indices.stats(index=index, metric="docs,store"))
        prim = stats.body["indices"][index]["primaries"]
        conf = await self._call(
            "index settings", self.client.indices.get_settings(index=index, name="index.creation_date")
        )
        created = conf.body[index]["settings"]["index"]["creation_date"]
        return {
            "docs": int(prim["docs"]["count"]),
            "size_bytes": int(prim["store"]["size_in_bytes"]),
            "created_ms": int(created),
        }

    async def search(self, index: str, query: Dict[str, Any], size: int, sort: List[Any]) -> List[Dict[str, Any]]:
        try:
            resp = await self._call(
                "search",
                self.client.search(index=index, query=query, size=size, sort=sort, track_total_hits=False),
            )
        except StoreError as exc:
            if exc.status == 404:
                return []
            raise
        return [h["_source"] for h in resp.body["hits"]["hits"]]

    async def close(self) -> None:
        await self.client.close()


def pick_write_index(aliases_body: Dict[str, Any], alias: str) -> Optional[str]:
    """Find the write index in a get-alias response.

    An alias over a single index without an explicit is_write_index flag
    writes to that index.
    """
    members = {
        index: (body.get("aliases") or {}).get(alias) or {}
        for index, body in aliases_body.items()
        if alias in (body.get("aliases") or {})
    }
    explicit = [i for i, a in members.items() if a.get("is_write_index") is True]
    if len(explicit) == 1:
        return explicit[0]
    if len(explicit) > 1:
        raise StoreError(f"alias {alias} has {len(explicit)} write indices: {sorted(explicit)}")
    if len(members) == 1:
        return next(iter(members))
    return None
