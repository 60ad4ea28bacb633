from __future__ import annotations
import os
import re
from typing import Optional, Tuple
from pydantic import BaseModel, field_validator

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}
_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024 ** 2, "gb": 1024 ** 3, "tb": 1024 ** 4, "pb": 1024 ** 5}
_UNIT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$")

TRIGGER_NAMES = ("size", "count", "age")


def _split_unit(value: str, default_unit: str) -> Tuple[float, str]:
    m = _UNIT_RE.match(value.lower())
    if not m:
        raise ValueError(f"cannot parse {value!r}")
    return float(m.group(1)), (m.group(2) or default_unit)


def parse_duration(value: Optional[str]) -> Optional[float]:
    """'7d' -> seconds. Empty means the condition is disabled."""
    if value is None or not str(value).strip():
        return None
    amount, unit = _split_unit(str(value), "s")
    if unit not in _DURATION_UNITS:
        raise ValueError(f"unknown duration unit in {value!r}")
    return amount * _DURATION_UNITS[unit]


def parse_size(value: Optional[str]) -> Optional[int]:
    """'5gb' -> bytes. Empty means the condition is disabled."""
    if value is None or not str(value).strip():
        return None
    amount, unit = _split_unit(str(value), "b")
    if unit not in _SIZE_UNITS:
        raise ValueError(f"unknown size unit in {value!r}")
    return int(amount * _SIZE_UNITS[unit])


def parse_trigger_order(value: str) -> Tuple[str, ...]:
    names = tuple(p.strip().lower() for p in value.split(",") if p.strip())
    if sorted(names) != sorted(TRIGGER_NAMES):
        raise ValueError(f"trigger order must name each of {TRIGGER_NAMES} exactly once, got {value!r}")
    return names


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    es_url: str = os.getenv("ES_URL", "http://localhost:9200")
    es_user: str = os.getenv("ES_USER", "")
    es_password: str = os.getenv("ES_PASSWORD", "")
    es_sniff: bool = _env_bool("ES_SNIFF", "false")
    es_timeout_seconds: float = float(os.getenv("ES_TIMEOUT_SECONDS", "10"))

    # write pipeline
    es_workers: int = int(os.getenv("ES_WORKERS", "1"))
    es_batch_max_age: float = float(os.getenv("ES_BATCH_MAX_AGE", "10"))
    es_batch_max_docs: int = int(os.getenv("ES_BATCH_MAX_DOCS", "1000"))
    es_batch_max_size: int = int(os.getenv("ES_BATCH_MAX_SIZE", "4096"))
    es_queue_size: int = int(os.getenv("ES_QUEUE_SIZE", "64"))
    es_enqueue_timeout: float = float(os.getenv("ES_ENQUEUE_TIMEOUT", "0"))
    es_max_retries: int = int(os.getenv("ES_MAX_RETRIES", "3"))
    es_retry_backoff: float = float(os.getenv("ES_RETRY_BACKOFF", "0.5"))
    es_retry_backoff_max: float = float(os.getenv("ES_RETRY_BACKOFF_MAX", "30"))

    # index lifecycle
    es_alias: str = os.getenv("ES_ALIAS", "prom-metrics")
    es_index_daily: bool = _env_bool("ES_INDEX_DAILY", "false")
    es_index_shards: int = int(os.getenv("ES_INDEX_SHARDS", "5"))
    es_index_replicas: int = int(os.getenv("ES_INDEX_REPLICAS", "1"))
    es_index_max_age: str = os.getenv("ES_INDEX_MAX_AGE", "7d")
    es_index_max_docs: int = int(os.getenv("ES_INDEX_MAX_DOCS", "1000000"))
    es_index_max_size: str = os.getenv("ES_INDEX_MAX_SIZE", "")
    es_index_check_interval: float = float(os.getenv("ES_INDEX_CHECK_INTERVAL", "60"))

    # reads
    es_search_max_docs: int = int(os.getenv("ES_SEARCH_MAX_DOCS", "1000"))

    shutdown_timeout: float = float(os.getenv("ADAPTER_SHUTDOWN_TIMEOUT", "30"))
    trigger_order: str = os.getenv("ADAPTER_TRIGGER_ORDER", "size,count,age")
    stats: bool = _env_bool("ADAPTER_STATS", "true")
    debug: bool = _env_bool("ADAPTER_DEBUG", "false")
    listen_port: int = int(os.getenv("ADAPTER_PORT", "8000"))
    admin_port: int = int(os.getenv("ADAPTER_ADMIN_PORT", "9000"))

    @field_validator("es_index_max_age")
    @classmethod
    def _check_age(cls, v: str) -> str:
        parse_duration(v)
        return v

    @field_validator("es_index_max_size")
    @classmethod
    def _check_size(cls, v: str) -> str:
        parse_size(v)
        return v

    @field_validator("trigger_order")
    @classmethod
    def _check_order(cls, v: str) -> str:
        return ",".join(parse_trigger_order(v))

    @field_validator("es_workers", "es_queue_size")
    @classmethod
    def _check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

settings = Settings()
