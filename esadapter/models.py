from __future__ import annotations
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional
import orjson

NAME_LABEL = "__name__"


class TriggerKind(str, Enum):
    SIZE = "size"
    COUNT = "count"
    AGE = "age"


@dataclass(frozen=True)
class FlushTrigger:
    """Which threshold closed a batch (or retired an index) and by how much."""
    kind: TriggerKind
    threshold: float
    measured: float


@dataclass(frozen=True)
class Sample:
    name: str
    labels: Mapping[str, str]
    timestamp_ms: int
    value: float

    def __post_init__(self):
        labels = {k: v for k, v in self.labels.items() if k != NAME_LABEL}
        object.__setattr__(self, "labels", MappingProxyType(labels))

    def to_document(self) -> Dict[str, Any]:
        label = {NAME_LABEL: self.name}
        label.update(self.labels)
        return {"label": label, "value": self.value, "timestamp": int(self.timestamp_ms)}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Sample":
        label = dict(doc.get("label") or {})
        name = label.pop(NAME_LABEL, "")
        value = doc.get("value")
        return cls(
            name=name,
            labels=label,
            timestamp_ms=int(doc["timestamp"]),
            value=float(value) if value is not None else math.nan,
        )

    def series_key(self) -> tuple:
        return (self.name,) + tuple(sorted(self.labels.items()))


def estimate_size(sample: Sample) -> int:
    # document line plus its newline in the bulk body
    return len(orjson.dumps(sample.to_document())) + 1


@dataclass
class Batch:
    created_at: float = field(default_factory=time.monotonic)
    samples: List[Sample] = field(default_factory=list)
    size_bytes: int = 0
    trigger: Optional[FlushTrigger] = None

    def append(self, sample: Sample, size: int) -> None:
        self.samples.append(sample)
        self.size_bytes += size

    def pop(self, size: int) -> Sample:
        self.size_bytes -= size
        return self.samples.pop()

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def __len__(self) -> int:
        return len(self.samples)


class IndexPhase(str, Enum):
    ACTIVE = "active"
    ELIGIBLE = "eligible"
    RETIRED = "retired"


@dataclass
class IndexState:
    alias: str
    write_index: str
    docs_count: int
    size_bytes: int
    created_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.created_at).total_seconds())


@dataclass(frozen=True)
class RolloverPolicy:
    max_age_seconds: Optional[float] = None
    max_docs: Optional[int] = None
    max_size_bytes: Optional[int] = None

    def limits(self) -> Dict[TriggerKind, Optional[float]]:
        return {
            TriggerKind.SIZE: self.max_size_bytes,
            TriggerKind.COUNT: self.max_docs,
            TriggerKind.AGE: self.max_age_seconds,
        }


DEFAULT_MAPPINGS: Dict[str, Any] = {
    "dynamic_templates": [
        {"labels": {"path_match": "label.*", "mapping": {"type": "keyword"}}},
    ],
    "properties": {
        "label": {"type": "object"},
        "value": {"type": "double"},
        "timestamp": {"type": "date", "format": "epoch_millis"},
    },
}


@dataclass(frozen=True)
class IndexTemplate:
    name: str
    index_patterns: tuple
    shards: int = 5
    replicas: int = 1
    mappings: Mapping[str, Any] = field(default_factory=lambda: DEFAULT_MAPPINGS)

    @classmethod
    def for_alias(cls, alias: str, shards: int = 5, replicas: int = 1) -> "IndexTemplate":
        return cls(name=alias, index_patterns=(f"{alias}-*",), shards=shards, replicas=replicas)

    def body(self) -> Dict[str, Any]:
        # settings in the nested string form the store echoes back on GET
        return {
            "index_patterns": list(self.index_patterns),
            "template": {
                "settings": {
                    "index": {
                        "number_of_shards": str(self.shards),
                        "number_of_replicas": str(self.replicas),
                    }
                },
                "mappings": orjson.loads(orjson.dumps(dict(self.mappings))),
            },
        }


class DocOutcome(str, Enum):
    ACCEPTED = "accepted"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class BulkItemResult:
    outcome: DocOutcome
    status: int
    index: str = ""
    reason: str = ""


class MatchType(str, Enum):
    EQ = "EQ"
    NEQ = "NEQ"
    RE = "RE"
    NRE = "NRE"


@dataclass(frozen=True)
class LabelMatcher:
    name: str
    value: str
    type: MatchType = MatchType.EQ


@dataclass(frozen=True)
class FailureReport:
    """A data-loss event surfaced to operators."""
    kind: str
    samples: int
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "samples": self.samples, "reason": self.reason, "at": self.at.isoformat()}
