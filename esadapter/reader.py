from __future__ import annotations
import logging
import re
from typing import Any, Dict, List, Sequence, Tuple
from esadapter.models import LabelMatcher, MatchType, NAME_LABEL, Sample
from esadapter.store import StoreClient

logger = logging.getLogger(__name__)

SORT = [{"timestamp": {"order": "asc"}}]


def _field(name: str) -> str:
    return f"label.{name}"


def matches_empty(pattern: str) -> bool:
    try:
        return re.fullmatch(pattern, "") is not None
    except re.error:
        return False


def _regexp(field: str, pattern: str) -> Dict[str, Any]:
    clause = {"regexp": {field: {"value": pattern}}}
    if not matches_empty(pattern):
        return clause
    # a missing label reads as "", so it matches too
    return {"bool": {
        "should": [clause, {"bool": {"must_not": [{"exists": {"field": field}}]}}],
        "minimum_should_match": 1,
    }}


def matcher_clause(m: LabelMatcher) -> Tuple[str, Dict[str, Any]]:
    """Return (bool section, clause) for one label matcher.

    A missing label behaves like an empty value, as in Prometheus: `job=""`
    selects series without `job`, and so does `job=~".*"`. Regexps are
    anchored on both sides by the store, matching PromQL.
    """
    f = _field(m.name)
    if m.type in (MatchType.EQ, MatchType.NEQ) and m.value == "":
        section = "must_not" if m.type is MatchType.EQ else "filter"
        return section, {"exists": {"field": f}}
    if m.type is MatchType.EQ:
        return "filter", {"term": {f: m.value}}
    if m.type is MatchType.NEQ:
        return "must_not", {"term": {f: m.value}}
    if m.type is MatchType.RE:
        return "filter", _regexp(f, m.value)
    return "must_not", _regexp(f, m.value)


class ReadQueryTranslator:
    """Time range + label matchers -> alias-scoped search, capped server-side."""

    def __init__(self, store: StoreClient, alias: str, max_docs: int = 1000):
        self.store = store
        self.alias = alias
        self.max_docs = max_docs

    def translate(self, start_ms: int, end_ms: int, matchers: Sequence[LabelMatcher]) -> Dict[str, Any]:
        sections: Dict[str, List[Dict[str, Any]]] = {
            "filter": [{"range": {"timestamp": {"gte": int(start_ms), "lte": int(end_ms), "format": "epoch_millis"}}}],
            "must_not": [],
        }
        for m in matchers:
            section, clause = matcher_clause(m)
            sections[section].append(clause)
        return {"bool": {k: v for k, v in sections.items() if v}}

    async def read(self, start_ms: int, end_ms: int, matchers: Sequence[LabelMatcher]) -> List[Sample]:
        query = self.translate(start_ms, end_ms, matchers)
        docs = await self.store.search(self.alias, query, size=self.max_docs, sort=SORT)
        if len(docs) >= self.max_docs:
            logger.warning("read hit the result cap of %d documents", self.max_docs)
        return [Sample.from_document(d) for d in docs]


def group_series(samples: Sequence[Sample]) -> List[Tuple[Dict[str, str], List[Tuple[int, float]]]]:
    """Group samples into (labels incl. __name__, [(ts, value)]) in first-seen order."""
    series: Dict[tuple, Tuple[Dict[str, str], List[Tuple[int, float]]]] = {}
    for s in samples:
        key = s.series_key()
        if key not in series:
            labels = {NAME_LABEL: s.name}
            labels.update(s.labels)
            series[key] = (labels, [])
        series[key][1].append((s.timestamp_ms, s.value))
    return list(series.values())
