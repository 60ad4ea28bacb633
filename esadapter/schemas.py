from __future__ import annotations
import math
from typing import Dict, List, Literal
from pydantic import BaseModel, Field
from esadapter.errors import InvalidSampleError
from esadapter.models import LabelMatcher, MatchType, NAME_LABEL, Sample


class SamplePair(BaseModel):
    timestamp: int
    value: float


class TimeSeries(BaseModel):
    labels: Dict[str, str]
    samples: List[SamplePair] = Field(default_factory=list)

    def to_samples(self) -> List[Sample]:
        name = self.labels.get(NAME_LABEL)
        if not name:
            raise InvalidSampleError(f"series without {NAME_LABEL}: {self.labels}")
        return [Sample(name, self.labels, p.timestamp, p.value) for p in self.samples]


class WriteRequest(BaseModel):
    timeseries: List[TimeSeries] = Field(default_factory=list)

    def to_samples(self) -> List[Sample]:
        out: List[Sample] = []
        for ts in self.timeseries:
            out.extend(ts.to_samples())
        return out


class Matcher(BaseModel):
    type: Literal["EQ", "NEQ", "RE", "NRE"] = "EQ"
    name: str
    value: str = ""

    def to_matcher(self) -> LabelMatcher:
        return LabelMatcher(name=self.name, value=self.value, type=MatchType(self.type))


class Query(BaseModel):
    start_timestamp_ms: int
    end_timestamp_ms: int
    matchers: List[Matcher] = Field(default_factory=list)


class ReadRequest(BaseModel):
    queries: List[Query]


class QueryResult(BaseModel):
    timeseries: List[TimeSeries] = Field(default_factory=list)


class ReadResponse(BaseModel):
    results: List[QueryResult] = Field(default_factory=list)


def series_to_schema(labels: Dict[str, str], points) -> TimeSeries:
    # NaN (stale marker or missing value) has no JSON form
    return TimeSeries(
        labels=labels,
        samples=[SamplePair(timestamp=t, value=v) for t, v in points if not math.isnan(v)],
    )
