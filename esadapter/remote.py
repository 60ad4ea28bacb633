"""Prometheus remote write / remote read wire format.

Prometheus sends snappy block-compressed protobuf (`prometheus.WriteRequest`,
`prometheus.ReadRequest` from prompb) and expects a snappy-compressed
`prometheus.ReadResponse` back from remote read. The message classes are
built from a descriptor at import time, limited to the fields the adapter
reads or writes; unknown fields sent by newer Prometheus versions are skipped
by the protobuf parser.

Decoded bodies are converted to the same pydantic models the JSON endpoints
use, so both encodings share one validation path.
"""

from __future__ import annotations
from typing import Mapping
import snappy
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError
from esadapter.errors import InvalidSampleError
from esadapter.schemas import Matcher, Query, QueryResult, ReadRequest, ReadResponse, SamplePair, TimeSeries, WriteRequest

CONTENT_TYPE = "application/x-protobuf"
CONTENT_ENCODING = "snappy"
REMOTE_WRITE_VERSION = "0.1.0"

MATCH_TYPES = ("EQ", "NEQ", "RE", "NRE")

_F = descriptor_pb2.FieldDescriptorProto


def _file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    f = descriptor_pb2.FileDescriptorProto(name="esadapter/prompb.proto", package="prometheus", syntax="proto3")

    def message(name, *fields):
        m = f.message_type.add(name=name)
        for fname, number, ftype, label, type_name in fields:
            fd = m.field.add(name=fname, number=number, type=ftype, label=label)
            if type_name:
                fd.type_name = type_name
        return m

    opt, rep = _F.LABEL_OPTIONAL, _F.LABEL_REPEATED
    message("Sample",
            ("value", 1, _F.TYPE_DOUBLE, opt, None),
            ("timestamp", 2, _F.TYPE_INT64, opt, None))
    message("Label",
            ("name", 1, _F.TYPE_STRING, opt, None),
            ("value", 2, _F.TYPE_STRING, opt, None))
    message("TimeSeries",
            ("labels", 1, _F.TYPE_MESSAGE, rep, ".prometheus.Label"),
            ("samples", 2, _F.TYPE_MESSAGE, rep, ".prometheus.Sample"))
    message("WriteRequest",
            ("timeseries", 1, _F.TYPE_MESSAGE, rep, ".prometheus.TimeSeries"))

    matcher = message("LabelMatcher",
                      ("type", 1, _F.TYPE_ENUM, opt, ".prometheus.LabelMatcher.Type"),
                      ("name", 2, _F.TYPE_STRING, opt, None),
                      ("value", 3, _F.TYPE_STRING, opt, None))
    kind = matcher.enum_type.add(name="Type")
    for number, name in enumerate(MATCH_TYPES):
        kind.value.add(name=name, number=number)

    message("Query",
            ("start_timestamp_ms", 1, _F.TYPE_INT64, opt, None),
            ("end_timestamp_ms", 2, _F.TYPE_INT64, opt, None),
            ("matchers", 3, _F.TYPE_MESSAGE, rep, ".prometheus.LabelMatcher"))
    message("ReadRequest",
            ("queries", 1, _F.TYPE_MESSAGE, rep, ".prometheus.Query"),
            ("accepted_response_types", 2, _F.TYPE_ENUM, rep, ".prometheus.ReadRequest.ResponseType"))
    rtype = f.message_type[-1].enum_type.add(name="ResponseType")
    rtype.value.add(name="SAMPLES", number=0)
    rtype.value.add(name="STREAMED_XOR_CHUNKS", number=1)

    message("QueryResult",
            ("timeseries", 1, _F.TYPE_MESSAGE, rep, ".prometheus.TimeSeries"))
    message("ReadResponse",
            ("results", 1, _F.TYPE_MESSAGE, rep, ".prometheus.QueryResult"))
    return f


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"prometheus.{name}"))


WriteRequestPB = _message_class("WriteRequest")
ReadRequestPB = _message_class("ReadRequest")
ReadResponsePB = _message_class("ReadResponse")


def is_remote_protocol(headers: Mapping[str, str]) -> bool:
    content_type = (headers.get("content-type") or "").split(";")[0].strip().lower()
    encoding = (headers.get("content-encoding") or "").strip().lower()
    return content_type == CONTENT_TYPE or encoding == CONTENT_ENCODING


def _parse(cls, body: bytes):
    try:
        raw = snappy.decompress(body)
    except snappy.UncompressError as exc:
        raise InvalidSampleError(f"body is not snappy compressed: {exc}") from exc
    msg = cls()
    try:
        msg.ParseFromString(raw)
    except DecodeError as exc:
        raise InvalidSampleError(f"cannot decode {cls.DESCRIPTOR.name}: {exc}") from exc
    return msg


def decode_write(body: bytes) -> WriteRequest:
    msg = _parse(WriteRequestPB, body)
    return WriteRequest(timeseries=[
        TimeSeries(
            labels={lb.name: lb.value for lb in ts.labels},
            samples=[SamplePair(timestamp=s.timestamp, value=s.value) for s in ts.samples],
        )
        for ts in msg.timeseries
    ])


def _match_type(value: int) -> str:
    if not 0 <= value < len(MATCH_TYPES):
        raise InvalidSampleError(f"unknown matcher type {value}")
    return MATCH_TYPES[value]


def decode_read(body: bytes) -> ReadRequest:
    msg = _parse(ReadRequestPB, body)
    return ReadRequest(queries=[
        Query(
            start_timestamp_ms=q.start_timestamp_ms,
            end_timestamp_ms=q.end_timestamp_ms,
            matchers=[Matcher(type=_match_type(m.type), name=m.name, value=m.value) for m in q.matchers],
        )
        for q in msg.queries
    ])


def _fill_series(out, ts: TimeSeries) -> None:
    for name in sorted(ts.labels):
        out.labels.add(name=name, value=ts.labels[name])
    for p in ts.samples:
        out.samples.add(value=p.value, timestamp=p.timestamp)


def encode_write(req: WriteRequest) -> bytes:
    msg = WriteRequestPB()
    for ts in req.timeseries:
        _fill_series(msg.timeseries.add(), ts)
    return snappy.compress(msg.SerializeToString())


def encode_read(req: ReadRequest) -> bytes:
    msg = ReadRequestPB()
    for q in req.queries:
        out = msg.queries.add(start_timestamp_ms=q.start_timestamp_ms, end_timestamp_ms=q.end_timestamp_ms)
        for m in q.matchers:
            out.matchers.add(type=MATCH_TYPES.index(m.type), name=m.name, value=m.value)
    return snappy.compress(msg.SerializeToString())


def encode_read_response(resp: ReadResponse) -> bytes:
    msg = ReadResponsePB()
    for result in resp.results:
        out = msg.results.add()
        for ts in result.timeseries:
            _fill_series(out.timeseries.add(), ts)
    return snappy.compress(msg.SerializeToString())


def decode_read_response(body: bytes) -> ReadResponse:
    msg = _parse(ReadResponsePB, body)
    return ReadResponse(results=[
        QueryResult(timeseries=[
            TimeSeries(
                labels={lb.name: lb.value for lb in ts.labels},
                samples=[SamplePair(timestamp=s.timestamp, value=s.value) for s in ts.samples],
            )
            for ts in r.timeseries
        ])
        for r in msg.results
    ])
