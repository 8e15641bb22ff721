"""Turn relay, traces and SSE framing."""

from .relay import TurnMetrics, TurnRelay, TurnRequest
from .sse import UpstreamDecoder, parse_record, sse_event
from .traces import Trace, TraceStore, new_trace_id

__all__ = [
    "Trace",
    "TraceStore",
    "TurnMetrics",
    "TurnRelay",
    "TurnRequest",
    "UpstreamDecoder",
    "new_trace_id",
    "parse_record",
    "sse_event",
]
