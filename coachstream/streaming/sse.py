"""
Server-Sent Events helpers.

Outbound: every client event is framed as `data: <json>\\n\\n`.

Inbound: UpstreamDecoder turns raw byte chunks from an OpenAI-compatible
stream into content deltas. Bytes are decoded incrementally (a multi-byte
character split across reads is held back), lines are split on '\\n' and
the incomplete trailing fragment is buffered until the next read.
"""

import codecs
import json
import logging
from typing import Any, Dict, List, Optional

from ..core.errors import ParseError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def sse_event(event: Dict[str, Any]) -> str:
    """Frame one client event; keys with None values are dropped."""
    payload = {key: value for key, value in event.items() if value is not None}
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n"


def parse_record(line: str) -> Optional[str]:
    """Content delta of one upstream line.

    Returns None for lines that carry no content (blank, comments, the
    termination sentinel, records without a delta).

    Raises:
        ParseError: the line is a data record but not valid JSON
    """
    trimmed = line.strip()
    if not trimmed.startswith(DATA_PREFIX):
        return None

    data = trimmed[len(DATA_PREFIX):]
    if data == DONE_SENTINEL:
        return None

    try:
        parsed = json.loads(data)
    except ValueError as e:
        raise ParseError(f"Malformed stream record: {data[:80]}") from e

    try:
        delta = parsed["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None

    # reasoning models send empty deltas while thinking
    if not isinstance(delta, str) or not delta:
        return None
    return delta


class UpstreamDecoder:
    """Incremental decoder for an upstream completion stream."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def _parse_lines(self, lines: List[str]) -> List[str]:
        deltas = []
        for line in lines:
            try:
                delta = parse_record(line)
            except ParseError as e:
                self.skipped += 1
                logger.debug(f"[SSE] {e.message}")
                continue
            if delta is not None:
                deltas.append(delta)
        return deltas

    def feed(self, chunk: bytes) -> List[str]:
        """Decode one chunk and return the deltas of every completed line."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> List[str]:
        """Parse whatever is left once the upstream closed."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return self._parse_lines([remainder])
