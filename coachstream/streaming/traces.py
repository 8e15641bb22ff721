"""
Turn Traces

One row per turn recording its lifecycle:

    received -> context_loaded -> prompt_built -> streaming -> completed
    (failed is reachable from every non-terminal status)

Status only moves forward and never leaves a terminal status. Trace writes
are best effort: a failing write is logged as a PersistenceWarning and the
turn carries on.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.database import Database, dumps, from_iso, loads, to_iso, utcnow
from ..core.errors import PersistenceWarning

logger = logging.getLogger(__name__)

RECEIVED = "received"
CONTEXT_LOADED = "context_loaded"
PROMPT_BUILT = "prompt_built"
STREAMING = "streaming"
COMPLETED = "completed"
FAILED = "failed"

STATUS_ORDER = (RECEIVED, CONTEXT_LOADED, PROMPT_BUILT, STREAMING, COMPLETED)
TERMINAL_STATUSES = (COMPLETED, FAILED)


def new_trace_id() -> str:
    return f"t_{int(time.time() * 1000):x}_{uuid.uuid4().hex[:8]}"


def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if target == FAILED:
        return True
    if target not in STATUS_ORDER or current not in STATUS_ORDER:
        return False
    return STATUS_ORDER.index(target) > STATUS_ORDER.index(current)


@dataclass
class Trace:
    trace_id: str
    user_id: str
    coach_id: str
    status: str
    created_at: datetime
    updated_at: datetime
    user_message: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    routing: Optional[Dict[str, Any]] = None
    loaded_modules: Optional[List[str]] = None
    prompt_snapshot: Optional[str] = None
    output_snapshot: Optional[str] = None
    error: Optional[str] = None
    first_token_ms: Optional[int] = None
    total_tokens: Optional[int] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Trace":
        return cls(
            trace_id=row["trace_id"],
            user_id=row["user_id"],
            coach_id=row["coach_id"],
            status=row["status"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            user_message=row.get("user_message"),
            provider=row.get("provider"),
            model=row.get("model"),
            routing=loads(row.get("routing")),
            loaded_modules=loads(row.get("loaded_modules")),
            prompt_snapshot=row.get("prompt_snapshot"),
            output_snapshot=row.get("output_snapshot"),
            error=row.get("error"),
            first_token_ms=row.get("first_token_ms"),
            total_tokens=row.get("total_tokens"),
            duration_ms=row.get("duration_ms"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TraceStore:
    """Best-effort persistence of turn traces."""

    def __init__(self, db: Database, prompt_chars: int = 5000, output_chars: int = 10000):
        self.db = db
        self.prompt_chars = prompt_chars
        self.output_chars = output_chars

    def _warn(self, action: str, trace_id: str, error: Exception):
        warning = PersistenceWarning(f"trace {action} failed for {trace_id}: {error}")
        logger.warning(f"[TRACE] {warning.message}")

    def start(self, trace_id: str, user_id: str, coach_id: str, user_message: str,
              now: Optional[datetime] = None) -> bool:
        stamp = to_iso(now or utcnow())
        try:
            self.db.insert("traces", {
                "trace_id": trace_id,
                "user_id": user_id,
                "coach_id": coach_id,
                "status": RECEIVED,
                "user_message": user_message,
                "created_at": stamp,
                "updated_at": stamp,
            })
            return True
        except Exception as e:
            self._warn("start", trace_id, e)
            return False

    def _current_status(self, trace_id: str) -> Optional[str]:
        row = self.db.fetchone("SELECT status FROM traces WHERE trace_id = :id", {"id": trace_id})
        return row["status"] if row else None

    def advance(self, trace_id: str, status: str, now: Optional[datetime] = None, **fields: Any) -> bool:
        """Move the trace to `status` and store extra columns, if the move is forward."""
        try:
            current = self._current_status(trace_id)
            if current is None:
                logger.debug(f"[TRACE] Unknown trace {trace_id}, skipping {status}")
                return False
            if not can_transition(current, status):
                logger.debug(f"[TRACE] Ignoring {current} -> {status} for {trace_id}")
                return False

            data: Dict[str, Any] = {"status": status, "updated_at": to_iso(now or utcnow())}
            for key, value in fields.items():
                if key in ("routing", "loaded_modules") and value is not None:
                    value = dumps(value)
                elif key == "prompt_snapshot" and value is not None:
                    value = value[:self.prompt_chars]
                elif key == "output_snapshot" and value is not None:
                    value = value[:self.output_chars]
                data[key] = value

            updated = self.db.update(
                "traces", data, "trace_id = :trace_id AND status = :current",
                {"trace_id": trace_id, "current": current},
            )
            return updated > 0
        except Exception as e:
            self._warn(status, trace_id, e)
            return False

    def complete(
        self,
        trace_id: str,
        output: str,
        first_token_ms: Optional[int],
        total_tokens: int,
        duration_ms: int,
    ) -> bool:
        return self.advance(
            trace_id,
            COMPLETED,
            output_snapshot=output,
            first_token_ms=first_token_ms,
            total_tokens=total_tokens,
            duration_ms=duration_ms,
        )

    def fail(self, trace_id: str, error: str, duration_ms: Optional[int] = None) -> bool:
        fields: Dict[str, Any] = {"error": error[:1000]}
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        return self.advance(trace_id, FAILED, **fields)

    def get(self, trace_id: str) -> Optional[Trace]:
        row = self.db.fetchone("SELECT * FROM traces WHERE trace_id = :id", {"id": trace_id})
        return Trace.from_row(row) if row else None
