"""
Observability Layer — Structured chat event logging.

Responsibility:
- Log chat flow events in a structured JSON format
- Track latency of model calls and sandbox runs
- Contextual logging (session_id = bot id, trace_id = one chat request)

Domain events go through here; plain diagnostics use module loggers.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

logger = logging.getLogger("observability")


class Observability:
    """Structured logger bound to one bot and one chat request."""

    def __init__(self, session_id: str | None = None, trace_id: str | None = None):
        self.session_id = session_id or str(uuid.uuid4())
        self.trace_id = trace_id or str(uuid.uuid4())

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Write one JSON object per event."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "trace_id": self.trace_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, ensure_ascii=False, default=str))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None) -> Iterator[None]:
        """Emit an ``execution_metric`` event with the wall time of the block."""
        started = time.perf_counter()
        outcome: dict[str, Any] = {"success": True, "error": None}
        try:
            yield
        except Exception as e:
            outcome = {"success": False, "error": f"{type(e).__name__}: {e}"}
            raise
        finally:
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    **outcome,
                    **(metadata or {}),
                },
            )
