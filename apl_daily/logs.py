from __future__ import annotations

import json
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

Sink = Callable[[dict], None]

logger = logging.getLogger("apl_daily")
if not logger.handlers:
    logger.setLevel(logging.INFO)
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(_handler)


class EventLog:
    """Structured event records, written as JSON lines and kept in a ring for the dashboard.

    Extra sinks receive each record dict as well; a sink that raises is
    reported on the logger and does not affect the caller.
    """

    def __init__(self, sinks: Optional[List[Sink]] = None, maxlen: int = 300) -> None:
        self.sinks: List[Sink] = list(sinks or [])
        self.recent: deque = deque(maxlen=maxlen)

    def add_sink(self, sink: Sink) -> None:
        self.sinks.append(sink)

    def emit(self, event: str, level: int = logging.INFO, **kwargs: object) -> dict:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **kwargs,
        }
        self.recent.appendleft(payload)
        logger.log(level, json.dumps(payload, default=str))
        for sink in self.sinks:
            try:
                sink(payload)
            except Exception:
                logger.exception("event sink failed for %s", event)
        return payload

    def error(self, event: str, **kwargs: object) -> dict:
        return self.emit(event, level=logging.ERROR, **kwargs)

    def tail(self, limit: int = 80) -> List[dict]:
        return list(self.recent)[:limit]


class EndpointMetrics:
    def __init__(self, buffer_size: int = 400) -> None:
        self.buffer_size = buffer_size
        self.endpoints: Dict[str, dict] = {}

    def record(self, endpoint: str, latency_ms: float, ok: bool) -> None:
        m = self.endpoints.setdefault(
            endpoint,
            {"count": 0, "errors": 0, "latency_total_ms": 0.0, "latency_p95_buffer": []},
        )
        m["count"] += 1
        if not ok:
            m["errors"] += 1
        m["latency_total_ms"] += latency_ms
        m["latency_p95_buffer"].append(latency_ms)
        if len(m["latency_p95_buffer"]) > self.buffer_size:
            m["latency_p95_buffer"] = m["latency_p95_buffer"][-self.buffer_size:]

    def snapshot(self) -> Dict[str, dict]:
        payload = {}
        for endpoint, value in self.endpoints.items():
            count = value.get("count", 0)
            p95_buffer = sorted(value.get("latency_p95_buffer", []))
            p95_idx = int(0.95 * (len(p95_buffer) - 1)) if p95_buffer else 0
            p95 = p95_buffer[p95_idx] if p95_buffer else 0.0
            payload[endpoint] = {
                "count": count,
                "errors": value.get("errors", 0),
                "avg_latency_ms": round(value.get("latency_total_ms", 0.0) / max(count, 1), 2),
                "p95_latency_ms": round(p95, 2),
            }
        return payload


default_event_log = EventLog()


def log_event(event: str, **kwargs: object) -> dict:
    return default_event_log.emit(event, **kwargs)
