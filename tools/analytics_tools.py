from __future__ import annotations

import json
import logging
import os
from collections import Counter
from datetime import datetime
from threading import Lock
from typing import Dict, Iterator, Optional

from settings import SETTINGS

logger = logging.getLogger(__name__)


class AnalyticsTools:
    """Append-only JSONL log of how each turn was answered.

    Event types written by the pipeline: ``fast_path_hit``, ``llm_fallback``
    and ``session_maintenance_run``.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = path or SETTINGS.analytics_log_path
        self._lock = Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    async def log_event(self, event_type: str, payload: Dict[str, object]) -> dict:
        record = {"ts": datetime.utcnow().isoformat(), "event_type": event_type, "payload": payload}
        line = json.dumps(record, ensure_ascii=True, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        return record

    def _events(self, session_id: Optional[str] = None) -> Iterator[dict]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("analytics_line_unreadable", extra={"path": self.path, "line": lineno})
                    continue
                if session_id and (event.get("payload") or {}).get("session_id") != session_id:
                    continue
                yield event

    async def routing_metrics(self, session_id: Optional[str] = None) -> Dict[str, object]:
        by_type: Counter = Counter()
        outcomes: Counter = Counter()
        tools: Counter = Counter()
        acks = 0
        for event in self._events(session_id):
            kind = event.get("event_type", "unknown")
            payload = event.get("payload") or {}
            by_type[kind] += 1
            tools.update(payload.get("tools") or [])
            if kind == "llm_fallback":
                outcomes[payload.get("outcome") or "unknown"] += 1
                acks += 1 if payload.get("instant_ack_sent") else 0

        answered = by_type["fast_path_hit"] + by_type["llm_fallback"]
        return {
            "total_events": sum(by_type.values()),
            "events_by_type": dict(by_type.most_common()),
            "fast_path_ratio": round(by_type["fast_path_hit"] / answered, 3) if answered else 0.0,
            "llm_outcomes": dict(outcomes),
            "instant_acks_sent": acks,
            "tool_usage": dict(tools.most_common()),
        }
