from __future__ import annotations

import json
import os
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterator, List

from models.schemas import AgentDecisionLog, ToolCallRecord
from settings import SETTINGS


class AuditLogger:
    """Append-only JSONL trail of routing decisions and tool calls."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or SETTINGS.audit_log_path
        self._lock = Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def log_decision(self, record: AgentDecisionLog) -> None:
        self.log_json({"kind": "decision", **record.model_dump(mode="json")})

    def log_tool_call(self, session_id: str, record: ToolCallRecord, source: str = "llm") -> None:
        self.log_json(
            {
                "kind": "tool_call",
                "ts": datetime.utcnow().isoformat(),
                "session_id": session_id,
                "source": source,
                **record.model_dump(mode="json"),
            }
        )

    def log_json(self, payload: Dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def iter_records(self, session_id: str | None = None) -> Iterator[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as fh:
            for line in fh:
                try:
                    row = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if session_id is None or row.get("session_id") == session_id:
                    yield row

    def tool_calls_for(self, session_id: str) -> List[Dict[str, Any]]:
        return [r for r in self.iter_records(session_id) if r.get("kind") == "tool_call"]
