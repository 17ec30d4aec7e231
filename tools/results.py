from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ToolResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **data: Any) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data: Any) -> "ToolResult":
        return cls(success=False, data=data, error=error)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, **self.data}
        if self.error is not None:
            payload["error"] = self.error
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, default=str)
