from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from settings import SETTINGS

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete"}
PENDING_STATUSES = {"queued", "in_progress", "cancelling"}


class AssistantRunError(RuntimeError):
    pass


class AssistantRunTimeout(AssistantRunError):
    pass


class LLMRuntime:
    """Thin client for the hosted assistant runs API (threads, messages, runs)."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = SETTINGS.openai_api_key if api_key is None else api_key
        self.base_url = (base_url or SETTINGS.openai_base_url).rstrip("/")
        self.model = model or SETTINGS.assistant_model
        self._transport = transport

    def available(self) -> bool:
        return bool(self.api_key)

    async def _request(self, method: str, path: str, json: Dict[str, Any] | None = None, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "assistants=v2",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds, transport=self._transport) as client:
                resp = await client.request(method, f"{self.base_url}{path}", headers=headers, json=json, params=params)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            raise AssistantRunError(f"assistant_api_error:{method} {path}:{exc}") from exc
        except ValueError as exc:
            raise AssistantRunError(f"assistant_api_bad_json:{method} {path}") from exc
        if not isinstance(data, dict):
            raise AssistantRunError(f"assistant_api_bad_payload:{method} {path}")
        return data

    @staticmethod
    def _with_id(data: Dict[str, Any], kind: str) -> Dict[str, Any]:
        if not data.get("id"):
            raise AssistantRunError(f"assistant_api_missing_id:{kind}")
        return data

    async def create_assistant(self, name: str, instructions: str, tools: List[Dict[str, Any]]) -> str:
        data = await self._request(
            "POST",
            "/assistants",
            json={"name": name, "instructions": instructions, "model": self.model, "tools": tools},
        )
        self._with_id(data, "assistant")
        logger.info("assistant_created", extra={"assistant_id": data["id"], "model": self.model})
        return str(data["id"])

    async def create_thread(self) -> str:
        data = self._with_id(await self._request("POST", "/threads", json={}), "thread")
        return str(data["id"])

    async def add_message(self, thread_id: str, content: str) -> Dict[str, Any]:
        return await self._request("POST", f"/threads/{thread_id}/messages", json={"role": "user", "content": content})

    async def create_run(self, thread_id: str, assistant_id: str) -> Dict[str, Any]:
        data = await self._request("POST", f"/threads/{thread_id}/runs", json={"assistant_id": assistant_id})
        return self._with_id(data, "run")

    async def get_run(self, thread_id: str, run_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: List[Dict[str, str]]) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            json={"tool_outputs": outputs},
        )
        return self._with_id(data, "run")

    async def latest_assistant_text(self, thread_id: str) -> str:
        data = await self._request("GET", f"/threads/{thread_id}/messages", params={"order": "desc", "limit": 10})
        for message in data.get("data") or []:
            if not isinstance(message, dict) or message.get("role") != "assistant":
                continue
            parts: List[str] = []
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    text = block.get("text") or {}
                    parts.append(str(text.get("value", "") if isinstance(text, dict) else text))
            joined = "\n".join(p for p in parts if p).strip()
            if joined:
                return joined
        return ""
