from __future__ import annotations

import json
import logging
import os
from threading import Lock
from typing import Awaitable, Callable, Dict, Optional

from settings import SETTINGS

logger = logging.getLogger(__name__)


class AssistantThreadCache:
    """Owns the hosted assistant id and the per-session conversation threads."""

    def __init__(self, path: str | None = None, assistant_id: str | None = None) -> None:
        self.path = SETTINGS.thread_cache_path if path is None else path
        self._assistant_id: Optional[str] = assistant_id or SETTINGS.assistant_id or None
        self._threads: Dict[str, str] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("thread_cache_load_failed", extra={"path": self.path, "error": repr(exc)})
            return
        self._assistant_id = self._assistant_id or payload.get("assistant_id") or None
        threads = payload.get("threads", {})
        if isinstance(threads, dict):
            self._threads = {str(k): str(v) for k, v in threads.items()}

    def _persist(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump({"assistant_id": self._assistant_id, "threads": self._threads}, fh, ensure_ascii=True)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("thread_cache_persist_failed", extra={"path": self.path, "error": repr(exc)})

    async def get_or_create_assistant(self, create: Callable[[], Awaitable[str]]) -> str:
        with self._lock:
            if self._assistant_id:
                return self._assistant_id
        assistant_id = await create()
        with self._lock:
            # Another request may have created one while we were waiting.
            if not self._assistant_id:
                self._assistant_id = assistant_id
                self._persist()
            return self._assistant_id

    async def get_or_create_thread(self, session_id: str, create: Callable[[], Awaitable[str]]) -> str:
        with self._lock:
            existing = self._threads.get(session_id)
        if existing:
            return existing
        thread_id = await create()
        with self._lock:
            thread_id = self._threads.setdefault(session_id, thread_id)
            self._persist()
        return thread_id

    def get_thread(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._threads.get(session_id)

    def forget_thread(self, session_id: str) -> None:
        with self._lock:
            if self._threads.pop(session_id, None) is not None:
                self._persist()
