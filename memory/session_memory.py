from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, List, Mapping

from models.schemas import SessionState
from settings import SETTINGS

logger = logging.getLogger(__name__)


class SessionMemoryStore:
    def __init__(self, ttl_seconds: int | None = None, path: str | None = None, key_prefix: str | None = None) -> None:
        self.ttl_seconds = ttl_seconds or SETTINGS.session_ttl_seconds
        self.path = SETTINGS.session_store_path if path is None else path
        self.key_prefix = key_prefix if key_prefix is not None else SETTINGS.session_key_prefix
        self._sessions: Dict[str, SessionState] = {}
        self._touch: Dict[str, datetime] = {}
        self._lock = Lock()
        self._load()

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("session_store_load_failed", extra={"path": self.path, "error": repr(exc)})
            return
        for key, raw in dict(payload.get("sessions", {})).items():
            try:
                self._sessions[str(key)] = SessionState.model_validate(raw)
            except ValueError:
                continue
        for key, raw in dict(payload.get("touch", {})).items():
            try:
                self._touch[str(key)] = datetime.fromisoformat(str(raw))
            except ValueError:
                continue

    def _persist(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        payload = {
            "sessions": {k: v.model_dump(mode="json") for k, v in self._sessions.items()},
            "touch": {k: ts.isoformat() for k, ts in self._touch.items()},
        }
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=True)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("session_store_persist_failed", extra={"path": self.path, "error": repr(exc)})

    def _expire_if_needed(self, key: str) -> None:
        last_touch = self._touch.get(key)
        if last_touch and datetime.utcnow() - last_touch > timedelta(seconds=self.ttl_seconds):
            self._sessions.pop(key, None)
            self._touch.pop(key, None)

    async def get(self, session_id: str) -> SessionState:
        key = self._key(session_id)
        with self._lock:
            self._expire_if_needed(key)
            state = self._sessions.get(key)
            return state.model_copy(deep=True) if state else SessionState()

    async def merge(self, session_id: str, partial: Mapping[str, Any]) -> SessionState:
        """Shallow-merge ``partial`` into the stored state.

        A ``None`` value clears the field back to its default. Unknown field
        names are ignored. Concurrent merges are serialised per process and
        the last write wins per field.
        """
        key = self._key(session_id)
        now = datetime.utcnow()
        with self._lock:
            self._expire_if_needed(key)
            current = self._sessions.get(key) or SessionState()
            data = current.model_dump()
            for field_name, value in partial.items():
                if field_name not in SessionState.model_fields:
                    logger.debug("session_merge_unknown_field", extra={"field": field_name})
                    continue
                if value is None:
                    data.pop(field_name, None)
                else:
                    data[field_name] = value
            data["last_updated_at"] = now
            data["created_at"] = current.created_at or now
            merged = SessionState.model_validate(data)
            self._sessions[key] = merged
            self._touch[key] = now
            self._persist()
            return merged.model_copy(deep=True)

    async def delete(self, session_id: str) -> None:
        key = self._key(session_id)
        with self._lock:
            self._sessions.pop(key, None)
            self._touch.pop(key, None)
            self._persist()

    async def exists(self, session_id: str) -> bool:
        key = self._key(session_id)
        with self._lock:
            self._expire_if_needed(key)
            return key in self._sessions

    def purge_expired(self) -> List[str]:
        """Drop sessions idle past the TTL and return their session ids."""
        now = datetime.utcnow()
        removed: List[str] = []
        with self._lock:
            for key, touched in list(self._touch.items()):
                if now - touched > timedelta(seconds=self.ttl_seconds):
                    self._sessions.pop(key, None)
                    self._touch.pop(key, None)
                    removed.append(key[len(self.key_prefix):])
            if removed:
                self._persist()
        return removed
