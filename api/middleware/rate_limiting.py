from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from settings import SETTINGS

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per caller.

    Webhook callers share a gateway address, so they are keyed by the
    forwarded address when the proxy supplies one.
    """

    def __init__(self, app, requests_per_minute: int | None = None, exempt_paths: Iterable[str] = ("/health",)) -> None:
        super().__init__(app)
        self.requests_per_minute = requests_per_minute or SETTINGS.rate_limit_per_minute
        self.exempt_paths = set(exempt_paths)
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def _caller(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)
        caller = self._caller(request)
        now = time.monotonic()
        bucket = self._hits[caller]
        while bucket and now - bucket[0] > WINDOW_SECONDS:
            bucket.popleft()
        if len(bucket) >= self.requests_per_minute:
            retry_after = max(1, int(WINDOW_SECONDS - (now - bucket[0])))
            logger.warning("rate_limited", extra={"caller": caller, "path": request.url.path})
            return JSONResponse({"detail": "rate_limited"}, status_code=429, headers={"Retry-After": str(retry_after)})
        bucket.append(now)
        return await call_next(request)
