from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from settings import SETTINGS

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[object]]


class InstantAckController:
    """Sends a short "working on it" message when the real reply is slow.

    ``schedule`` arms a timer. ``before_final`` is awaited right before the real
    reply goes out: it cancels the timer if it has not fired yet, otherwise it
    waits for the acknowledgement to finish sending plus ``lead_ms`` so the two
    messages arrive in order.
    """

    def __init__(self, send: SendFn, delay_ms: int | None = None, lead_ms: int | None = None) -> None:
        self._send = send
        self.delay_ms = SETTINGS.instant_delay_ms if delay_ms is None else delay_ms
        self.lead_ms = SETTINGS.instant_lead_ms if lead_ms is None else lead_ms
        self._task: Optional[asyncio.Task] = None
        self._fired = False
        self.sent = False

    @property
    def fired(self) -> bool:
        return self._fired

    def schedule(self, message: str | None = None) -> None:
        if self._task is not None:
            return
        self._task = asyncio.ensure_future(self._run(message or SETTINGS.instant_ack_text))

    async def _run(self, message: str) -> None:
        await asyncio.sleep(self.delay_ms / 1000)
        self._fired = True
        try:
            await self._send(message)
            self.sent = True
        except Exception as exc:
            logger.warning("instant_ack_send_failed", extra={"error": repr(exc)})

    async def before_final(self) -> bool:
        """Returns True when an acknowledgement went out ahead of the reply."""
        task = self._task
        if task is None:
            return False
        if not self._fired:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return False
        await task
        if self.lead_ms > 0:
            await asyncio.sleep(self.lead_ms / 1000)
        return self.sent
