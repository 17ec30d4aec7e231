from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Iterable, List

from compliance.audit_logger import AuditLogger
from models.schemas import AgentDecisionLog, AgentResponse, InboundMessage, ToolCallRecord


class BaseAgent(ABC):
    """Shared plumbing for anything that answers an inspector's message.

    Every reply produced through :meth:`respond` leaves one ``decision`` row in
    the audit log, so a session can be replayed turn by turn.
    """

    def __init__(self, name: str, audit_logger: AuditLogger | None = None) -> None:
        self.name = name
        self.audit_logger = audit_logger or AuditLogger()

    @abstractmethod
    async def process(self, message: InboundMessage) -> AgentResponse:
        raise NotImplementedError

    def build_decision_log(
        self,
        session_id: str,
        action: str,
        reasoning: str,
        tool_calls: Iterable[ToolCallRecord] | None = None,
        duration_ms: int = 0,
        outcome: str = "ok",
        agent: str | None = None,
    ) -> AgentDecisionLog:
        record = AgentDecisionLog(
            session_id=session_id,
            agent=agent or self.name,
            action=action,
            reasoning=reasoning,
            tool_calls=list(tool_calls or []),
            duration_ms=duration_ms,
            outcome=outcome,
        )
        self.audit_logger.log_decision(record)
        return record

    def respond(
        self,
        message: InboundMessage,
        text: str,
        *,
        action: str,
        reasoning: str,
        started: float,
        tool_calls: List[ToolCallRecord] | None = None,
        agent: str | None = None,
        outcome: str = "ok",
    ) -> AgentResponse:
        records = list(tool_calls or [])
        elapsed = int((time.perf_counter() - started) * 1000)
        decision = self.build_decision_log(
            message.session_id,
            action=action,
            reasoning=reasoning,
            tool_calls=records,
            duration_ms=elapsed,
            outcome=outcome,
            agent=agent,
        )
        return AgentResponse(
            session_id=message.session_id,
            response_text=text,
            agent=agent or self.name,
            tool_calls=records,
            decision_logs=[decision],
            metadata={"outcome": outcome, "duration_ms": elapsed},
        )
