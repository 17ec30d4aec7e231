from .schemas import (
    AgentResponse,
    ChannelType,
    CompletePhase,
    InboundMessage,
    JobStatus,
    LastMenu,
    MediaAttachment,
    SessionState,
    TaskCondition,
    TaskFlowStage,
    ToolCallRecord,
)

__all__ = [
    "AgentResponse",
    "ChannelType",
    "CompletePhase",
    "InboundMessage",
    "JobStatus",
    "LastMenu",
    "MediaAttachment",
    "SessionState",
    "TaskCondition",
    "TaskFlowStage",
    "ToolCallRecord",
]
