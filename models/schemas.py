from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    WEB = "web"


class JobStatus(str, Enum):
    NONE = "none"
    CONFIRMING = "confirming"
    STARTED = "started"


class LastMenu(str, Enum):
    JOBS = "jobs"
    CONFIRM = "confirm"
    LOCATIONS = "locations"
    SUBLOCATIONS = "sublocations"
    TASKS = "tasks"


class JobEditMode(str, Enum):
    MENU = "menu"
    AWAIT_VALUE = "await_value"


class JobEditType(str, Enum):
    CUSTOMER = "customer"
    ADDRESS = "address"
    TIME = "time"
    STATUS = "status"


class WorkOrderStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    STARTED = "STARTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class TaskCondition(str, Enum):
    GOOD = "GOOD"
    FAIR = "FAIR"
    UNSATISFACTORY = "UNSATISFACTORY"
    UN_OBSERVABLE = "UN_OBSERVABLE"
    NOT_APPLICABLE = "NOT_APPLICABLE"

    @classmethod
    def from_number(cls, number: Any) -> Optional["TaskCondition"]:
        try:
            index = int(number)
        except (TypeError, ValueError):
            return None
        if 1 <= index <= len(CONDITION_ORDER):
            return CONDITION_ORDER[index - 1]
        return None

    @property
    def requires_cause_resolution(self) -> bool:
        return self in {TaskCondition.FAIR, TaskCondition.UNSATISFACTORY}

    @property
    def requires_media(self) -> bool:
        return self is not TaskCondition.NOT_APPLICABLE


CONDITION_ORDER: List[TaskCondition] = [
    TaskCondition.GOOD,
    TaskCondition.FAIR,
    TaskCondition.UNSATISFACTORY,
    TaskCondition.UN_OBSERVABLE,
    TaskCondition.NOT_APPLICABLE,
]

CONDITION_LABELS: Dict[TaskCondition, str] = {
    TaskCondition.GOOD: "Good",
    TaskCondition.FAIR: "Fair",
    TaskCondition.UNSATISFACTORY: "Un-Satisfactory",
    TaskCondition.UN_OBSERVABLE: "Un-Observable",
    TaskCondition.NOT_APPLICABLE: "Not Applicable",
}


class TaskFlowStage(str, Enum):
    CONDITION = "condition"
    CAUSE = "cause"
    RESOLUTION = "resolution"
    MEDIA = "media"
    REMARKS = "remarks"
    CONFIRM = "confirm"


class CompletePhase(str, Enum):
    START = "start"
    SET_CONDITION = "set_condition"
    SET_CAUSE = "set_cause"
    SET_RESOLUTION = "set_resolution"
    SKIP_MEDIA = "skip_media"
    SET_REMARKS = "set_remarks"
    FINALIZE = "finalize"


# Forward edges of the per-task flow. Setting the condition again restarts
# from CONDITION, and finalize always leaves the flow.
TASK_FLOW_TRANSITIONS: Dict[TaskFlowStage, frozenset] = {
    TaskFlowStage.CONDITION: frozenset({TaskFlowStage.CAUSE, TaskFlowStage.MEDIA}),
    TaskFlowStage.CAUSE: frozenset({TaskFlowStage.RESOLUTION}),
    TaskFlowStage.RESOLUTION: frozenset({TaskFlowStage.MEDIA}),
    TaskFlowStage.MEDIA: frozenset({TaskFlowStage.REMARKS}),
    TaskFlowStage.REMARKS: frozenset({TaskFlowStage.CONFIRM}),
    TaskFlowStage.CONFIRM: frozenset(),
}


def stage_after_condition(condition: TaskCondition) -> TaskFlowStage:
    if condition.requires_cause_resolution:
        return TaskFlowStage.CAUSE
    return TaskFlowStage.MEDIA


def advance_stage(current: TaskFlowStage | None, target: TaskFlowStage) -> TaskFlowStage:
    if current is None:
        raise ValueError(f"task flow not started; cannot move to {target.value}")
    if target not in TASK_FLOW_TRANSITIONS[current]:
        raise ValueError(f"illegal task flow transition {current.value} -> {target.value}")
    return target


STAGE_SEQUENCE: List[TaskFlowStage] = [
    TaskFlowStage.CONDITION,
    TaskFlowStage.CAUSE,
    TaskFlowStage.RESOLUTION,
    TaskFlowStage.MEDIA,
    TaskFlowStage.REMARKS,
    TaskFlowStage.CONFIRM,
]


def rewind_stage(current: TaskFlowStage | None, target: TaskFlowStage) -> TaskFlowStage:
    """Move back to an earlier stage whose requirement is still unmet."""
    if current is None:
        raise ValueError(f"task flow not started; cannot rewind to {target.value}")
    if STAGE_SEQUENCE.index(target) > STAGE_SEQUENCE.index(current):
        raise ValueError(f"cannot rewind forward {current.value} -> {target.value}")
    return target


class ToolCallRecord(BaseModel):
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result_summary: str = ""
    success: bool = True
    duration_ms: int = 0


class AgentDecisionLog(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: str
    agent: str
    action: str
    reasoning: str
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    duration_ms: int = 0
    outcome: str = "ok"


class MediaAttachment(BaseModel):
    url: Optional[str] = None
    download_path: Optional[str] = None
    mime_type: str = ""
    caption: str = ""
    media_id: Optional[str] = None

    @property
    def media_type(self) -> str:
        return "video" if self.mime_type.lower().startswith("video/") else "photo"


class InboundMessage(BaseModel):
    session_id: str
    channel: ChannelType = ChannelType.WEB
    content: str = ""
    media: Optional[MediaAttachment] = None
    message_id: Optional[str] = None
    sender_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=datetime.utcnow)


class AgentResponse(BaseModel):
    session_id: str
    response_text: str
    agent: str
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    decision_logs: List[AgentDecisionLog] = Field(default_factory=list)
    instant_ack_sent: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubLocationOption(BaseModel):
    id: str
    name: str
    status: str = "pending"


class PendingMediaUpload(BaseModel):
    url: str
    key: str
    media_type: str = "photo"
    work_order_id: Optional[str] = None
    location: Optional[str] = None
    location_id: Optional[str] = None
    sub_location: Optional[str] = None
    sub_location_id: Optional[str] = None
    task_id: Optional[str] = None
    task_item_id: Optional[str] = None
    task_entry_id: Optional[str] = None
    task_name: Optional[str] = None
    condition: Optional[TaskCondition] = None
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)


class SessionState(BaseModel):
    inspector_id: Optional[str] = None
    inspector_name: Optional[str] = None
    inspector_phone: Optional[str] = None

    work_order_id: Optional[str] = None
    customer_name: Optional[str] = None
    property_address: Optional[str] = None
    postal_code: Optional[str] = None
    job_status: JobStatus = JobStatus.NONE

    current_location: Optional[str] = None
    current_location_id: Optional[str] = None
    current_sub_location_id: Optional[str] = None
    current_sub_location_name: Optional[str] = None
    location_sub_locations: Dict[str, List[SubLocationOption]] = Field(default_factory=dict)

    current_task_id: Optional[str] = None
    current_task_name: Optional[str] = None
    current_task_item_id: Optional[str] = None
    current_task_entry_id: Optional[str] = None
    current_task_condition: Optional[TaskCondition] = None
    current_task_location_id: Optional[str] = None
    current_task_location_name: Optional[str] = None
    task_flow_stage: Optional[TaskFlowStage] = None
    pending_task_cause: Optional[str] = None
    pending_task_resolution: Optional[str] = None
    pending_task_remarks: Optional[str] = None

    last_menu: Optional[LastMenu] = None
    last_menu_at: Optional[datetime] = None

    job_edit_mode: Optional[JobEditMode] = None
    job_edit_type: Optional[JobEditType] = None

    pending_media_uploads: List[PendingMediaUpload] = Field(default_factory=list)
    thread_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    def in_job_edit_flow(self) -> bool:
        return self.job_edit_mode in {JobEditMode.MENU, JobEditMode.AWAIT_VALUE}

    def in_task_flow(self) -> bool:
        return self.task_flow_stage is not None and self.current_task_id is not None


# Session fields owned by a job; cleared together whenever a new job listing
# cycle starts.
JOB_CONTEXT_FIELDS = (
    "work_order_id",
    "customer_name",
    "property_address",
    "postal_code",
    "location_sub_locations",
    "job_edit_mode",
    "job_edit_type",
)

LOCATION_CONTEXT_FIELDS = (
    "current_location",
    "current_location_id",
    "current_sub_location_id",
    "current_sub_location_name",
)

TASK_CONTEXT_FIELDS = (
    "current_task_id",
    "current_task_name",
    "current_task_item_id",
    "current_task_entry_id",
    "current_task_condition",
    "current_task_location_id",
    "current_task_location_name",
    "task_flow_stage",
    "pending_task_cause",
    "pending_task_resolution",
    "pending_task_remarks",
)


def cleared(*groups: tuple) -> Dict[str, None]:
    return {name: None for group in groups for name in group}
