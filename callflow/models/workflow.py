"""
Workflow definition and execution models.

Definitions are frozen once registered; ``WorkflowEngine.update_workflow``
produces a new version. Executions are mutable records owned by the engine.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from callflow.models.conversation import utcnow


class TriggerType(str, Enum):
    TIME_BASED = "time_based"
    EVENT_BASED = "event_based"
    CONDITION_BASED = "condition_based"
    MANUAL = "manual"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class DataSource(str, Enum):
    CUSTOMER = "customer"
    EVENT = "event"
    INVOICE = "invoice"
    COMMUNICATION = "communication"
    BUSINESS = "business"
    CONTEXT = "context"


class ScheduleFrequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CREATE_EVENT = "create_event"
    UPDATE_CUSTOMER = "update_customer"
    CREATE_INVOICE = "create_invoice"
    AI_ANALYZE = "ai_analyze"
    WEBHOOK = "webhook"
    DELAY = "delay"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_EXECUTION_STATUSES = {
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
}

ConditionValue = Union[bool, int, float, str, List[Any], None]


class WorkflowCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: ConditionValue = None
    data_source: DataSource = DataSource.CONTEXT


class WorkflowSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    frequency: ScheduleFrequency
    time: Optional[str] = None
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    timezone: str = "UTC"


class WorkflowTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: TriggerType
    name: str = ""
    event: Optional[str] = Field(None, description="Event name for event-based triggers")
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    schedule: Optional[WorkflowSchedule] = None

    @model_validator(mode="after")
    def check_trigger_shape(self):
        if self.type == TriggerType.EVENT_BASED and not self.event:
            raise ValueError("Event-based triggers need an event name")
        if self.type == TriggerType.TIME_BASED and self.schedule is None:
            raise ValueError("Time-based triggers need a schedule")
        return self


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(0, ge=0)
    retry_delay: float = Field(1.0, ge=0.0, description="Base delay in seconds")
    backoff_multiplier: float = Field(2.0, ge=1.0)

    def delay_for(self, retry_count: int) -> float:
        """Delay before the given retry, counting retries from 1."""
        return self.retry_delay * self.backoff_multiplier ** (retry_count - 1)


class WorkflowAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: ActionType
    name: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"wf_{uuid.uuid4().hex[:12]}")
    business_id: str
    name: str
    description: str = ""
    trigger: WorkflowTrigger
    actions: List[WorkflowAction] = Field(..., min_length=1)
    is_active: bool = True
    version: int = 1
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("actions")
    def validate_unique_action_ids(cls, v):
        """Validate that action ids are unique within the workflow."""
        ids = [action.id for action in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Action ids must be unique within a workflow")
        return v


class WorkflowActionResult(BaseModel):
    action_id: str
    status: ActionStatus = ActionStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retry_count: int = 0
    next_attempt_at: Optional[datetime] = None


class WorkflowExecution(BaseModel):
    id: str = Field(default_factory=lambda: f"exec_{uuid.uuid4().hex[:12]}")
    workflow_id: str
    workflow_version: int
    business_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    triggered_by: str = "manual"
    triggered_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    action_results: List[WorkflowActionResult] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class WorkflowExecutionRequest(BaseModel):
    workflow_id: str
    business_id: str
    triggered_by: str = "manual"
    context: Dict[str, Any] = Field(default_factory=dict)
