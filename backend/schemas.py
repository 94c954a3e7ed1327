from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional
from enum import Enum

from time_utils import ensure_utc, max_process_until, utc_now


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class TaskStatus(str, Enum):
    backlog = "backlog"
    todo = "todo"
    in_progress = "in_progress"
    blocked = "blocked"
    review = "review"
    done = "done"


class RecurrenceFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


# User schemas
class UserSummary(BaseModel):
    id: int
    name: str
    email: EmailStr
    role: str
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Team schemas
class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class TeamMemberAdd(BaseModel):
    user_id: int
    role: str = Field("member", pattern="^(admin|member)$")


class TeamMember(BaseModel):
    id: int
    team_id: int
    user_id: int
    role: str

    class Config:
        from_attributes = True


class Team(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    members: List[TeamMember] = []

    class Config:
        from_attributes = True


# Workspace schemas
class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class Workspace(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    owner_id: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Project schemas
class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    team_id: Optional[int] = None
    workspace_id: Optional[int] = None


class Project(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    author_id: Optional[int] = None
    team_id: Optional[int] = None
    workspace_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.medium
    status: TaskStatus = TaskStatus.todo
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    tags: List[str] = []


class TaskCreate(TaskBase):
    project_id: int
    owner_id: Optional[int] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    tags: Optional[List[str]] = None
    owner_id: Optional[int] = None


class Task(TaskBase):
    id: int
    project_id: Optional[int] = None
    author_id: Optional[int] = None
    owner_id: Optional[int] = None
    checklist: List[Dict[str, Any]] = []
    attachments: List[Any] = []
    custom_metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("tags", "checklist", "attachments", mode="before")
    @classmethod
    def _none_as_empty_list(cls, value):
        return value or []

    @field_validator("custom_metadata", mode="before")
    @classmethod
    def _none_as_empty_dict(cls, value):
        return value or {}


class TaskList(BaseModel):
    items: List[Task]
    total: int
    page: int
    limit: int


class TaskEvent(BaseModel):
    id: int
    task_id: int
    event_type: str
    actor_id: Optional[int] = None
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    event_metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Notification schemas
class Notification(BaseModel):
    id: int
    user_id: int
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Recurring task schemas
DayOfWeek = Annotated[int, Field(ge=0, le=6)]
DayOfMonth = Annotated[int, Field(ge=1, le=31)]
MonthOfYear = Annotated[int, Field(ge=0, le=11)]


def validate_rule_shape(
    frequency: str,
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    days_of_week: Optional[List[int]],
    days_of_month: Optional[List[int]],
    months_of_year: Optional[List[int]],
) -> None:
    """
    Check the frequency-specific shape of a recurrence rule.

    Shared by the create schema and by updates, which validate the merged
    state of the stored definition and the patch.

    Raises:
        ValueError: with a user-facing message when the shape is invalid
    """
    frequency = getattr(frequency, "value", frequency)
    if frequency == "weekly" and not days_of_week:
        raise ValueError("days_of_week is required for weekly frequency")
    if frequency == "monthly" and not days_of_month:
        raise ValueError("days_of_month is required for monthly frequency")
    if frequency == "yearly" and not months_of_year:
        raise ValueError("months_of_year is required for yearly frequency")
    if start_date is not None and end_date is not None and ensure_utc(end_date) <= ensure_utc(start_date):
        raise ValueError("end_date must be after start_date")


class RecurringTaskTemplate(BaseModel):
    """Payload copied into every task generated from a recurring task."""
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    priority: TaskPriority = TaskPriority.medium
    tags: List[str] = Field(default_factory=list, max_length=20)
    estimated_hours: Optional[float] = Field(None, ge=0, le=1000)
    checklist: List[str] = Field(default_factory=list, max_length=50)
    attachments: List[str] = Field(default_factory=list, max_length=20)


class _RuleFields(BaseModel):
    @field_validator("days_of_week", "days_of_month", "months_of_year", check_fields=False)
    @classmethod
    def _dedupe_sorted(cls, value):
        if value is None:
            return value
        return sorted(set(value))

    @field_validator("start_date", "end_date", check_fields=False)
    @classmethod
    def _as_utc(cls, value):
        return ensure_utc(value)


class RecurringTaskCreate(_RuleFields):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    frequency: RecurrenceFrequency
    interval: int = Field(1, ge=1, le=365)
    days_of_week: List[DayOfWeek] = Field(default_factory=list)
    days_of_month: List[DayOfMonth] = Field(default_factory=list)
    months_of_year: List[MonthOfYear] = Field(default_factory=list)
    start_date: datetime
    end_date: Optional[datetime] = None
    active: bool = True
    project_id: Optional[int] = None
    team_id: Optional[int] = None
    workspace_id: Optional[int] = None
    task_template: RecurringTaskTemplate

    @model_validator(mode="after")
    def _check_rule(self):
        validate_rule_shape(
            self.frequency, self.start_date, self.end_date,
            self.days_of_week, self.days_of_month, self.months_of_year,
        )
        return self


class RecurringTaskUpdate(_RuleFields):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    frequency: Optional[RecurrenceFrequency] = None
    interval: Optional[int] = Field(None, ge=1, le=365)
    days_of_week: Optional[List[DayOfWeek]] = None
    days_of_month: Optional[List[DayOfMonth]] = None
    months_of_year: Optional[List[MonthOfYear]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    active: Optional[bool] = None
    project_id: Optional[int] = None
    task_template: Optional[RecurringTaskTemplate] = None


class RecurringTask(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    user_id: int
    project_id: Optional[int] = None
    team_id: Optional[int] = None
    workspace_id: Optional[int] = None
    frequency: RecurrenceFrequency
    interval: int
    days_of_week: List[int] = []
    days_of_month: List[int] = []
    months_of_year: List[int] = []
    start_date: datetime
    end_date: Optional[datetime] = None
    active: bool
    paused_until: Optional[datetime] = None
    pause_reason: Optional[str] = None
    last_processed_at: Optional[datetime] = None
    created_tasks_count: int = 0
    task_template: Dict[str, Any]
    next_run_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("days_of_week", "days_of_month", "months_of_year", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []


class RecurringTaskList(BaseModel):
    items: List[RecurringTask]
    total: int
    page: int
    limit: int
    pages: int


class RecurringTaskDue(BaseModel):
    id: int
    title: str
    next_run_date: datetime


class RecurringTaskStats(BaseModel):
    total: int
    active: int
    inactive: int
    paused: int
    by_frequency: Dict[str, int]
    tasks_created: int
    next_due: List[RecurringTaskDue]


class PauseRecurringTask(BaseModel):
    pause_until: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("pause_until")
    @classmethod
    def _in_future(cls, value):
        value = ensure_utc(value)
        if value is not None and value <= utc_now():
            raise ValueError("pause_until must be in the future")
        return value


class DuplicateRecurringTask(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)


class Occurrences(BaseModel):
    recurring_task_id: int
    occurrences: List[datetime]


class ProcessRecurringTasks(BaseModel):
    dry_run: bool = False
    max_tasks: int = Field(100, ge=1, le=1000)
    recurring_task_ids: Optional[List[int]] = None
    process_until: Optional[datetime] = None

    @field_validator("process_until")
    @classmethod
    def _within_a_year(cls, value):
        value = ensure_utc(value)
        if value is not None and value > max_process_until():
            raise ValueError("process_until cannot be more than 1 year in the future")
        return value

    @field_validator("recurring_task_ids")
    @classmethod
    def _not_empty(cls, value):
        # Omit the field to process every definition
        if value is not None and len(value) == 0:
            raise ValueError("recurring_task_ids must not be empty")
        return value


class GeneratedTask(BaseModel):
    recurring_task_id: int
    occurrence: datetime
    title: Optional[str] = None
    task_id: Optional[int] = None


class ProcessingError(BaseModel):
    recurring_task_id: Optional[int] = None
    occurrence: Optional[datetime] = None
    kind: str
    message: str


class ProcessRecurringTasksResult(BaseModel):
    dry_run: bool
    tasks_created: int
    definitions_processed: int
    created: List[GeneratedTask]
    errors: List[ProcessingError]
