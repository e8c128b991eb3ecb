"""
Domain Models using Pydantic for validation.

Architecture Decision: Why Pydantic?
The remote server speaks camelCase JSON and is free to add fields or to nest
related objects instead of sending plain ids. Pydantic gives us alias handling,
tolerant parsing and easy serialization back to JSON for local persistence.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    PROGRESS = "progress"
    CLOSED = "closed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TimerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class AuthType(str, Enum):
    API_TOKEN = "api_token"
    LEGACY = "legacy"


class BindingKind(str, Enum):
    TIMESHEET = "timesheet"
    TASK = "task"


class SessionEventType(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    ERROR = "error"
    START = "start"
    STOP = "stop"
    PAUSE = "pause"
    RESUME = "resume"


def _ref_id(value: Any) -> Any:
    """Reduce a nested entity ({"id": 3, ...}) to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class WireModel(BaseModel):
    """
    Base for everything exchanged with the remote API.

    Field names are snake_case in Python and camelCase on the wire. Unknown
    fields are dropped so a newer server version never breaks parsing.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        from_attributes=True,
    )

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict using the server's field names"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ----------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------

class Customer(WireModel):
    id: int
    name: str = ""
    number: Optional[str] = None
    comment: Optional[str] = None
    company: Optional[str] = None
    country: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    color: Optional[str] = None
    visible: bool = True


class Project(WireModel):
    id: int
    name: str = ""
    customer: Optional[int] = None
    customer_name: Optional[str] = None
    comment: Optional[str] = None
    order_number: Optional[str] = None
    color: Optional[str] = None
    visible: bool = True

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value: Any) -> Any:
        return _ref_id(value)


class Activity(WireModel):
    """
    An activity either belongs to one project or is global (project is None).
    """
    id: int
    name: str = ""
    project: Optional[int] = None
    project_name: Optional[str] = None
    comment: Optional[str] = None
    color: Optional[str] = None
    visible: bool = True

    @field_validator("project", mode="before")
    @classmethod
    def _project_id(cls, value: Any) -> Any:
        return _ref_id(value)

    @property
    def is_global(self) -> bool:
        return self.project is None


# ----------------------------------------------------------------------
# Time entries and tasks
# ----------------------------------------------------------------------

class TimeEntry(WireModel):
    """
    A span of tracked time (a "timesheet" on the server).

    `end` is absent while the entry is open. Once closed, `duration` is the
    server's value if it sent one, otherwise `end - begin`.
    """
    id: Optional[int] = None
    begin: datetime
    end: Optional[datetime] = None
    duration: int = 0
    description: Optional[str] = None
    billable: bool = True
    exported: bool = False
    tags: List[str] = Field(default_factory=list)
    user: Optional[int] = None
    customer: Optional[int] = None
    project: Optional[int] = None
    activity: Optional[int] = None

    @field_validator("user", "customer", "project", "activity", mode="before")
    @classmethod
    def _reference_id(cls, value: Any) -> Any:
        return _ref_id(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value

    @field_validator("duration", mode="before")
    @classmethod
    def _null_duration(cls, value: Any) -> Any:
        return value or 0

    @model_validator(mode="after")
    def _closed_duration(self) -> "TimeEntry":
        if self.end is not None and not self.duration:
            self.duration = max(0, int((self.end - self.begin).total_seconds()))
        return self

    @property
    def is_open(self) -> bool:
        return self.end is None


class Task(WireModel):
    """
    A longer-lived work item that can be time-tracked.

    The server may embed the project/activity objects; the customer is then
    taken from the embedded project.
    """
    id: int
    title: str = ""
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.OPEN
    priority: TaskPriority = TaskPriority.MEDIUM
    customer: Optional[int] = None
    project: Optional[int] = None
    activity: Optional[int] = None
    estimated_duration: Optional[int] = None
    actual_duration: int = 0
    due_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_references(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        project = data.get("project")
        if isinstance(project, dict) and data.get("customer") is None:
            data["customer"] = _ref_id(project.get("customer"))
        for key in ("customer", "project", "activity"):
            data[key] = _ref_id(data.get(key))
        return data

    @field_validator("actual_duration", mode="before")
    @classmethod
    def _null_duration(cls, value: Any) -> Any:
        return value or 0


# ----------------------------------------------------------------------
# Server metadata
# ----------------------------------------------------------------------

class User(WireModel):
    id: int
    username: str = ""
    email: Optional[str] = None
    language: Optional[str] = None
    timezone: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class ServerVersion(WireModel):
    version: str = ""
    version_id: Optional[int] = None
    semantic_version: Optional[str] = None
    copyright: Optional[str] = None


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """Paginated list envelope used by the time entry and task endpoints"""
    data: List[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    size: int = 0
    pages: int = 1

    @classmethod
    def wrap(cls, items: List[T]) -> "Page[T]":
        """Treat a bare array as a single, complete page"""
        return cls(data=items, total=len(items), page=1, size=len(items), pages=1)


# ----------------------------------------------------------------------
# Connection profiles
# ----------------------------------------------------------------------

class AuthConfig(BaseModel):
    """Credentials for one server. Token and legacy auth are mutually exclusive."""
    type: AuthType = AuthType.API_TOKEN
    base_url: str = ""
    api_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class Profile(BaseModel):
    id: str
    name: str
    auth: AuthConfig
    auto_connect: bool = False
    last_used: Optional[datetime] = None


class ConnectionState(BaseModel):
    is_connected: bool = False
    is_connecting: bool = False
    last_connected: Optional[datetime] = None
    error: Optional[str] = None
    version: Optional[ServerVersion] = None


# ----------------------------------------------------------------------
# Local state: timer, session, history
# ----------------------------------------------------------------------

class TimerBinding(BaseModel):
    """What the timer is currently measuring"""
    kind: BindingKind
    entity_id: Optional[int] = None
    customer: Optional[int] = None
    project: Optional[int] = None
    activity: Optional[int] = None
    description: Optional[str] = None
    billable: bool = True
    tags: List[str] = Field(default_factory=list)
    begin: Optional[datetime] = None


class TimerState(BaseModel):
    """
    Snapshot of the timer.

    `total_elapsed_time` counts active (running) seconds only; paused
    intervals are never part of it.
    """
    status: TimerStatus = TimerStatus.IDLE
    start_time: Optional[datetime] = None
    pause_time: Optional[datetime] = None
    resume_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    elapsed_since_last_resume: float = 0.0
    total_elapsed_time: float = 0.0
    binding: Optional[TimerBinding] = None

    @property
    def can_start(self) -> bool:
        return self.status == TimerStatus.IDLE

    @property
    def can_pause(self) -> bool:
        return self.status == TimerStatus.RUNNING

    @property
    def can_resume(self) -> bool:
        return self.status == TimerStatus.PAUSED

    @property
    def can_stop(self) -> bool:
        return self.status in (TimerStatus.RUNNING, TimerStatus.PAUSED)


class CurrentTimeEntry(BaseModel):
    """
    The remote time entry bound to the running timer.

    `timer_offset` is the timer total at the moment of binding, so the
    entry's duration is `timer total - timer_offset`. It is None for a
    binding restored after a restart, which this process never timed.
    """
    id: int
    begin: datetime
    customer: int
    project: int
    activity: int
    description: Optional[str] = None
    billable: bool = True
    tags: List[str] = Field(default_factory=list)
    timer_offset: Optional[float] = 0.0


class CurrentTask(BaseModel):
    id: int
    title: str = ""
    status: TaskStatus = TaskStatus.PROGRESS
    prior_status: TaskStatus = TaskStatus.OPEN
    priority: TaskPriority = TaskPriority.MEDIUM
    customer: Optional[int] = None
    project: Optional[int] = None
    activity: Optional[int] = None
    estimated_duration: Optional[int] = None
    actual_duration: int = 0
    begin: datetime
    timer_offset: Optional[float] = 0.0


class SessionEvent(BaseModel):
    type: SessionEventType
    timestamp: datetime = Field(default_factory=datetime.now)
    details: Dict[str, Any] = Field(default_factory=dict)


class RecentSession(BaseModel):
    """A past login, offered for quick reconnects"""
    profile_id: Optional[str] = None
    base_url: Optional[str] = None
    user: User
    session_start: datetime
    last_activity: datetime


class SessionState(BaseModel):
    """
    Everything the session manager persists between runs.

    A time entry and a task may be bound at the same time; they are
    independent bindings sharing one timer.
    """
    profile_id: Optional[str] = None
    user: Optional[User] = None
    is_authenticated: bool = False
    is_connected: bool = False
    connection_error: Optional[str] = None
    session_start: datetime = Field(default_factory=datetime.now)
    last_activity: datetime = Field(default_factory=datetime.now)
    current_time_entry: Optional[CurrentTimeEntry] = None
    current_task: Optional[CurrentTask] = None
    events: List[SessionEvent] = Field(default_factory=list)
    recent_sessions: List[RecentSession] = Field(default_factory=list)


class TimerHistory(BaseModel):
    """Aggregate totals derived from the cached time entries"""
    entries: List[TimeEntry] = Field(default_factory=list)
    total_time: int = 0
    billable_time: int = 0
    last_entry: Optional[TimeEntry] = None

    @classmethod
    def from_entries(cls, entries: List[TimeEntry]) -> "TimerHistory":
        closed = [entry for entry in entries if not entry.is_open]
        return cls(
            entries=closed,
            total_time=sum(entry.duration for entry in closed),
            billable_time=sum(entry.duration for entry in closed if entry.billable),
            last_entry=max(closed, key=lambda entry: entry.begin) if closed else None,
        )
