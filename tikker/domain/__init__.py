"""Domain layer - Pure business entities and errors"""

from .errors import ApiError, ConfigurationError, ServerConnectionError, TikkerError, ValidationError
from .models import (
    Activity,
    AuthConfig,
    AuthType,
    BindingKind,
    ConnectionState,
    CurrentTask,
    CurrentTimeEntry,
    Customer,
    Page,
    Profile,
    Project,
    RecentSession,
    ServerVersion,
    SessionEvent,
    SessionEventType,
    SessionState,
    Task,
    TaskPriority,
    TaskStatus,
    TimeEntry,
    TimerBinding,
    TimerHistory,
    TimerState,
    TimerStatus,
    User,
)

__all__ = [
    "ApiError", "ConfigurationError", "ServerConnectionError", "TikkerError", "ValidationError",
    "Activity", "AuthConfig", "AuthType", "BindingKind", "ConnectionState", "CurrentTask",
    "CurrentTimeEntry", "Customer", "Page", "Profile", "Project", "RecentSession", "ServerVersion",
    "SessionEvent", "SessionEventType", "SessionState", "Task", "TaskPriority", "TaskStatus",
    "TimeEntry", "TimerBinding", "TimerHistory", "TimerState", "TimerStatus", "User",
]
