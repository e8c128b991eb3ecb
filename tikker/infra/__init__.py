"""Infrastructure layer - Configuration, persistence and the remote API"""

from .api_client import KimaiApiClient, validate_auth_config
from .config import AppPreferences, Settings, get_settings, reload_settings
from .db import DatabaseEngine, init_db
from .repository import HistoryRepository, KeyValueRepository, SessionRepository, TimerStateRepository

__all__ = [
    "KimaiApiClient", "validate_auth_config",
    "AppPreferences", "Settings", "get_settings", "reload_settings",
    "DatabaseEngine", "init_db",
    "HistoryRepository", "KeyValueRepository", "SessionRepository", "TimerStateRepository",
]
